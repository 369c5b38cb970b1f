"""Injected store handle and unit-of-work scope.

Every component receives a ``Store`` in its constructor. A unit of work wraps
one SQLAlchemy session: it commits on success, rolls back on any error and
only then runs the effects queued with ``after_commit``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.clock import Clock, utcnow
from app.core.logging import logger
from app.errors import Conflict, MediConnectError, Unavailable

from .models import AuditEvent, Base


class UnitOfWork:
    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock
        self.warnings: list[str] = []
        self._effects: list[tuple[str, Callable[[], Any]]] = []

    def audit(
        self,
        event_type: str,
        resource_type: str,
        resource_id: str,
        actor_id: str | None = None,
        **payload: Any,
    ) -> AuditEvent:
        record = AuditEvent(
            actor_id=actor_id,
            event_type=str(getattr(event_type, "value", event_type)),
            resource_type=resource_type,
            resource_id=resource_id,
            payload=payload,
            created_at=self.clock(),
        )
        self.session.add(record)
        return record

    def after_commit(self, label: str, effect: Callable[[], Any]) -> None:
        self._effects.append((label, effect))

    def run_effects(self) -> list[str]:
        for label, effect in self._effects:
            try:
                effect()
            except Exception:
                logger.warning("Post-commit effect %s failed", label, exc_info=True)
                self.warnings.append(label)
        self._effects.clear()
        return self.warnings


class Store:
    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False, autoflush=True)

    @classmethod
    def from_url(cls, url: str, clock: Clock = utcnow, echo: bool = False, **engine_kwargs: Any) -> "Store":
        if url.startswith("sqlite"):
            connect_args = engine_kwargs.pop("connect_args", {})
            connect_args.setdefault("check_same_thread", False)
            if url in {"sqlite://", "sqlite:///:memory:"}:
                engine_kwargs.setdefault("poolclass", StaticPool)
            engine = create_engine(url, echo=echo, connect_args=connect_args, **engine_kwargs)
            _serialize_sqlite_writers(engine)
        else:
            engine = create_engine(url, echo=echo, pool_pre_ping=True, **engine_kwargs)
        return cls(engine, clock=clock)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        session = self._sessions()
        unit = UnitOfWork(session, self.clock)
        try:
            yield unit
            session.commit()
        except MediConnectError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            logger.warning("Integrity violation rolled back: %s", exc.orig)
            raise Conflict("Resource already exists or was modified concurrently") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Store transaction failed", exc_info=True)
            raise Unavailable("Data store unavailable, please retry") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        unit.run_effects()


def _serialize_sqlite_writers(engine: Engine) -> None:
    """Make pysqlite take the write lock at BEGIN.

    pysqlite defers BEGIN until the first DML statement, which lets two
    writers deadlock on lock upgrade instead of waiting on the busy timeout.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
