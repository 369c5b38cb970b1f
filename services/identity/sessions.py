from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.core.clock import Clock
from app.core.logging import logger
from app.core.security import create_access_token, decode_token
from app.db import Identity, Store
from app.errors import InvalidInput, Unauthorized
from shared.contracts.enums import AuditEventType, Role
from shared.contracts.models import Credential, SessionClaims


class SessionIssuer:
    """Issues signed session credentials.

    ``revoke`` is advisory: it records the logout but keeps no blocklist, so a
    credential stays valid until it expires.
    """

    def __init__(
        self,
        store: Store,
        secret_key: str,
        algorithm: str = "HS256",
        ttl_days: int = 30,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock or store.clock

    def issue(self, identity: Identity) -> Credential:
        if not identity.is_active:
            raise InvalidInput("Cannot issue a session for an inactive identity")
        credential = self._sign(identity.id, identity.role)
        with self.store.transaction() as uow:
            uow.audit(
                AuditEventType.SESSION_ISSUED,
                "session",
                credential.session_id,
                actor_id=identity.id,
                role=credential.role.value,
            )
        logger.info("Session %s issued for identity %s", credential.session_id, identity.id)
        return credential

    def verify(self, token: str) -> SessionClaims:
        payload = decode_token(token, self.secret_key, self.algorithm) if token else None
        if payload is None:
            raise Unauthorized("Invalid authentication credentials")

        try:
            claims = SessionClaims(
                identity_id=payload["sub"],
                role=Role(payload["role"]),
                session_id=payload["sid"],
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise Unauthorized("Invalid authentication credentials") from exc

        if self.clock() >= claims.expires_at:
            raise Unauthorized("Session has expired")
        return claims

    def refresh(self, token: str) -> Credential:
        claims = self.verify(token)
        credential = self._sign(claims.identity_id, claims.role)
        with self.store.transaction() as uow:
            uow.audit(
                AuditEventType.SESSION_REFRESHED,
                "session",
                credential.session_id,
                actor_id=claims.identity_id,
                previous_session_id=claims.session_id,
            )
        return credential

    def revoke(self, identity_id: str, session_id: Optional[str] = None) -> None:
        with self.store.transaction() as uow:
            uow.audit(
                AuditEventType.LOGOUT,
                "session",
                session_id or identity_id,
                actor_id=identity_id,
            )
        logger.info("Identity %s logged out", identity_id)

    def _sign(self, identity_id: str, role: Role) -> Credential:
        now = self.clock()
        expires_at = (now + self.ttl).replace(microsecond=0)
        session_id = str(uuid.uuid4())
        token = create_access_token(
            {"sub": identity_id, "role": role.value, "sid": session_id, "iat": int(now.timestamp())},
            expires_at=expires_at,
            secret_key=self.secret_key,
            algorithm=self.algorithm,
        )
        return Credential(
            access_token=token,
            identity_id=identity_id,
            role=role,
            session_id=session_id,
            expires_at=expires_at,
            expires_in=int(self.ttl.total_seconds()),
        )
