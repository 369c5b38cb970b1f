"""Least-loaded-first clinician assignment.

Admission is a conditional increment of the clinician's ``active_load``
counter (``active_load < capacity``), so two concurrent assignments can never
push a clinician past capacity. The counter is released when an encounter
reaches a terminal status and can be rebuilt from encounter rows with
``recalculate_load``.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.logging import logger
from app.db import Clinician, Encounter, EncounterStatus, Store
from app.db.models import LOAD_BEARING_STATUSES
from app.errors import InvalidTransition, NoCapacity, NotFound
from services.collaborators import Notifier
from shared.contracts.enums import AuditEventType, ClinicianType, NotificationChannel


class AssignmentScheduler:
    def __init__(self, store: Store, notifier: Notifier, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock or store.clock

    def assign(self, encounter_id: str, required_type: Optional[ClinicianType] = None) -> Clinician:
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            encounter = session.get(Encounter, encounter_id)
            if encounter is None:
                raise NotFound("Encounter not found")
            if encounter.status != EncounterStatus.requested:
                raise InvalidTransition(f"Cannot assign an encounter in status {encounter.status.value}")
            wanted = ClinicianType(required_type or encounter.required_type)

            clinician = self._admit_least_loaded(session, wanted, now)
            if clinician is None:
                logger.warning("No %s available for encounter %s", wanted.value, encounter_id)
                raise NoCapacity(f"No {wanted.value} available", encounter_id=encounter_id)

            matched = session.execute(
                update(Encounter)
                .where(Encounter.id == encounter_id, Encounter.status == EncounterStatus.requested)
                .values(status=EncounterStatus.matched, clinician_id=clinician.id, matched_at=now)
                .execution_options(synchronize_session=False)
            )
            if matched.rowcount == 0:
                raise InvalidTransition("Encounter was assigned concurrently")

            uow.audit(
                AuditEventType.ENCOUNTER_MATCHED,
                "encounter",
                encounter_id,
                clinician_id=clinician.id,
                clinician_load=clinician.active_load,
            )
            uow.after_commit(
                "notify_clinician",
                lambda: self.notifier.notify(
                    clinician.identity_id,
                    "New Patient Assigned",
                    "A new patient has been assigned to you.",
                    NotificationChannel.IN_APP,
                    {"encounter_id": encounter_id},
                ),
            )

        logger.info("Encounter %s matched to clinician %s", encounter_id, clinician.id)
        return clinician

    def _admit_least_loaded(self, session: Session, clinician_type: ClinicianType, now) -> Optional[Clinician]:
        candidates = session.scalars(
            select(Clinician)
            .where(
                Clinician.clinician_type == clinician_type,
                Clinician.is_active.is_(True),
                Clinician.active_load < Clinician.capacity,
            )
            .order_by(
                Clinician.active_load.asc(),
                Clinician.last_assigned_at.asc().nulls_first(),
                Clinician.id.asc(),
            )
        ).all()

        for candidate in candidates:
            admitted = session.execute(
                update(Clinician)
                .where(
                    Clinician.id == candidate.id,
                    Clinician.is_active.is_(True),
                    Clinician.active_load < Clinician.capacity,
                )
                .values(active_load=Clinician.active_load + 1, last_assigned_at=now)
                .execution_options(synchronize_session=False)
            )
            if admitted.rowcount == 1:
                session.refresh(candidate)
                return candidate
        return None

    def release(self, session: Session, clinician_id: Optional[str]) -> None:
        """Give back one capacity slot inside the caller's unit of work."""
        if clinician_id is None:
            return
        session.execute(
            update(Clinician)
            .where(Clinician.id == clinician_id, Clinician.active_load > 0)
            .values(active_load=Clinician.active_load - 1)
            .execution_options(synchronize_session=False)
        )

    def current_load(self, clinician_id: str) -> int:
        with self.store.transaction() as uow:
            return self._count_load(uow.session, clinician_id)

    def recalculate_load(self, clinician_id: str) -> int:
        with self.store.transaction() as uow:
            session = uow.session
            clinician = session.get(Clinician, clinician_id)
            if clinician is None:
                raise NotFound("Clinician not found")
            previous = clinician.active_load
            clinician.active_load = self._count_load(session, clinician_id)
            uow.audit(
                AuditEventType.CLINICIAN_LOAD_RECALCULATED,
                "clinician",
                clinician_id,
                previous=previous,
                current=clinician.active_load,
            )
            load = clinician.active_load
        if load != previous:
            logger.warning("Clinician %s load drifted from %s to %s", clinician_id, previous, load)
        return load

    @staticmethod
    def _count_load(session: Session, clinician_id: str) -> int:
        return session.scalar(
            select(func.count(Encounter.id)).where(
                Encounter.clinician_id == clinician_id,
                Encounter.status.in_(LOAD_BEARING_STATUSES),
            )
        ) or 0
