from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_utc
from app.core.logging import logger
from app.db import Clinician, Encounter, EncounterMessage, EncounterStatus, Identity, Store
from app.errors import Conflict, InvalidInput, InvalidTransition, NotFound, Unauthorized, Unavailable
from services.collaborators import IntakeSummarizer, Notifier
from shared.contracts.enums import AuditEventType, ClinicianType, NotificationChannel, Role

from .scheduler import AssignmentScheduler

TERMINAL_STATUSES = (EncounterStatus.completed, EncounterStatus.cancelled)
CANCELLABLE_STATUSES = (EncounterStatus.requested, EncounterStatus.matched)
ENDABLE_STATUSES = (EncounterStatus.active, EncounterStatus.extended)


@dataclass(frozen=True)
class StartResult:
    encounter: Encounter
    video_link: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EndResult:
    encounter: Encounter
    duration_minutes: int
    time_box_exceeded: bool


class EncounterLifecycle:
    """Drives an encounter along requested, matched, active, extended, completed.

    Every transition is a conditional update on the expected prior status, so
    a stale caller can never write a backward transition.
    """

    def __init__(
        self,
        store: Store,
        scheduler: AssignmentScheduler,
        summarizer: IntakeSummarizer,
        notifier: Notifier,
        clock: Optional[Clock] = None,
        time_box_minutes: int = 15,
        extension_minutes: int = 10,
        video_call_base_url: str = "https://wa.me",
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.summarizer = summarizer
        self.notifier = notifier
        self.clock = clock or store.clock
        self.time_box_minutes = time_box_minutes
        self.extension_minutes = extension_minutes
        self.video_call_base_url = video_call_base_url.rstrip("/")

    def request(
        self,
        patient_id: str,
        raw_intake: Dict[str, Any],
        required_type: ClinicianType = ClinicianType.GENERALIST,
    ) -> Encounter:
        if not raw_intake:
            raise InvalidInput("Intake must not be empty")
        with self.store.transaction() as uow:
            if uow.session.get(Identity, patient_id) is None:
                raise NotFound("Patient not found")

        try:
            summary = self.summarizer.summarize(raw_intake)
        except Unavailable:
            raise
        except Exception as exc:
            logger.error("Intake summarizer failed", exc_info=True)
            raise Unavailable("Intake summarizer unavailable") from exc

        now = self.clock()
        with self.store.transaction() as uow:
            encounter = Encounter(
                patient_id=patient_id,
                required_type=ClinicianType(required_type),
                status=EncounterStatus.requested,
                intake_summary=summary.structured_summary,
                red_flags=list(summary.red_flags),
                requested_at=now,
                time_box_minutes=self.time_box_minutes,
                extension_applied=False,
            )
            uow.session.add(encounter)
            uow.session.flush()
            uow.audit(
                AuditEventType.ENCOUNTER_REQUESTED,
                "encounter",
                encounter.id,
                actor_id=patient_id,
                required_type=encounter.required_type.value,
                red_flags=encounter.red_flags,
            )
            uow.after_commit(
                "notify_patient_requested",
                lambda: self.notifier.notify(
                    patient_id,
                    "Consultation Request Received",
                    "We are connecting you with a clinician.",
                    NotificationChannel.BOTH,
                    {"encounter_id": encounter.id},
                ),
            )
        logger.info("Encounter %s requested by patient %s", encounter.id, patient_id)
        return encounter

    def get(self, encounter_id: str) -> Encounter:
        with self.store.transaction() as uow:
            return self._load(uow.session, encounter_id)

    def start(self, encounter_id: str, clinician_id: str) -> StartResult:
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            encounter = self._load(session, encounter_id)
            if encounter.status != EncounterStatus.matched:
                raise InvalidTransition(f"Cannot start an encounter in status {encounter.status.value}")
            if encounter.clinician_id != clinician_id:
                raise Conflict("Only the assigned clinician can start this encounter")

            self._transition(session, encounter, (EncounterStatus.matched,), status=EncounterStatus.active, started_at=now)
            clinician = session.get(Clinician, clinician_id)
            video_link = self._video_link(clinician)
            uow.audit(
                AuditEventType.ENCOUNTER_STARTED,
                "encounter",
                encounter_id,
                actor_id=clinician.identity_id,
            )
            patient_id = encounter.patient_id
            uow.after_commit(
                "notify_video_link",
                lambda: self.notifier.notify(
                    patient_id,
                    "Your consultation is starting",
                    f"Join your video consultation: {video_link}",
                    NotificationChannel.EXTERNAL,
                    {"encounter_id": encounter_id, "video_link": video_link},
                ),
            )

        logger.info("Encounter %s started", encounter_id)
        return StartResult(encounter=encounter, video_link=video_link, warnings=list(uow.warnings))

    def extend(self, encounter_id: str, reason: str = "referral") -> Encounter:
        with self.store.transaction() as uow:
            session = uow.session
            encounter = self._load(session, encounter_id)
            if encounter.extension_applied and encounter.status in ENDABLE_STATUSES:
                return encounter
            if encounter.status != EncounterStatus.active:
                raise InvalidTransition(f"Cannot extend an encounter in status {encounter.status.value}")

            self._transition(
                session,
                encounter,
                (EncounterStatus.active,),
                status=EncounterStatus.extended,
                time_box_minutes=Encounter.time_box_minutes + self.extension_minutes,
                extension_applied=True,
                extension_reason=reason,
            )
            uow.audit(
                AuditEventType.ENCOUNTER_EXTENDED,
                "encounter",
                encounter_id,
                reason=reason,
                time_box_minutes=encounter.time_box_minutes,
            )
        logger.info("Encounter %s extended to %s minutes", encounter_id, encounter.time_box_minutes)
        return encounter

    def end(self, encounter_id: str, notes: str = "") -> EndResult:
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            encounter = self._load(session, encounter_id)
            if encounter.status not in ENDABLE_STATUSES:
                raise InvalidTransition(f"Cannot end an encounter in status {encounter.status.value}")

            started_at = as_utc(encounter.started_at)
            duration = max(int((now - started_at).total_seconds() // 60), 0)
            self._transition(
                session,
                encounter,
                ENDABLE_STATUSES,
                status=EncounterStatus.completed,
                ended_at=now,
                duration_minutes=duration,
                notes=notes,
            )
            self.scheduler.release(session, encounter.clinician_id)
            exceeded = duration > encounter.time_box_minutes
            uow.audit(
                AuditEventType.ENCOUNTER_COMPLETED,
                "encounter",
                encounter_id,
                duration_minutes=duration,
                time_box_exceeded=exceeded,
            )
        logger.info("Encounter %s completed after %s minutes", encounter_id, duration)
        return EndResult(encounter=encounter, duration_minutes=duration, time_box_exceeded=exceeded)

    def cancel(self, encounter_id: str, reason: str, actor_id: Optional[str] = None) -> Encounter:
        with self.store.transaction() as uow:
            session = uow.session
            encounter = self._load(session, encounter_id)
            if encounter.status not in CANCELLABLE_STATUSES:
                raise InvalidTransition(f"Cannot cancel an encounter in status {encounter.status.value}")

            held_slot = encounter.status == EncounterStatus.matched
            self._transition(
                session,
                encounter,
                (encounter.status,),
                status=EncounterStatus.cancelled,
                cancel_reason=reason,
            )
            if held_slot:
                self.scheduler.release(session, encounter.clinician_id)
            uow.audit(
                AuditEventType.ENCOUNTER_CANCELLED,
                "encounter",
                encounter_id,
                actor_id=actor_id,
                reason=reason,
            )
        logger.info("Encounter %s cancelled", encounter_id)
        return encounter

    def time_box_remaining(self, encounter: Encounter, now: Optional[datetime] = None) -> timedelta:
        """Advisory only; nothing enforces the time-box."""
        if encounter.started_at is None:
            return timedelta(minutes=encounter.time_box_minutes)
        now = now or self.clock()
        deadline = as_utc(encounter.started_at) + timedelta(minutes=encounter.time_box_minutes)
        return deadline - now

    def post_message(self, encounter_id: str, sender_id: str, content: str) -> EncounterMessage:
        if not content or not content.strip():
            raise InvalidInput("Message content must not be empty")
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            encounter = self._load(session, encounter_id)
            if encounter.status in TERMINAL_STATUSES:
                raise InvalidTransition("Encounter is closed")
            role = self._participant_role(session, encounter, sender_id)
            message = EncounterMessage(
                encounter_id=encounter_id,
                sender_id=sender_id,
                sender_role=role,
                content=content.strip(),
                sent_at=now,
            )
            session.add(message)
            session.flush()
            uow.audit(
                AuditEventType.ENCOUNTER_MESSAGE_POSTED,
                "encounter",
                encounter_id,
                actor_id=sender_id,
                message_id=message.id,
            )
        return message

    def list_messages(self, encounter_id: str, limit: int = 50) -> List[EncounterMessage]:
        with self.store.transaction() as uow:
            self._load(uow.session, encounter_id)
            return list(
                uow.session.scalars(
                    select(EncounterMessage)
                    .where(EncounterMessage.encounter_id == encounter_id)
                    .order_by(EncounterMessage.sent_at.desc(), EncounterMessage.id.desc())
                    .limit(limit)
                )
            )

    def participant_role(self, encounter_id: str, identity_id: str) -> Role:
        with self.store.transaction() as uow:
            encounter = self._load(uow.session, encounter_id)
            return self._participant_role(uow.session, encounter, identity_id)

    def _participant_role(self, session: Session, encounter: Encounter, identity_id: str) -> Role:
        if encounter.patient_id == identity_id:
            return Role.PATIENT
        if encounter.clinician_id is not None:
            clinician = session.get(Clinician, encounter.clinician_id)
            if clinician is not None and clinician.identity_id == identity_id:
                return Role.CLINICIAN
        raise Unauthorized("Not a participant in this encounter")

    @staticmethod
    def _load(session: Session, encounter_id: str) -> Encounter:
        encounter = session.get(Encounter, encounter_id)
        if encounter is None:
            raise NotFound("Encounter not found")
        return encounter

    @staticmethod
    def _transition(session: Session, encounter: Encounter, expected, **values) -> None:
        moved = session.execute(
            update(Encounter)
            .where(Encounter.id == encounter.id, Encounter.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount == 0:
            raise InvalidTransition("Encounter was modified concurrently")
        session.refresh(encounter)

    def _video_link(self, clinician: Optional[Clinician]) -> str:
        number = ""
        if clinician is not None:
            number = (clinician.whatsapp_number or clinician.identity.phone_number).lstrip("+")
        text = quote("Hello, I am ready for my consultation.")
        return f"{self.video_call_base_url}/{number}?text={text}"
