from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select

from app.config import Settings, get_settings
from app.core.clock import Clock
from app.core.logging import logger
from app.db import Clinician, Encounter, Identity, Store
from app.errors import Conflict, InvalidInput, NoCapacity, NotFound
from services.collaborators import (
    DocumentRenderer,
    EchoSummarizer,
    IntakeSummarizer,
    LocalObjectStore,
    MessagingDispatcher,
    MessagingNotifier,
    Notifier,
    ObjectStore,
    PdfRenderer,
)
from services.consultation.lifecycle import EncounterLifecycle
from services.consultation.scheduler import AssignmentScheduler
from services.identity.sessions import SessionIssuer
from services.identity.verifier import IdentityVerifier
from services.prescription.ledger import PrescriptionLedger
from services.whatsapp_gateway.outbound import WhatsAppDispatcher
from shared.contracts.enums import AuditEventType, ClinicianType, Role
from shared.contracts.models import Credential


@dataclass(frozen=True)
class ConsultationRequest:
    encounter: Encounter
    clinician: Clinician


class MediConnect:
    """Wires every component around one injected store handle."""

    def __init__(
        self,
        store: Store,
        messaging: MessagingDispatcher,
        summarizer: IntakeSummarizer,
        renderer: DocumentRenderer,
        object_store: ObjectStore,
        notifier: Notifier,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        settings = settings or get_settings()
        if clock is not None:
            store.clock = clock
        self.store = store
        self.settings = settings
        self.verifier = IdentityVerifier(
            store,
            messaging,
            ttl_seconds=settings.OTP_TTL_SECONDS,
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            code_length=settings.OTP_LENGTH,
            phone_pattern=settings.PHONE_NUMBER_PATTERN,
        )
        self.sessions = SessionIssuer(
            store,
            secret_key=settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            ttl_days=settings.SESSION_TTL_DAYS,
        )
        self.scheduler = AssignmentScheduler(store, notifier)
        self.lifecycle = EncounterLifecycle(
            store,
            self.scheduler,
            summarizer,
            notifier,
            time_box_minutes=settings.DEFAULT_TIME_BOX_MINUTES,
            extension_minutes=settings.EXTENSION_MINUTES,
            video_call_base_url=settings.VIDEO_CALL_BASE_URL,
        )
        self.ledger = PrescriptionLedger(
            store,
            renderer,
            object_store,
            ttl_days=settings.PRESCRIPTION_TTL_DAYS,
            masking_secret=settings.MASKING_SECRET,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, document_root: str = "./documents") -> "MediConnect":
        settings = settings or get_settings()
        store = Store.from_url(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        if settings.AUTO_CREATE_SCHEMA:
            store.create_schema()
        messaging = WhatsAppDispatcher(
            api_url=settings.WHATSAPP_API_URL,
            phone_id=settings.WHATSAPP_PHONE_ID,
            api_key=settings.WHATSAPP_API_KEY,
            otp_template=settings.WHATSAPP_OTP_TEMPLATE,
        )
        return cls(
            store=store,
            messaging=messaging,
            summarizer=EchoSummarizer(),
            renderer=PdfRenderer(),
            object_store=LocalObjectStore(document_root),
            notifier=MessagingNotifier(store, messaging),
            settings=settings,
        )

    def login(self, phone: str, code: str) -> Tuple[Identity, Credential]:
        identity = self.verifier.verify_challenge(phone, code)
        return identity, self.sessions.issue(identity)

    def request_consultation(
        self,
        patient_id: str,
        raw_intake: Dict[str, Any],
        required_type: ClinicianType = ClinicianType.GENERALIST,
    ) -> ConsultationRequest:
        encounter = self.lifecycle.request(patient_id, raw_intake, required_type)
        try:
            clinician = self.scheduler.assign(encounter.id, required_type)
        except NoCapacity:
            logger.warning("Encounter %s left in requested status, no capacity", encounter.id)
            raise
        return ConsultationRequest(encounter=self.lifecycle.get(encounter.id), clinician=clinician)

    def identity(self, identity_id: str) -> Identity:
        with self.store.transaction() as uow:
            identity = uow.session.get(Identity, identity_id)
            if identity is None:
                raise NotFound("Identity not found")
            return identity

    def clinician_for_identity(self, identity_id: str) -> Clinician:
        with self.store.transaction() as uow:
            clinician = uow.session.scalar(select(Clinician).where(Clinician.identity_id == identity_id))
            if clinician is None:
                raise NotFound("Clinician profile not found")
            return clinician

    def register_clinician(
        self,
        phone: str,
        display_name: str,
        license_number: str,
        clinician_type: ClinicianType = ClinicianType.GENERALIST,
        capacity: int = 2,
        specialty: Optional[str] = None,
        whatsapp_number: Optional[str] = None,
    ) -> Clinician:
        if capacity < 1:
            raise InvalidInput("capacity must be >= 1")
        with self.store.transaction() as uow:
            session = uow.session
            identity = self._ensure_identity(session, phone, Role.CLINICIAN, display_name)
            if session.scalar(select(Clinician.id).where(Clinician.identity_id == identity.id)) is not None:
                raise Conflict("Clinician already registered")
            clinician = Clinician(
                identity_id=identity.id,
                clinician_type=ClinicianType(clinician_type),
                display_name=display_name,
                specialty=specialty,
                license_number=license_number,
                whatsapp_number=whatsapp_number or phone,
                capacity=capacity,
                active_load=0,
                is_active=True,
            )
            session.add(clinician)
            session.flush()
            session.refresh(clinician)
            uow.audit(
                AuditEventType.CLINICIAN_REGISTERED,
                "clinician",
                clinician.id,
                clinician_type=clinician.clinician_type.value,
                capacity=capacity,
            )
        logger.info("Clinician %s registered", clinician.id)
        return clinician

    def register_pharmacy_operator(self, phone: str, full_name: str) -> Identity:
        with self.store.transaction() as uow:
            identity = self._ensure_identity(uow.session, phone, Role.PHARMACY_OPERATOR, full_name)
            uow.audit(AuditEventType.IDENTITY_REGISTERED, "identity", identity.id, role=identity.role.value)
        return identity

    def _ensure_identity(self, session, phone: str, role: Role, full_name: str) -> Identity:
        identity = session.scalar(select(Identity).where(Identity.phone_number == phone))
        if identity is None:
            identity = Identity(phone_number=phone, role=role, full_name=full_name, is_active=True)
            session.add(identity)
            session.flush()
        elif identity.role != role:
            raise Conflict(f"Phone number already registered as {identity.role.value}")
        return identity
