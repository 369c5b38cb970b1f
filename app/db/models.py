from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.contracts.enums import ClinicianType, Role


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ChallengeStatus(enum.Enum):
    pending = "pending"
    verified = "verified"
    expired = "expired"
    locked = "locked"


class EncounterStatus(enum.Enum):
    requested = "requested"
    matched = "matched"
    active = "active"
    extended = "extended"
    completed = "completed"
    cancelled = "cancelled"


class PrescriptionStatus(enum.Enum):
    active = "active"
    claimed = "claimed"
    fulfilled = "fulfilled"
    expired = "expired"


class ClaimStatus(enum.Enum):
    ready = "ready"
    dispensed = "dispensed"
    disputed = "disputed"


# Encounters that hold a clinician's capacity slot.
LOAD_BEARING_STATUSES = (EncounterStatus.matched, EncounterStatus.active, EncounterStatus.extended)


class Identity(TimestampMixin, Base):
    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="identity_role", values_callable=_enum_values), nullable=False, default=Role.PATIENT
    )
    full_name: Mapped[str | None] = mapped_column(String(255))
    phone_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OneTimeChallenge(TimestampMixin, Base):
    __tablename__ = "one_time_challenges"
    __table_args__ = (
        Index(
            "uq_one_time_challenges_pending_phone",
            "phone_number",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ChallengeStatus] = mapped_column(
        Enum(ChallengeStatus, name="challenge_status"), nullable=False, default=ChallengeStatus.pending
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(128))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Clinician(TimestampMixin, Base):
    __tablename__ = "clinicians"
    __table_args__ = (
        Index("ix_clinicians_type_active_load", "clinician_type", "is_active", "active_load"),
        CheckConstraint("active_load >= 0", name="ck_clinicians_active_load_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    identity_id: Mapped[str] = mapped_column(ForeignKey("identities.id"), nullable=False, unique=True)
    clinician_type: Mapped[ClinicianType] = mapped_column(
        Enum(ClinicianType, name="clinician_type", values_callable=_enum_values), nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    specialty: Mapped[str | None] = mapped_column(String(128))
    license_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    whatsapp_number: Mapped[str | None] = mapped_column(String(32))
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    active_load: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    identity: Mapped[Identity] = relationship(lazy="joined")


class Encounter(TimestampMixin, Base):
    __tablename__ = "encounters"
    __table_args__ = (
        Index("ix_encounters_clinician_id_status", "clinician_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("identities.id"), nullable=False, index=True)
    clinician_id: Mapped[str | None] = mapped_column(ForeignKey("clinicians.id"))
    required_type: Mapped[ClinicianType] = mapped_column(
        Enum(ClinicianType, name="clinician_type", values_callable=_enum_values), nullable=False
    )
    status: Mapped[EncounterStatus] = mapped_column(
        Enum(EncounterStatus, name="encounter_status"), nullable=False, default=EncounterStatus.requested
    )
    intake_summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    red_flags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[int | None] = mapped_column(Integer)
    time_box_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    extension_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extension_reason: Mapped[str | None] = mapped_column(String(255))
    cancel_reason: Mapped[str | None] = mapped_column(String(255))

    messages: Mapped[list[EncounterMessage]] = relationship(back_populates="encounter")


class EncounterMessage(Base):
    __tablename__ = "encounter_messages"
    __table_args__ = (
        Index("ix_encounter_messages_encounter_id_sent_at", "encounter_id", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    encounter_id: Mapped[str] = mapped_column(ForeignKey("encounters.id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(ForeignKey("identities.id"), nullable=False)
    sender_role: Mapped[Role] = mapped_column(
        Enum(Role, name="identity_role", values_callable=_enum_values), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    encounter: Mapped[Encounter] = relationship(back_populates="messages")


class Prescription(TimestampMixin, Base):
    __tablename__ = "prescriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    encounter_id: Mapped[str] = mapped_column(ForeignKey("encounters.id"), nullable=False, unique=True)
    clinician_id: Mapped[str] = mapped_column(ForeignKey("clinicians.id"), nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("identities.id"), nullable=False, index=True)
    redemption_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    redemption_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[PrescriptionStatus] = mapped_column(
        Enum(PrescriptionStatus, name="prescription_status"), nullable=False, default=PrescriptionStatus.active
    )
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document_url: Mapped[str | None] = mapped_column(Text)
    document_downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilling_pharmacy_id: Mapped[str | None] = mapped_column(ForeignKey("identities.id"))

    items: Mapped[list[PrescriptionItem]] = relationship(
        back_populates="prescription", lazy="selectin", order_by="PrescriptionItem.position"
    )
    claims: Mapped[list[RedemptionClaim]] = relationship(back_populates="prescription")


class PrescriptionItem(TimestampMixin, Base):
    __tablename__ = "prescription_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_prescription_items_quantity_positive"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    prescription_id: Mapped[str] = mapped_column(
        ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    drug_name: Mapped[str] = mapped_column(String(255), nullable=False)
    strength: Mapped[str] = mapped_column(String(64), nullable=False)
    form: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    instructions: Mapped[str] = mapped_column(Text, nullable=False)
    substitution_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    prescription: Mapped[Prescription] = relationship(back_populates="items")


class RedemptionClaim(TimestampMixin, Base):
    __tablename__ = "redemption_claims"
    __table_args__ = (
        Index(
            "uq_redemption_claims_dispensed_prescription",
            "prescription_id",
            unique=True,
            sqlite_where=text("status = 'dispensed'"),
            postgresql_where=text("status = 'dispensed'"),
        ),
        Index("ix_redemption_claims_prescription_pharmacy", "prescription_id", "pharmacy_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    prescription_id: Mapped[str] = mapped_column(ForeignKey("prescriptions.id"), nullable=False)
    pharmacy_id: Mapped[str] = mapped_column(ForeignKey("identities.id"), nullable=False)
    status: Mapped[ClaimStatus] = mapped_column(
        Enum(ClaimStatus, name="claim_status"), nullable=False, default=ClaimStatus.ready
    )
    dispensed_items: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispensed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)

    prescription: Mapped[Prescription] = relationship(back_populates="claims")


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_resource", "resource_type", "resource_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str | None] = mapped_column(String(36))
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
