from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import ClinicianType, RedemptionFailure, Role

PHONE_PATTERN = r"^\+254[0-9]{9}$"
OTP_PATTERN = r"^[0-9]{6}$"


class LineItem(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    drug_name: str = Field(min_length=1, max_length=255)
    strength: str = Field(min_length=1, max_length=64)
    form: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1)
    instructions: str = Field(min_length=1)
    substitution_allowed: bool = True


class DispensedItem(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    drug_name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(ge=1)
    substituted_with: str | None = None


class IntakeSummary(BaseModel):
    """Opaque output of the intake summarizer."""

    structured_summary: dict[str, Any] = Field(default_factory=dict)
    red_flags: list[str] = Field(default_factory=list)


class Credential(BaseModel):
    access_token: str
    token_type: str = "bearer"
    identity_id: str
    role: Role
    session_id: str
    expires_at: datetime
    expires_in: int = Field(ge=0)


class SessionClaims(BaseModel):
    identity_id: str
    role: Role
    session_id: str
    expires_at: datetime


class RedemptionView(BaseModel):
    """Pharmacy-facing view of a prescription.

    Carries line items and a masked prescriber token only. Patient identifiers
    and contact details are never part of this contract.
    """

    model_config = ConfigDict(extra="forbid")

    prescription_id: str
    prescribing_clinician: str
    issued_at: datetime
    expires_at: datetime
    line_items: list[LineItem]


class RedemptionResult(BaseModel):
    valid: bool
    reason: RedemptionFailure | None = None
    view: RedemptionView | None = None
    claim_id: str | None = None

    @model_validator(mode="after")
    def validate_outcome(self) -> "RedemptionResult":
        if self.valid and (self.view is None or self.claim_id is None):
            raise ValueError("a valid redemption requires a view and a claim id")
        if not self.valid and self.reason is None:
            raise ValueError("an invalid redemption requires a reason")
        return self


# HTTP request/response bodies


class OTPRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(pattern=PHONE_PATTERN)


class OTPVerifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(pattern=PHONE_PATTERN)
    otp: str = Field(pattern=OTP_PATTERN)


class OTPRequestResponse(BaseModel):
    success: bool = True
    message: str
    expires_in: int


class IdentityDTO(BaseModel):
    id: str
    phone_number: str
    role: Role
    full_name: str | None = None
    phone_verified_at: datetime | None = None


class LoginResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: IdentityDTO


class EncounterCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    intake: dict[str, Any]
    required_type: ClinicianType = ClinicianType.GENERALIST

    @field_validator("intake")
    @classmethod
    def intake_not_empty(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("intake must not be empty")
        return value


class AssignRequest(BaseModel):
    required_type: ClinicianType | None = None


class ExtendRequest(BaseModel):
    reason: str = Field(default="referral", min_length=1, max_length=255)


class EndRequest(BaseModel):
    notes: str = ""


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class EncounterDTO(BaseModel):
    id: str
    patient_id: str
    clinician_id: str | None = None
    required_type: ClinicianType
    status: str
    red_flags: list[str] = Field(default_factory=list)
    time_box_minutes: int
    extension_applied: bool
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_minutes: int | None = None


class StartResponse(BaseModel):
    encounter: EncounterDTO
    video_link: str
    warnings: list[str] = Field(default_factory=list)


class EndResponse(BaseModel):
    encounter: EncounterDTO
    duration_minutes: int
    time_box_exceeded: bool


class MessageDTO(BaseModel):
    id: int
    encounter_id: str
    sender_id: str
    sender_role: Role
    content: str
    sent_at: datetime


class PrescriptionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    encounter_id: str = Field(min_length=1)
    line_items: list[LineItem] = Field(min_length=1)


class PrescriptionDTO(BaseModel):
    id: str
    encounter_id: str
    status: str
    redemption_token: str
    redemption_enabled: bool
    issued_at: datetime
    expires_at: datetime
    line_items: list[LineItem]


class RedeemRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1, max_length=128)


class FulfillRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dispensed_items: list[DispensedItem] = Field(min_length=1)


class DisputeRequest(BaseModel):
    notes: str = Field(min_length=1)


class ClaimDTO(BaseModel):
    id: str
    prescription_id: str
    pharmacy_id: str
    status: str
    dispensed_items: list[DispensedItem] = Field(default_factory=list)
    dispensed_at: datetime | None = None
    notes: str | None = None
