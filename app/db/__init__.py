from .models import (
    AuditEvent,
    Base,
    ChallengeStatus,
    ClaimStatus,
    Clinician,
    Encounter,
    EncounterMessage,
    EncounterStatus,
    Identity,
    OneTimeChallenge,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    RedemptionClaim,
)
from .store import Store, UnitOfWork

__all__ = [
    "AuditEvent",
    "Base",
    "ChallengeStatus",
    "ClaimStatus",
    "Clinician",
    "Encounter",
    "EncounterMessage",
    "EncounterStatus",
    "Identity",
    "OneTimeChallenge",
    "Prescription",
    "PrescriptionItem",
    "PrescriptionStatus",
    "RedemptionClaim",
    "Store",
    "UnitOfWork",
]
