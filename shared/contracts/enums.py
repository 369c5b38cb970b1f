from enum import Enum


class Role(str, Enum):
    PATIENT = "patient"
    CLINICIAN = "clinician"
    PHARMACY_OPERATOR = "pharmacy_operator"
    ADMIN = "admin"


class ClinicianType(str, Enum):
    GENERALIST = "generalist"
    SPECIALIST = "specialist"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EXTERNAL = "external"
    BOTH = "both"


class RedemptionFailure(str, Enum):
    INVALID_CODE = "invalid_code"
    DISABLED = "disabled"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


class AuditEventType(str, Enum):
    CHALLENGE_REQUESTED = "auth.challenge_requested"
    CHALLENGE_FAILED = "auth.challenge_failed"
    CHALLENGE_EXPIRED = "auth.challenge_expired"
    LOGIN = "auth.login"
    SESSION_ISSUED = "auth.session_issued"
    SESSION_REFRESHED = "auth.session_refreshed"
    LOGOUT = "auth.logout"
    IDENTITY_REGISTERED = "identity.registered"
    CLINICIAN_REGISTERED = "clinician.registered"
    CLINICIAN_LOAD_RECALCULATED = "clinician.load_recalculated"
    ENCOUNTER_REQUESTED = "encounter.requested"
    ENCOUNTER_MATCHED = "encounter.matched"
    ENCOUNTER_STARTED = "encounter.started"
    ENCOUNTER_EXTENDED = "encounter.extended"
    ENCOUNTER_COMPLETED = "encounter.completed"
    ENCOUNTER_CANCELLED = "encounter.cancelled"
    ENCOUNTER_MESSAGE_POSTED = "encounter.message_posted"
    PRESCRIPTION_CREATED = "prescription.created"
    PRESCRIPTION_CLAIMED = "prescription.claimed"
    PRESCRIPTION_EXPIRED = "prescription.expired"
    PRESCRIPTION_DOCUMENT_DOWNLOADED = "prescription.document_downloaded"
    PRESCRIPTION_FULFILLED = "prescription.fulfilled"
    CLAIM_DISPUTED = "prescription.claim_disputed"
