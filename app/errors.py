"""Domain error taxonomy.

Every error carries an HTTP-analogous status code and a stable machine code so
the API layer can render it without knowing the component that raised it.
"""

from __future__ import annotations


class MediConnectError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    default_detail: str = "Internal error"
    retryable: bool = False

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.detail, "code": self.code}


class InvalidInput(MediConnectError):
    status_code = 400
    code = "validation_error"
    default_detail = "Invalid input"


class Unauthorized(MediConnectError):
    status_code = 401
    code = "unauthorized"
    default_detail = "Could not validate credentials"


class InvalidCode(MediConnectError):
    status_code = 401
    code = "invalid_code"
    default_detail = "Invalid verification code"

    def __init__(self, detail: str | None = None, remaining_attempts: int = 0):
        super().__init__(detail)
        self.remaining_attempts = remaining_attempts

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "remaining_attempts": self.remaining_attempts}


class Expired(MediConnectError):
    status_code = 401
    code = "expired"
    default_detail = "Verification code has expired"


class Forbidden(MediConnectError):
    status_code = 403
    code = "forbidden"
    default_detail = "Not permitted for this role"


class NotFound(MediConnectError):
    status_code = 404
    code = "not_found"
    default_detail = "Resource not found"


class Conflict(MediConnectError):
    status_code = 409
    code = "conflict"
    default_detail = "Resource is in a conflicting state"


class InvalidTransition(Conflict):
    code = "invalid_transition"
    default_detail = "Transition not permitted from the current status"


class AlreadyUsed(MediConnectError):
    status_code = 409
    code = "already_used"
    default_detail = "Prescription has already been fulfilled"


class TooManyAttempts(MediConnectError):
    status_code = 429
    code = "too_many_attempts"
    default_detail = "Too many attempts. Please request a new code later."


class Unavailable(MediConnectError):
    status_code = 503
    code = "unavailable"
    default_detail = "Service temporarily unavailable"
    retryable = True


class NoCapacity(Unavailable):
    code = "no_capacity"
    default_detail = "No clinician available"

    def __init__(self, detail: str | None = None, encounter_id: str | None = None):
        super().__init__(detail)
        self.encounter_id = encounter_id

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "encounter_id": self.encounter_id}
