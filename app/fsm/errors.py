"""
Lifecycle error taxonomy.

Every rejected command raises one of these so the HTTP layer can render a
precise message and status code. None of them are retried by the core.
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for all typed lifecycle errors."""

    status_code: int = 400
    code: str = "lifecycle_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"status": "error", "code": self.code, "message": self.message}


class AuthorizationError(LifecycleError):
    """Actor's role does not match the role the transition requires."""

    status_code = 403
    code = "forbidden"


class NotFoundError(LifecycleError):
    """Donation id does not resolve to a record."""

    status_code = 404
    code = "not_found"


class InvalidStateError(LifecycleError):
    """Current status (or actor binding) does not permit the transition."""

    status_code = 400
    code = "invalid_state"


class ConflictError(LifecycleError):
    """A concurrent transition won the conditional write."""

    status_code = 409
    code = "conflict"


class ValidationError(LifecycleError):
    """Malformed or inconsistent input."""

    status_code = 400
    code = "validation_error"


class OtpError(LifecycleError):
    """OTP verification failure."""

    status_code = 400
    code = "otp_error"


class OtpNotGeneratedError(OtpError):
    code = "otp_not_generated"


class OtpMismatchError(OtpError):
    code = "otp_mismatch"


class OtpExpiredError(OtpError):
    code = "otp_expired"
