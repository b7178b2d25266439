"""
Domain exceptions for bookings and referrals.

Every error carries a machine-readable error_code and the HTTP status the API
layer should answer with. Services raise these; they never raise HTTPException.
"""
from typing import Any, Optional


class LaundrifyError(Exception):
    """Base class for all booking/referral domain errors."""

    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LaundrifyError):
    """Missing or malformed required input. Never retried."""

    status_code = 400


class NotFound(LaundrifyError):
    """Referenced booking does not exist."""

    status_code = 404


class PersistenceConflict(LaundrifyError):
    """Unique-constraint violation that survived internal retries."""

    status_code = 409
    retryable = True


class InvalidTransition(LaundrifyError):
    """Requested status change is not allowed by the state machine."""

    status_code = 409

    def __init__(self, current: str, requested: str, entity: str = "booking"):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{requested}'",
            details={"current_status": current, "requested_status": requested},
        )
        self.current = current
        self.requested = requested


# ---------------------------------------------------------------------------
# Referral-specific rejections (user facing, not retried)
# ---------------------------------------------------------------------------


class ReferralError(LaundrifyError):
    pass


class ReferralNotFound(ReferralError, NotFound):
    status_code = 404

    def __init__(self, code: str):
        super().__init__("Invalid referral code", error_code="NotFound", details={"code": code})


class ReferralExpired(ReferralError):
    status_code = 400

    def __init__(self, code: str):
        super().__init__("Referral code has expired", error_code="Expired", details={"code": code})


class ReferralAlreadyUsed(ReferralError):
    status_code = 409

    def __init__(self, code: str, message: str = "Referral code has already been used"):
        super().__init__(message, error_code="AlreadyUsed", details={"code": code})


class ReferralNotEligible(ReferralError):
    """Code is valid but this user cannot redeem it (own code, wrong stage)."""

    status_code = 400
