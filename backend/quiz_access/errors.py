"""
Quiz Access Errors

Every failure is a typed, user-facing reason. Errors are terminal for the
request and are never retried internally. The route layer maps each class
to an HTTP status through `status_code`.
"""

from typing import Optional, Dict, Any

from .config import ERROR_CODES


class AccessError(Exception):
    """Base class for all access and settlement failures."""

    code = "ACCESS_ERROR"
    status_code = 400

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or ERROR_CODES.get(self.code, "Access error")
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        payload = {"error_code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# ==================== NOT FOUND ====================

class NotFound(AccessError):
    code = "NOT_FOUND"
    status_code = 404


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"


class QuizNotFound(NotFound):
    code = "QUIZ_NOT_FOUND"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"


# ==================== ACCESS DECISIONS ====================

class Forbidden(AccessError):
    """Raised for banned accounts."""

    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(details={"reason": reason})


class SubscriptionRequired(AccessError):
    code = "SUBSCRIPTION_REQUIRED"
    status_code = 402


class InsufficientCredits(AccessError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(details={"required_credits": required, "available_credits": available})


class AccessDenied(AccessError):
    code = "ACCESS_DENIED"
    status_code = 403


class InvalidAccessType(AccessError):
    """
    An access type reached a gate that cannot serve it.

    For values outside the AccessType enum this is a data-integrity
    violation and is logged at CRITICAL by the caller.
    """

    code = "INVALID_ACCESS_TYPE"
    status_code = 500

    def __init__(self, access_type: Any, resource: str = "quiz"):
        self.access_type = access_type
        self.resource = resource
        super().__init__(details={"access_type": access_type, "resource": resource})


# ==================== PERSISTENCE ====================

class ReconciliationError(AccessError):
    """Wraps a persistence failure (or lost race) during reconciliation."""

    code = "RECONCILIATION_FAILED"
    status_code = 500

    def __init__(self, user_id: str, cause: Optional[BaseException] = None):
        self.user_id = user_id
        self.cause = cause
        super().__init__(details={"user_id": user_id})


class AccessValidationError(AccessError):
    """Wraps a failed reconciliation or debit during authorization."""

    code = "ACCESS_VALIDATION_FAILED"
    status_code = 500

    def __init__(self, username: str, cause: Optional[BaseException] = None):
        self.username = username
        self.cause = cause
        super().__init__()


class SettlementError(AccessError):
    code = "SETTLEMENT_FAILED"
    status_code = 500

    def __init__(self, reference: str, cause: Optional[BaseException] = None):
        self.reference = reference
        self.cause = cause
        super().__init__(details={"reference": reference})
