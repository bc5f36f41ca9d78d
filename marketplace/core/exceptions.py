"""
Error Taxonomy

Every failure a service operation can report is one of these types. Services
do not let them escape: they are wrapped in an ``ActionResult`` and the API
layer turns a failed result into the JSON error envelope.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes - part of the wire contract"""

    # General (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    NOT_AUTHORIZED = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # State machines (2xxx)
    INVALID_TRANSITION = "ERR_2001"
    CONSISTENCY_WARNING = "ERR_2002"

    # Contention - another actor won the conditional write (3xxx)
    ALREADY_CLAIMED = "ERR_3001"
    ALREADY_REDEEMED = "ERR_3002"
    CODE_ALREADY_USED = "ERR_3003"
    ALREADY_PAID = "ERR_3004"
    CODE_VOIDED = "ERR_3005"

    # Wallet (4xxx)
    CODE_NOT_FOUND = "ERR_4001"


class AppException(Exception):
    """Base for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Error envelope for API responses"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class InternalError(AppException):
    """Storage or programming failure; the operation was rolled back"""

    def __init__(self, message: str = "An unexpected error occurred", details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details)


class ValidationError(AppException):
    """Malformed input"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotAuthorized(AppException):
    """Wrong role, or the caller does not own the entity"""

    def __init__(self, message: str = "Not authorized", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.NOT_AUTHORIZED,
            status_code=403,
            details=details
        )


class NotFound(AppException):
    """Requested entity does not exist"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class InvalidTransition(AppException):
    """Adjacency violation, or the persisted state no longer matches the expected one"""

    def __init__(self, entity: str, current_state: str | None, target_state: str):
        super().__init__(
            message=f"Cannot transition {entity} from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_TRANSITION,
            status_code=409,
            details={
                "entity": entity,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class ContentionError(AppException):
    """A conditional write matched zero rows because another actor got there first.

    Expected under normal load; callers refresh instead of retrying blindly.
    """

    def __init__(self, message: str, error_code: ErrorCode, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class AlreadyClaimed(ContentionError):
    def __init__(self, delivery_id: int):
        super().__init__(
            message="Delivery is no longer available",
            error_code=ErrorCode.ALREADY_CLAIMED,
            details={"delivery_id": delivery_id}
        )


class AlreadyRedeemed(ContentionError):
    """Raised when voiding a code that is no longer active"""

    def __init__(self, code_id: int, status: str | None = None):
        super().__init__(
            message="Code is no longer active",
            error_code=ErrorCode.ALREADY_REDEEMED,
            details={"code_id": code_id, "status": status}
        )


class CodeAlreadyUsed(ContentionError):
    def __init__(self, code: str):
        super().__init__(
            message="This code has already been used",
            error_code=ErrorCode.CODE_ALREADY_USED,
            details={"code": code}
        )


class CodeVoided(ContentionError):
    def __init__(self, code: str):
        super().__init__(
            message="This code has been voided",
            error_code=ErrorCode.CODE_VOIDED,
            details={"code": code}
        )


class AlreadyPaid(ContentionError):
    def __init__(self, settlement_id: int):
        super().__init__(
            message="Settlement is not pending",
            error_code=ErrorCode.ALREADY_PAID,
            details={"settlement_id": settlement_id}
        )


class CodeNotFound(AppException):
    def __init__(self, code: str):
        super().__init__(
            message="Invalid code",
            error_code=ErrorCode.CODE_NOT_FOUND,
            status_code=404,
            details={"code": code}
        )


class RateLimited(AppException):
    def __init__(self, action: str, retry_after_seconds: int):
        super().__init__(
            message="Too many requests. Please try again later.",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"action": action, "retry_after_seconds": retry_after_seconds}
        )


class ConsistencyWarning(AppException):
    """A best-effort side effect failed after its trigger committed.

    Never raised to callers: attached to the successful result as a warning
    and logged, so an out-of-band sweep or an admin can repair the gap.
    """

    def __init__(self, trigger: str, side_effect: str, entity_id: int, reason: str):
        super().__init__(
            message=f"{side_effect} was not created after {trigger}",
            error_code=ErrorCode.CONSISTENCY_WARNING,
            status_code=200,
            details={
                "trigger": trigger,
                "side_effect": side_effect,
                "entity_id": entity_id,
                "reason": reason,
            }
        )
