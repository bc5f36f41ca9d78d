"""
Operation results - failures are values, not control flow.
"""
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from marketplace.core.exceptions import AppException, ConsistencyWarning

T = TypeVar("T")


@dataclass
class ActionResult(Generic[T]):
    """Outcome of a service operation.

    ``warnings`` carries best-effort side effects that failed after the
    operation itself committed.
    """

    success: bool
    value: Optional[T] = None
    error: Optional[AppException] = None
    warnings: list[ConsistencyWarning] = field(default_factory=list)

    @classmethod
    def ok(cls, value: Optional[T] = None, warnings: Optional[list[ConsistencyWarning]] = None) -> "ActionResult[T]":
        return cls(success=True, value=value, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: AppException) -> "ActionResult[T]":
        return cls(success=False, error=error)

    @property
    def error_message(self) -> Optional[str]:
        """Human-readable reason, None on success"""
        return self.error.message if self.error else None

    def raise_for_error(self) -> T:
        """Return the value or raise the carried error (API boundary only)"""
        if not self.success:
            raise self.error
        return self.value
