"""
Shared API schema types
"""
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, PlainSerializer

from marketplace.core.exceptions import ConsistencyWarning
from marketplace.core.validation import to_money

# Money leaves the API as a two-decimal string ("37.50"), never a float
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: f"{to_money(v):.2f}", return_type=str, when_used="json"),
]


class WarningResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any]

    @classmethod
    def from_warning(cls, warning: ConsistencyWarning) -> "WarningResponse":
        return cls(code=warning.error_code.value, message=warning.message, details=warning.details)


def warnings_of(result) -> list[WarningResponse]:
    return [WarningResponse.from_warning(w) for w in result.warnings]
