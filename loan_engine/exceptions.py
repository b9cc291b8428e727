"""Custom exception hierarchy for the loan engine."""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class FieldViolation:
    """A single field that failed validation"""
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""


class ValidationError(LoanEngineError, ValueError):
    """Raised when terms, amounts or other inputs are out of bounds."""

    def __init__(self, violations: Iterable[FieldViolation]):
        self.violations: List[FieldViolation] = list(violations)
        super().__init__("; ".join(str(v) for v in self.violations))

    @property
    def fields(self) -> List[str]:
        return [v.field for v in self.violations]


class InvalidAmountError(ValidationError):
    """Raised when a payment amount is not positive."""

    def __init__(self, amount):
        self.amount = amount
        super().__init__([FieldViolation("amount", f"Payment amount must be positive, got {amount}")])


class InvalidStateError(LoanEngineError):
    """Raised when an operation is attempted from the wrong lifecycle state."""

    def __init__(self, entity_id: str, current: str, expected: Sequence[str],
                 operation: Optional[str] = None, entity: str = "loan"):
        self.entity_id = entity_id
        self.entity = entity
        self.current = current
        self.expected = tuple(expected)
        self.operation = operation
        action = f"{operation} " if operation else ""
        super().__init__(
            f"Cannot {action}{entity} {entity_id} in status '{current}' "
            f"(requires {' or '.join(self.expected)})"
        )


class NotFoundError(LoanEngineError, LookupError):
    """Raised when a referenced loan or payment does not exist."""


class StaleRecordError(LoanEngineError):
    """Raised when a record was modified by another writer since it was loaded."""
