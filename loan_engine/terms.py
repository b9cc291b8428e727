"""
Loan Terms Module

Value objects describing what a borrower applies for: principal, currency,
rate, term, loan type, purpose and optional collateral.

Constructors coerce obvious representations (numeric strings, enum values)
but never reject input; out-of-range or unrecognised values are kept as given
so that ``validation.validate_terms`` can report every offending field at once.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .amortization import TermUnit, term_in_months
from .currency import Currency, to_decimal


class LoanType(Enum):
    PERSONAL = "personal"
    BUSINESS = "business"
    MORTGAGE = "mortgage"
    AUTO = "auto"
    STUDENT = "student"


class CollateralType(Enum):
    REAL_ESTATE = "real_estate"
    VEHICLE = "vehicle"
    CRYPTO = "crypto"
    STOCKS = "stocks"
    OTHER = "other"


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _coerce_currency(value):
    if isinstance(value, Currency):
        return value
    try:
        return Currency.from_code(value)
    except ValueError:
        return value


def _coerce_decimal(value):
    if value is None:
        return None
    try:
        return to_decimal(value)
    except ValueError:
        return value


@dataclass
class Collateral:
    """Asset pledged against a loan; recorded, not managed"""
    type: CollateralType
    description: Optional[str] = None
    value: Optional[Decimal] = None
    documents: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.type = _coerce_enum(CollateralType, self.type)
        self.value = _coerce_decimal(self.value)
        self.documents = list(self.documents or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value if isinstance(self.type, CollateralType) else self.type,
            'description': self.description,
            'value': str(self.value) if self.value is not None else None,
            'documents': list(self.documents)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collateral':
        return cls(
            type=data['type'],
            description=data.get('description'),
            value=data.get('value'),
            documents=data.get('documents') or []
        )


@dataclass
class LoanTerms:
    """Terms a loan is originated with"""
    amount: Decimal                     # Principal
    interest_rate: Decimal              # Annual percent, e.g. 12 for 12%
    term: int
    loan_type: LoanType
    purpose: str
    currency: Currency = Currency.USD
    term_unit: TermUnit = TermUnit.MONTHS
    collateral: Optional[Collateral] = None

    def __post_init__(self):
        self.amount = _coerce_decimal(self.amount)
        self.interest_rate = _coerce_decimal(self.interest_rate)
        self.loan_type = _coerce_enum(LoanType, self.loan_type)
        self.currency = _coerce_currency(self.currency)
        self.term_unit = _coerce_enum(TermUnit, self.term_unit)
        if isinstance(self.collateral, dict):
            self.collateral = Collateral.from_dict(self.collateral)

    @property
    def term_months(self) -> Decimal:
        """Term length in months, as the calculator expects it"""
        return term_in_months(self.term, self.term_unit)

    def with_changes(self, **changes) -> 'LoanTerms':
        """Copy with some fields replaced; the original is left untouched"""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'interest_rate': str(self.interest_rate),
            'term': self.term,
            'term_unit': self.term_unit.value,
            'loan_type': self.loan_type.value,
            'purpose': self.purpose,
            'currency': self.currency.code,
            'collateral': self.collateral.to_dict() if self.collateral else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        collateral = data.get('collateral')
        return cls(
            amount=Decimal(data['amount']),
            interest_rate=Decimal(data['interest_rate']),
            term=data['term'],
            term_unit=TermUnit(data['term_unit']),
            loan_type=LoanType(data['loan_type']),
            purpose=data['purpose'],
            currency=Currency[data['currency']],
            collateral=Collateral.from_dict(collateral) if collateral else None
        )
