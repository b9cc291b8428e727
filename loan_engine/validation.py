"""
Loan Term Validation

Explicit checks run when a loan is created and before any change to its
terms. Each check returns field-level violations instead of raising, so a
caller learns about every bad field in one round trip.
"""

from decimal import Decimal
from typing import Any, List, Optional

from .amortization import TermUnit, term_in_months
from .config import LoanEngineConfig, get_config
from .currency import Currency, to_decimal
from .exceptions import FieldViolation, ValidationError
from .terms import Collateral, CollateralType, LoanTerms, LoanType


def _is_number(value: Any) -> bool:
    return isinstance(value, Decimal) and value.is_finite()


def _choices(enum_cls) -> str:
    return ", ".join(member.value for member in enum_cls)


def _choices_currency() -> str:
    return ", ".join(c.code for c in Currency)


def _validate_amount(amount: Any, config: LoanEngineConfig) -> List[FieldViolation]:
    if amount is None:
        return [FieldViolation("amount", "Loan amount is required")]
    if not _is_number(amount):
        return [FieldViolation("amount", f"Loan amount must be a number, got {amount!r}")]
    if amount < config.min_principal:
        return [FieldViolation("amount", f"Minimum loan amount is {config.min_principal:,}")]
    if amount > config.max_principal:
        return [FieldViolation("amount", f"Maximum loan amount is {config.max_principal:,}")]
    return []


def _validate_interest_rate(rate: Any, config: LoanEngineConfig) -> List[FieldViolation]:
    if rate is None:
        return [FieldViolation("interest_rate", "Interest rate is required")]
    if not _is_number(rate):
        return [FieldViolation("interest_rate", f"Interest rate must be a number, got {rate!r}")]
    if rate < config.min_interest_rate:
        return [FieldViolation("interest_rate", "Interest rate cannot be negative")]
    if rate > config.max_interest_rate:
        return [FieldViolation("interest_rate", f"Interest rate cannot exceed {config.max_interest_rate}%")]
    return []


def _validate_term(term: Any, unit: Any, config: LoanEngineConfig) -> List[FieldViolation]:
    violations = []
    if not isinstance(unit, TermUnit):
        violations.append(FieldViolation("term_unit", f"Term unit must be one of {_choices(TermUnit)}"))

    if term is None:
        violations.append(FieldViolation("term", "Loan term is required"))
    elif isinstance(term, bool) or not isinstance(term, int):
        violations.append(FieldViolation("term", f"Loan term must be a whole number, got {term!r}"))
    elif term < config.min_term:
        violations.append(FieldViolation("term", f"Minimum term is {config.min_term}"))
    elif term > config.max_term:
        violations.append(FieldViolation("term", f"Maximum term is {config.max_term}"))
    elif isinstance(unit, TermUnit) and term_in_months(term, unit) > config.max_term_months:
        violations.append(FieldViolation(
            "term", f"Maximum term is {config.max_term_months} months ({config.max_term_months // 12} years)"
        ))
    return violations


def _validate_purpose(purpose: Any, config: LoanEngineConfig) -> List[FieldViolation]:
    if not isinstance(purpose, str) or not purpose.strip():
        return [FieldViolation("purpose", "Loan purpose is required")]
    if len(purpose) > config.max_purpose_length:
        return [FieldViolation("purpose", f"Purpose cannot exceed {config.max_purpose_length} characters")]
    return []


def _validate_collateral(collateral: Optional[Collateral]) -> List[FieldViolation]:
    if collateral is None:
        return []
    if not isinstance(collateral, Collateral):
        return [FieldViolation("collateral", "Collateral must be a Collateral record")]

    violations = []
    if not isinstance(collateral.type, CollateralType):
        violations.append(FieldViolation(
            "collateral.type", f"Collateral type must be one of {_choices(CollateralType)}"
        ))
    if collateral.value is not None:
        if not _is_number(collateral.value):
            violations.append(FieldViolation("collateral.value", "Collateral value must be a number"))
        elif collateral.value < 0:
            violations.append(FieldViolation("collateral.value", "Collateral value cannot be negative"))
    if not all(isinstance(doc, str) and doc for doc in collateral.documents):
        violations.append(FieldViolation("collateral.documents", "Document references must be non-empty strings"))
    return violations


def validate_terms(terms: LoanTerms, config: Optional[LoanEngineConfig] = None) -> List[FieldViolation]:
    """
    Check loan terms against the configured bounds

    Returns:
        Every violation found, empty when the terms are valid
    """
    config = config or get_config()

    violations = []
    violations += _validate_amount(terms.amount, config)
    if not isinstance(terms.currency, Currency):
        violations.append(FieldViolation("currency", f"Currency must be one of {_choices_currency()}"))
    violations += _validate_interest_rate(terms.interest_rate, config)
    violations += _validate_term(terms.term, terms.term_unit, config)
    if not isinstance(terms.loan_type, LoanType):
        violations.append(FieldViolation("loan_type", f"Loan type must be one of {_choices(LoanType)}"))
    violations += _validate_purpose(terms.purpose, config)
    violations += _validate_collateral(terms.collateral)
    return violations


def validate_risk_score(risk_score: Any) -> List[FieldViolation]:
    """Risk scores are finite numbers between 0 and 100 inclusive"""
    if isinstance(risk_score, bool) or not isinstance(risk_score, (int, float, Decimal)):
        return [FieldViolation("risk_score", f"Risk score must be a number, got {risk_score!r}")]
    try:
        value = to_decimal(risk_score)
    except ValueError:
        return [FieldViolation("risk_score", f"Risk score must be a number, got {risk_score!r}")]
    if not value.is_finite():
        return [FieldViolation("risk_score", f"Risk score must be a finite number, got {risk_score!r}")]
    if not 0 <= value <= 100:
        return [FieldViolation("risk_score", "Risk score must be between 0 and 100")]
    return []


def raise_for_violations(violations: List[FieldViolation]) -> None:
    """Raise a ValidationError carrying all violations, if there are any"""
    if violations:
        raise ValidationError(violations)
