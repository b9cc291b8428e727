"""
Tests for the exception hierarchy
"""

from decimal import Decimal

from loan_engine.exceptions import (
    FieldViolation, InvalidAmountError, InvalidStateError, LoanEngineError,
    NotFoundError, StaleRecordError, ValidationError
)


class TestExceptions:
    """Test the exception hierarchy"""

    def test_validation_error_lists_fields(self):
        error = ValidationError([
            FieldViolation("amount", "Minimum loan amount is 100"),
            FieldViolation("purpose", "Loan purpose is required")
        ])

        assert error.fields == ["amount", "purpose"]
        assert str(error) == "amount: Minimum loan amount is 100; purpose: Loan purpose is required"
        assert isinstance(error, ValueError)
        assert isinstance(error, LoanEngineError)

    def test_invalid_amount_is_a_validation_error(self):
        error = InvalidAmountError(Decimal('-5'))

        assert isinstance(error, ValidationError)
        assert error.amount == Decimal('-5')
        assert error.fields == ["amount"]
        assert "must be positive, got -5" in str(error)

    def test_invalid_state_message(self):
        error = InvalidStateError("L1", "approved", ["pending"], operation="approve")

        assert str(error) == "Cannot approve loan L1 in status 'approved' (requires pending)"
        assert error.expected == ("pending",)

    def test_invalid_state_for_payments(self):
        error = InvalidStateError("P1", "failed", ["pending"], operation="confirm", entity="payment")
        assert str(error).startswith("Cannot confirm payment P1")

    def test_lookup_and_stale_errors(self):
        assert issubclass(NotFoundError, LookupError)
        assert issubclass(NotFoundError, LoanEngineError)
        assert issubclass(StaleRecordError, LoanEngineError)
