"""
Currency Support Module

Supported loan denominations (fiat and crypto) with their display precision,
and an immutable Money type. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """Loan currencies with precision info"""
    USD = ("USD", 2, False)    # US Dollar
    EUR = ("EUR", 2, False)    # Euro
    GBP = ("GBP", 2, False)    # British Pound
    ETH = ("ETH", 18, True)    # Ether, wei precision
    USDC = ("USDC", 6, True)   # USD Coin
    USDT = ("USDT", 6, True)   # Tether

    def __init__(self, code: str, precision: int, is_crypto: bool):
        self.code = code
        self.precision = precision
        self.is_crypto = is_crypto

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its code (case-insensitive)"""
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            raise ValueError(f"Unsupported currency: {code!r}")


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Convert a numeric value to Decimal without going through binary float

    Raises:
        ValueError: If value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValueError(f"Cannot convert {value!r} to Decimal")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation, rounded to its currency precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = to_decimal(self.amount)
        rounded = amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.is_crypto:
            # Strip trailing zeros, token precision is too long to show in full
            return f"{self.amount.normalize():f} {self.currency.code}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
