"""
Currency and Money Module

ISO 4217 currencies with their minor-unit precision, and a fixed-point
Money value. Amounts are always Decimal, never float.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum

# Financial precision for all Decimal arithmetic in the process
getcontext().prec = 28


class Currency(Enum):
    """Supported currencies as (code, decimal places)"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Case-insensitive lookup by ISO code"""
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """Round half-up to the currency's minor unit"""
    return value.quantize(Decimal(1).scaleb(-currency.precision), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """Amount in a currency, rounded to that currency's precision on creation"""
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        object.__setattr__(self, 'amount', quantize(amount, self.currency))

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def to_string(self) -> str:
        """Display form, e.g. 'USD 1,234.50'"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
