"""
Currency and Rounding Policy Module

ISO 4217 currency codes with their minor-unit precision, and the Money value
type used for every monetary figure in the engine. NEVER uses float for
monetary values; every Money is rounded half-up to its currency's precision
on construction.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum

from .errors import InvalidInput

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    BDT = ("BDT", 2)  # Bangladeshi Taka
    INR = ("INR", 2)  # Indian Rupee
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by ISO code (case-insensitive)"""
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            raise InvalidInput(f"Unsupported currency code: {code!r}")


def round_money(value: Decimal, currency: Currency) -> Decimal:
    """Round a raw Decimal to the currency's minor unit, half-up"""
    if not value.is_finite():
        raise InvalidInput(f"Amount must be a finite number, got {value}")
    try:
        return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidInput(f"Amount {value} is too large for {currency.code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        object.__setattr__(self, 'amount', round_money(self.amount, self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def of(cls, amount: Union[str, int, Decimal], currency: Union[str, Currency]) -> 'Money':
        """Build Money from a decimal string/number and a currency code or enum"""
        if isinstance(currency, str):
            currency = Currency.from_code(currency)
        return cls(Decimal(str(amount)), currency)

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
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

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
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for logs and error messages"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part/whole as a percentage rounded to 2 places; 0 when whole is 0"""
    if whole == Decimal('0'):
        return Decimal('0.00')
    return (part / whole * Decimal('100')).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
