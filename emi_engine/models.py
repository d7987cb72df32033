"""
Loan and Lending Records

Dataclasses for loans, their installment schedule and payment ledger, and
person-to-person lendings with their repayment ledger. Every record is a
StorageRecord and knows how to flatten itself into a JSON-safe dictionary.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord
from .errors import InvalidInput


class LoanType(Enum):
    """Kinds of formal loans tracked by the dashboard"""
    PERSONAL = "personal"
    HOME = "home"
    CAR = "car"
    EDUCATION = "education"
    BUSINESS = "business"
    PURCHASE_EMI = "purchase_emi"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class LoanStatus(Enum):
    """Derived loan status (stored only as a cache)"""
    ACTIVE = "active"
    CLOSED = "closed"
    DEFAULTED = "defaulted"


class LendingType(Enum):
    """Direction of a person-to-person lending"""
    LENT = "lent"          # money given to someone
    BORROWED = "borrowed"  # money taken from someone


class LendingStatus(Enum):
    """Derived lending status (stored only as a cache)"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class InstallmentState(Enum):
    """State of a single schedule row at a point in time"""
    PAID = "paid"
    PENDING = "pending"
    LATE = "late"


class PrepaymentMode(Enum):
    """What a prepayment shortens"""
    REDUCE_EMI = "reduce_emi"        # keep tenure, lower the installment
    REDUCE_TENURE = "reduce_tenure"  # keep installment, finish earlier


class PaymentMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CASH = "cash"
    CHECK = "check"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    AUTO_DEBIT = "auto_debit"
    OTHER = "other"


class PurchaseCategory(Enum):
    """What a purchase EMI paid for"""
    ELECTRONICS = "electronics"
    FURNITURE = "furniture"
    APPLIANCES = "appliances"
    JEWELRY = "jewelry"
    GADGETS = "gadgets"
    CLOTHING = "clothing"
    SPORTS = "sports"
    TRAVEL = "travel"
    OTHER = "other"


class ItemCondition(Enum):
    NEW = "new"
    REFURBISHED = "refurbished"
    USED = "used"


class _Codec:
    """
    Flattening rules shared by the records below.

    Money fields are stored as decimal strings next to a single ``currency``
    code, dates as ISO strings, enums by value and Decimals as strings.
    """

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = ()
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ()
    ENUM_FIELDS: ClassVar[Dict[str, type]] = {}
    NESTED_FIELDS: ClassVar[Dict[str, type]] = {}

    def to_dict(self) -> Dict[str, Any]:
        result = StorageRecord.to_dict(self)
        for f in fields(self):
            if f.name in result:
                continue
            value = getattr(self, f.name)
            if value is None:
                result[f.name] = None
            elif f.name in self.MONEY_FIELDS:
                result[f.name] = str(value.amount)
            elif f.name in self.DATE_FIELDS:
                result[f.name] = value.isoformat()
            elif f.name in self.DECIMAL_FIELDS:
                result[f.name] = str(value)
            elif f.name in self.NESTED_FIELDS:
                result[f.name] = value.to_dict()
            elif isinstance(value, Enum):
                result[f.name] = value.value
            else:
                result[f.name] = value
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        currency = Currency.from_code(data['currency'])
        kwargs = StorageRecord.base_fields(data)
        for f in fields(cls):
            if f.name in kwargs or f.name not in data:
                continue
            value = data[f.name]
            if value is None:
                kwargs[f.name] = None
            elif f.name in cls.MONEY_FIELDS:
                kwargs[f.name] = Money(Decimal(value), currency)
            elif f.name in cls.DATE_FIELDS:
                kwargs[f.name] = date.fromisoformat(value)
            elif f.name in cls.DECIMAL_FIELDS:
                kwargs[f.name] = Decimal(value)
            elif f.name in cls.ENUM_FIELDS:
                kwargs[f.name] = cls.ENUM_FIELDS[f.name](value)
            elif f.name in cls.NESTED_FIELDS:
                kwargs[f.name] = cls.NESTED_FIELDS[f.name].from_dict(value, currency)
            else:
                kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class PurchaseDetails:
    """What a purchase EMI financed; stored inside its loan"""
    item_name: str
    category: PurchaseCategory
    condition: ItemCondition = ItemCondition.NEW
    down_payment: Optional[Money] = None    # paid upfront, not financed
    warranty_months: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_name': self.item_name,
            'category': self.category.value,
            'condition': self.condition.value,
            'down_payment': str(self.down_payment.amount) if self.down_payment else None,
            'warranty_months': self.warranty_months,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: Currency) -> 'PurchaseDetails':
        down_payment = data.get('down_payment')
        return cls(
            item_name=data['item_name'],
            category=PurchaseCategory(data['category']),
            condition=ItemCondition(data['condition']),
            down_payment=Money(Decimal(down_payment), currency) if down_payment is not None else None,
            warranty_months=data.get('warranty_months'),
        )


@dataclass
class Loan(_Codec, StorageRecord):
    """Formal loan repaid through a fixed EMI"""
    user_id: str
    lender: str
    loan_type: LoanType
    principal_amount: Money
    interest_rate: Decimal              # annual percentage, e.g. 10 for 10%
    tenure_months: int
    start_date: date
    outstanding_amount: Money = None    # principal still owed
    emi_amount: Money = None
    next_due_date: Optional[date] = None
    payment_day: Optional[int] = None   # day of month installments fall due
    status: LoanStatus = LoanStatus.ACTIVE
    last_payment_date: Optional[date] = None
    prepayment_amount: Money = None     # cumulative principal prepaid
    closed_date: Optional[date] = None
    notes: Optional[str] = None
    purchase: Optional[PurchaseDetails] = None
    version: int = 0

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = (
        'principal_amount', 'outstanding_amount', 'emi_amount', 'prepayment_amount'
    )
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = (
        'start_date', 'next_due_date', 'last_payment_date', 'closed_date'
    )
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('interest_rate',)
    ENUM_FIELDS: ClassVar[Dict[str, type]] = {'loan_type': LoanType, 'status': LoanStatus}
    NESTED_FIELDS: ClassVar[Dict[str, type]] = {'purchase': PurchaseDetails}

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            self.interest_rate = Decimal(str(self.interest_rate))
        if self.payment_day is not None and not 1 <= self.payment_day <= 31:
            raise InvalidInput(f"payment_day must be between 1 and 31, got {self.payment_day}")

        zero = Money.zero(self.currency)
        if self.outstanding_amount is None:
            self.outstanding_amount = self.principal_amount
        if self.emi_amount is None:
            self.emi_amount = zero
        if self.prepayment_amount is None:
            self.prepayment_amount = zero

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def display_name(self) -> str:
        label = self.loan_type.value.replace('_', ' ').title()
        return f"{self.lender} - {label} Loan"


@dataclass
class EmiSchedule(_Codec, StorageRecord):
    """One installment of a loan's amortization schedule"""
    loan_id: str
    user_id: str
    installment_number: int
    due_date: date
    emi_amount: Money
    principal_amount: Money
    interest_amount: Money
    outstanding_balance: Money          # scheduled balance after this installment
    is_paid: bool = False
    payment_date: Optional[date] = None
    actual_payment_amount: Money = None
    late_fee: Money = None
    payment_id: Optional[str] = None    # last ledger entry that touched the row

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = (
        'emi_amount', 'principal_amount', 'interest_amount', 'outstanding_balance',
        'actual_payment_amount', 'late_fee'
    )
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ('due_date', 'payment_date')

    def __post_init__(self):
        zero = Money.zero(self.currency)
        if self.actual_payment_amount is None:
            self.actual_payment_amount = zero
        if self.late_fee is None:
            self.late_fee = zero

    @staticmethod
    def row_id(loan_id: str, installment_number: int) -> str:
        return f"{loan_id}_{installment_number}"

    @property
    def currency(self) -> Currency:
        return self.emi_amount.currency

    @property
    def amount_due(self) -> Money:
        """What is still owed on this installment"""
        return self.emi_amount - self.actual_payment_amount

    @property
    def interest_settled(self) -> Money:
        """Interest covered so far; payments settle interest before principal"""
        return min(self.actual_payment_amount, self.interest_amount)

    @property
    def principal_settled(self) -> Money:
        return self.actual_payment_amount - self.interest_settled

    @property
    def is_partially_paid(self) -> bool:
        return not self.is_paid and self.actual_payment_amount.is_positive()

    @property
    def has_payment(self) -> bool:
        return self.is_paid or self.actual_payment_amount.is_positive()


@dataclass
class EmiPayment(_Codec, StorageRecord):
    """Append-only ledger entry for money paid against a loan"""
    loan_id: str
    user_id: str
    payment_date: date
    amount: Money
    principal_amount: Money
    interest_amount: Money
    outstanding_balance: Money          # loan outstanding right after this payment
    is_prepayment: bool = False
    late_fee: Money = None
    installment_numbers: List[int] = field(default_factory=list)
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = (
        'amount', 'principal_amount', 'interest_amount', 'outstanding_balance', 'late_fee'
    )
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ('payment_date',)

    def __post_init__(self):
        if self.late_fee is None:
            self.late_fee = Money.zero(self.currency)

    @property
    def currency(self) -> Currency:
        return self.amount.currency


@dataclass
class Lending(_Codec, StorageRecord):
    """Informal person-to-person debt, tracked by pending amount only"""
    user_id: str
    person_name: str
    lending_type: LendingType
    amount: Money
    lending_date: date
    pending_amount: Money = None
    interest_rate: Optional[Decimal] = None
    due_date: Optional[date] = None
    status: LendingStatus = LendingStatus.PENDING
    notes: Optional[str] = None
    version: int = 0

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = ('amount', 'pending_amount')
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ('lending_date', 'due_date')
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('interest_rate',)
    ENUM_FIELDS: ClassVar[Dict[str, type]] = {'lending_type': LendingType, 'status': LendingStatus}

    def __post_init__(self):
        if self.interest_rate is not None and not isinstance(self.interest_rate, Decimal):
            self.interest_rate = Decimal(str(self.interest_rate))
        if self.pending_amount is None:
            self.pending_amount = self.amount

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def display_name(self) -> str:
        prefix = "Lent to" if self.lending_type == LendingType.LENT else "Borrowed from"
        return f"{prefix} {self.person_name}"


@dataclass
class LendingPayment(_Codec, StorageRecord):
    """Append-only ledger entry for a lending repayment"""
    lending_id: str
    user_id: str
    payment_date: date
    amount: Money
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    MONEY_FIELDS: ClassVar[Tuple[str, ...]] = ('amount',)
    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ('payment_date',)

    @property
    def currency(self) -> Currency:
        return self.amount.currency


@dataclass
class EmiTemplate(StorageRecord):
    """Reusable default terms offered when a user adds a new loan"""
    user_id: str
    name: str
    loan_type: LoanType
    default_interest_rate: Decimal
    default_tenure_months: int
    description: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            'user_id': self.user_id,
            'name': self.name,
            'loan_type': self.loan_type.value,
            'default_interest_rate': str(self.default_interest_rate),
            'default_tenure_months': self.default_tenure_months,
            'description': self.description,
            'is_active': self.is_active,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmiTemplate':
        return cls(
            **StorageRecord.base_fields(data),
            user_id=data['user_id'],
            name=data['name'],
            loan_type=LoanType(data['loan_type']),
            default_interest_rate=Decimal(data['default_interest_rate']),
            default_tenure_months=data['default_tenure_months'],
            description=data.get('description'),
            is_active=data.get('is_active', True),
        )


@dataclass
class PaymentInput:
    """A payment as submitted by the caller, before it is applied"""
    amount: Money
    payment_date: date
    late_fee: Optional[Money] = None    # charged only if the installment is overdue
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if self.late_fee is not None and self.late_fee.currency != self.amount.currency:
            raise InvalidInput("Late fee currency must match payment currency")
        if self.late_fee is not None and self.late_fee.is_negative():
            raise InvalidInput("Late fee cannot be negative")
