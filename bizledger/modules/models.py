import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from bizledger.modules.gst_calculator import MonetaryLine, to_dec, round2, is_zero, CENT, ZERO


def parse_date(v):
    """Accepts ISO-8601 dates and date-times; keeps the calendar date as written."""
    if v is None or v == "":
        return None
    if isinstance(v, datetime.datetime):
        return v.date()
    if isinstance(v, datetime.date):
        return v
    return datetime.date.fromisoformat(str(v)[:10])


def local_date(v, tz: Optional[str]):
    """Calendar date of a timestamp in the zone `tz`.

    '2024-06-30T23:00:00.000Z' in Australia/Sydney is 2024-07-01. Naive
    timestamps and plain dates are already local and are kept as written.
    """
    if v is None or v == "" or not tz:
        return parse_date(v)
    if isinstance(v, datetime.datetime):
        moment = v
    elif isinstance(v, datetime.date):
        return v
    else:
        text = str(v)
        if len(text) <= 10:
            return datetime.date.fromisoformat(text)
        moment = datetime.datetime.fromisoformat(text.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        return moment.date()
    try:
        zone = ZoneInfo(tz)
    except ZoneInfoNotFoundError as e:
        raise ValueError(f"Unknown time zone {tz!r}") from e
    return moment.astimezone(zone).date()


class WireModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


# --- Enums ---

class InvoiceStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    OVERDUE = "Overdue"
    WRITTEN_OFF = "Written Off"

    @property
    def api_value(self) -> str:
        # The list endpoint spells it differently from the display value
        return "Written-off" if self is InvoiceStatus.WRITTEN_OFF else self.value

class ReceiptType(str, Enum):
    INVOICE_RECEIPT = "InvoiceReceipt"
    INVOICE_WRITE_OFF = "InvoiceWriteOff"

class PaymentMethod(str, Enum):
    EFT = "EFT"
    CASH = "Cash"
    OTHER = "Other"

class ExpenseType(str, Enum):
    BUSINESS = "Business"
    RECLAIMABLE = "Reclaimable"
    KILOMETRE = "Kilometre"


# --- Shared references ---

class PersonRef(WireModel):
    id: str
    full_name: Optional[str] = None

class InvoiceRef(WireModel):
    id: str
    code: Optional[str] = None


class MoneyRecord(WireModel):
    """A record whose money fields may arrive partially filled."""

    @field_validator('*', mode='before')
    @classmethod
    def parse_currency(cls, v, info):
        if info.field_name and info.field_name.startswith(("amount_", "total_")):
            if v is None: return None
            if isinstance(v, float): return Decimal(str(v))
            if isinstance(v, str): return to_dec(v)
        return v


# --- Ledger ---

class Receipt(MoneyRecord):
    id: str
    code: Optional[str] = None
    receipt_type: ReceiptType = ReceiptType.INVOICE_RECEIPT
    date: datetime.date
    amount_excl_gst: Optional[Decimal] = None
    amount_gst: Optional[Decimal] = None
    amount_incl_gst: Decimal
    payment_method: Optional[PaymentMethod] = None
    other_payment_method: Optional[str] = None
    notes: Optional[str] = None
    invoice: Optional[InvoiceRef] = None

    @field_validator('date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)

    @property
    def is_write_off(self) -> bool:
        return self.receipt_type is ReceiptType.INVOICE_WRITE_OFF


def derive_status(
    outstanding_incl_gst: Decimal,
    written_off_incl_gst: Decimal,
    due_date: datetime.date,
    today: datetime.date,
    epsilon: Decimal = CENT,
) -> InvoiceStatus:
    """Status is always computed from the balance; it is never stored.

    A balance within `epsilon` of zero, or below it (overpaid), is closed.
    """
    if outstanding_incl_gst < epsilon:
        if not is_zero(written_off_incl_gst, epsilon) and written_off_incl_gst > 0:
            return InvoiceStatus.WRITTEN_OFF
        return InvoiceStatus.PAID
    if today > due_date:
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.UNPAID


DERIVED_INVOICE_FIELDS = frozenset({
    "invoiceStatus", "invoice_status", "paidInclGst", "paidExclGst",
    "writtenOffInclGst", "writtenOffExclGst", "outstandingInclGst", "outstandingExclGst",
})


class Invoice(MoneyRecord):
    id: str
    code: Optional[str] = None
    contact: Optional[PersonRef] = None
    date: datetime.date
    due_date: datetime.date
    total_excl_gst: Optional[Decimal] = None
    total_gst: Optional[Decimal] = None
    total_incl_gst: Decimal
    is_gst_free: bool = False
    receipts: List[Receipt] = []

    @field_validator('date', 'due_date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)

    @model_validator(mode='before')
    @classmethod
    def drop_derived_fields(cls, data: Any) -> Any:
        # Status and balances sent by the server are recomputed locally
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if k not in DERIVED_INVOICE_FIELDS}
        return data

    @property
    def payments(self) -> List[Receipt]:
        return [r for r in self.receipts if not r.is_write_off]

    @property
    def write_offs(self) -> List[Receipt]:
        return [r for r in self.receipts if r.is_write_off]

    @property
    def paid_incl_gst(self) -> Decimal:
        return sum((round2(r.amount_incl_gst) for r in self.payments), ZERO)

    @property
    def written_off_incl_gst(self) -> Decimal:
        return sum((round2(r.amount_incl_gst) for r in self.write_offs), ZERO)

    @property
    def outstanding_incl_gst(self) -> Decimal:
        return round2(self.total_incl_gst) - self.paid_incl_gst - self.written_off_incl_gst

    def status(self, today: Optional[datetime.date] = None, epsilon: Decimal = CENT) -> InvoiceStatus:
        return derive_status(
            self.outstanding_incl_gst,
            self.written_off_incl_gst,
            self.due_date,
            today or datetime.date.today(),
            epsilon,
        )


# --- Transactional records ---

class Shift(MoneyRecord):
    id: str
    code: Optional[str] = None
    date: Optional[datetime.date] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    duration: int = 0  # seconds
    shift_status: Optional[str] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    tz: Optional[str] = None
    contact: Optional[PersonRef] = None
    assignee: Optional[PersonRef] = None
    total_excl_gst: Optional[Decimal] = None
    total_gst: Optional[Decimal] = None
    total_incl_gst: Optional[Decimal] = None
    is_gst_free: bool = False

    @model_validator(mode='before')
    @classmethod
    def localize_date(cls, data: Any) -> Any:
        # Rows carry UTC timestamps plus the shift's own zone; the report date is the local one
        if isinstance(data, dict):
            raw = data.get("date") or data.get("startDate") or data.get("start_date")
            if raw:
                return {**data, "date": local_date(raw, data.get("tz"))}
        return data

    @model_validator(mode='after')
    def default_date_from_start(self) -> 'Shift':
        if self.date is None and self.start_date is not None:
            self.date = local_date(self.start_date, self.tz)
        if self.date is None:
            raise ValueError(f"Shift {self.id} has neither date nor startDate")
        return self


class Expense(MoneyRecord):
    id: str
    code: Optional[str] = None
    date: datetime.date
    expense_type: ExpenseType = ExpenseType.BUSINESS
    category: Optional[str] = None
    payee: Optional[str] = None
    description: Optional[str] = None
    kms: Optional[Decimal] = None
    km_rate_amount_excl_gst: Optional[Decimal] = None
    amount_excl_gst: Optional[Decimal] = None
    amount_gst: Optional[Decimal] = None
    amount_incl_gst: Optional[Decimal] = None
    is_gst_free: bool = False
    contact: Optional[PersonRef] = None
    assignee: Optional[PersonRef] = None

    @field_validator('date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)

    @field_validator('kms', 'km_rate_amount_excl_gst', mode='before')
    @classmethod
    def parse_decimal(cls, v):
        if v is None: return None
        return to_dec(v)


class Witness(WireModel):
    name: str
    contact: Optional[str] = None
    statement: Optional[str] = None

class Incident(WireModel):
    id: str
    code: Optional[str] = None
    date: datetime.date
    location: Optional[str] = None
    description: Optional[str] = None
    immediate_actions_taken: Optional[str] = None
    had_other_individuals_involved: bool = False
    other_individuals_involved: Optional[str] = None
    was_participant_injured: bool = False
    participant_injury_description: Optional[str] = None
    required_medical_attention: bool = False
    required_emergency_attention: bool = False
    witnesses: List[Witness] = []
    was_supervisor_reported: bool = False
    supervisor_name: Optional[str] = None
    was_risk_assessment_conducted: bool = False
    preventative_measures_or_recommendations: Optional[str] = None
    is_ndis_reportable: bool = Field(default=False, alias="isNDISReportable")
    was_ndis_reported: bool = Field(default=False, alias="wasNDISReported")
    reported_by: Optional[PersonRef] = None
    contact: Optional[PersonRef] = None

    @field_validator('date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)


# --- List resources ---

class Contact(WireModel):
    id: str
    full_name: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

class Rate(MoneyRecord):
    id: str
    name: Optional[str] = None
    rate_type: Optional[str] = None
    amount_excl_gst: Optional[Decimal] = None
    amount_gst: Optional[Decimal] = None
    amount_incl_gst: Optional[Decimal] = None
    is_archived: bool = False

class Agreement(WireModel):
    id: str
    code: Optional[str] = None
    status: Optional[str] = None
    contact: Optional[PersonRef] = None
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None

    @field_validator('start_date', 'end_date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)

class ListMeta(WireModel):
    total: int = 0
    page_number: int = 1
    page_size: int = 100

class ListPage(WireModel):
    data: List[Any] = []
    meta: ListMeta = Field(default_factory=ListMeta)


def money_line(record: MoneyRecord, calculator, prefix: str = "amount") -> MonetaryLine:
    """Normalizes a record's <prefix>_excl_gst/_gst/_incl_gst fields through the calculator."""
    return calculator.normalize(
        excl=getattr(record, f"{prefix}_excl_gst", None),
        gst=getattr(record, f"{prefix}_gst", None),
        incl=getattr(record, f"{prefix}_incl_gst", None),
        is_gst_free=getattr(record, "is_gst_free", False),
    )
