import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Any, Dict
from pydantic import Field, field_validator

from bizledger.modules.errors import InvalidDateRange
from bizledger.modules.gst_calculator import ZERO
from bizledger.modules.models import (
    WireModel,
    PersonRef,
    InvoiceRef,
    InvoiceStatus,
    ExpenseType,
    parse_date,
)

ALL = "-1"


class ReportKind(str, Enum):
    SHIFTS = "shifts"
    KMS = "kms"
    TAX = "tax"
    INVOICES = "invoices"
    INCIDENTS = "incidents"


# --- Requests ---

class ReportRequest(WireModel):
    start_date: datetime.date
    end_date: datetime.date

    @field_validator('start_date', 'end_date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return parse_date(v)

    def validate_range(self) -> None:
        if self.start_date > self.end_date:
            raise InvalidDateRange(self.start_date, self.end_date)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode='json')

class ContactReportRequest(ReportRequest):
    id_contact: str = ALL

class AssigneeReportRequest(ContactReportRequest):
    id_assignee: str = ALL

class ShiftReportRequest(AssigneeReportRequest):
    pass

class KmsReportRequest(AssigneeReportRequest):
    pass

class InvoiceReportRequest(ContactReportRequest):
    pass

class IncidentReportRequest(ContactReportRequest):
    pass

class TaxReportRequest(ReportRequest):
    pass


# --- Breakdown items ---

class BreakdownItem(WireModel):
    id: str
    date: datetime.date
    contact: Optional[PersonRef] = None

class AmountItem(BreakdownItem):
    amount_excl_gst: Decimal = ZERO
    amount_gst: Decimal = ZERO
    amount_incl_gst: Decimal = ZERO
    is_gst_free: bool = False

class ShiftReportItem(AmountItem):
    is_expense: bool
    assignee: Optional[PersonRef] = None
    # shift fields
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    duration: Optional[int] = None
    shift_status: Optional[str] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    tz: Optional[str] = None
    # expense fields
    expense_type: Optional[ExpenseType] = None
    payee: Optional[str] = None
    description: Optional[str] = None

class KmsReportItem(AmountItem):
    assignee: Optional[PersonRef] = None
    payee: Optional[str] = None
    description: Optional[str] = None
    kms: Decimal = ZERO
    km_rate_amount_excl_gst: Optional[Decimal] = None

class TaxReceiptItem(AmountItem):
    invoice: Optional[InvoiceRef] = None

class TaxExpenseItem(AmountItem):
    expense_type: ExpenseType
    category: Optional[str] = None
    payee: Optional[str] = None
    description: Optional[str] = None

class InvoiceReportItem(BreakdownItem):
    code: Optional[str] = None
    due_date: datetime.date
    status: InvoiceStatus
    total_excl_gst: Decimal = ZERO
    total_gst: Decimal = ZERO
    total_incl_gst: Decimal = ZERO
    outstanding_incl_gst: Decimal = ZERO

class IncidentReportItem(BreakdownItem):
    code: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    reported_by: Optional[PersonRef] = None
    was_participant_injured: bool = False
    is_ndis_reportable: bool = Field(default=False, alias="isNDISReportable")


# --- Summaries ---

class ShiftReportSummary(WireModel):
    shifts_count: int = 0
    shifts_duration: int = 0  # seconds
    shifts_total_excl_gst: Decimal = ZERO
    shifts_total_gst: Decimal = ZERO
    shifts_total_incl_gst: Decimal = ZERO
    expenses_count: int = 0
    expenses_total_excl_gst: Decimal = ZERO
    expenses_total_gst: Decimal = ZERO
    expenses_total_incl_gst: Decimal = ZERO
    total: Decimal = ZERO

class KmsReportSummary(WireModel):
    count: int = 0
    kms: Decimal = ZERO
    total_excl_gst: Decimal = ZERO
    total_gst: Decimal = ZERO
    total_incl_gst: Decimal = ZERO

class TaxReportSummary(WireModel):
    receipts_total_excl_gst: Decimal = ZERO
    receipts_total_gst: Decimal = ZERO
    receipts_total_incl_gst: Decimal = ZERO
    expenses_total_excl_gst: Decimal = ZERO
    expenses_total_gst: Decimal = ZERO
    expenses_total_incl_gst: Decimal = ZERO
    net_total_excl_gst: Decimal = ZERO
    net_total_gst: Decimal = ZERO
    net_total_incl_gst: Decimal = ZERO

class InvoiceReportSummary(WireModel):
    paid: Decimal = ZERO
    unpaid: Decimal = ZERO
    overdue: Decimal = ZERO
    written_off: Decimal = ZERO
    paid_count: int = 0
    unpaid_count: int = 0
    overdue_count: int = 0
    written_off_count: int = 0

class IncidentReportSummary(WireModel):
    count: int = 0


# --- Results ---

class ReportResult(WireModel):
    """Full-set summary plus the drill-down breakdown, date ascending."""
    summary: Any
    breakdown: List[Any] = []

    def page(self, page_number: int = 1, page_size: int = 100) -> 'ReportResult':
        """A display slice of the breakdown; the summary still covers the full set."""
        if page_number < 1 or page_size < 1:
            raise ValueError("page_number and page_size must be positive")
        start = (page_number - 1) * page_size
        return self.model_copy(update={"breakdown": self.breakdown[start:start + page_size]})

    def find(self, item_id: str) -> Optional[BreakdownItem]:
        return next((item for item in self.breakdown if item.id == item_id), None)

class ShiftReportResult(ReportResult):
    summary: ShiftReportSummary
    breakdown: List[ShiftReportItem] = []

class KmsReportResult(ReportResult):
    summary: KmsReportSummary
    breakdown: List[KmsReportItem] = []

class TaxReportResult(ReportResult):
    summary: TaxReportSummary
    receipts: List[TaxReceiptItem] = []
    expenses: List[TaxExpenseItem] = []

class InvoiceReportResult(ReportResult):
    summary: InvoiceReportSummary
    breakdown: List[InvoiceReportItem] = []
    paid: List[InvoiceReportItem] = []
    unpaid: List[InvoiceReportItem] = []
    overdue: List[InvoiceReportItem] = []
    written_off: List[InvoiceReportItem] = []

    def bucket(self, status: InvoiceStatus) -> List[InvoiceReportItem]:
        return {
            InvoiceStatus.PAID: self.paid,
            InvoiceStatus.UNPAID: self.unpaid,
            InvoiceStatus.OVERDUE: self.overdue,
            InvoiceStatus.WRITTEN_OFF: self.written_off,
        }[status]

class IncidentReportResult(ReportResult):
    summary: IncidentReportSummary
    breakdown: List[IncidentReportItem] = []
