from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Dict, Any, Optional, Iterable, Type
import datetime
import logging

from bizledger.modules.gst_calculator import GstCalculator, MonetaryLine, round2, ZERO
from bizledger.modules.models import (
    Shift,
    Expense,
    ExpenseType,
    Receipt,
    Invoice,
    Incident,
    InvoiceStatus,
    PersonRef,
    money_line,
)
from bizledger.modules.report_models import (
    ALL,
    ReportKind,
    ReportRequest,
    ShiftReportRequest,
    KmsReportRequest,
    TaxReportRequest,
    InvoiceReportRequest,
    IncidentReportRequest,
    ShiftReportItem,
    ShiftReportSummary,
    ShiftReportResult,
    KmsReportItem,
    KmsReportSummary,
    KmsReportResult,
    TaxReceiptItem,
    TaxExpenseItem,
    TaxReportSummary,
    TaxReportResult,
    InvoiceReportItem,
    InvoiceReportSummary,
    InvoiceReportResult,
    IncidentReportItem,
    IncidentReportSummary,
    IncidentReportResult,
)

logger = logging.getLogger(__name__)

# ==========================================
# HELPERS
# ==========================================


def is_all(value: Optional[str]) -> bool:
    return value is None or value == "" or value == ALL


def matches_person(ref: Optional[PersonRef], wanted: Optional[str]) -> bool:
    """Sentinel ids match everything; an unknown id simply matches nothing."""
    if is_all(wanted):
        return True
    return ref is not None and ref.id == wanted


def in_range(day: datetime.date, request: ReportRequest) -> bool:
    return request.start_date <= day <= request.end_date


def by_date(items: Iterable[Any]) -> List[Any]:
    # sorted() is stable, so records on the same day keep their fetch order
    return sorted(items, key=lambda item: item.date)


def line_fields(line: MonetaryLine) -> Dict[str, Any]:
    return {
        "amount_excl_gst": line.amount_excl_gst,
        "amount_gst": line.amount_gst,
        "amount_incl_gst": line.amount_incl_gst,
        "is_gst_free": line.is_gst_free,
    }


def sum_lines(lines: Iterable[MonetaryLine]) -> MonetaryLine:
    total = MonetaryLine.zero()
    for line in lines:
        total = total + line
    return total


# ==========================================
# AGGREGATOR PRIMITIVES
# ==========================================


class ReportAggregator(ABC):
    kind: ReportKind
    request_model: Type[ReportRequest] = ReportRequest

    def __init__(self, calculator: GstCalculator, today: Optional[datetime.date] = None,
                 filter_dates: bool = True):
        self.calculator = calculator
        self.today = today
        # False when the records were already restricted to the range by the server
        self.filter_dates = filter_dates

    def in_range(self, day: datetime.date, request: ReportRequest) -> bool:
        return not self.filter_dates or in_range(day, request)

    def coerce_request(self, request: Any) -> ReportRequest:
        if isinstance(request, self.request_model):
            return request
        if isinstance(request, ReportRequest):
            request = request.model_dump()
        return self.request_model.model_validate(request)

    def run(self, request: Any, records: Dict[str, List[Any]]):
        req = self.coerce_request(request)
        req.validate_range()
        return self.aggregate(req, records)

    @abstractmethod
    def aggregate(self, request: ReportRequest, records: Dict[str, List[Any]]):
        """
        Filters, normalizes, buckets and summarizes the records.
        `records` maps a record kind ("shifts", "expenses", ...) to model instances.
        """
        pass


class ShiftReportAggregator(ReportAggregator):
    kind = ReportKind.SHIFTS
    request_model = ShiftReportRequest

    def aggregate(self, request: ShiftReportRequest, records: Dict[str, List[Any]]) -> ShiftReportResult:
        shifts = [
            s for s in records.get("shifts", [])
            if self.in_range(s.date, request)
            and matches_person(s.contact, request.id_contact)
            and matches_person(s.assignee, request.id_assignee)
        ]
        expenses = [
            e for e in records.get("expenses", [])
            if self.in_range(e.date, request)
            and matches_person(e.contact, request.id_contact)
            and matches_person(e.assignee, request.id_assignee)
        ]

        items: List[ShiftReportItem] = []
        shift_lines: List[MonetaryLine] = []
        duration = 0
        for shift in shifts:
            line = money_line(shift, self.calculator, prefix="total")
            shift_lines.append(line)
            duration += shift.duration
            items.append(ShiftReportItem(
                id=shift.id,
                date=shift.date,
                is_expense=False,
                contact=shift.contact,
                assignee=shift.assignee,
                start_date=shift.start_date,
                end_date=shift.end_date,
                duration=shift.duration,
                shift_status=shift.shift_status,
                summary=shift.summary,
                category=shift.category,
                location=shift.location,
                notes=shift.notes,
                tz=shift.tz,
                **line_fields(line),
            ))

        expense_lines: List[MonetaryLine] = []
        for expense in expenses:
            line = money_line(expense, self.calculator)
            expense_lines.append(line)
            items.append(ShiftReportItem(
                id=expense.id,
                date=expense.date,
                is_expense=True,
                contact=expense.contact,
                assignee=expense.assignee,
                expense_type=expense.expense_type,
                category=expense.category,
                payee=expense.payee,
                description=expense.description,
                **line_fields(line),
            ))

        shift_total = sum_lines(shift_lines)
        expense_total = sum_lines(expense_lines)
        summary = ShiftReportSummary(
            shifts_count=len(shifts),
            shifts_duration=duration,
            shifts_total_excl_gst=shift_total.amount_excl_gst,
            shifts_total_gst=shift_total.amount_gst,
            shifts_total_incl_gst=shift_total.amount_incl_gst,
            expenses_count=len(expenses),
            expenses_total_excl_gst=expense_total.amount_excl_gst,
            expenses_total_gst=expense_total.amount_gst,
            expenses_total_incl_gst=expense_total.amount_incl_gst,
            total=shift_total.amount_incl_gst + expense_total.amount_incl_gst,
        )
        return ShiftReportResult(summary=summary, breakdown=by_date(items))


class KmsReportAggregator(ReportAggregator):
    kind = ReportKind.KMS
    request_model = KmsReportRequest

    def kilometre_line(self, expense: Expense) -> MonetaryLine:
        has_amount = any(
            v is not None for v in (expense.amount_excl_gst, expense.amount_gst, expense.amount_incl_gst)
        )
        if has_amount or expense.km_rate_amount_excl_gst is None:
            return money_line(expense, self.calculator)
        excl = round2((expense.kms or ZERO) * expense.km_rate_amount_excl_gst)
        return self.calculator.from_excl_gst(excl, expense.is_gst_free)

    def aggregate(self, request: KmsReportRequest, records: Dict[str, List[Any]]) -> KmsReportResult:
        expenses = [
            e for e in records.get("expenses", [])
            if e.expense_type is ExpenseType.KILOMETRE
            and self.in_range(e.date, request)
            and matches_person(e.contact, request.id_contact)
            and matches_person(e.assignee, request.id_assignee)
        ]

        items = []
        lines = []
        kms = ZERO
        for expense in expenses:
            line = self.kilometre_line(expense)
            lines.append(line)
            kms += expense.kms or ZERO
            items.append(KmsReportItem(
                id=expense.id,
                date=expense.date,
                contact=expense.contact,
                assignee=expense.assignee,
                payee=expense.payee,
                description=expense.description,
                kms=expense.kms or ZERO,
                km_rate_amount_excl_gst=expense.km_rate_amount_excl_gst,
                **line_fields(line),
            ))

        total = sum_lines(lines)
        summary = KmsReportSummary(
            count=len(expenses),
            kms=kms,
            total_excl_gst=total.amount_excl_gst,
            total_gst=total.amount_gst,
            total_incl_gst=total.amount_incl_gst,
        )
        return KmsReportResult(summary=summary, breakdown=by_date(items))


class TaxReportAggregator(ReportAggregator):
    kind = ReportKind.TAX
    request_model = TaxReportRequest

    def aggregate(self, request: TaxReportRequest, records: Dict[str, List[Any]]) -> TaxReportResult:
        # Write-offs are forgiven debt, not income
        receipts = [
            r for r in records.get("receipts", [])
            if not r.is_write_off and self.in_range(r.date, request)
        ]
        expenses = [e for e in records.get("expenses", []) if self.in_range(e.date, request)]

        receipt_items, receipt_lines = [], []
        for receipt in receipts:
            line = money_line(receipt, self.calculator)
            receipt_lines.append(line)
            receipt_items.append(TaxReceiptItem(
                id=receipt.id, date=receipt.date, invoice=receipt.invoice, **line_fields(line)
            ))

        expense_items, expense_lines = [], []
        for expense in expenses:
            line = money_line(expense, self.calculator)
            expense_lines.append(line)
            expense_items.append(TaxExpenseItem(
                id=expense.id,
                date=expense.date,
                contact=expense.contact,
                expense_type=expense.expense_type,
                category=expense.category,
                payee=expense.payee,
                description=expense.description,
                **line_fields(line),
            ))

        rec = sum_lines(receipt_lines)
        exp = sum_lines(expense_lines)
        summary = TaxReportSummary(
            receipts_total_excl_gst=rec.amount_excl_gst,
            receipts_total_gst=rec.amount_gst,
            receipts_total_incl_gst=rec.amount_incl_gst,
            expenses_total_excl_gst=exp.amount_excl_gst,
            expenses_total_gst=exp.amount_gst,
            expenses_total_incl_gst=exp.amount_incl_gst,
            net_total_excl_gst=rec.amount_excl_gst - exp.amount_excl_gst,
            net_total_gst=rec.amount_gst - exp.amount_gst,
            net_total_incl_gst=rec.amount_incl_gst - exp.amount_incl_gst,
        )
        receipt_items = by_date(receipt_items)
        expense_items = by_date(expense_items)
        return TaxReportResult(
            summary=summary,
            receipts=receipt_items,
            expenses=expense_items,
            breakdown=by_date(receipt_items + expense_items),
        )


class InvoiceStatusReportAggregator(ReportAggregator):
    kind = ReportKind.INVOICES
    request_model = InvoiceReportRequest

    def aggregate(self, request: InvoiceReportRequest, records: Dict[str, List[Any]]) -> InvoiceReportResult:
        today = self.today or datetime.date.today()
        invoices = [
            inv for inv in records.get("invoices", [])
            if self.in_range(inv.date, request) and matches_person(inv.contact, request.id_contact)
        ]

        buckets: Dict[InvoiceStatus, List[InvoiceReportItem]] = {status: [] for status in InvoiceStatus}
        items = []
        for invoice in invoices:
            total = money_line(invoice, self.calculator, prefix="total")
            item = InvoiceReportItem(
                id=invoice.id,
                code=invoice.code,
                date=invoice.date,
                due_date=invoice.due_date,
                contact=invoice.contact,
                status=invoice.status(today, self.calculator.epsilon),
                total_excl_gst=total.amount_excl_gst,
                total_gst=total.amount_gst,
                total_incl_gst=total.amount_incl_gst,
                outstanding_incl_gst=invoice.outstanding_incl_gst,
            )
            buckets[item.status].append(item)
            items.append(item)

        def bucket_total(status: InvoiceStatus) -> Decimal:
            return sum((i.total_incl_gst for i in buckets[status]), ZERO)

        summary = InvoiceReportSummary(
            paid=bucket_total(InvoiceStatus.PAID),
            unpaid=bucket_total(InvoiceStatus.UNPAID),
            overdue=bucket_total(InvoiceStatus.OVERDUE),
            written_off=bucket_total(InvoiceStatus.WRITTEN_OFF),
            paid_count=len(buckets[InvoiceStatus.PAID]),
            unpaid_count=len(buckets[InvoiceStatus.UNPAID]),
            overdue_count=len(buckets[InvoiceStatus.OVERDUE]),
            written_off_count=len(buckets[InvoiceStatus.WRITTEN_OFF]),
        )
        return InvoiceReportResult(
            summary=summary,
            breakdown=by_date(items),
            paid=by_date(buckets[InvoiceStatus.PAID]),
            unpaid=by_date(buckets[InvoiceStatus.UNPAID]),
            overdue=by_date(buckets[InvoiceStatus.OVERDUE]),
            written_off=by_date(buckets[InvoiceStatus.WRITTEN_OFF]),
        )


class IncidentReportAggregator(ReportAggregator):
    kind = ReportKind.INCIDENTS
    request_model = IncidentReportRequest

    def aggregate(self, request: IncidentReportRequest, records: Dict[str, List[Any]]) -> IncidentReportResult:
        incidents = [
            i for i in records.get("incidents", [])
            if self.in_range(i.date, request) and matches_person(i.contact, request.id_contact)
        ]
        items = [
            IncidentReportItem(
                id=i.id,
                code=i.code,
                date=i.date,
                contact=i.contact,
                location=i.location,
                description=i.description,
                reported_by=i.reported_by,
                was_participant_injured=i.was_participant_injured,
                is_ndis_reportable=i.is_ndis_reportable,
            )
            for i in incidents
        ]
        return IncidentReportResult(
            summary=IncidentReportSummary(count=len(items)),
            breakdown=by_date(items),
        )


# ==========================================
# REPORT ENGINE
# ==========================================


AGGREGATORS: Dict[ReportKind, Type[ReportAggregator]] = {
    ReportKind.SHIFTS: ShiftReportAggregator,
    ReportKind.KMS: KmsReportAggregator,
    ReportKind.TAX: TaxReportAggregator,
    ReportKind.INVOICES: InvoiceStatusReportAggregator,
    ReportKind.INCIDENTS: IncidentReportAggregator,
}


class ReportEngine:
    def __init__(self, calculator: Optional[GstCalculator] = None, today: Optional[datetime.date] = None,
                 filter_dates: bool = True):
        self.calculator = calculator or GstCalculator()
        self.today = today
        self.filter_dates = filter_dates

    def aggregator(self, kind: Any) -> ReportAggregator:
        try:
            report_kind = ReportKind(kind)
        except ValueError:
            raise ValueError(f"Unknown report kind: {kind}")
        return AGGREGATORS[report_kind](self.calculator, self.today, self.filter_dates)

    def request_for(self, kind: Any, request: Any) -> ReportRequest:
        """Validates the request (including the date range) without aggregating."""
        req = self.aggregator(kind).coerce_request(request)
        req.validate_range()
        return req

    def aggregate(self, kind: Any, request: Any, records: Dict[str, List[Any]]):
        result = self.aggregator(kind).run(request, records)
        logger.debug(f"Aggregated {kind} report: {len(result.breakdown)} breakdown items")
        return result
