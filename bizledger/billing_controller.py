import datetime
import logging
from typing import List, Optional

from bizledger.config import config, setup_logging
from bizledger.modules.errors import BillingError
from bizledger.modules.gst_calculator import GstCalculator, format_currency
from bizledger.modules.models import PaymentMethod
from bizledger.modules.report_models import ALL, ReportKind, ReportResult
from bizledger.services.api_client import ApiClient
from bizledger.services.ledger_service import InvoiceLedger, LedgerService
from bizledger.services.periods import format_duration
from bizledger.services.report_service import ReportService

# Setup Logging
setup_logging(config)
logger = logging.getLogger(__name__)


def build_services(api: Optional[ApiClient] = None):
    """Wires the API client, report service and ledger service from the loaded config."""
    api = api or ApiClient.from_config(config)
    calculator = GstCalculator.from_config(config)
    return api, ReportService(api, calculator), LedgerService(api, calculator)


def summary_lines(kind: ReportKind, result: ReportResult) -> List[str]:
    s = result.summary
    if kind is ReportKind.SHIFTS:
        return [
            f"Shifts:   {s.shifts_count} ({format_duration(s.shifts_duration)}) "
            f"{format_currency(s.shifts_total_incl_gst)} incl. GST",
            f"Expenses: {s.expenses_count} {format_currency(s.expenses_total_incl_gst)} incl. GST",
            f"Total:    {format_currency(s.total)}",
        ]
    if kind is ReportKind.KMS:
        return [
            f"Trips: {s.count}",
            f"Kms:   {s.kms}",
            f"Total: {format_currency(s.total_incl_gst)} "
            f"(excl. {format_currency(s.total_excl_gst)}, GST {format_currency(s.total_gst)})",
        ]
    if kind is ReportKind.TAX:
        return [
            f"Receipts: {format_currency(s.receipts_total_incl_gst)} (GST {format_currency(s.receipts_total_gst)})",
            f"Expenses: {format_currency(s.expenses_total_incl_gst)} (GST {format_currency(s.expenses_total_gst)})",
            f"Net:      {format_currency(s.net_total_incl_gst)} (GST {format_currency(s.net_total_gst)})",
        ]
    if kind is ReportKind.INVOICES:
        return [
            f"Paid:        {s.paid_count} {format_currency(s.paid)}",
            f"Unpaid:      {s.unpaid_count} {format_currency(s.unpaid)}",
            f"Overdue:     {s.overdue_count} {format_currency(s.overdue)}",
            f"Written off: {s.written_off_count} {format_currency(s.written_off)}",
        ]
    return [f"Incidents: {s.count}"]


def generate_report(kind, start: datetime.date, end: datetime.date,
                    contact: str = ALL, assignee: str = ALL,
                    reports: Optional[ReportService] = None) -> Optional[ReportResult]:
    """Runs one report and prints its summary. Failures are logged and reported, not raised."""
    report_kind = ReportKind(kind)
    try:
        if reports is None:
            _, reports, _ = build_services()
        logger.info(f"Generating {report_kind.value} report: {start} to {end}")
        result = reports.generate(report_kind, {
            "start_date": start,
            "end_date": end,
            "id_contact": contact,
            "id_assignee": assignee,
        })
        if result is None:
            return None

        print(f"{report_kind.value.capitalize()} report {start} to {end}")
        for line in summary_lines(report_kind, result):
            print(f"  {line}")
        print(f"  {len(result.breakdown)} items")
        return result

    except (BillingError, ValueError) as e:
        logger.error(f"Failed to generate {report_kind.value} report: {e}", exc_info=True)
        print(f"Failed to generate {report_kind.value} report: {e}")
        return None


def load_ledger(invoice_id: str, ledger_service: Optional[LedgerService] = None) -> Optional[InvoiceLedger]:
    try:
        if ledger_service is None:
            _, _, ledger_service = build_services()
        return ledger_service.load(invoice_id)
    except BillingError as e:
        logger.error(f"Failed to load invoice {invoice_id}: {e}", exc_info=True)
        print(f"Failed to load invoice {invoice_id}: {e}")
        return None


def record_receipt(ledger: InvoiceLedger, ledger_service: LedgerService, amount,
                   date: Optional[datetime.date] = None, write_off: bool = False,
                   payment_method=PaymentMethod.EFT, other_payment_method: Optional[str] = None,
                   notes: Optional[str] = None):
    """Records a payment or a write-off and prints the new balance."""
    label = "write-off" if write_off else "payment"
    try:
        if write_off:
            receipt = ledger_service.record_write_off(ledger, amount, date, notes=notes)
        else:
            receipt = ledger_service.record_payment(
                ledger, amount, date,
                payment_method=payment_method,
                other_payment_method=other_payment_method,
                notes=notes,
            )
    except (BillingError, ValueError) as e:
        logger.error(f"Failed to record {label} on invoice {ledger.invoice_id}: {e}", exc_info=True)
        print(f"Failed to record {label}: {e}")
        return None

    print(f"Recorded {label} {format_currency(receipt.amount_incl_gst)} on {ledger.invoice.code or ledger.invoice_id}")
    print(f"Outstanding: {format_currency(ledger.outstanding_incl_gst)} ({ledger.status().value})")
    return receipt
