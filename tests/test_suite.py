import unittest
import os
import sys
import datetime
import threading
import tempfile
import shutil
from pathlib import Path
from decimal import Decimal, ROUND_HALF_UP
from unittest.mock import MagicMock, patch

import requests

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bizledger.config import EngineConfig
from bizledger.modules.errors import (
    AmountExceedsOutstanding,
    InvalidAmount,
    InvalidDateRange,
    NotFound,
    TransportError,
    Unauthorized,
)
from bizledger.modules.gst_calculator import (
    GstCalculator,
    MonetaryLine,
    from_excl_gst,
    from_incl_gst,
    normalize,
    format_currency,
)
from bizledger.modules.models import (
    Expense,
    Incident,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    Receipt,
    Shift,
)
from bizledger.modules.report_aggregators import ReportEngine
from bizledger.modules.report_models import ALL, ReportKind
from bizledger.services.api_client import ApiClient
from bizledger.services.ledger_service import InvoiceLedger, LedgerService
from bizledger.services.periods import (
    current_fy,
    current_month,
    format_duration,
    last_fy,
    last_month,
    period_from_name,
)
from bizledger.services.query_controller import QueryController, iter_all
from bizledger.services.report_service import ReportService
from bizledger.services.resources import CONTACTS, EXPENSES, INVOICES, RATES, AGREEMENTS


D = Decimal


def make_invoice(total="110.00", due=datetime.date(2024, 7, 31), receipts=None, **extra):
    data = {
        "id": extra.pop("id", "inv-1"),
        "code": extra.pop("code", "INV-0001"),
        "date": extra.pop("date", "2024-07-01"),
        "dueDate": due.isoformat(),
        "totalInclGst": total,
        "receipts": receipts or [],
    }
    data.update(extra)
    return Invoice.model_validate(data)


def page(items, total=None):
    return {"data": items, "meta": {"total": len(items) if total is None else total, "pageNumber": 1, "pageSize": 100}}


class TestGstCalculator(unittest.TestCase):
    def test_from_incl_gst_splits_ten_percent(self):
        line = from_incl_gst(110)
        self.assertEqual(line.amount_excl_gst, D("100.00"))
        self.assertEqual(line.amount_gst, D("10.00"))
        self.assertEqual(line.amount_incl_gst, D("110.00"))

    def test_lines_always_balance(self):
        """excl + gst == incl at two decimals, whichever side we start from."""
        for amount in ["0.01", "0.05", "1", "19.99", "33.33", "1234.56", "99999.99"]:
            for line in (from_excl_gst(amount), from_incl_gst(amount)):
                self.assertEqual(line.amount_excl_gst + line.amount_gst, line.amount_incl_gst)
                self.assertEqual(line.amount_incl_gst, line.amount_incl_gst.quantize(D("0.01")))

    def test_gst_free_and_zero(self):
        free = from_excl_gst(100, is_gst_free=True)
        self.assertEqual(free.amount_gst, D("0.00"))
        self.assertEqual(free.amount_incl_gst, D("100.00"))

        zero = from_incl_gst(0)
        self.assertTrue(zero.is_gst_free)
        self.assertEqual(zero.amount_incl_gst, D("0.00"))

    def test_half_up_rounding(self):
        line = from_excl_gst("0.05")
        # 0.005 rounds up
        self.assertEqual(line.amount_gst, D("0.01"))

    def test_sub_cent_exclusive_amount_is_not_pre_rounded(self):
        """GST and the inclusive total come from the exact exclusive amount."""
        line = from_excl_gst(D("0.045"))
        self.assertEqual(line.amount_incl_gst, D("0.05"))
        self.assertEqual(line.amount_excl_gst + line.amount_gst, line.amount_incl_gst)

        for excl in ["0.045", "0.005", "12.345", "99.995", "1.004", "1234.5678"]:
            line = from_excl_gst(D(excl))
            expected = (D(excl) * D("1.1")).quantize(D("0.01"), rounding=ROUND_HALF_UP)
            self.assertEqual(line.amount_incl_gst, expected)
            self.assertEqual(line.amount_excl_gst + line.amount_gst, line.amount_incl_gst)

    def test_invalid_amounts(self):
        for bad in [-1, "abc", float("nan"), float("inf"), True]:
            with self.assertRaises(InvalidAmount):
                from_excl_gst(bad)
        with self.assertRaises(ValueError):
            from_incl_gst(-5)

    def test_normalize_keeps_two_known_fields(self):
        line = normalize(excl=100, gst=5)
        self.assertEqual(line.amount_gst, D("5.00"))
        self.assertEqual(line.amount_incl_gst, D("105.00"))

        line = normalize(excl=100, incl=110)
        self.assertEqual(line.amount_gst, D("10.00"))

        line = normalize(incl=110, gst=10)
        self.assertEqual(line.amount_excl_gst, D("100.00"))

    def test_normalize_single_or_no_field(self):
        self.assertEqual(normalize(incl=110).amount_excl_gst, D("100.00"))
        self.assertEqual(normalize(excl=100).amount_incl_gst, D("110.00"))
        self.assertEqual(normalize(gst=10).amount_excl_gst, D("100.00"))
        self.assertEqual(normalize(), MonetaryLine.zero())

    def test_normalize_rejects_inconsistent(self):
        with self.assertRaises(InvalidAmount):
            normalize(excl=100, incl=90)

    def test_configured_rate(self):
        calc = GstCalculator("0.15")
        self.assertEqual(calc.from_excl_gst(100).amount_incl_gst, D("115.00"))

    def test_format_currency(self):
        self.assertEqual(format_currency(D("1234.5")), "$1,234.50")


class TestInvoiceLedger(unittest.TestCase):
    def setUp(self):
        self.ledger = InvoiceLedger(make_invoice())

    def test_payment_then_write_off(self):
        """Paying part then writing off the rest leaves a written-off invoice with nothing owing."""
        self.ledger.record_payment(50, date=datetime.date(2024, 7, 10))
        self.assertEqual(self.ledger.outstanding_incl_gst, D("60.00"))
        self.assertEqual(self.ledger.status(datetime.date(2024, 7, 20)), InvoiceStatus.UNPAID)
        self.assertEqual(self.ledger.status(datetime.date(2024, 8, 1)), InvoiceStatus.OVERDUE)

        self.ledger.record_write_off(60, date=datetime.date(2024, 8, 2))
        self.assertEqual(self.ledger.outstanding_incl_gst, D("0.00"))
        self.assertEqual(self.ledger.written_off_incl_gst, D("60.00"))
        self.assertEqual(self.ledger.status(datetime.date(2024, 8, 2)), InvoiceStatus.WRITTEN_OFF)

    def test_full_payment_is_paid(self):
        self.ledger.record_payment("110")
        self.assertEqual(self.ledger.status(datetime.date(2030, 1, 1)), InvoiceStatus.PAID)

    def test_exceeding_amount_leaves_ledger_unchanged(self):
        self.ledger.record_payment(50)
        with self.assertRaises(AmountExceedsOutstanding):
            self.ledger.record_payment(60.01)
        self.assertEqual(len(self.ledger.entries), 1)
        self.assertEqual(self.ledger.outstanding_incl_gst, D("60.00"))

    def test_non_positive_amount(self):
        for bad in [0, -10, float("nan")]:
            with self.assertRaises(InvalidAmount):
                self.ledger.record_payment(bad)
        self.assertEqual(self.ledger.entries, [])

    def test_receipt_split_follows_invoice(self):
        receipt = self.ledger.record_payment(55)
        self.assertEqual(receipt.amount_excl_gst, D("50.00"))
        self.assertEqual(receipt.amount_gst, D("5.00"))

        free = InvoiceLedger(make_invoice(isGstFree=True))
        receipt = free.record_payment(55)
        self.assertEqual(receipt.amount_gst, D("0.00"))

    def test_remove_entry_restores_balance(self):
        self.ledger.record_payment(50, receipt_id="r1")
        self.ledger.remove_entry("r1")
        self.assertEqual(self.ledger.outstanding_incl_gst, D("110.00"))
        with self.assertRaises(NotFound):
            self.ledger.get_entry("r1")

    def test_server_status_is_ignored(self):
        invoice = make_invoice(invoiceStatus="Paid", outstandingInclGst=0)
        self.assertEqual(invoice.outstanding_incl_gst, D("110.00"))
        self.assertEqual(invoice.status(datetime.date(2024, 7, 1)), InvoiceStatus.UNPAID)

    def test_server_fields_left_on_callers_dict(self):
        raw = {
            "id": "inv-1", "date": "2024-07-01", "dueDate": "2024-07-31", "totalInclGst": 110,
            "invoiceStatus": "Paid", "outstandingInclGst": 0, "paidInclGst": 110,
        }
        before = dict(raw)
        Invoice.model_validate(raw)
        self.assertEqual(raw, before)

    def test_overpaid_invoice_is_paid(self):
        invoice = make_invoice(receipts=[{"id": "r1", "date": "2024-07-10", "amountInclGst": 120}])
        self.assertEqual(invoice.outstanding_incl_gst, D("-10.00"))
        self.assertEqual(invoice.status(datetime.date(2024, 7, 20)), InvoiceStatus.PAID)
        self.assertEqual(invoice.status(datetime.date(2024, 9, 1)), InvoiceStatus.PAID)

    def test_status_uses_configured_epsilon(self):
        invoice = make_invoice(receipts=[{"id": "r1", "date": "2024-07-10", "amountInclGst": "109.96"}])
        after_due = datetime.date(2024, 9, 1)
        self.assertEqual(InvoiceLedger(invoice).status(after_due), InvoiceStatus.OVERDUE)
        loose = InvoiceLedger(invoice, GstCalculator("0.10", "0.05"))
        self.assertEqual(loose.status(after_due), InvoiceStatus.PAID)


class TestLedgerService(unittest.TestCase):
    def setUp(self):
        self.api = MagicMock()
        self.service = LedgerService(self.api)
        self.ledger = InvoiceLedger(make_invoice())

    def test_validates_before_transport(self):
        with self.assertRaises(AmountExceedsOutstanding):
            self.service.record_payment(self.ledger, 500)
        with self.assertRaises(InvalidAmount):
            self.service.record_write_off(self.ledger, 0)
        self.api.create_receipt.assert_not_called()

    def test_record_payment_posts_receipt(self):
        self.api.create_receipt.return_value = {
            "id": "r1",
            "receiptType": "InvoiceReceipt",
            "date": "2024-07-10",
            "amountInclGst": 50.0,
            "paymentMethod": "EFT",
        }
        receipt = self.service.record_payment(
            self.ledger, "50", datetime.date(2024, 7, 10), payment_method="EFT", other_payment_method="ignored"
        )
        payload = self.api.create_receipt.call_args[0][0]
        self.assertEqual(payload["receiptType"], "InvoiceReceipt")
        self.assertEqual(payload["idInvoice"], "inv-1")
        self.assertEqual(payload["amountInclGst"], 50.0)
        self.assertEqual(payload["date"], "2024-07-10")
        self.assertNotIn("otherPaymentMethod", payload)
        self.assertEqual(receipt.amount_gst, D("4.55"))
        self.assertEqual(self.ledger.outstanding_incl_gst, D("60.00"))

    def test_write_off_has_no_payment_method(self):
        self.api.create_receipt.return_value = {
            "id": "w1", "receiptType": "InvoiceWriteOff", "date": "2024-08-01", "amountInclGst": 110,
        }
        self.service.record_write_off(self.ledger, 110, datetime.date(2024, 8, 1))
        payload = self.api.create_receipt.call_args[0][0]
        self.assertEqual(payload["receiptType"], "InvoiceWriteOff")
        self.assertNotIn("paymentMethod", payload)
        self.assertEqual(self.ledger.status(datetime.date(2024, 9, 1)), InvoiceStatus.WRITTEN_OFF)

    def test_transport_failure_leaves_ledger_unchanged(self):
        self.api.create_receipt.side_effect = TransportError("API error 500: boom", status_code=500)
        with self.assertRaises(TransportError):
            self.service.record_payment(self.ledger, 50)
        self.assertEqual(self.ledger.entries, [])

    def test_delete_receipt(self):
        self.ledger.record_payment(50, receipt_id="r1")
        self.service.delete_receipt(self.ledger, "r1")
        self.api.delete_receipt.assert_called_once_with("r1")
        self.assertEqual(self.ledger.outstanding_incl_gst, D("110.00"))

    def test_load_missing_invoice(self):
        self.api.get_invoice.return_value = {}
        with self.assertRaises(NotFound):
            self.service.load("nope")

    def echo_receipts(self):
        counter = iter(range(1, 100))

        def create(payload):
            return dict(payload, id=f"r{next(counter)}")

        self.api.create_receipt.side_effect = create

    def test_loads_share_one_ledger(self):
        self.api.get_invoice.return_value = {
            "id": "inv-1", "date": "2024-07-01", "dueDate": "2024-07-31", "totalInclGst": 110, "receipts": [],
        }
        self.echo_receipts()
        first = self.service.load("inv-1")
        second = self.service.load("inv-1")
        self.assertIs(first, second)

        self.service.record_payment(first, 100)
        with self.assertRaises(AmountExceedsOutstanding):
            self.service.record_payment(second, 100)
        self.assertEqual(self.api.create_receipt.call_count, 1)
        self.assertEqual(second.outstanding_incl_gst, D("10.00"))

    def test_separate_snapshots_checked_against_latest_balance(self):
        self.echo_receipts()
        first = InvoiceLedger(make_invoice())
        second = InvoiceLedger(make_invoice())

        self.service.record_payment(first, 100)
        with self.assertRaises(AmountExceedsOutstanding):
            self.service.record_write_off(second, 100)
        self.assertEqual(self.api.create_receipt.call_count, 1)
        # the stale snapshot now reflects the recorded payment
        self.assertEqual(second.outstanding_incl_gst, D("10.00"))

    def test_concurrent_payments_cannot_overpay(self):
        self.echo_receipts()
        ledgers = [InvoiceLedger(make_invoice()) for _ in range(2)]
        outcomes = []

        def pay(ledger):
            try:
                self.service.record_payment(ledger, 100)
                outcomes.append("ok")
            except AmountExceedsOutstanding:
                outcomes.append("rejected")

        threads = [threading.Thread(target=pay, args=(ledger,)) for ledger in ledgers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(outcomes), ["ok", "rejected"])
        self.assertEqual(self.api.create_receipt.call_count, 1)


class TestReportAggregators(unittest.TestCase):
    def setUp(self):
        self.engine = ReportEngine(today=datetime.date(2024, 8, 15))
        self.request = {"start_date": "2024-07-01", "end_date": "2024-07-31"}

    def shift_records(self):
        shifts = [
            Shift.model_validate({
                "id": "s1", "startDate": "2024-07-03T09:00:00", "duration": 3600,
                "totalInclGst": 100, "contact": {"id": "c1"}, "assignee": {"id": "a1"},
            }),
            Shift.model_validate({
                "id": "s2", "date": "2024-07-01", "duration": 1800,
                "totalInclGst": 50, "contact": {"id": "c2"}, "assignee": {"id": "a1"},
            }),
            Shift.model_validate({
                "id": "s3", "date": "2024-07-05", "duration": 5400,
                "totalInclGst": 150, "contact": {"id": "c1"}, "assignee": {"id": "a2"},
            }),
        ]
        expenses = [
            Expense.model_validate({"id": "e1", "date": "2024-07-02", "amountInclGst": 20, "contact": {"id": "c1"}}),
            Expense.model_validate({"id": "e2", "date": "2024-07-04", "amountInclGst": 30, "contact": {"id": "c2"}}),
        ]
        return {"shifts": shifts, "expenses": expenses}

    def test_shift_report_summary(self):
        result = self.engine.aggregate(ReportKind.SHIFTS, self.request, self.shift_records())
        s = result.summary
        self.assertEqual(s.shifts_count, 3)
        self.assertEqual(s.shifts_duration, 10800)
        self.assertEqual(s.shifts_total_incl_gst, D("300.00"))
        self.assertEqual(s.expenses_count, 2)
        self.assertEqual(s.expenses_total_incl_gst, D("50.00"))
        self.assertEqual(s.total, D("350.00"))
        self.assertEqual(len(result.breakdown), 5)
        self.assertEqual([i.id for i in result.breakdown], ["s2", "e1", "s1", "e2", "s3"])

    def test_summary_covers_full_set_when_paged(self):
        result = self.engine.aggregate(ReportKind.SHIFTS, self.request, self.shift_records())
        second = result.page(2, 2)
        self.assertEqual(len(second.breakdown), 2)
        self.assertEqual(second.summary.total, D("350.00"))
        with self.assertRaises(ValueError):
            result.page(0, 10)

    def test_filters_by_contact_and_assignee(self):
        request = dict(self.request, id_contact="c1", id_assignee="a1")
        result = self.engine.aggregate(ReportKind.SHIFTS, request, self.shift_records())
        self.assertEqual(result.summary.shifts_count, 1)
        self.assertEqual(result.summary.expenses_count, 0)

    def test_unknown_id_gives_empty_breakdown(self):
        request = dict(self.request, id_contact="nobody")
        result = self.engine.aggregate(ReportKind.SHIFTS, request, self.shift_records())
        self.assertEqual(result.breakdown, [])
        self.assertEqual(result.summary.total, D("0.00"))
        self.assertIsNone(result.find("s1"))

    def test_shift_date_is_local_to_its_zone(self):
        shift = Shift.model_validate({
            "id": "s1", "date": "2024-06-30T23:00:00.000Z", "tz": "Australia/Sydney", "totalInclGst": 100,
        })
        self.assertEqual(shift.date, datetime.date(2024, 7, 1))

        from_start = Shift.model_validate({"id": "s2", "startDate": "2024-07-31T15:30:00Z", "tz": "Australia/Perth"})
        self.assertEqual(from_start.date, datetime.date(2024, 7, 31))

        untimed = Shift.model_validate({"id": "s3", "date": "2024-06-30T23:00:00.000Z"})
        self.assertEqual(untimed.date, datetime.date(2024, 6, 30))

        with self.assertRaises(ValueError):
            Shift.model_validate({"id": "s4", "date": "2024-06-30T23:00:00Z", "tz": "Mars/Olympus"})

    def test_direct_aggregation_still_filters_dates(self):
        records = {"shifts": [
            Shift.model_validate({"id": "s1", "date": "2024-06-30", "totalInclGst": 100}),
            Shift.model_validate({"id": "s2", "date": "2024-07-31", "totalInclGst": 50}),
        ]}
        result = self.engine.aggregate(ReportKind.SHIFTS, self.request, records)
        self.assertEqual([i.id for i in result.breakdown], ["s2"])

    def test_invalid_range(self):
        with self.assertRaises(InvalidDateRange):
            self.engine.aggregate(ReportKind.SHIFTS, {"start_date": "2024-08-01", "end_date": "2024-07-01"}, {})

    def test_kms_report_derives_amount(self):
        expenses = [
            Expense.model_validate({
                "id": "k1", "date": "2024-07-10", "expenseType": "Kilometre",
                "kms": 100, "kmRateAmountExclGst": 0.85,
            }),
            Expense.model_validate({"id": "b1", "date": "2024-07-10", "expenseType": "Business", "amountInclGst": 10}),
        ]
        result = self.engine.aggregate(ReportKind.KMS, self.request, {"expenses": expenses})
        self.assertEqual(result.summary.count, 1)
        self.assertEqual(result.summary.kms, D("100"))
        self.assertEqual(result.summary.total_excl_gst, D("85.00"))
        self.assertEqual(result.summary.total_incl_gst, D("93.50"))

    def test_tax_report_excludes_write_offs(self):
        receipts = [
            Receipt.model_validate({"id": "r1", "date": "2024-07-05", "amountInclGst": 110}),
            Receipt.model_validate({"id": "w1", "receiptType": "InvoiceWriteOff", "date": "2024-07-06", "amountInclGst": 55}),
        ]
        expenses = [Expense.model_validate({"id": "e1", "date": "2024-07-07", "amountInclGst": 22})]
        result = self.engine.aggregate(ReportKind.TAX, self.request, {"receipts": receipts, "expenses": expenses})
        s = result.summary
        self.assertEqual(s.receipts_total_incl_gst, D("110.00"))
        self.assertEqual(s.receipts_total_gst, D("10.00"))
        self.assertEqual(s.expenses_total_gst, D("2.00"))
        self.assertEqual(s.net_total_gst, D("8.00"))
        self.assertEqual(s.net_total_incl_gst, D("88.00"))
        self.assertEqual([i.id for i in result.breakdown], ["r1", "e1"])

    def test_invoice_status_buckets(self):
        invoices = [
            make_invoice(id="paid", total="110", receipts=[
                {"id": "r1", "date": "2024-07-10", "amountInclGst": 110},
            ]),
            make_invoice(id="unpaid", total="220", due=datetime.date(2024, 8, 31)),
            make_invoice(id="overdue", total="55", due=datetime.date(2024, 7, 15)),
            make_invoice(id="written", total="33", receipts=[
                {"id": "w1", "receiptType": "InvoiceWriteOff", "date": "2024-07-20", "amountInclGst": 33},
            ]),
        ]
        result = self.engine.aggregate(ReportKind.INVOICES, self.request, {"invoices": invoices})
        s = result.summary
        self.assertEqual((s.paid, s.unpaid, s.overdue, s.written_off),
                         (D("110.00"), D("220.00"), D("55.00"), D("33.00")))
        self.assertEqual((s.paid_count, s.unpaid_count, s.overdue_count, s.written_off_count), (1, 1, 1, 1))
        self.assertEqual([i.id for i in result.bucket(InvoiceStatus.OVERDUE)], ["overdue"])

    def test_incident_count(self):
        incidents = [
            Incident.model_validate({"id": "i1", "date": "2024-07-02", "contact": {"id": "c1"}, "isNDISReportable": True}),
            Incident.model_validate({"id": "i2", "date": "2024-07-03", "contact": {"id": "c2"}}),
            Incident.model_validate({"id": "i3", "date": "2024-06-30", "contact": {"id": "c1"}}),
        ]
        result = self.engine.aggregate(ReportKind.INCIDENTS, dict(self.request, id_contact="c1"),
                                       {"incidents": incidents})
        self.assertEqual(result.summary.count, 1)
        self.assertTrue(result.breakdown[0].is_ndis_reportable)


class TestReportService(unittest.TestCase):
    def setUp(self):
        self.api = MagicMock()
        self.service = ReportService(self.api, today=datetime.date(2024, 8, 15))

    def shift_response(self, summary=None):
        return {
            "summary": summary or {},
            "data": [
                {"id": "s1", "date": "2024-07-01", "duration": 3600, "totalInclGst": 100, "isExpense": False},
                {"id": "e1", "date": "2024-07-02", "amountInclGst": 20, "isExpense": True},
            ],
        }

    def test_shift_report_posts_request(self):
        self.api.generate_report.return_value = self.shift_response()
        result = self.service.shift_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))
        self.api.generate_report.assert_called_once_with("shifts", {
            "startDate": "2024-07-01", "endDate": "2024-07-31", "idContact": ALL, "idAssignee": ALL,
        })
        self.assertEqual(result.summary.total, D("120.00"))
        self.assertIs(self.service.latest("shifts"), result)

    def test_invalid_range_before_request(self):
        with self.assertRaises(InvalidDateRange):
            self.service.shift_report(datetime.date(2024, 7, 31), datetime.date(2024, 7, 1))
        self.api.generate_report.assert_not_called()

    def test_server_summary_mismatch_is_logged(self):
        self.api.generate_report.return_value = self.shift_response({"shiftsCount": 7})
        with self.assertLogs("bizledger.services.report_service", level="WARNING") as logs:
            result = self.service.shift_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))
        self.assertEqual(result.summary.shifts_count, 1)
        self.assertIn("shiftsCount", logs.output[0])

    def test_superseded_report_is_dropped(self):
        def respond(kind, payload):
            # a newer request is issued while this one is in flight
            self.service.abandon(kind)
            return self.shift_response()

        self.api.generate_report.side_effect = respond
        result = self.service.shift_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))
        self.assertIsNone(result)
        self.assertIsNone(self.service.latest(ReportKind.SHIFTS))

    def test_invoice_report_reads_invoice_list(self):
        self.api.list_page.return_value = page([
            {"id": "inv-1", "date": "2024-07-01", "dueDate": "2024-07-31", "totalInclGst": 110, "receipts": []},
        ])
        result = self.service.invoice_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))
        self.api.generate_report.assert_not_called()
        path, params = self.api.list_page.call_args[0]
        self.assertEqual(path, "/invoices")
        self.assertEqual(params["from"], "2024-07-01")
        self.assertNotIn("contact", params)
        self.assertEqual(result.summary.overdue, D("110.00"))

    def test_server_range_is_trusted_for_utc_rows(self):
        self.api.generate_report.return_value = {"data": [
            {"id": "s1", "date": "2024-06-30T23:00:00.000Z", "tz": "Australia/Sydney", "totalInclGst": 100},
            {"id": "e1", "date": "2024-06-30T14:00:00.000Z", "amountInclGst": 20, "isExpense": True},
        ]}
        result = self.service.shift_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))
        self.assertEqual(result.summary.shifts_count, 1)
        self.assertEqual(result.summary.shifts_total_incl_gst, D("100.00"))
        self.assertEqual(result.summary.expenses_count, 1)
        self.assertEqual(result.find("s1").date, datetime.date(2024, 7, 1))

    def test_server_rows_still_filtered_by_contact(self):
        self.api.generate_report.return_value = {"data": [
            {"id": "s1", "date": "2024-07-02", "totalInclGst": 100, "contact": {"id": "c1"}},
            {"id": "s2", "date": "2024-07-03", "totalInclGst": 50, "contact": {"id": "c2"}},
        ]}
        result = self.service.shift_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31), id_contact="c1")
        self.assertEqual([i.id for i in result.breakdown], ["s1"])

    def test_transport_error_propagates(self):
        self.api.generate_report.side_effect = TransportError("API error 503: down", status_code=503)
        with self.assertRaises(TransportError):
            self.service.tax_report(datetime.date(2024, 7, 1), datetime.date(2024, 7, 31))


class TestQueryController(unittest.TestCase):
    def setUp(self):
        self.api = MagicMock()
        self.api.list_page.return_value = page([{"id": "c1", "fullName": "Ada"}])
        self.controller = QueryController(CONTACTS, self.api)

    def test_filter_counter(self):
        self.assertEqual(self.controller.filter_counter, 0)
        self.controller.set_filters(search="ada")
        self.assertEqual(self.controller.filter_counter, 1)
        self.controller.set_filters(type="Client")
        self.assertEqual(self.controller.filter_counter, 2)
        self.controller.clear_filters()
        self.assertEqual(self.controller.filter_counter, 0)
        self.assertEqual(self.controller.filters, CONTACTS.defaults)

    def test_all_contacts_sentinel_is_not_counted(self):
        api = MagicMock()
        api.list_page.return_value = page([])
        for resource in (INVOICES, EXPENSES):
            controller = QueryController(resource, api)
            self.assertEqual(controller.filter_counter, 0)
            controller.set_filters(contact="c1")
            self.assertEqual(controller.filter_counter, 1)
            self.assertEqual(api.list_page.call_args[0][1]["contact"], "c1")
            controller.set_filters(contact=ALL)
            self.assertEqual(controller.filter_counter, 0)
            self.assertNotIn("contact", api.list_page.call_args[0][1])

    def test_expense_type_default_is_not_counted(self):
        api = MagicMock()
        api.list_page.return_value = page([])
        controller = QueryController(EXPENSES, api)
        controller.set_filters(type="All types", contact=ALL)
        self.assertEqual(controller.filter_counter, 0)
        controller.set_filters(type="Business")
        self.assertEqual(controller.filter_counter, 1)

    def test_agreement_dates_count_separately(self):
        api = MagicMock()
        api.list_page.return_value = page([])
        controller = QueryController(AGREEMENTS, api)
        controller.set_filters(id_contact=ALL)
        self.assertEqual(controller.filter_counter, 0)
        controller.set_filters(start_date=datetime.date(2024, 7, 1))
        self.assertEqual(controller.filter_counter, 1)
        controller.set_filters(end_date=datetime.date(2024, 12, 31))
        self.assertEqual(controller.filter_counter, 2)
        controller.set_filters(id_contact="c1")
        self.assertEqual(controller.filter_counter, 3)
        controller.clear_filters()
        self.assertEqual(controller.filter_counter, 0)

    def test_unknown_filter(self):
        with self.assertRaises(KeyError):
            self.controller.set_filters(colour="blue")

    def test_reload_applies_data(self):
        state = self.controller.reload_list()
        self.assertEqual(state.total, 1)
        self.assertEqual(state.data[0].full_name, "Ada")
        self.assertFalse(state.loading)
        self.assertIsNone(state.error)

    def test_failure_keeps_last_data(self):
        self.controller.reload_list()
        self.api.list_page.side_effect = TransportError("API error 500: boom", status_code=500)
        with self.assertRaises(TransportError):
            self.controller.set_pagination(page_number=2)
        state = self.controller.state
        self.assertEqual(state.error, "API error 500: boom")
        self.assertEqual(len(state.data), 1)
        self.assertEqual(state.total, 1)
        self.assertFalse(state.loading)

    def test_stale_response_is_dropped(self):
        calls = []

        def respond(path, params):
            calls.append(params)
            if len(calls) == 1:
                # the user changes the filter before the first response lands
                self.controller.set_filters(search="grace")
                return page([{"id": "c1", "fullName": "Ada"}])
            return page([{"id": "c2", "fullName": "Grace"}])

        self.api.list_page.side_effect = respond
        self.controller.set_filters(search="ada")
        self.assertEqual([c.full_name for c in self.controller.state.data], ["Grace"])
        self.assertEqual(calls[1]["search"], "grace")

    def test_pagination_must_be_positive(self):
        with self.assertRaises(ValueError):
            self.controller.set_pagination(page_size=0)

    def test_iter_all_walks_pages(self):
        api = MagicMock()
        api.list_page.side_effect = [
            page([{"id": "c1"}, {"id": "c2"}], total=3),
            page([{"id": "c3"}], total=3),
        ]
        ids = [c.id for c in iter_all(CONTACTS, api, page_size=2)]
        self.assertEqual(ids, ["c1", "c2", "c3"])
        self.assertEqual(api.list_page.call_args[0][1]["pageNumber"], 2)


class TestResources(unittest.TestCase):
    def test_invoice_params(self):
        params = INVOICES.query_params(
            {"status": InvoiceStatus.WRITTEN_OFF, "contact": ALL, "from_date": datetime.date(2024, 7, 1)},
            {"page_number": 1, "page_size": 100},
        )
        self.assertEqual(params, {"pageNumber": 1, "pageSize": 100, "status": "Written-off", "from": "2024-07-01"})

    def test_defaults_omitted(self):
        params = AGREEMENTS.query_params(AGREEMENTS.defaults, {"page_number": 2, "page_size": 10})
        self.assertEqual(params, {"pageNumber": 2, "pageSize": 10})

    def test_false_flag_is_sent(self):
        params = RATES.query_params(RATES.defaults, {"page_number": 1, "page_size": 100})
        self.assertEqual(params["isArchived"], "false")


class TestApiClient(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = ApiClient("http://api.test", token="tok", session=self.session)

    def respond(self, status, body=None):
        response = MagicMock()
        response.status_code = status
        response.content = b"{}" if body is not None else b""
        response.text = ""
        response.headers = {"Content-Type": "application/json"}
        response.json.return_value = body
        self.session.request.return_value = response
        return response

    def test_success_returns_json(self):
        self.respond(200, {"id": "inv-1"})
        self.assertEqual(self.client.get_invoice("inv-1"), {"id": "inv-1"})
        method, url = self.session.request.call_args[0]
        self.assertEqual((method, url), ("GET", "http://api.test/invoices/inv-1"))
        headers = self.session.request.call_args[1]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer tok")

    def test_error_mapping(self):
        self.respond(401, {"message": "expired"})
        with self.assertRaises(Unauthorized):
            self.client.get("/contacts")

        self.respond(404, {"message": "Invoice not found"})
        with self.assertRaises(NotFound) as ctx:
            self.client.get_invoice("x")
        self.assertEqual(str(ctx.exception), "Invoice not found")

        self.respond(422, {"message": ["amount too large"]})
        with self.assertRaises(TransportError) as ctx:
            self.client.create_receipt({})
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertIn("amount too large", str(ctx.exception))

    def test_network_error(self):
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransportError):
            self.client.generate_report("tax", {})


class TestPeriods(unittest.TestCase):
    def test_fiscal_years(self):
        self.assertEqual(current_fy(datetime.date(2024, 10, 19)),
                         (datetime.date(2024, 7, 1), datetime.date(2025, 6, 30)))
        self.assertEqual(current_fy(datetime.date(2025, 3, 1)),
                         (datetime.date(2024, 7, 1), datetime.date(2025, 6, 30)))
        self.assertEqual(last_fy(datetime.date(2024, 7, 1)),
                         (datetime.date(2023, 7, 1), datetime.date(2024, 6, 30)))
        self.assertEqual(current_fy(datetime.date(2025, 3, 1), fy_start_month=4),
                         (datetime.date(2024, 4, 1), datetime.date(2025, 3, 31)))

    def test_months(self):
        self.assertEqual(current_month(datetime.date(2024, 12, 15)),
                         (datetime.date(2024, 12, 1), datetime.date(2024, 12, 31)))
        self.assertEqual(last_month(datetime.date(2025, 1, 15)),
                         (datetime.date(2024, 12, 1), datetime.date(2024, 12, 31)))
        self.assertEqual(current_month(datetime.date(2024, 2, 10))[1], datetime.date(2024, 2, 29))

    def test_period_from_name(self):
        start, end = period_from_name("last-month", today=datetime.date(2024, 3, 5))
        self.assertEqual((start, end), (datetime.date(2024, 2, 1), datetime.date(2024, 2, 29)))
        with self.assertRaises(ValueError):
            period_from_name("next-decade")

    def test_format_duration(self):
        self.assertEqual(format_duration(5400), "1h 30m")
        self.assertEqual(format_duration(7200), "2h")
        self.assertEqual(format_duration(2700), "45m")


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.temp_root = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_root)

    def test_defaults_without_rules_file(self):
        config = EngineConfig(root_dir=Path(self.temp_root))
        self.assertEqual(config.gst_rate, 0.10)
        self.assertEqual(config.business_rules.reporting.fy_start_month, 7)
        self.assertEqual(config.business_rules.lists.page_size, 100)

    def test_rules_file_and_env(self):
        os.makedirs(os.path.join(self.temp_root, "config"))
        with open(os.path.join(self.temp_root, "config", "business_rules.yaml"), "w") as f:
            f.write("tax_rules:\n  gst_rate: 0.15\n  money_epsilon: 0.02\napi:\n  base_url: http://yaml.test\n")
        with patch.dict(os.environ, {"BIZLEDGER_API_TOKEN": "secret"}):
            config = EngineConfig(root_dir=Path(self.temp_root))
            calculator = GstCalculator.from_config(config)
            self.assertEqual(calculator.rate, D("0.15"))
            self.assertEqual(calculator.epsilon, D("0.02"))
            self.assertEqual(config.api.token, "secret")
        self.assertEqual(config.api.base_url, "http://yaml.test")

    def test_shipped_rules(self):
        config = EngineConfig.load_default()
        self.assertEqual(config.business_rules.tax_rules.currency, "AUD")


class TestBillingController(unittest.TestCase):
    def test_generate_report_prints_summary(self):
        from bizledger.billing_controller import generate_report

        reports = MagicMock()
        reports.generate.return_value = ReportEngine().aggregate(
            ReportKind.INCIDENTS, {"start_date": "2024-07-01", "end_date": "2024-07-31"}, {}
        )
        with patch("builtins.print") as printed:
            result = generate_report("incidents", datetime.date(2024, 7, 1), datetime.date(2024, 7, 31),
                                     reports=reports)
        self.assertEqual(result.summary.count, 0)
        self.assertTrue(any("Incidents: 0" in str(c) for c in printed.call_args_list))

    def test_generate_report_failure_returns_none(self):
        from bizledger.billing_controller import generate_report

        reports = MagicMock()
        reports.generate.side_effect = TransportError("API error 500: boom", status_code=500)
        with patch("builtins.print"):
            result = generate_report("tax", datetime.date(2024, 7, 1), datetime.date(2024, 7, 31), reports=reports)
        self.assertIsNone(result)

    def test_record_receipt_reports_failure(self):
        from bizledger.billing_controller import record_receipt

        ledger = InvoiceLedger(make_invoice())
        with patch("builtins.print"):
            result = record_receipt(ledger, LedgerService(MagicMock()), 500,
                                    payment_method=PaymentMethod.CASH)
        self.assertIsNone(result)
        self.assertEqual(ledger.entries, [])


if __name__ == "__main__":
    unittest.main()
