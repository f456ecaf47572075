import datetime
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from bizledger.modules.gst_calculator import GstCalculator, to_dec, CENT
from bizledger.modules.models import Shift, Expense, Receipt, Incident
from bizledger.modules.report_aggregators import ReportEngine, is_all
from bizledger.modules.report_models import (
    ALL,
    ReportKind,
    ReportRequest,
    ReportResult,
)
from bizledger.services.query_controller import iter_all
from bizledger.services.resources import INVOICES

logger = logging.getLogger(__name__)


class ReportService:
    """Fetches report rows, then aggregates them locally.

    Summaries are recomputed over the full fetched set; only the result of
    the most recent request per report kind is kept as `latest`.
    """

    def __init__(self, api, calculator: Optional[GstCalculator] = None,
                 today: Optional[datetime.date] = None):
        self.api = api
        # rows come back already restricted to the requested range by the server
        self.engine = ReportEngine(calculator or GstCalculator(), today, filter_dates=False)
        self._generations: Dict[ReportKind, int] = {}
        self._latest: Dict[ReportKind, ReportResult] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------
    def fetch_records(self, kind: ReportKind, request: ReportRequest) -> Tuple[Dict[str, List[Any]], Optional[dict]]:
        """Returns the typed records plus the server's own summary, if it sent one."""
        if kind is ReportKind.INVOICES:
            filters = {"from_date": request.start_date, "to_date": request.end_date}
            if not is_all(request.id_contact):
                filters["contact"] = request.id_contact
            invoices = list(iter_all(INVOICES, self.api, filters))
            return {"invoices": invoices}, None

        raw = self.api.generate_report(kind.value, request.payload())
        server_summary = raw.get("summary")

        if kind is ReportKind.SHIFTS:
            rows = raw.get("data", [])
            return {
                "shifts": [Shift.model_validate(r) for r in rows if not r.get("isExpense")],
                "expenses": [Expense.model_validate(r) for r in rows if r.get("isExpense")],
            }, server_summary
        if kind is ReportKind.KMS:
            return {
                "expenses": [
                    Expense.model_validate({"expenseType": "Kilometre", **r}) for r in raw.get("data", [])
                ]
            }, server_summary
        if kind is ReportKind.TAX:
            return {
                "receipts": [Receipt.model_validate(r) for r in raw.get("receipts", [])],
                "expenses": [Expense.model_validate(r) for r in raw.get("expenses", [])],
            }, server_summary
        if kind is ReportKind.INCIDENTS:
            return {"incidents": [Incident.model_validate(r) for r in raw.get("data", [])]}, server_summary
        raise ValueError(f"Unknown report kind: {kind}")

    def _check_server_summary(self, kind: ReportKind, result: ReportResult,
                              server: Optional[dict]) -> None:
        if not isinstance(server, dict):
            return
        ours = result.summary.model_dump(by_alias=True)
        for key, value in server.items():
            if key not in ours or value is None:
                continue
            try:
                drift = abs(to_dec(value) - to_dec(ours[key]))
            except (ValueError, ArithmeticError):
                continue
            if drift >= CENT:
                logger.warning(
                    f"{kind.value} report: server summary {key}={value} "
                    f"differs from recomputed {ours[key]}"
                )

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------
    def generate(self, kind: Any, request: Any) -> Optional[ReportResult]:
        """Returns the result, or None if a newer request for this kind superseded it."""
        report_kind = ReportKind(kind)
        req = self.engine.request_for(report_kind, request)

        with self._lock:
            token = self._generations.get(report_kind, 0) + 1
            self._generations[report_kind] = token

        records, server_summary = self.fetch_records(report_kind, req)
        result = self.engine.aggregate(report_kind, req, records)
        self._check_server_summary(report_kind, result, server_summary)

        with self._lock:
            if self._generations.get(report_kind) != token:
                logger.debug(f"Dropped superseded {report_kind.value} report (token {token})")
                return None
            self._latest[report_kind] = result
        logger.info(
            f"Generated {report_kind.value} report {req.start_date}..{req.end_date}: "
            f"{len(result.breakdown)} items"
        )
        return result

    def abandon(self, kind: Any) -> None:
        report_kind = ReportKind(kind)
        with self._lock:
            self._generations[report_kind] = self._generations.get(report_kind, 0) + 1

    def latest(self, kind: Any) -> Optional[ReportResult]:
        return self._latest.get(ReportKind(kind))

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------
    def shift_report(self, start_date, end_date, id_contact: str = ALL, id_assignee: str = ALL):
        return self.generate(ReportKind.SHIFTS, {
            "start_date": start_date, "end_date": end_date,
            "id_contact": id_contact, "id_assignee": id_assignee,
        })

    def kms_report(self, start_date, end_date, id_contact: str = ALL, id_assignee: str = ALL):
        return self.generate(ReportKind.KMS, {
            "start_date": start_date, "end_date": end_date,
            "id_contact": id_contact, "id_assignee": id_assignee,
        })

    def tax_report(self, start_date, end_date):
        return self.generate(ReportKind.TAX, {"start_date": start_date, "end_date": end_date})

    def invoice_report(self, start_date, end_date, id_contact: str = ALL):
        return self.generate(ReportKind.INVOICES, {
            "start_date": start_date, "end_date": end_date, "id_contact": id_contact,
        })

    def incident_report(self, start_date, end_date, id_contact: str = ALL):
        return self.generate(ReportKind.INCIDENTS, {
            "start_date": start_date, "end_date": end_date, "id_contact": id_contact,
        })
