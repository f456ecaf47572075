import datetime
import logging
import threading
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from bizledger.modules.errors import AmountExceedsOutstanding, InvalidAmount, NotFound
from bizledger.modules.gst_calculator import GstCalculator, MonetaryLine, to_dec, round2
from bizledger.modules.models import (
    WireModel,
    Invoice,
    InvoiceStatus,
    Receipt,
    ReceiptType,
    PaymentMethod,
)

logger = logging.getLogger(__name__)


class ReceiptCreate(WireModel):
    receipt_type: ReceiptType
    id_invoice: str
    date: datetime.date
    amount_incl_gst: Decimal
    payment_method: Optional[PaymentMethod] = None
    other_payment_method: Optional[str] = None
    notes: Optional[str] = None

    def payload(self) -> Dict:
        data = self.model_dump(by_alias=True, mode='json', exclude_none=True)
        # money travels as a 2-decimal number
        data["amountInclGst"] = float(self.amount_incl_gst)
        return data


class InvoiceLedger:
    """Append-only payment/write-off history for one invoice.

    Balances and status are recomputed from the entries on every read.
    """

    def __init__(self, invoice: Invoice, calculator: Optional[GstCalculator] = None):
        self.invoice = invoice
        self.calculator = calculator or GstCalculator()

    @property
    def invoice_id(self) -> str:
        return self.invoice.id

    @property
    def entries(self) -> List[Receipt]:
        return list(self.invoice.receipts)

    @property
    def total_incl_gst(self) -> Decimal:
        return round2(self.invoice.total_incl_gst)

    @property
    def paid_incl_gst(self) -> Decimal:
        return self.invoice.paid_incl_gst

    @property
    def written_off_incl_gst(self) -> Decimal:
        return self.invoice.written_off_incl_gst

    @property
    def outstanding_incl_gst(self) -> Decimal:
        return self.invoice.outstanding_incl_gst

    def status(self, today: Optional[datetime.date] = None) -> InvoiceStatus:
        return self.invoice.status(today, self.calculator.epsilon)

    def check_amount(self, amount) -> Decimal:
        """Validates a payment/write-off amount against the current balance."""
        value = to_dec(amount)
        if not value.is_finite():
            raise InvalidAmount(amount, "must be finite")
        value = round2(value)
        if value <= 0:
            raise InvalidAmount(amount, "must be greater than zero")
        outstanding = self.outstanding_incl_gst
        if value > outstanding:
            raise AmountExceedsOutstanding(value, outstanding, self.invoice_id)
        return value

    def split(self, amount) -> MonetaryLine:
        """GST split of a receipt, following the invoice's own GST treatment."""
        gst_free = self.invoice.is_gst_free or (
            self.invoice.total_gst is not None and to_dec(self.invoice.total_gst) == 0
        )
        return self.calculator.from_incl_gst(amount, gst_free)

    def append(self, receipt: Receipt) -> Receipt:
        if any(r.id == receipt.id for r in self.invoice.receipts):
            raise ValueError(f"Receipt {receipt.id} is already on invoice {self.invoice_id}")
        self.check_amount(receipt.amount_incl_gst)
        if receipt.amount_excl_gst is None or receipt.amount_gst is None:
            line = self.split(receipt.amount_incl_gst)
            receipt = receipt.model_copy(update={
                "amount_excl_gst": line.amount_excl_gst,
                "amount_gst": line.amount_gst,
                "amount_incl_gst": line.amount_incl_gst,
            })
        self.invoice = self.invoice.model_copy(update={"receipts": self.invoice.receipts + [receipt]})
        return receipt

    def _local_entry(self, receipt_type: ReceiptType, amount, date, **fields) -> Receipt:
        value = self.check_amount(amount)
        line = self.split(value)
        receipt = Receipt(
            id=fields.pop("receipt_id", None) or uuid.uuid4().hex,
            receipt_type=receipt_type,
            date=date or datetime.date.today(),
            amount_excl_gst=line.amount_excl_gst,
            amount_gst=line.amount_gst,
            amount_incl_gst=line.amount_incl_gst,
            **fields,
        )
        return self.append(receipt)

    def record_payment(self, amount, date: Optional[datetime.date] = None,
                       payment_method: PaymentMethod = PaymentMethod.EFT,
                       other_payment_method: Optional[str] = None,
                       notes: Optional[str] = None,
                       receipt_id: Optional[str] = None) -> Receipt:
        return self._local_entry(
            ReceiptType.INVOICE_RECEIPT, amount, date,
            payment_method=payment_method,
            other_payment_method=other_payment_method,
            notes=notes,
            receipt_id=receipt_id,
        )

    def record_write_off(self, amount, date: Optional[datetime.date] = None,
                         notes: Optional[str] = None,
                         receipt_id: Optional[str] = None) -> Receipt:
        return self._local_entry(
            ReceiptType.INVOICE_WRITE_OFF, amount, date, notes=notes, receipt_id=receipt_id
        )

    def get_entry(self, receipt_id: str) -> Receipt:
        entry = next((r for r in self.invoice.receipts if r.id == receipt_id), None)
        if entry is None:
            raise NotFound(f"Receipt {receipt_id} not found on invoice {self.invoice_id}")
        return entry

    def remove_entry(self, receipt_id: str) -> Receipt:
        entry = self.get_entry(receipt_id)
        self.invoice = self.invoice.model_copy(
            update={"receipts": [r for r in self.invoice.receipts if r.id != receipt_id]}
        )
        return entry


class LedgerService:
    """Records payments and write-offs through the API, one writer per invoice at a time.

    Every caller shares one InvoiceLedger per invoice id, so an amount is always
    checked against the balance left by the previous writer.
    """

    def __init__(self, api, calculator: Optional[GstCalculator] = None):
        self.api = api
        self.calculator = calculator or GstCalculator()
        self._locks: Dict[str, threading.Lock] = {}
        self._ledgers: Dict[str, InvoiceLedger] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, invoice_id: str) -> threading.Lock:
        with self._locks_guard:
            if invoice_id not in self._locks:
                self._locks[invoice_id] = threading.Lock()
            return self._locks[invoice_id]

    def load(self, invoice_id: str) -> InvoiceLedger:
        """Fetches the invoice and returns the shared ledger for it, refreshed."""
        raw = self.api.get_invoice(invoice_id)
        if not raw:
            raise NotFound(f"Invoice {invoice_id} not found")
        invoice = Invoice.model_validate(raw)
        with self._lock_for(invoice.id):
            ledger = self._ledgers.get(invoice.id)
            if ledger is None:
                ledger = InvoiceLedger(invoice, self.calculator)
                self._ledgers[invoice.id] = ledger
            else:
                ledger.invoice = invoice
            return ledger

    def _shared(self, ledger: InvoiceLedger) -> InvoiceLedger:
        # caller holds the invoice lock
        shared = self._ledgers.setdefault(ledger.invoice_id, ledger)
        if shared is not ledger:
            ledger.invoice = shared.invoice
        return shared

    def _record(self, ledger: InvoiceLedger, receipt_type: ReceiptType, amount,
                date: Optional[datetime.date], **fields) -> Receipt:
        with self._lock_for(ledger.invoice_id):
            shared = self._shared(ledger)
            # validated before anything reaches the transport
            value = shared.check_amount(amount)
            dto = ReceiptCreate(
                receipt_type=receipt_type,
                id_invoice=shared.invoice_id,
                date=date or datetime.date.today(),
                amount_incl_gst=value,
                **fields,
            )
            raw = self.api.create_receipt(dto.payload())
            receipt = shared.append(Receipt.model_validate(raw))
            ledger.invoice = shared.invoice
            logger.info(
                f"Recorded {receipt_type.value} {receipt.amount_incl_gst:.2f} on invoice "
                f"{shared.invoice_id}; outstanding {shared.outstanding_incl_gst:.2f}"
            )
            return receipt

    def record_payment(self, ledger: InvoiceLedger, amount, date: Optional[datetime.date] = None,
                       payment_method: PaymentMethod = PaymentMethod.EFT,
                       other_payment_method: Optional[str] = None,
                       notes: Optional[str] = None) -> Receipt:
        payment_method = PaymentMethod(payment_method)
        if payment_method is not PaymentMethod.OTHER:
            other_payment_method = None
        return self._record(
            ledger, ReceiptType.INVOICE_RECEIPT, amount, date,
            payment_method=payment_method,
            other_payment_method=other_payment_method,
            notes=notes,
        )

    def record_write_off(self, ledger: InvoiceLedger, amount, date: Optional[datetime.date] = None,
                         notes: Optional[str] = None) -> Receipt:
        return self._record(ledger, ReceiptType.INVOICE_WRITE_OFF, amount, date, notes=notes)

    def delete_receipt(self, ledger: InvoiceLedger, receipt_id: str) -> Receipt:
        with self._lock_for(ledger.invoice_id):
            shared = self._shared(ledger)
            shared.get_entry(receipt_id)
            self.api.delete_receipt(receipt_id)
            removed = shared.remove_entry(receipt_id)
            ledger.invoice = shared.invoice
            logger.info(f"Removed receipt {receipt_id} from invoice {shared.invoice_id}")
            return removed
