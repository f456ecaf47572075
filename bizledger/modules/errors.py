from decimal import Decimal
from typing import Optional


class BillingError(Exception):
    """Base class for every failure raised by the billing engine."""


class InvalidAmount(BillingError, ValueError):
    def __init__(self, value, reason: str = "must be a finite, non-negative amount"):
        self.value = value
        super().__init__(f"Invalid amount {value!r}: {reason}")


class AmountExceedsOutstanding(BillingError):
    def __init__(self, amount: Decimal, outstanding: Decimal, invoice_id: Optional[str] = None):
        self.amount = amount
        self.outstanding = outstanding
        self.invoice_id = invoice_id
        target = f" on invoice {invoice_id}" if invoice_id else ""
        super().__init__(
            f"Amount {amount:.2f} exceeds outstanding balance {outstanding:.2f}{target}"
        )


class InvalidDateRange(BillingError, ValueError):
    def __init__(self, start_date, end_date):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(f"Start date {start_date} is after end date {end_date}")


class NotFound(BillingError):
    def __init__(self, message: str, *, response=None):
        super().__init__(message)
        self.response = response


class TransportError(BillingError):
    """The underlying API request failed (network error or error status)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, response=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class Unauthorized(TransportError):
    """Missing or expired credential; session teardown happens outside the engine."""
