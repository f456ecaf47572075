#!/usr/bin/env -S uv run --script

import sys
import argparse
import datetime
import questionary
from bizledger.billing_controller import (
    build_services,
    config,
    generate_report,
    load_ledger,
    record_receipt,
)
from bizledger.modules.gst_calculator import format_currency
from bizledger.modules.models import PaymentMethod
from bizledger.modules.report_models import ALL, ReportKind
from bizledger.services.periods import PERIODS, period_from_name


def parse_day(value):
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO date (YYYY-MM-DD): {value}")


def resolve_period(args):
    if args.period:
        start, end = period_from_name(args.period, config)
    else:
        start, end = period_from_name("current-fy", config)
    return args.start or start, args.end or end


def handle_receipt_mode():
    _, _, ledger_service = build_services()

    invoice_id = questionary.text("Invoice id:").ask()
    if not invoice_id:
        return

    ledger = load_ledger(invoice_id, ledger_service)
    if ledger is None:
        return

    print(f"Invoice {ledger.invoice.code or invoice_id}: total {format_currency(ledger.total_incl_gst)}, "
          f"outstanding {format_currency(ledger.outstanding_incl_gst)} ({ledger.status().value})")
    if ledger.outstanding_incl_gst <= 0:
        print("Nothing outstanding on this invoice.")
        return

    action = questionary.select("Record:", choices=["Payment", "Write-off"]).ask()
    if not action:
        return
    write_off = action == "Write-off"

    amount = questionary.text("Amount (incl. GST):", default=f"{ledger.outstanding_incl_gst:.2f}").ask()
    receipt_date = questionary.text(
        "Date (YYYY-MM-DD):", default=datetime.date.today().strftime("%Y-%m-%d")
    ).ask()

    if not amount or not receipt_date:
        return

    method = PaymentMethod.EFT
    other = None
    if not write_off:
        choice = questionary.select("Payment method:", choices=[m.value for m in PaymentMethod]).ask()
        if not choice:
            return
        method = PaymentMethod(choice)
        if method is PaymentMethod.OTHER:
            other = questionary.text("Describe the payment method:").ask()
    notes = questionary.text("Notes (optional):").ask() or None

    try:
        day = datetime.date.fromisoformat(receipt_date)
    except ValueError:
        print(f"Not an ISO date: {receipt_date}")
        return

    if questionary.confirm(f"Record {action.lower()} of {amount}?").ask():
        record_receipt(
            ledger, ledger_service, amount, day,
            write_off=write_off,
            payment_method=method,
            other_payment_method=other,
            notes=notes,
        )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Generate billing reports and record invoice receipts.")
    parser.add_argument("kind", nargs="?", choices=[k.value for k in ReportKind], help="Report to generate")
    parser.add_argument("--start", type=parse_day, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=parse_day, help="End date (YYYY-MM-DD)")
    parser.add_argument("--period", choices=list(PERIODS), help="Preset period (default: current-fy)")
    parser.add_argument("--contact", default=ALL, help="Contact id (default: all)")
    parser.add_argument("--assignee", default=ALL, help="Assignee id (default: all)")
    parser.add_argument("--receipt", action="store_true", help="Record a payment or write-off against an invoice")

    args = parser.parse_args()

    if args.receipt:
        handle_receipt_mode()
        sys.exit(0)

    if not args.kind:
        parser.error("a report kind is required unless --receipt is given")

    start, end = resolve_period(args)
    result = generate_report(args.kind, start, end, contact=args.contact, assignee=args.assignee)
    sys.exit(0 if result is not None else 1)
