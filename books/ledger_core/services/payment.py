import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Tuple
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..calculations import money, to_decimal
from ..choices import InvoiceStatus, InvoiceType, PaymentDirection, PaymentMethod
from ..exceptions import (InvalidTransitionError, NotFoundError,
                          OverAllocationError, OverpaymentError)
from ..models import Account, Invoice, Payment, PaymentAllocation
from ..models.invoice import OPEN_STATUSES
from .audit_helper import log_action
from .posting import post_payment

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class CapturedPayment:
    """What a card processor hands over after capturing funds."""
    amount: Decimal
    external_reference: str
    captured_at: datetime.datetime


def _positive_money(value, name):
    amount = money(to_decimal(value, name))
    if amount <= 0:
        raise ValidationError(f"{name} must be > 0")
    return amount


def get_deposit_account(ledger, account_id):
    if account_id is None:
        return None
    try:
        return Account.objects.get(ledger=ledger, pk=account_id)
    except Account.DoesNotExist:
        raise NotFoundError(f"No account {account_id} in ledger {ledger.slug}")


def _settle(invoice, amount):
    """Add `amount` to amount_paid and move the status to partial/paid."""
    invoice.amount_paid += amount
    invoice.save(update_fields=["amount_paid"])
    if invoice.amount_paid == invoice.total:
        invoice.transition_to(InvoiceStatus.PAID)
    else:
        invoice.transition_to(InvoiceStatus.PARTIAL)


def _check_room(invoice, amount):
    """Reject before writing: wrong type/status, or more than is due."""
    if invoice.amount_paid + amount > invoice.total:
        logger.warning(
            "Rejected overpayment of %s on %s (due %s)",
            amount, invoice.number, invoice.amount_due,
        )
        raise OverpaymentError(
            f"Payment of {amount} exceeds amount due {invoice.amount_due} "
            f"on {invoice.number}")
    if invoice.status not in OPEN_STATUSES:
        raise InvalidTransitionError(
            f"Cannot apply a payment to a {invoice.status} {invoice.invoice_type}")


# ----------------------------
# Payment-related workflows
# ----------------------------
def record_split_payment(ledger, amount, method, date=None,
                         allocations: Iterable[Tuple[int, Decimal]] = (),
                         deposit_account_id=None, external_reference="",
                         captured_at=None, metadata=None, actor="system") -> Payment:
    """
    Record one received payment and apply it across invoices.

    `allocations` is a list of (invoice_id, amount). Any unallocated
    remainder stays on the payment (it still clears AR).
    """
    amount = _positive_money(amount, "Payment amount")
    requested = {}
    for invoice_id, value in allocations:
        requested[int(invoice_id)] = (requested.get(int(invoice_id), ZERO)
                                      + _positive_money(value, "Allocated amount"))
    if not requested:
        raise ValidationError("A payment needs at least one allocation")
    allocated = sum(requested.values(), ZERO)
    if allocated > amount:
        raise OverAllocationError(
            f"Allocations {allocated} exceed payment amount {amount}")
    date = date or timezone.localdate()

    with transaction.atomic():
        # Lock every target invoice, always in pk order so two split
        # payments over the same invoices cannot deadlock
        invoices = {
            inv.pk: inv
            for inv in Invoice.objects.select_for_update()
            .filter(pk__in=requested).order_by("pk")
        }
        missing = sorted(set(requested) - set(invoices))
        if missing:
            raise NotFoundError(f"Invoices {missing} do not exist")

        client = None
        for pk in sorted(requested):
            inv = invoices[pk]
            if inv.ledger_id != ledger.pk:
                raise ValidationError(f"{inv.number} belongs to another ledger")
            if inv.invoice_type != InvoiceType.INVOICE or inv.is_template:
                raise ValidationError(f"{inv.number} is not a payable invoice")
            if client is not None and inv.client_id != client.pk:
                raise ValidationError("A split payment must belong to a single client")
            client = inv.client
            _check_room(inv, requested[pk])

        payment = Payment.objects.create(
            ledger=ledger,
            direction=PaymentDirection.RECEIVED,
            amount=amount,
            method=method,
            date=date,
            client=client,
            deposit_account=get_deposit_account(ledger, deposit_account_id),
            external_reference=external_reference,
            captured_at=captured_at,
            metadata=metadata or {},
        )
        for pk in sorted(requested):
            PaymentAllocation.objects.create(
                payment=payment, invoice=invoices[pk], amount=requested[pk])
            _settle(invoices[pk], requested[pk])

        payment.journal_entry = post_payment(payment, actor=actor)
        payment.save(update_fields=["journal_entry"])
        client.refresh_balance()

        log_action(
            action="apply_payment",
            instance=payment,
            actor=actor,
            changes={
                "amount": str(amount),
                "allocations": {invoices[pk].number: str(requested[pk])
                                for pk in sorted(requested)},
            },
        )

    logger.info(
        "Recorded payment %s of %s across %d invoice(s)",
        payment.pk, amount, len(requested),
    )
    return payment


def record_payment(invoice_id, amount, method=PaymentMethod.BANK_TRANSFER, date=None,
                   deposit_account_id=None, external_reference="",
                   captured_at=None, metadata=None, actor="system") -> Payment:
    """Apply a payment to a single invoice."""
    try:
        ledger = Invoice.objects.select_related("ledger").get(pk=invoice_id).ledger
    except Invoice.DoesNotExist:
        raise NotFoundError(f"Invoice {invoice_id} does not exist")
    return record_split_payment(
        ledger, amount, method, date,
        allocations=[(invoice_id, amount)],
        deposit_account_id=deposit_account_id,
        external_reference=external_reference,
        captured_at=captured_at,
        metadata=metadata,
        actor=actor,
    )


def record_captured_payment(invoice_id, captured: CapturedPayment,
                            method=PaymentMethod.CARD, actor="system") -> Payment:
    """
    Card-processor boundary. A capture already recorded under the same
    external reference is returned as is.
    """
    invoice = Invoice.objects.filter(pk=invoice_id).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} does not exist")
    existing = Payment.objects.filter(
        ledger=invoice.ledger, external_reference=captured.external_reference
    ).first()
    if existing is not None:
        if existing.amount != money(to_decimal(captured.amount, "amount")):
            raise ValidationError(
                f"Capture {captured.external_reference} was already recorded "
                f"with amount {existing.amount}")
        return existing
    return record_payment(
        invoice_id,
        captured.amount,
        method=method,
        date=timezone.localdate(captured.captured_at),
        external_reference=captured.external_reference,
        captured_at=captured.captured_at,
        actor=actor,
    )


def record_refund(credit_note_id, amount, method=PaymentMethod.BANK_TRANSFER, date=None,
                  deposit_account_id=None, actor="system") -> Payment:
    """Pay back (part of) an issued credit note."""
    amount = _positive_money(amount, "Refund amount")
    with transaction.atomic():
        try:
            note = Invoice.objects.select_for_update().get(pk=credit_note_id)
        except Invoice.DoesNotExist:
            raise NotFoundError(f"Credit note {credit_note_id} does not exist")
        if note.invoice_type != InvoiceType.CREDIT_NOTE:
            raise ValidationError(f"{note.number} is not a credit note")
        _check_room(note, amount)

        payment = Payment.objects.create(
            ledger=note.ledger,
            direction=PaymentDirection.REFUND,
            amount=amount,
            method=method,
            date=date or timezone.localdate(),
            client=note.client,
            credit_note=note,
            deposit_account=get_deposit_account(note.ledger, deposit_account_id),
        )
        _settle(note, amount)
        payment.journal_entry = post_payment(payment, actor=actor)
        payment.save(update_fields=["journal_entry"])
        note.client.refresh_balance()
        log_action(action="refund", instance=payment, actor=actor,
                   changes={"credit_note": note.number, "amount": str(amount)})
    logger.info("Refunded %s on credit note %s", amount, note.number)
    return payment


def apply_credit_note(credit_note_id, invoice_id, amount, date=None, actor="system") -> Payment:
    """
    Settle part of an invoice with an issued credit note of the same
    client. No cash moves and AR was already credited when the credit
    note was posted, so no journal entry is written.
    """
    amount = _positive_money(amount, "Credit amount")
    with transaction.atomic():
        locked = {
            inv.pk: inv
            for inv in Invoice.objects.select_for_update()
            .filter(pk__in=[credit_note_id, invoice_id]).order_by("pk")
        }
        note, invoice = locked.get(credit_note_id), locked.get(invoice_id)
        if note is None or invoice is None:
            raise NotFoundError("Credit note or invoice does not exist")
        if note.invoice_type != InvoiceType.CREDIT_NOTE:
            raise ValidationError(f"{note.number} is not a credit note")
        if invoice.invoice_type != InvoiceType.INVOICE:
            raise ValidationError(f"{invoice.number} is not an invoice")
        if note.client_id != invoice.client_id:
            raise ValidationError("Credit note and invoice must share a client")
        _check_room(note, amount)
        _check_room(invoice, amount)

        payment = Payment.objects.create(
            ledger=invoice.ledger,
            direction=PaymentDirection.RECEIVED,
            amount=amount,
            method=PaymentMethod.CREDIT_NOTE,
            date=date or timezone.localdate(),
            client=invoice.client,
            credit_note=note,
        )
        PaymentAllocation.objects.create(payment=payment, invoice=invoice, amount=amount)
        _settle(invoice, amount)
        _settle(note, amount)
        invoice.client.refresh_balance()
        log_action(action="apply_credit", instance=payment, actor=actor,
                   changes={"credit_note": note.number, "invoice": invoice.number,
                            "amount": str(amount)})
    return payment
