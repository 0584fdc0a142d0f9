import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple
from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.utils import timezone

from ..calculations import (Discount, InvoiceTotals, LineInput,
                            calculate_invoice, money, to_decimal)
from ..choices import DiscountType, InvoiceStatus, InvoiceType
from ..exceptions import DataIntegrityError, InvalidTransitionError, NotFoundError
from ..models import Account, Client, Invoice, InvoiceItem, JournalEntry
from ..models.invoice import default_due_date
from .audit_helper import log_action
from .posting import post_credit_note, post_invoice, reverse_entry
from .tax import resolve_percentage, resolve_rate

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Derived item fields written back by Invoice.recalc_totals()
ITEM_TOTAL_FIELDS = ["line_subtotal", "discount_amount", "net_amount",
                     "tax_amount", "line_total"]
INVOICE_TOTAL_FIELDS = ["subtotal", "discount_amount", "tax_amount",
                        "shipping_amount", "total"]


# ----------------------------
# Delivery boundary
# ----------------------------
@dataclass(frozen=True)
class RenderableItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class RenderableInvoice:
    """Everything a PDF/email renderer needs, and nothing else."""
    number: str
    invoice_type: str
    client: str
    client_email: Optional[str]
    items: Tuple[RenderableItem, ...]
    totals: Dict[str, Decimal]
    issue_date: datetime.date
    due_date: Optional[datetime.date]
    status: str
    notes: str


@dataclass(frozen=True)
class DeliveryConfirmation:
    delivered_at: datetime.datetime


# ----------------------------
# Helpers
# ----------------------------
def _get_invoice(invoice_id, lock=False) -> Invoice:
    qs = Invoice.objects.select_for_update() if lock else Invoice.objects
    try:
        return qs.get(pk=invoice_id)
    except Invoice.DoesNotExist:
        raise NotFoundError(f"Invoice {invoice_id} does not exist")


def _get_client(ledger, client_id) -> Client:
    try:
        return Client.objects.get(ledger=ledger, pk=client_id)
    except Client.DoesNotExist:
        raise NotFoundError(f"No client {client_id} in ledger {ledger.slug}")


def _get_revenue_account(ledger, account_id):
    if account_id is None:
        return None
    try:
        return Account.objects.get(ledger=ledger, pk=account_id)
    except Account.DoesNotExist:
        raise NotFoundError(f"No account {account_id} in ledger {ledger.slug}")


def _discount(kind, value):
    value = to_decimal(value if value is not None else "0", "discount")
    if not kind or value == 0:
        return None
    return Discount(kind, value)


def _line_input(ledger, data) -> LineInput:
    return LineInput(
        quantity=to_decimal(data.get("quantity", "1"), "quantity"),
        unit_price=to_decimal(data.get("unit_price"), "unit_price"),
        discount=_discount(data.get("discount_type"), data.get("discount_value")),
        tax_percentage=resolve_percentage(ledger, data.get("tax_rate_id")),
    )


def _build_item(invoice, data, position) -> InvoiceItem:
    ledger = invoice.ledger
    return InvoiceItem(
        invoice=invoice,
        position=position,
        description=data.get("description", ""),
        quantity=to_decimal(data.get("quantity", "1"), "quantity"),
        unit_price=to_decimal(data.get("unit_price"), "unit_price"),
        discount_type=data.get("discount_type") or "",
        discount_value=to_decimal(data.get("discount_value") or "0", "discount"),
        tax_rate=resolve_rate(ledger, data.get("tax_rate_id")),
        account=_get_revenue_account(ledger, data.get("account_id")),
    )


def _apply_totals(invoice):
    """Persist derived item and invoice totals (draft invoices only)."""
    items = invoice.recalc_totals()
    InvoiceItem.objects.bulk_update(items, ITEM_TOTAL_FIELDS)
    invoice.save(update_fields=INVOICE_TOTAL_FIELDS)
    return invoice


def clone_items(source, target):
    """Copy the priced items of `source` onto draft `target`."""
    for item in source.items.order_by("position", "pk"):
        InvoiceItem(
            invoice=target,
            position=item.position,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_type=item.discount_type,
            discount_value=item.discount_value,
            tax_rate=item.tax_rate,
            account=item.account,
        ).save()


def copy_invoice(source, invoice_type, issue_date, due_date=None, **extra) -> Invoice:
    """Draft copy of `source` (items, discount, tax, shipping, terms)."""
    if due_date is None and source.due_date is not None:
        # keep the template's terms offset
        due_date = issue_date + (source.due_date - source.issue_date)
    invoice = Invoice(
        ledger=source.ledger,
        client=source.client,
        invoice_type=invoice_type,
        issue_date=issue_date,
        due_date=due_date or default_due_date(issue_date, source.client),
        discount_type=source.discount_type,
        discount_value=source.discount_value,
        tax_rate=source.tax_rate,
        shipping_amount=source.shipping_amount,
        notes=source.notes,
        metadata=source.get_metadata(),
        **extra,
    )
    invoice.save()
    clone_items(source, invoice)
    return _apply_totals(invoice)


# ----------------------------
# Invoice workflows
# ----------------------------
def quote_totals(ledger, items: Iterable[dict], discount_type=DiscountType.PERCENTAGE,
                 discount_value="0", tax_rate_id=None, shipping="0") -> InvoiceTotals:
    """Preview totals for unsaved input; nothing is written."""
    return calculate_invoice(
        [_line_input(ledger, data) for data in items],
        discount=_discount(discount_type, discount_value),
        tax_percentage=resolve_percentage(ledger, tax_rate_id),
        shipping=to_decimal(shipping if shipping is not None else "0", "shipping"),
    )


def create_invoice(ledger, client_id, issue_date, items: Iterable[dict] = (),
                   invoice_type=InvoiceType.INVOICE, due_date=None,
                   discount_type=DiscountType.PERCENTAGE, discount_value="0",
                   tax_rate_id=None, shipping="0", notes="", metadata=None,
                   is_template=False, issue=False, actor="system") -> Invoice:
    """
    Create a draft invoice with its items and stored totals, and
    optionally issue it (post the journal) in the same transaction.
    """
    items = list(items)
    # Validates every amount before anything is written
    quote_totals(ledger, items, discount_type, discount_value, tax_rate_id, shipping)

    with transaction.atomic():
        client = _get_client(ledger, client_id)
        invoice = Invoice(
            ledger=ledger,
            client=client,
            invoice_type=invoice_type,
            issue_date=issue_date,
            due_date=due_date or default_due_date(issue_date, client),
            discount_type=discount_type,
            discount_value=to_decimal(discount_value or "0", "discount"),
            tax_rate=resolve_rate(ledger, tax_rate_id),
            shipping_amount=money(shipping or "0"),
            notes=notes,
            metadata=metadata or {},
            is_template=is_template,
        )
        invoice.save()
        for position, data in enumerate(items):
            _build_item(invoice, data, position).save()
        _apply_totals(invoice)
        log_action(action="create", instance=invoice, actor=actor,
                   changes={"total": str(invoice.total)})
        if issue:
            invoice = issue_invoice(invoice.pk, actor=actor)
    logger.info("Created %s %s for %s (total %s)",
                invoice.invoice_type, invoice.number, client.name, invoice.total)
    return invoice


def add_item(invoice_id, actor="system", **data) -> InvoiceItem:
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        if not invoice.is_draft:
            raise ValidationError("Items can only be added to draft invoices")
        # validate the item on its own before writing it
        calculate_invoice([_line_input(invoice.ledger, data)])
        position = (invoice.items.aggregate(m=models.Max("position"))["m"] or 0) + 1
        item = _build_item(invoice, data, position)
        item.save()
        _apply_totals(invoice)
        log_action(action="add_item", instance=invoice, actor=actor,
                   changes={"item": item.pk, "total": str(invoice.total)})
    item.refresh_from_db()
    return item


def set_discount(invoice_id, discount_type, discount_value, actor="system") -> Invoice:
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        if not invoice.is_draft:
            raise ValidationError("Discounts can only change on draft invoices")
        value = to_decimal(discount_value, "discount")
        # Discount.amount_off rejects negatives and unknown types
        Discount(discount_type, value).amount_off(invoice.subtotal)
        invoice.discount_type = discount_type
        invoice.discount_value = value
        invoice.save(update_fields=["discount_type", "discount_value"])
        _apply_totals(invoice)
        log_action(action="set_discount", instance=invoice, actor=actor,
                   changes={"discount_type": discount_type, "discount_value": str(value)})
    return invoice


def recalculate_invoice(invoice_id) -> InvoiceTotals:
    """Re-derive totals from the persisted items (no write)."""
    invoice = _get_invoice(invoice_id)
    return invoice.calculate()


def verify_invoice_totals(invoice_id) -> InvoiceTotals:
    """Raise DataIntegrityError when stored totals no longer foot."""
    invoice = _get_invoice(invoice_id)
    totals = invoice.calculate()
    stored = (invoice.subtotal, invoice.discount_amount, invoice.tax_amount, invoice.total)
    derived = (totals.subtotal, totals.discount_amount, totals.tax_amount, totals.total)
    if stored != derived:
        raise DataIntegrityError(
            f"Invoice {invoice.number}: stored totals {stored} != derived {derived}")
    return totals


def issue_invoice(invoice_id, actor="system") -> Invoice:
    """draft → sent, posting the journal entry in the same transaction."""
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        if invoice.is_template:
            raise ValidationError("Templates are never issued")
        if not invoice.items.exists():
            raise ValidationError(f"{invoice.number} has no items")
        if invoice.is_draft:
            # freeze the totals that get posted
            _apply_totals(invoice)
        invoice.transition_to(InvoiceStatus.SENT)

        entry = None
        if invoice.invoice_type == InvoiceType.INVOICE:
            entry = post_invoice(invoice, actor=actor)
        elif invoice.invoice_type == InvoiceType.CREDIT_NOTE:
            entry = post_credit_note(invoice, actor=actor)
        # estimates are never posted

        invoice.client.refresh_balance()
        log_action(action="issue", instance=invoice, actor=actor,
                   changes={"journal": entry.number if entry else None,
                            "total": str(invoice.total)})
    logger.info("Issued %s (total %s)", invoice.number, invoice.total)
    return invoice


def render_invoice(invoice_id, as_of=None) -> RenderableInvoice:
    invoice = _get_invoice(invoice_id)
    if invoice.is_draft:
        # drafts are previewed with fresh totals
        totals = invoice.calculate()
        subtotal, discount, tax, total = (totals.subtotal, totals.discount_amount,
                                          totals.tax_amount, totals.total)
    else:
        subtotal, discount, tax, total = (invoice.subtotal, invoice.discount_amount,
                                          invoice.tax_amount, invoice.total)
    items = tuple(
        RenderableItem(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_amount=item.discount_amount,
            tax_amount=item.tax_amount,
            line_total=item.line_total,
        )
        for item in invoice.items.order_by("position", "pk")
    )
    return RenderableInvoice(
        number=invoice.number,
        invoice_type=invoice.invoice_type,
        client=invoice.client.name,
        client_email=invoice.client.email,
        items=items,
        totals={
            "subtotal": subtotal,
            "discount": discount,
            "tax": tax,
            "shipping": invoice.shipping_amount,
            "total": total,
            "amount_paid": invoice.amount_paid,
            "amount_due": total - invoice.amount_paid,
        },
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        status=invoice.effective_status(as_of),
        notes=invoice.notes,
    )


def record_delivery(invoice_id, confirmation: DeliveryConfirmation, actor="system") -> Invoice:
    """Store the collaborator's delivery timestamp as sent_at."""
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            raise ValidationError(
                f"Cannot record delivery of a {invoice.status} invoice")
        invoice.sent_at = confirmation.delivered_at
        invoice.save(update_fields=["sent_at"])
        log_action(action="deliver", instance=invoice, actor=actor,
                   changes={"sent_at": confirmation.delivered_at.isoformat()})
    return invoice


def mark_viewed(invoice_id, actor="system") -> Invoice:
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        invoice.transition_to(InvoiceStatus.VIEWED)
        log_action(action="view", instance=invoice, actor=actor)
    return invoice


def cancel_invoice(invoice_id, actor="system") -> Invoice:
    """draft|sent → cancelled; an issued invoice has its entry reversed."""
    with transaction.atomic():
        invoice = _get_invoice(invoice_id, lock=True)
        if invoice.credit_notes.exclude(status=InvoiceStatus.CANCELLED).exists():
            raise InvalidTransitionError(
                f"{invoice.number} has credit notes; correct it with another "
                "credit note instead of cancelling")
        was_issued = invoice.status == InvoiceStatus.SENT
        invoice.transition_to(InvoiceStatus.CANCELLED)
        if was_issued:
            entry = JournalEntry.objects.filter(
                ledger=invoice.ledger, reference_type="invoice",
                reference_id=invoice.pk,
            ).first()
            if entry is not None:
                reverse_entry(
                    entry.pk,
                    date=timezone.localdate(),
                    description=f"Cancellation of {invoice.number}",
                    actor=actor,
                )
        invoice.client.refresh_balance()
        log_action(action="cancel", instance=invoice, actor=actor)
    logger.info("Cancelled %s", invoice.number)
    return invoice


def issue_credit_note(invoice_id, issue_date=None, items: Optional[Iterable[dict]] = None,
                      notes="", actor="system") -> Invoice:
    """
    Credit note against an issued invoice: a full copy of the invoice by
    default, or the given items. Issued (and posted) straight away.
    """
    with transaction.atomic():
        original = _get_invoice(invoice_id, lock=True)
        if original.invoice_type != InvoiceType.INVOICE:
            raise ValidationError("Credit notes can only be issued against invoices")
        if original.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            raise InvalidTransitionError(
                f"Cannot credit a {original.status} invoice; cancel or edit it instead")

        issue_date = issue_date or timezone.localdate()
        if items is None:
            note = copy_invoice(
                original, InvoiceType.CREDIT_NOTE, issue_date,
                due_date=issue_date, credit_note_for=original,
            )
        else:
            note = create_invoice(
                original.ledger, original.client_id, issue_date, items,
                invoice_type=InvoiceType.CREDIT_NOTE, due_date=issue_date,
                tax_rate_id=original.tax_rate_id, notes=notes, actor=actor,
            )
            note.credit_note_for = original
            note.save(update_fields=["credit_note_for"])

        already = money(original.credit_notes.exclude(pk=note.pk).exclude(
            status=InvoiceStatus.CANCELLED
        ).aggregate(s=models.Sum("total"))["s"] or ZERO)
        if already + note.total > original.total:
            raise ValidationError(
                f"Credit notes would exceed the total of {original.number}")

        note = issue_invoice(note.pk, actor=actor)
    logger.info("Issued credit note %s for %s", note.number, original.number)
    return note


def convert_estimate(estimate_id, issue_date=None, issue=False, actor="system") -> Invoice:
    """Create an invoice from an estimate (once)."""
    with transaction.atomic():
        estimate = _get_invoice(estimate_id, lock=True)
        if estimate.invoice_type != InvoiceType.ESTIMATE:
            raise ValidationError(f"{estimate.number} is not an estimate")
        if estimate.status == InvoiceStatus.CANCELLED:
            raise InvalidTransitionError("Cancelled estimates cannot be converted")
        if estimate.converted_to_id:
            raise ValidationError(
                f"{estimate.number} was already converted to {estimate.converted_to.number}")

        invoice = copy_invoice(
            estimate, InvoiceType.INVOICE, issue_date or timezone.localdate())
        estimate.converted_to = invoice
        estimate.save(update_fields=["converted_to"])
        log_action(action="convert", instance=estimate, actor=actor,
                   changes={"invoice": invoice.number})
        if issue:
            invoice = issue_invoice(invoice.pk, actor=actor)
    return invoice
