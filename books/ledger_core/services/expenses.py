import datetime
import logging
from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..calculations import HUNDRED, money, tax_on, to_decimal
from ..choices import PaymentDirection, PaymentMethod
from ..exceptions import NotFoundError
from ..models import Account, Client, Expense, Invoice, Payment, Vendor
from .audit_helper import log_action
from .invoicing import add_item
from .payment import get_deposit_account
from .posting import post_expense, post_payment
from .tax import resolve_rate

logger = logging.getLogger(__name__)


def _get_expense(expense_id, lock=False):
    qs = Expense.objects.select_for_update() if lock else Expense.objects
    try:
        return qs.get(pk=expense_id)
    except Expense.DoesNotExist:
        raise NotFoundError(f"Expense {expense_id} does not exist")


def _lookup(model, ledger, pk):
    if pk is None:
        return None
    try:
        return model.objects.get(ledger=ledger, pk=pk)
    except model.DoesNotExist:
        raise NotFoundError(f"No {model.__name__} {pk} in ledger {ledger.slug}")


def create_expense(ledger, account_id, amount, date, vendor_id=None,
                   tax_rate_id=None, tax_amount=None, description="", reference="",
                   is_paid=False, method=PaymentMethod.BANK_TRANSFER,
                   is_billable=False, client_id=None, actor="system") -> Expense:
    """
    Record a vendor expense and post it. A paid expense credits cash and
    gets a matching sent Payment; an unpaid one credits Accounts Payable.
    """
    amount = money(to_decimal(amount, "amount"))
    if amount <= 0:
        raise ValidationError("Expense amount must be > 0")
    tax_rate = resolve_rate(ledger, tax_rate_id)
    if tax_amount is None:
        tax_amount = tax_on(amount, tax_rate.percentage) if tax_rate else Decimal("0.00")
    tax_amount = money(to_decimal(tax_amount, "tax_amount"))

    with transaction.atomic():
        vendor = _lookup(Vendor, ledger, vendor_id)
        expense = Expense(
            ledger=ledger,
            vendor=vendor,
            account=_lookup(Account, ledger, account_id),
            tax_rate=tax_rate,
            amount=amount,
            tax_amount=tax_amount,
            date=date,
            due_date=date + datetime.timedelta(days=vendor.payment_terms_days)
            if vendor else None,
            description=description,
            reference=reference,
            is_paid=is_paid,
            paid_at=date if is_paid else None,
            is_billable=is_billable,
            client=_lookup(Client, ledger, client_id),
        )
        expense.save()
        expense.journal_entry = post_expense(expense, actor=actor)
        expense.save(update_fields=["journal_entry"])

        if is_paid and expense.total > 0:
            # cash already credited by the expense entry
            Payment.objects.create(
                ledger=ledger,
                direction=PaymentDirection.SENT,
                amount=expense.total,
                method=method,
                date=date,
                vendor=vendor,
                expense=expense,
            )
        if vendor:
            vendor.refresh_balance()
        log_action(action="create", instance=expense, actor=actor,
                   changes={"total": str(expense.total), "paid": is_paid})

    logger.info("Recorded expense %s of %s (paid=%s)", expense.pk, expense.total, is_paid)
    return expense


def pay_expense(expense_id, date=None, method=PaymentMethod.BANK_TRANSFER,
                deposit_account_id=None, actor="system") -> Payment:
    """Settle an unpaid expense: debit AP, credit cash."""
    with transaction.atomic():
        expense = _get_expense(expense_id, lock=True)
        if expense.is_paid:
            raise ValidationError(f"Expense {expense.pk} is already paid")
        date = date or timezone.localdate()
        payment = Payment.objects.create(
            ledger=expense.ledger,
            direction=PaymentDirection.SENT,
            amount=expense.total,
            method=method,
            date=date,
            vendor=expense.vendor,
            expense=expense,
            deposit_account=get_deposit_account(expense.ledger, deposit_account_id),
        )
        payment.journal_entry = post_payment(payment, actor=actor)
        payment.save(update_fields=["journal_entry"])

        expense.is_paid = True
        expense.paid_at = date
        expense.save(update_fields=["is_paid", "paid_at", "total"])
        if expense.vendor:
            expense.vendor.refresh_balance()
        log_action(action="pay", instance=expense, actor=actor,
                   changes={"payment": payment.pk, "amount": str(payment.amount)})
    logger.info("Paid expense %s (%s)", expense.pk, payment.amount)
    return payment


def bill_expense_to_client(expense_id, invoice_id, markup_percentage="0", actor="system"):
    """Re-bill a billable expense as an item on a draft invoice."""
    with transaction.atomic():
        expense = _get_expense(expense_id, lock=True)
        if not expense.is_billable:
            raise ValidationError(f"Expense {expense.pk} is not billable")
        if expense.billed_invoice_id:
            raise ValidationError(
                f"Expense {expense.pk} was already billed on {expense.billed_invoice.number}")
        invoice = Invoice.objects.filter(pk=invoice_id).first()
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} does not exist")
        if invoice.client_id != expense.client_id:
            raise ValidationError("Expense is billable to a different client")

        markup = to_decimal(markup_percentage, "markup")
        if markup < 0:
            raise ValidationError("Markup cannot be negative")
        price = money(expense.amount * (HUNDRED + markup) / HUNDRED)
        item = add_item(
            invoice.pk,
            actor=actor,
            description=expense.description or f"Expense {expense.reference or expense.pk}",
            quantity="1",
            unit_price=price,
        )
        expense.billed_invoice = invoice
        expense.save(update_fields=["billed_invoice", "total"])
    return item
