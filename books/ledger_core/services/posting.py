import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional
from django.core.exceptions import ValidationError
from django.db import transaction

from ..calculations import money
from ..choices import PaymentDirection, SystemRole
from ..exceptions import AlreadyPostedDifferentPayload, LedgerImbalanceError
from ..models import Account, JournalEntry, JournalLine
from ..models.journal import posting_fingerprint
from .audit_helper import log_action
from .chart import role_account
from .periods import ensure_open
from .tax import liability_account_for

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class Posting:
    """One would-be journal line."""
    account: Account
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str = ""

    def swapped(self):
        return Posting(self.account, self.credit, self.debit, self.description)


# ----------------------------
# Journal-related workflows
# ----------------------------
def post_entry(ledger, date, description, lines: Iterable[Posting],
               reference_type="", reference_id=None, reverses=None,
               actor="system") -> JournalEntry:
    """
    Build a draft entry with its lines and post it, in one transaction.

    Posting again with the same reference and the same lines returns the
    entry already posted; different lines for that reference raise
    AlreadyPostedDifferentPayload.
    """
    lines = [
        Posting(ln.account, money(ln.debit), money(ln.credit), ln.description)
        for ln in lines
        if ln.debit or ln.credit  # zero lines carry nothing
    ]
    if not lines:
        raise ValidationError("Nothing to post: every line amount is zero")

    with transaction.atomic():
        if reference_id is not None:
            existing = JournalEntry.objects.filter(
                ledger=ledger, reference_type=reference_type,
                reference_id=reference_id,
            ).first()
            if existing is not None:
                fp = posting_fingerprint(
                    ledger.pk, date,
                    [(ln.account.pk, ln.debit, ln.credit, ln.description)
                     for ln in lines],
                )
                if existing.is_posted and existing.posting_fingerprint == fp:
                    # Idempotent: safe to return without raising
                    return existing
                raise AlreadyPostedDifferentPayload(
                    f"{reference_type} {reference_id} already posted as "
                    f"{existing.number} with a different payload"
                )

        ensure_open(ledger, date)
        je = JournalEntry.objects.create(
            ledger=ledger,
            date=date,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            reverses=reverses,
        )
        for ln in lines:
            JournalLine.objects.create(
                entry=je,
                account=ln.account,
                description=ln.description,
                debit=ln.debit,
                credit=ln.credit,
            )
        try:
            je.post()
        except LedgerImbalanceError:
            # Engine defect: the builders above always produce balanced lines
            logger.exception(
                "Ledger imbalance while posting %s %s in %s",
                reference_type or "entry", reference_id, ledger.slug,
            )
            raise
        log_action(
            action="post",
            instance=je,
            actor=actor,
            changes={"reference": f"{reference_type}:{reference_id}",
                     "lines": len(lines)},
        )

    logger.info(
        "Posted %s (%s) dated %s with %d lines",
        je.number, description, date, len(lines),
    )
    return je


def _receivable_account(client):
    return client.default_ar_account or role_account(client.ledger, SystemRole.RECEIVABLE)


def _payable_account(ledger, vendor):
    if vendor is not None and vendor.default_ap_account_id:
        return vendor.default_ap_account
    return role_account(ledger, SystemRole.PAYABLE)


def _cash_account(ledger, account=None):
    return account or role_account(ledger, SystemRole.CASH)


def invoice_postings(invoice) -> List[Posting]:
    """
    Lines recognising an issued invoice:
      Debit:  Accounts Receivable = total
      Debit:  Sales discounts = invoice-level discount
      Credit: revenue per account = Σ net of its items
      Credit: Shipping income = shipping
      Credit: tax liability per account = Σ tax attributed to it
    """
    ledger = invoice.ledger
    label = invoice.number
    revenue, taxes = {}, {}
    sales = None
    for item in invoice.items.select_related("account", "tax_rate"):
        account = item.account
        if account is None:
            sales = sales or role_account(ledger, SystemRole.SALES)
            account = sales
        revenue[account] = revenue.get(account, ZERO) + item.net_amount
        if item.tax_amount:
            rate = item.tax_rate or invoice.tax_rate
            tax_account = liability_account_for(ledger, rate)
            taxes[tax_account] = taxes.get(tax_account, ZERO) + item.tax_amount

    lines = [Posting(_receivable_account(invoice.client), debit=invoice.total,
                     description=f"AR for {label}")]
    if invoice.discount_amount:
        lines.append(Posting(
            role_account(ledger, SystemRole.SALES_DISCOUNT),
            debit=invoice.discount_amount,
            description=f"Discount on {label}",
        ))
    for account, amount in revenue.items():
        lines.append(Posting(account, credit=amount, description=f"Revenue: {label}"))
    if invoice.shipping_amount:
        lines.append(Posting(
            role_account(ledger, SystemRole.SHIPPING_INCOME),
            credit=invoice.shipping_amount,
            description=f"Shipping: {label}",
        ))
    for account, amount in taxes.items():
        lines.append(Posting(account, credit=amount, description=f"Tax: {label}"))
    return lines


def post_invoice(invoice, actor="system") -> Optional[JournalEntry]:
    """Revenue recognition for an issued invoice (None for a zero invoice)."""
    lines = invoice_postings(invoice)
    if not any(ln.debit or ln.credit for ln in lines):
        return None
    return post_entry(
        invoice.ledger, invoice.issue_date, f"Invoice {invoice.number}", lines,
        reference_type="invoice", reference_id=invoice.pk, actor=actor,
    )


def post_credit_note(credit_note, actor="system") -> Optional[JournalEntry]:
    """Mirror image of the invoice entry: AR is credited, revenue debited."""
    lines = [ln.swapped() for ln in invoice_postings(credit_note)]
    if not any(ln.debit or ln.credit for ln in lines):
        return None
    return post_entry(
        credit_note.ledger, credit_note.issue_date,
        f"Credit note {credit_note.number}", lines,
        reference_type="invoice", reference_id=credit_note.pk, actor=actor,
    )


def post_expense(expense, actor="system") -> JournalEntry:
    """
    Debit:  expense/asset account = net amount
    Debit:  tax liability = recoverable tax
    Credit: cash (paid on entry) or Accounts Payable (unpaid) = total
    """
    ledger = expense.ledger
    label = expense.reference or f"expense {expense.pk}"
    lines = [Posting(expense.account, debit=expense.amount, description=label)]
    if expense.tax_amount:
        lines.append(Posting(
            liability_account_for(ledger, expense.tax_rate),
            debit=expense.tax_amount,
            description=f"Input tax: {label}",
        ))
    if expense.is_paid:
        lines.append(Posting(_cash_account(ledger), credit=expense.total,
                             description=f"Paid: {label}"))
    else:
        lines.append(Posting(_payable_account(ledger, expense.vendor),
                             credit=expense.total, description=f"AP: {label}"))
    return post_entry(
        ledger, expense.date, f"Expense {label}", lines,
        reference_type="expense", reference_id=expense.pk, actor=actor,
    )


def post_payment(payment, actor="system") -> JournalEntry:
    """
    received: debit deposit/cash, credit AR
    refund:   debit AR, credit cash
    sent:     debit AP, credit cash (settles an unpaid expense)
    """
    ledger = payment.ledger
    cash = _cash_account(ledger, payment.deposit_account)
    amount = payment.amount
    if payment.direction == PaymentDirection.RECEIVED:
        ar = _receivable_account(payment.client)
        lines = [Posting(cash, debit=amount, description="Payment received"),
                 Posting(ar, credit=amount, description="Clear AR")]
    elif payment.direction == PaymentDirection.REFUND:
        ar = _receivable_account(payment.credit_note.client)
        lines = [Posting(ar, debit=amount, description="Refund of credit note"),
                 Posting(cash, credit=amount, description="Refund paid")]
    else:
        ap = _payable_account(ledger, payment.vendor)
        lines = [Posting(ap, debit=amount, description="Clear AP"),
                 Posting(cash, credit=amount, description="Payment sent")]
    return post_entry(
        ledger, payment.date, f"{payment.get_direction_display()} payment",
        lines, reference_type="payment", reference_id=payment.pk, actor=actor,
    )


def reverse_entry(entry_id, date=None, description=None, actor="system"):
    """Post a new entry with debit and credit swapped on every line."""
    with transaction.atomic():
        original = JournalEntry.objects.select_for_update().get(pk=entry_id)
        if not original.is_posted:
            raise ValidationError("Only posted entries can be reversed")
        if JournalEntry.objects.filter(reverses=original).exists():
            raise ValidationError(f"{original.number} has already been reversed")
        lines = [
            Posting(ln.account, debit=ln.credit, credit=ln.debit,
                    description=ln.description)
            for ln in original.lines.select_related("account").order_by("id")
        ]
        return post_entry(
            original.ledger,
            date or original.date,
            description or f"Reversal of {original.number}",
            lines,
            reference_type="reversal",
            reference_id=original.pk,
            reverses=original,
            actor=actor,
        )
