"""
Read-only financial reports.

Every figure comes from posted journal lines or from invoice/payment
state; nothing here writes. Amounts are Decimal, already at 2 places.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from django.db.models import Q, Sum

from ..calculations import money
from ..choices import (DEBIT_NORMAL_TYPES, AccountType, InvoiceStatus,
                       InvoiceType, PaymentDirection, PaymentMethod)
from ..conf import rounding_tolerance
from ..exceptions import DataIntegrityError
from ..models import Expense, Invoice, JournalLine, Payment

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

AGING_BUCKETS = ("current", "1_30", "31_60", "61_90", "90_plus")


def _total(value):
    """Aggregate result at 2 places (SQLite sums come back as floats)."""
    return money(value or ZERO)


def _signed(ac_type, debit, credit):
    if ac_type in DEBIT_NORMAL_TYPES:
        return debit - credit
    return credit - debit


def _account_rows(ledger, start=None, end=None, types=None):
    """Posted debit/credit totals per account, with the signed balance."""
    lines = JournalLine.objects.filter(
        entry__ledger=ledger, entry__status="posted")
    if start is not None:
        lines = lines.filter(entry__date__gte=start)
    if end is not None:
        lines = lines.filter(entry__date__lte=end)
    if types is not None:
        lines = lines.filter(account__ac_type__in=types)
    rows = (
        lines.values("account_id", "account__code", "account__name",
                     "account__ac_type", "account__subtype")
        .annotate(debit=Sum("debit"), credit=Sum("credit"))
        .order_by("account__code")
    )
    result = []
    for r in rows:
        debit, credit = _total(r["debit"]), _total(r["credit"])
        result.append({
            "account_id": r["account_id"],
            "code": r["account__code"],
            "name": r["account__name"],
            "type": r["account__ac_type"],
            "subtype": r["account__subtype"],
            "debit": debit,
            "credit": credit,
            "amount": _signed(r["account__ac_type"], debit, credit),
        })
    return result


def profit_and_loss(ledger, start, end):
    """Revenue and expense accounts for entries dated within [start, end]."""
    rows = _account_rows(ledger, start, end,
                         types=[AccountType.REVENUE, AccountType.EXPENSE])
    revenue = [r for r in rows if r["type"] == AccountType.REVENUE]
    expenses = [r for r in rows if r["type"] == AccountType.EXPENSE]
    total_revenue = sum((r["amount"] for r in revenue), ZERO)
    total_expenses = sum((r["amount"] for r in expenses), ZERO)
    return {
        "start": start,
        "end": end,
        "revenue": revenue,
        "expenses": expenses,
        "total_revenue": total_revenue,
        "total_expenses": total_expenses,
        "net_income": total_revenue - total_expenses,
    }


def balance_sheet(ledger, as_of):
    """
    Balances as of a date grouped by type and subtype. Revenue and
    expense activity not yet closed is shown as current earnings in
    equity. Raises DataIntegrityError when the sheet does not balance.
    """
    rows = _account_rows(ledger, end=as_of)
    sections = {t: defaultdict(list) for t in
                (AccountType.ASSET, AccountType.LIABILITY, AccountType.EQUITY)}
    totals = defaultdict(lambda: ZERO)
    for r in rows:
        totals[r["type"]] += r["amount"]
        if r["type"] in sections:
            sections[r["type"]][r["subtype"]].append(r)

    current_earnings = totals[AccountType.REVENUE] - totals[AccountType.EXPENSE]
    total_assets = totals[AccountType.ASSET]
    total_liabilities = totals[AccountType.LIABILITY]
    total_equity = totals[AccountType.EQUITY] + current_earnings

    difference = total_assets - (total_liabilities + total_equity)
    if abs(difference) > rounding_tolerance():
        logger.error(
            "Balance sheet for %s as of %s is out by %s",
            ledger.slug, as_of, difference,
        )
        raise DataIntegrityError(
            f"Assets {total_assets} != liabilities {total_liabilities} "
            f"+ equity {total_equity} (difference {difference})"
        )

    return {
        "as_of": as_of,
        "assets": {k: v for k, v in sections[AccountType.ASSET].items()},
        "liabilities": {k: v for k, v in sections[AccountType.LIABILITY].items()},
        "equity": {k: v for k, v in sections[AccountType.EQUITY].items()},
        "current_earnings": current_earnings,
        "total_assets": total_assets,
        "total_liabilities": total_liabilities,
        "total_equity": total_equity,
    }


def trial_balance(ledger, as_of):
    rows = _account_rows(ledger, end=as_of)
    total_debit = sum((r["debit"] for r in rows), ZERO)
    total_credit = sum((r["credit"] for r in rows), ZERO)
    if total_debit != total_credit:
        raise DataIntegrityError(
            f"Trial balance out: debits {total_debit} != credits {total_credit}")
    return {
        "as_of": as_of,
        "accounts": rows,
        "total_debit": total_debit,
        "total_credit": total_credit,
    }


def cash_flow(ledger, start, end):
    """Operating cash: payments received − payments sent − refunds.

    Paid expenses are included through their sent payments; credit note
    applications move no cash and are left out."""
    payments = Payment.objects.filter(
        ledger=ledger, date__gte=start, date__lte=end,
    ).exclude(method=PaymentMethod.CREDIT_NOTE)
    sums = payments.aggregate(
        received=Sum("amount", filter=Q(direction=PaymentDirection.RECEIVED)),
        sent=Sum("amount", filter=Q(direction=PaymentDirection.SENT)),
        expenses=Sum("amount", filter=Q(direction=PaymentDirection.SENT,
                                        expense__isnull=False)),
        refunds=Sum("amount", filter=Q(direction=PaymentDirection.REFUND)),
    )
    received = _total(sums["received"])
    sent = _total(sums["sent"])
    refunds = _total(sums["refunds"])
    return {
        "start": start,
        "end": end,
        "received": received,
        "sent": sent,
        "expenses_paid": _total(sums["expenses"]),
        "refunds": refunds,
        "net_operating": received - sent - refunds,
    }


def aging_bucket(days_past_due):
    if days_past_due <= 0:
        return "current"
    if days_past_due <= 30:
        return "1_30"
    if days_past_due <= 60:
        return "31_60"
    if days_past_due <= 90:
        return "61_90"
    return "90_plus"


def ar_aging(ledger, as_of):
    """Open invoice balances by how far past due they are on `as_of`.

    Each invoice lands in exactly one bucket, so the bucket totals add
    up to the total amount due."""
    invoices = (
        Invoice.objects.receivables()
        .filter(ledger=ledger, amount_due__gt=0, issue_date__lte=as_of)
        .select_related("client")
        .order_by("client__name", "due_date", "pk")
    )
    clients = {}
    bucket_totals = {b: ZERO for b in AGING_BUCKETS}
    rows = []
    for inv in invoices:
        days = inv.days_past_due(as_of)
        bucket = aging_bucket(days)
        rows.append({
            "invoice_id": inv.pk,
            "number": inv.number,
            "client": inv.client.name,
            "due_date": inv.due_date,
            "days_past_due": max(days, 0),
            "bucket": bucket,
            "amount_due": inv.amount_due,
        })
        row = clients.setdefault(inv.client_id, {
            "client_id": inv.client_id,
            "client": inv.client.name,
            **{b: ZERO for b in AGING_BUCKETS},
            "total": ZERO,
        })
        row[bucket] += inv.amount_due
        row["total"] += inv.amount_due
        bucket_totals[bucket] += inv.amount_due

    return {
        "as_of": as_of,
        "invoices": rows,
        "clients": list(clients.values()),
        "buckets": bucket_totals,
        "total": sum(bucket_totals.values(), ZERO),
    }


def tax_summary(ledger, start, end):
    """Tax collected on paid/partial invoices, less tax credited back on
    credit notes and tax paid on expenses, for documents dated in range."""
    invoices = Invoice.objects.documents().filter(
        ledger=ledger, issue_date__gte=start, issue_date__lte=end)
    collected = _total(invoices.filter(
        invoice_type=InvoiceType.INVOICE,
        status__in=[InvoiceStatus.PARTIAL, InvoiceStatus.PAID],
    ).aggregate(s=Sum("tax_amount"))["s"])
    credited = _total(invoices.filter(
        invoice_type=InvoiceType.CREDIT_NOTE,
    ).exclude(
        status__in=[InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED],
    ).aggregate(s=Sum("tax_amount"))["s"])
    paid = _total(Expense.objects.filter(
        ledger=ledger, date__gte=start, date__lte=end,
    ).aggregate(s=Sum("tax_amount"))["s"])
    return {
        "start": start,
        "end": end,
        "collected": collected,
        "credited": credited,
        "paid": paid,
        "net_owed": collected - credited - paid,
    }
