import logging
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..calculations import money, to_decimal
from ..choices import AccountType, PaymentDirection
from ..exceptions import NotFoundError
from ..models import Account, BankTransaction, Expense, Payment
from .audit_helper import log_action

logger = logging.getLogger(__name__)


def import_bank_transactions(ledger, account_id, rows, actor="bank-feed"):
    """
    Store raw feed rows ({external_id, date, description, amount}) for one
    bank account. Rows whose external_id is already stored are skipped, so
    replaying a feed is harmless. Returns the newly created transactions.
    """
    try:
        account = Account.objects.get(ledger=ledger, pk=account_id)
    except Account.DoesNotExist:
        raise NotFoundError(f"No account {account_id} in ledger {ledger.slug}")
    if account.ac_type != AccountType.ASSET:
        raise ValidationError("Bank feeds can only be imported into asset accounts")

    created = []
    with transaction.atomic():
        seen = set(
            BankTransaction.objects.filter(ledger=ledger)
            .values_list("external_id", flat=True)
        )
        for row in rows:
            external_id = str(row["external_id"])
            if external_id in seen:
                continue
            bt = BankTransaction(
                ledger=ledger,
                account=account,
                external_id=external_id,
                date=row["date"],
                description=row.get("description", ""),
                amount=money(to_decimal(row["amount"], "amount")),
            )
            bt.save()
            seen.add(external_id)
            created.append(bt)
        if created:
            log_action(action="import", instance=account, actor=actor,
                       ledger=ledger, changes={"transactions": len(created)})
    logger.info("Imported %d bank transaction(s) into %s/%s",
                len(created), ledger.slug, account.code)
    return created


def match_transaction(ledger, bank_transaction_id, payment_id=None, expense_id=None,
                      actor="system"):
    """Link a bank line to the payment or expense it settles (exact, no fuzzing)."""
    if bool(payment_id) == bool(expense_id):
        raise ValidationError("Match exactly one of payment_id or expense_id")

    with transaction.atomic():
        try:
            bt = BankTransaction.objects.select_for_update().get(
                ledger=ledger, pk=bank_transaction_id)
        except BankTransaction.DoesNotExist:
            raise NotFoundError(f"No bank transaction {bank_transaction_id}")
        if bt.is_matched:
            raise ValidationError(f"Bank transaction {bt.external_id} is already matched")

        if payment_id:
            target = Payment.objects.filter(ledger=ledger, pk=payment_id).first()
            if target is None:
                raise NotFoundError(f"No payment {payment_id}")
            # inflows match received payments, outflows everything else
            expected = target.amount
            if target.direction != PaymentDirection.RECEIVED:
                expected = -expected
            bt.matched_payment = target
        else:
            target = Expense.objects.filter(ledger=ledger, pk=expense_id).first()
            if target is None:
                raise NotFoundError(f"No expense {expense_id}")
            expected = -target.total
            bt.matched_expense = target

        if bt.amount != expected:
            raise ValidationError(
                f"Bank amount {bt.amount} does not match {expected}")
        bt.matched_at = timezone.now()
        bt.save(update_fields=["matched_payment", "matched_expense", "matched_at"])
        log_action(action="match", instance=bt, actor=actor,
                   changes={"payment": payment_id, "expense": expense_id})
    return bt
