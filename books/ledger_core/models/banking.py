from django.core.exceptions import ValidationError
from django.db import models
from ..choices import AccountType
from ..managers import LedgerManager
from .account import Account
from .expense import Expense
from .ledger import Ledger
from .payment import Payment


# ---------- Banking ----------
class BankTransaction(models.Model):  # Single inflow/outflow on a bank statement

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    # The asset account that mirrors the bank account in the ledger
    account = models.ForeignKey(
        Account, on_delete=models.PROTECT, related_name="bank_transactions")
    # Feed id; re-importing the same id is a no-op
    external_id = models.CharField(max_length=120)
    date = models.DateField()  # when it cleared
    description = models.TextField(blank=True, default="")
    # amount: positive = inflow (deposit), negative = outflow (payment)
    amount = models.DecimalField(max_digits=18, decimal_places=2)

    # Reconciliation links (at most one)
    matched_payment = models.ForeignKey(
        Payment, null=True, blank=True, on_delete=models.SET_NULL,
        related_name="bank_transactions",
    )
    matched_expense = models.ForeignKey(
        Expense, null=True, blank=True, on_delete=models.SET_NULL,
        related_name="bank_transactions",
    )
    matched_at = models.DateTimeField(null=True, blank=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "account"]),
            models.Index(fields=["ledger", "date"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "external_id"], name="uq_bt_ledger_external_id"
            ),
        ]

    def __str__(self):
        return f"{self.account.name} - {self.date} - {self.amount}"

    @property
    def is_matched(self):
        return bool(self.matched_payment_id or self.matched_expense_id)

    def clean(self):
        if self.account.ledger_id != self.ledger_id:
            raise ValidationError("Bank account must belong to the same ledger.")
        if self.account.ac_type != AccountType.ASSET:
            raise ValidationError("Bank transactions belong to an asset account.")
        if self.matched_payment_id and self.matched_expense_id:
            raise ValidationError(
                "A bank transaction matches a payment or an expense, not both.")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
