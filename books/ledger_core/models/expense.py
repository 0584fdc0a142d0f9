from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..calculations import money
from ..choices import AccountType
from ..managers import LedgerManager
from .account import Account
from .client import Client
from .invoice import Invoice
from .journal import JournalEntry
from .ledger import Ledger
from .tax import TaxRate
from .vendor import Vendor

# Fields frozen once the expense has been posted
POSTED_FIELDS = ("amount", "tax_amount", "account_id", "vendor_id", "date")


# ---------- Expenses (Accounts Payable side) ----------
class Expense(models.Model):
    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    vendor = models.ForeignKey(
        Vendor,
        null=True,
        blank=True,
        # prevent deleting vendor who has an expense
        on_delete=models.PROTECT,
        related_name="expenses",
    )
    # Vendor's bill/invoice number (e.g. "INV-4567")
    reference = models.CharField(max_length=64, blank=True, default="")
    date = models.DateField()
    # when payment is expected
    due_date = models.DateField(null=True, blank=True)
    description = models.TextField(blank=True, default="")

    # Debit side: expense (or asset, for purchases capitalised) account
    account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name="expenses",
        help_text="Expense/purchase account for this expense",
    )
    tax_rate = models.ForeignKey(
        TaxRate, null=True, blank=True, on_delete=models.PROTECT,
        related_name="expenses",
    )

    # amount is net of tax; total = amount + tax_amount
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    tax_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00"))

    is_paid = models.BooleanField(default=False)
    paid_at = models.DateField(null=True, blank=True)

    # Re-billing to a client
    is_billable = models.BooleanField(default=False)
    client = models.ForeignKey(
        Client, null=True, blank=True, on_delete=models.PROTECT,
        related_name="billable_expenses",
    )
    billed_invoice = models.ForeignKey(
        Invoice, null=True, blank=True, on_delete=models.SET_NULL,
        related_name="billed_expenses",
    )

    journal_entry = models.OneToOneField(
        JournalEntry, null=True, blank=True, on_delete=models.PROTECT,
        related_name="expense",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "date"]),
            models.Index(fields=["ledger", "vendor"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gte=0) & models.Q(tax_amount__gte=0),
                name="expense_non_negative_amounts",
            ),
        ]

    def __str__(self):
        return f"Expense {self.reference or self.pk}: {self.total}"

    def clean(self):
        if self.amount is not None and self.amount < 0:
            raise ValidationError("Amount must be >= 0")
        if self.tax_amount is not None and self.tax_amount < 0:
            raise ValidationError("Tax amount must be >= 0")

        for name in ("vendor", "account", "tax_rate", "client"):
            if (getattr(self, f"{name}_id")
                    and getattr(self, name).ledger_id != self.ledger_id):
                raise ValidationError(f"{name} must belong to the expense's ledger")

        if self.account_id and self.account.ac_type not in (
                AccountType.EXPENSE, AccountType.ASSET):
            raise ValidationError("Expenses must post to an expense or asset account")
        if self.is_billable and not self.client_id:
            raise ValidationError("Billable expenses need a client")

        """ Posted expenses are immutable: correct them with a reversal """
        if self.pk and self.journal_entry_id:
            orig = Expense.objects.get(pk=self.pk)
            changed = [f for f in POSTED_FIELDS if getattr(orig, f) != getattr(self, f)]
            if changed:
                raise ValidationError(
                    f"Cannot modify {changed} on a posted expense.")

    def save(self, *args, **kwargs):
        self.total = money(self.amount + (self.tax_amount or 0))
        self.full_clean()
        return super().save(*args, **kwargs)
