from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models

from ..calculations import money
from ..choices import AccountType
from ..managers import LedgerManager
from .account import Account
from .ledger import Ledger


class Vendor(models.Model):  # Mirrors Client but for Accounts Payable (AP)

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)

    name = models.CharField(max_length=200)
    email = models.EmailField(null=True, blank=True)
    payment_terms_days = models.PositiveIntegerField(default=30)

    # FK to the Accounts Payable control account
    """ If set: unpaid expenses from this vendor are credited to this
    account, otherwise to the ledger's payable role account. """
    default_ap_account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="vendors_default_ap",
        help_text="Default AP account used for this vendor",
    )

    # Projection: total of unpaid expenses
    balance = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "name"]),
        ]

        # Vendor names must be unique per ledger
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "name"], name="uq_ledger_vendor_name"
            ),
        ]

    def __str__(self):
        return self.name

    def refresh_balance(self):
        self.balance = money(self.expenses.filter(is_paid=False).aggregate(
            s=models.Sum("total"))["s"] or Decimal("0.00"))
        Vendor.objects.filter(pk=self.pk).update(balance=self.balance)
        return self.balance

    def clean(self):
        dap = self.default_ap_account
        if dap and dap.ledger_id != self.ledger_id:
            raise ValidationError(
                "Default AP account and vendor must belong to same ledger"
            )

        # Only liability control accounts can be set as default AP
        if dap and (not dap.is_control_account
                    or dap.ac_type != AccountType.LIABILITY):
            raise ValidationError(
                "Default AP account must be a liability control account")
        return super().clean()

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
