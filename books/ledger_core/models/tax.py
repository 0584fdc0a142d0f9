from decimal import Decimal
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from ..choices import AccountType, InvoiceStatus
from ..managers import LedgerManager
from .account import Account
from .ledger import Ledger


# ---------- Tax rates ----------
class TaxRate(models.Model):
    """Named percentage (e.g. "Sales tax 8%") resolved at calculation time.
    Tax collected at this rate is credited to `liability_account`,
    or to the ledger's tax_liability role account when unset."""
    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    name = models.CharField(max_length=100)
    percentage = models.DecimalField(
        max_digits=7,
        decimal_places=4,
        validators=[MinValueValidator(Decimal("0")),
                    MaxValueValidator(Decimal("100"))],
    )
    liability_account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="tax_rates",
    )
    is_active = models.BooleanField(default=True)

    objects = LedgerManager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "name"], name="uq_ledger_tax_rate_name"
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.percentage}%)"

    def clean(self):
        acc = self.liability_account
        if acc and acc.ledger_id != self.ledger_id:
            raise ValidationError(
                "Tax liability account must belong to the same ledger")
        if acc and acc.ac_type != AccountType.LIABILITY:
            raise ValidationError("Tax account must be a liability account")

        # Issued documents recalculate from the rate, so it is frozen once used
        if self.pk and self.is_in_issued_use():
            orig = TaxRate.objects.get(pk=self.pk)
            if orig.percentage != self.percentage:
                raise ValidationError(
                    f"Cannot change the percentage of {orig.name}: issued "
                    "invoices use it. Create a new tax rate instead.")

    def is_in_issued_use(self):
        return (
            self.invoices.exclude(status=InvoiceStatus.DRAFT).exists()
            or self.invoice_items.exclude(invoice__status=InvoiceStatus.DRAFT).exists()
        )

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
