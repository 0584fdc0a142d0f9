from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models

from ..calculations import money
from ..choices import AccountType, InvoiceType
from ..managers import LedgerManager
from .account import Account
from .ledger import Ledger


# ---------- Client ----------
# Billing identity who receives invoices (AR side)
class Client(models.Model):
    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)

    # The client's legal or trade name
    name = models.CharField(max_length=200)

    # Optional contact for billing/communication
    email = models.EmailField(null=True, blank=True)

    # Standard credit terms
    payment_terms_days = models.PositiveIntegerField(default=30)
    """ Example: If terms = 30 → invoice due 30 days after issue. """

    # FK to the Accounts Receivable control account
    """ If set: invoices for this client book AR lines to that account,
        otherwise the ledger's receivable role account is used.
    """
    default_ar_account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="clients_default_ar",
        help_text="Default AR account used for this client",
    )

    # Projection: unpaid invoices minus unrefunded credit notes
    balance = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "name"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "name"], name="uq_ledger_client_name"
            ),
        ]

    def __str__(self):
        return self.name

    def refresh_balance(self):
        """Recompute the cached balance from invoice state."""
        from .invoice import Invoice

        open_docs = Invoice.objects.documents().filter(
            client=self, status__in=["sent", "viewed", "partial"]
        )
        owed = money(open_docs.filter(invoice_type=InvoiceType.INVOICE).aggregate(
            s=models.Sum("amount_due"))["s"] or Decimal("0.00"))
        credited = money(open_docs.filter(
            invoice_type=InvoiceType.CREDIT_NOTE).aggregate(
            s=models.Sum("amount_due"))["s"] or Decimal("0.00"))
        self.balance = owed - credited
        # update() keeps this projection out of full_clean/save hooks
        Client.objects.filter(pk=self.pk).update(balance=self.balance)
        return self.balance

    def clean(self):
        ar = self.default_ar_account
        # Ensure AR account belongs to the same ledger
        if ar and ar.ledger_id != self.ledger_id:
            raise ValidationError(
                "Default AR account & client must belong to the same ledger"
            )

        # Only asset control accounts can be set as default AR
        if ar and (not ar.is_control_account or ar.ac_type != AccountType.ASSET):
            raise ValidationError(
                "Default AR account must be an asset control account")

        return super().clean()

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
