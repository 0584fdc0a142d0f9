from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..calculations import money
from ..choices import AccountType, InvoiceType, PaymentDirection, PaymentMethod
from ..managers import LedgerManager
from ..metadata import METADATA_VERSION, upgrade_metadata, validate_metadata
from .account import Account
from .client import Client
from .invoice import Invoice
from .journal import JournalEntry
from .ledger import Ledger
from .vendor import Vendor


# ---------- Payments ----------
class Payment(models.Model):  # Money in (received), out (sent) or back (refund)

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    direction = models.CharField(
        max_length=10, choices=PaymentDirection.choices,
        default=PaymentDirection.RECEIVED,
    )
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    method = models.CharField(
        max_length=20, choices=PaymentMethod.choices,
        default=PaymentMethod.BANK_TRANSFER,
    )
    date = models.DateField()

    # Counterparty: client for received/refund, vendor (and expense) for sent
    client = models.ForeignKey(
        Client, null=True, blank=True, on_delete=models.PROTECT,
        related_name="payments",
    )
    vendor = models.ForeignKey(
        Vendor, null=True, blank=True, on_delete=models.PROTECT,
        related_name="payments",
    )
    expense = models.ForeignKey(
        "Expense", null=True, blank=True, on_delete=models.PROTECT,
        related_name="payments",
    )
    # Refunds settle a credit note
    credit_note = models.ForeignKey(
        Invoice, null=True, blank=True, on_delete=models.PROTECT,
        related_name="refunds",
    )

    # Cash / bank account the money moved through (ledger's cash role if unset)
    deposit_account = models.ForeignKey(
        Account, null=True, blank=True, on_delete=models.PROTECT,
        related_name="payments",
    )

    # Processor / bank reference; unique per ledger when present
    external_reference = models.CharField(max_length=120, blank=True, default="")
    captured_at = models.DateTimeField(null=True, blank=True)

    journal_entry = models.OneToOneField(
        JournalEntry, null=True, blank=True, on_delete=models.PROTECT,
        related_name="payment",
    )

    metadata = models.JSONField(
        default=dict, blank=True, validators=[validate_metadata])
    metadata_version = models.PositiveSmallIntegerField(default=METADATA_VERSION)

    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "date"]),
            models.Index(fields=["ledger", "direction"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="payment_positive_amount"
            ),
            models.UniqueConstraint(
                fields=["ledger", "external_reference"],
                condition=~models.Q(external_reference=""),
                name="uq_payment_ledger_external_ref",
            ),
        ]

    def __str__(self):
        return f"{self.get_direction_display()} {self.amount} on {self.date}"

    def allocated_total(self):
        return money(self.allocations.aggregate(
            s=models.Sum("amount"))["s"] or Decimal("0.00"))

    def unallocated_amount(self):
        return self.amount - self.allocated_total()

    def get_metadata(self):
        data, _ = upgrade_metadata(self.metadata, self.metadata_version)
        return data

    def clean(self):
        if self.amount is not None and self.amount <= 0:
            raise ValidationError("Payment amount must be > 0")

        for ref in (self.client, self.vendor, self.expense,
                    self.credit_note, self.deposit_account):
            if ref is not None and ref.ledger_id != self.ledger_id:
                raise ValidationError(
                    f"{ref._meta.verbose_name} must belong to the payment's ledger")

        if self.deposit_account_id and self.deposit_account.ac_type != AccountType.ASSET:
            raise ValidationError("Deposit account must be an asset account")

        if self.direction == PaymentDirection.SENT and not (
                self.vendor_id or self.expense_id):
            raise ValidationError("Sent payments need a vendor or an expense")
        if self.direction == PaymentDirection.REFUND:
            if not self.credit_note_id:
                raise ValidationError("Refunds must reference a credit note")
            if self.credit_note.invoice_type != InvoiceType.CREDIT_NOTE:
                raise ValidationError("Refunds can only settle credit notes")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)


class PaymentAllocation(models.Model):  # Portion of a payment applied to an invoice

    payment = models.ForeignKey(
        Payment, on_delete=models.CASCADE, related_name="allocations")
    invoice = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="allocations")
    amount = models.DecimalField(max_digits=18, decimal_places=2)

    class Meta:
        constraints = [
            # Prevent duplicate application of a payment to the same invoice
            models.UniqueConstraint(
                fields=["payment", "invoice"], name="uq_allocation_payment_invoice"
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="allocation_positive_amount"
            ),
        ]

    def __str__(self):
        return f"{self.payment_id} → {self.invoice.number} ({self.amount})"

    def clean(self):
        if self.amount is not None and self.amount <= 0:
            raise ValidationError("Allocated amount must be > 0")
        # You can't accidentally link a payment from one ledger
        # to an invoice from another
        if self.invoice.ledger_id != self.payment.ledger_id:
            raise ValidationError("Invoice and payment must belong to the same ledger")
        if self.invoice.invoice_type != InvoiceType.INVOICE:
            raise ValidationError("Payments can only be allocated to invoices")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)
