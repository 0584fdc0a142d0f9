import datetime
from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from ..calculations import Discount, InvoiceTotals, LineInput, calculate_invoice
from ..choices import AccountType, DiscountType, InvoiceStatus, InvoiceType
from ..conf import ledger_setting
from ..exceptions import InvalidTransitionError, OverpaymentError
from ..managers import InvoiceManager
from ..metadata import METADATA_VERSION, upgrade_metadata, validate_metadata
from .account import Account
from .client import Client
from .ledger import Ledger
from .sequence import NumberSequence
from .tax import TaxRate

ZERO = Decimal("0.00")

# Current state vs. allowed next states
INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {
        InvoiceStatus.VIEWED,
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.VIEWED: {InvoiceStatus.PARTIAL, InvoiceStatus.PAID},
    # another partial payment keeps the invoice partial
    InvoiceStatus.PARTIAL: {InvoiceStatus.PARTIAL, InvoiceStatus.PAID},
    InvoiceStatus.PAID: set(),  # terminal
    InvoiceStatus.CANCELLED: set(),  # terminal
}

# Statuses in which money can still be owed
OPEN_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.PARTIAL)

# Fields frozen once the invoice leaves draft
MONETARY_FIELDS = (
    "client_id",
    "number",
    "issue_date",
    "subtotal",
    "discount_type",
    "discount_value",
    "discount_amount",
    "tax_rate_id",
    "tax_amount",
    "shipping_amount",
    "total",
)


class Invoice(models.Model):  # Invoice, estimate or credit note

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    client = models.ForeignKey(
        Client,
        # prevent deleting client who has an invoice
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    invoice_type = models.CharField(
        max_length=12, choices=InvoiceType.choices, default=InvoiceType.INVOICE
    )

    # Human-readable, sequential per prefix (e.g. "INV-00042")
    number = models.CharField(max_length=32, blank=True)
    issue_date = models.DateField()
    # payment deadline (defaults from client's payment terms)
    due_date = models.DateField(null=True, blank=True)

    status = models.CharField(
        max_length=10, choices=InvoiceStatus.choices, default=InvoiceStatus.DRAFT
    )
    """ Workflow:
        draft → sent → viewed → partial → paid
        draft | sent → cancelled
        overdue is derived on read (see effective_status). """

    # Derived totals (see calculations.py)
    subtotal = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)
    discount_type = models.CharField(
        max_length=10, choices=DiscountType.choices, default=DiscountType.PERCENTAGE
    )
    discount_value = models.DecimalField(
        max_digits=18, decimal_places=4, default=ZERO)
    discount_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=ZERO)
    # Invoice-level rate, used only by items without their own rate
    tax_rate = models.ForeignKey(
        TaxRate, null=True, blank=True, on_delete=models.PROTECT,
        related_name="invoices",
    )
    tax_amount = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)
    shipping_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=ZERO)
    total = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)

    # Payments applied so far; amount_due is always total - amount_paid
    amount_paid = models.DecimalField(
        max_digits=18, decimal_places=2, default=ZERO)
    amount_due = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)

    notes = models.TextField(blank=True, default="")

    # Delivery / lifecycle timestamps
    sent_at = models.DateTimeField(null=True, blank=True)
    viewed_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # Recurring templates are never issued and stay out of reports
    is_template = models.BooleanField(default=False)
    # Credit notes point at the invoice they reverse
    credit_note_for = models.ForeignKey(
        "self", null=True, blank=True, on_delete=models.PROTECT,
        related_name="credit_notes",
    )
    # Estimates point at the invoice they were converted into
    converted_to = models.OneToOneField(
        "self", null=True, blank=True, on_delete=models.SET_NULL,
        related_name="converted_from",
    )
    # Generated by a recurring schedule for one period
    recurring_schedule = models.ForeignKey(
        "RecurringSchedule", null=True, blank=True, on_delete=models.SET_NULL,
        related_name="invoices",
    )
    schedule_period = models.DateField(null=True, blank=True)

    metadata = models.JSONField(
        default=dict, blank=True, validators=[validate_metadata])
    metadata_version = models.PositiveSmallIntegerField(default=METADATA_VERSION)

    created_at = models.DateTimeField(auto_now_add=True)

    objects = InvoiceManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "status"]),
            models.Index(fields=["ledger", "client"]),
            models.Index(fields=["ledger", "due_date"]),
        ]

        constraints = [
            # Within one ledger, each number must be unique
            models.UniqueConstraint(
                fields=["ledger", "number"], name="uq_invoice_ledger_number"
            ),
            # One generated invoice per schedule per period
            models.UniqueConstraint(
                fields=["recurring_schedule", "schedule_period"],
                name="uq_invoice_schedule_period",
            ),
            models.CheckConstraint(
                condition=models.Q(amount_paid__gte=0) &
                models.Q(amount_due__gte=0) &
                models.Q(total__gte=0),
                name="inv_non_negative_amounts",
            ),
        ]

    def __str__(self):
        return f"{self.get_invoice_type_display()} {self.number or self.pk}"

    # ---- derived state ----

    @property
    def is_draft(self):
        return self.status == InvoiceStatus.DRAFT

    def days_past_due(self, as_of=None):
        as_of = as_of or timezone.localdate()
        if self.due_date is None:
            return 0
        return (as_of - self.due_date).days

    def is_overdue(self, as_of=None):
        return (
            self.invoice_type == InvoiceType.INVOICE
            and self.status in OPEN_STATUSES
            and self.amount_due > 0
            and self.due_date is not None
            and self.days_past_due(as_of) > 0
        )

    def effective_status(self, as_of=None):
        """Stored status, or 'overdue' when the due date has passed."""
        if self.is_overdue(as_of):
            return InvoiceStatus.OVERDUE
        return self.status

    def get_metadata(self):
        data, _ = upgrade_metadata(self.metadata, self.metadata_version)
        return data

    # ---- totals ----

    def invoice_discount(self):
        if self.discount_value and self.discount_value > 0:
            return Discount(self.discount_type, self.discount_value)
        return None

    def calculate(self, items=None) -> InvoiceTotals:
        """Run the invoice arithmetic over persisted (or given) items."""
        items = list(self.items.all()) if items is None else list(items)
        invoice_pct = self.tax_rate.percentage if self.tax_rate_id else None
        return calculate_invoice(
            [item.as_line_input() for item in items],
            discount=self.invoice_discount(),
            tax_percentage=invoice_pct,
            shipping=self.shipping_amount,
        )

    def recalc_totals(self):
        """Recompute totals from items and copy them onto the instances.

        Returns the items so the caller can persist the derived line
        fields alongside the header."""
        items = list(self.items.select_related("tax_rate").order_by("position", "pk"))
        totals = self.calculate(items)
        for item, result in zip(items, totals.lines):
            item.line_subtotal = result.line_subtotal
            item.discount_amount = result.discount_amount
            item.net_amount = result.net_amount
            item.tax_amount = result.tax_amount
            item.line_total = result.line_total
        self.subtotal = totals.subtotal
        self.discount_amount = totals.discount_amount
        self.tax_amount = totals.tax_amount
        self.shipping_amount = totals.shipping_amount
        self.total = totals.total
        self.amount_due = self.total - self.amount_paid
        return items

    # ---- lifecycle ----

    def transition_to(self, new_status):
        current = InvoiceStatus(self.status)
        # Look up what states are allowed from the current status
        if new_status not in INVOICE_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(
                f"Cannot go from {self.status} to {new_status}")

        now = timezone.now()
        self.status = new_status
        update_fields = ["status"]
        if new_status == InvoiceStatus.VIEWED and not self.viewed_at:
            self.viewed_at = now
            update_fields.append("viewed_at")
        elif new_status == InvoiceStatus.PAID:
            self.paid_at = now
            update_fields.append("paid_at")
        elif new_status == InvoiceStatus.CANCELLED:
            self.cancelled_at = now
            update_fields.append("cancelled_at")
        self.save(update_fields=update_fields)
        return self

    def clean(self):
        if self.client_id and self.client.ledger_id != self.ledger_id:
            raise ValidationError("Client must belong to the same ledger.")
        if self.tax_rate_id and self.tax_rate.ledger_id != self.ledger_id:
            raise ValidationError("Tax rate must belong to the same ledger.")
        if self.due_date and self.due_date < self.issue_date:
            raise ValidationError("Due date cannot be before issue date.")
        if self.discount_value < 0 or self.shipping_amount < 0:
            raise ValidationError("Discount and shipping must be >= 0")
        if self.invoice_type != InvoiceType.CREDIT_NOTE and self.credit_note_for_id:
            raise ValidationError("Only credit notes can reference an invoice.")

        """ Make issued invoices immutable in all code paths:
            only payment bookkeeping and status may change """
        if self.pk:
            orig = Invoice.objects.filter(pk=self.pk).first()
            if orig and orig.status != InvoiceStatus.DRAFT:
                changed = [f for f in MONETARY_FIELDS
                           if getattr(orig, f) != getattr(self, f)]
                if changed:
                    raise ValidationError(
                        f"Cannot modify {changed} on an issued {orig.invoice_type}."
                    )

    def save(self, *args, **kwargs):
        # Number is taken from the per-prefix sequence on first save
        if not self.number:
            key = "template" if self.is_template else self.invoice_type
            prefix = ledger_setting("INVOICE_PREFIXES")[key]
            self.number = NumberSequence.next_number(self.ledger, prefix)
            if kwargs.get("update_fields") is not None:
                kwargs["update_fields"] = list(kwargs["update_fields"]) + ["number"]

        # amount_due is never stored independently of this invariant
        self.amount_due = self.total - self.amount_paid
        if self.amount_due < 0:
            raise OverpaymentError("Amount paid cannot exceed the invoice total")
        if kwargs.get("update_fields") is not None:
            kwargs["update_fields"] = list(
                set(kwargs["update_fields"]) | {"amount_due"})

        self.full_clean()
        super().save(*args, **kwargs)


class InvoiceItem(models.Model):  # One product/service line on an invoice

    invoice = models.ForeignKey(
        Invoice, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField(default=0)
    description = models.TextField(blank=True, default="")

    # Core pricing: quantity × unit_price, then discount, then tax
    quantity = models.DecimalField(
        max_digits=14, decimal_places=4, default=Decimal("1"))
    unit_price = models.DecimalField(
        max_digits=18, decimal_places=4, default=ZERO)
    discount_type = models.CharField(
        max_length=10, choices=DiscountType.choices, blank=True, default=""
    )
    discount_value = models.DecimalField(
        max_digits=18, decimal_places=4, default=ZERO)
    # Own rate overrides the invoice-level rate
    tax_rate = models.ForeignKey(
        TaxRate, null=True, blank=True, on_delete=models.PROTECT,
        related_name="invoice_items",
    )

    # Post to this revenue account (ledger's sales account when unset)
    account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        help_text="Sales / revenue account for this line",
    )

    # Computed by Invoice.recalc_totals()
    line_subtotal = models.DecimalField(
        max_digits=18, decimal_places=2, default=ZERO)
    discount_amount = models.DecimalField(
        max_digits=18, decimal_places=2, default=ZERO)
    net_amount = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)
    tax_amount = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)
    line_total = models.DecimalField(max_digits=18, decimal_places=2, default=ZERO)

    class Meta:
        ordering = ("position", "pk")
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=0) &
                models.Q(unit_price__gte=0) &
                models.Q(discount_value__gte=0),
                name="invitem_non_negative_amounts",
            ),
        ]

    def __str__(self):
        return f"{self.invoice.number}: {self.description or 'item'} = {self.line_total}"

    def item_discount(self):
        if self.discount_type and self.discount_value > 0:
            return Discount(self.discount_type, self.discount_value)
        return None

    def as_line_input(self):
        return LineInput(
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount=self.item_discount(),
            tax_percentage=self.tax_rate.percentage if self.tax_rate_id else None,
        )

    def clean(self):
        if self.quantity is not None and self.quantity < 0:
            raise ValidationError("Quantity must be >= 0")
        if self.unit_price is not None and self.unit_price < 0:
            raise ValidationError("Unit price must be >= 0")

        ledger_id = self.invoice.ledger_id
        if self.tax_rate_id and self.tax_rate.ledger_id != ledger_id:
            raise ValidationError("Tax rate must belong to the invoice's ledger.")
        if self.account_id:
            if self.account.ledger_id != ledger_id:
                raise ValidationError("Account must belong to the invoice's ledger.")
            if self.account.ac_type != AccountType.REVENUE:
                raise ValidationError("Invoice items must post to a revenue account.")

        # Items are editable only while the invoice is a draft
        if not self.invoice.is_draft:
            raise ValidationError("Cannot change items of an issued invoice.")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if not self.invoice.is_draft:
            raise ValidationError("Cannot delete items of an issued invoice.")
        return super().delete(*args, **kwargs)


def default_due_date(issue_date, client):
    return issue_date + datetime.timedelta(days=client.payment_terms_days)
