from django.core.exceptions import ValidationError
from django.db import models
from ..managers import LedgerManager
from .ledger import Ledger


# ---------- Period (accounting period) ----------
class Period(models.Model):  # A time bucket during which journal entries are grouped

    # Every ledger has its own independent calendar of periods
    ledger = models.ForeignKey(
        Ledger,
        # Prevent accidental deletion of periods tied to journal entries
        on_delete=models.PROTECT,
    )

    # Human-readable label for the period
    name = models.CharField(max_length=50)  # Example: "2025-Q3" or "FY2025-01"

    # Define the exact date range of the accounting period (inclusive)
    start_date = models.DateField()
    end_date = models.DateField()

    # Indicate whether the books for this period are closed
    is_closed = models.BooleanField(default=False)
    """
        When is_closed=True:
            No new postings allowed.
            Prevents backdating transactions that could corrupt finalized reports.
    """
    closed_at = models.DateTimeField(null=True, blank=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "start_date"]),
            models.Index(fields=["ledger", "is_closed"]),
        ]

        # Prevent duplicate period names inside the same ledger
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "name"], name="uq_ledger_period_name"),
        ]

        ordering = ("ledger", "start_date")

    def __str__(self):
        return f"{self.ledger.slug} {self.name}"  # Example: "acme 2025-07".

    @classmethod
    def containing(cls, ledger_id, date):
        """The period whose date range covers `date`, or None."""
        return cls.objects.filter(
            ledger_id=ledger_id, start_date__lte=date, end_date__gte=date
        ).first()

    def clean(self):
        if self.start_date > self.end_date:
            raise ValidationError("start_date must not be after end_date")

        # Periods of one ledger never overlap
        overlapping = Period.objects.filter(
            ledger_id=self.ledger_id,
            start_date__lte=self.end_date,
            end_date__gte=self.start_date,
        ).exclude(pk=self.pk)
        if overlapping.exists():
            raise ValidationError("Period overlaps an existing period")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
