import datetime
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from ..choices import Frequency
from ..managers import LedgerManager
from .invoice import Invoice
from .ledger import Ledger


# ---------- Recurring invoice schedules ----------
class RecurringSchedule(models.Model):
    """Generates a copy of `template` every frequency × interval.

    Workers take a schedule with a claim (claim_token + claimed_at) before
    generating; a claim older than RECURRING_CLAIM_TTL_SECONDS counts as
    abandoned and can be taken over.
    """

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    # Template invoice (is_template=True) cloned for each period
    template = models.ForeignKey(
        Invoice, on_delete=models.PROTECT, related_name="template_schedules"
    )
    name = models.CharField(max_length=200, blank=True, default="")

    frequency = models.CharField(
        max_length=10, choices=Frequency.choices, default=Frequency.MONTHLY
    )
    interval = models.PositiveIntegerField(default=1)

    # Advancement is anchored on start_date (Jan 31 → Feb 28 → Mar 31)
    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)
    next_due_date = models.DateField(null=True, blank=True)
    last_created_date = models.DateField(null=True, blank=True)

    occurrences = models.PositiveIntegerField(default=0)
    max_occurrences = models.PositiveIntegerField(null=True, blank=True)

    is_active = models.BooleanField(default=True)
    # Issue (post) each generated invoice straight away
    auto_issue = models.BooleanField(default=False)

    claim_token = models.CharField(max_length=64, blank=True, default="")
    claimed_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["is_active", "next_due_date"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(interval__gte=1), name="schedule_interval_min_1"
            ),
        ]

    def __str__(self):
        return f"{self.name or self.template.number} ({self.frequency}×{self.interval})"

    def is_claimed(self, ttl_seconds, now=None):
        """True while a live (non-expired) claim is held."""
        if not self.claim_token or self.claimed_at is None:
            return False
        now = now or timezone.now()
        return now - self.claimed_at < datetime.timedelta(seconds=ttl_seconds)

    def clean(self):
        if self.template_id and self.template.ledger_id != self.ledger_id:
            raise ValidationError("Template must belong to the same ledger")
        if self.template_id and not self.template.is_template:
            raise ValidationError("Schedules must be built from a template invoice")
        if self.interval is not None and self.interval < 1:
            raise ValidationError("Interval must be at least 1")
        if self.end_date and self.end_date < self.start_date:
            raise ValidationError("end_date cannot be before start_date")

    def save(self, *args, **kwargs):
        if self.next_due_date is None:
            self.next_due_date = self.start_date
        self.full_clean()
        return super().save(*args, **kwargs)
