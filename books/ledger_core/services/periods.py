import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..models import JournalEntry, Period
from .audit_helper import log_action

logger = logging.getLogger(__name__)

"""
    Posting date determines the period.
    Changing the date before posting should affect the period.
"""
def ensure_open(ledger, date):
    """Raise ValidationError if `date` falls inside a closed period."""
    period = Period.containing(ledger.pk, date)
    if period and period.is_closed:
        raise ValidationError(f"Period {period.name} is closed")
    return period


def close_period(period_id, actor="system"):
    with transaction.atomic():
        period = Period.objects.select_for_update().get(pk=period_id)
        if period.is_closed:
            return period
        drafts = JournalEntry.objects.filter(
            ledger=period.ledger,
            date__gte=period.start_date,
            date__lte=period.end_date,
            status="draft",
        )
        if drafts.exists():
            raise ValidationError(
                f"Period {period.name} still has draft journal entries")
        period.is_closed = True
        period.closed_at = timezone.now()
        period.save(update_fields=["is_closed", "closed_at"])
        log_action(action="close", instance=period, actor=actor)
    logger.info("Closed period %s for ledger %s", period.name, period.ledger.slug)
    return period


def reopen_period(period_id, actor="system"):
    with transaction.atomic():
        period = Period.objects.select_for_update().get(pk=period_id)
        if not period.is_closed:
            return period
        period.is_closed = False
        period.closed_at = None
        period.save(update_fields=["is_closed", "closed_at"])
        log_action(action="reopen", instance=period, actor=actor)
    logger.warning("Reopened period %s for ledger %s", period.name, period.ledger.slug)
    return period
