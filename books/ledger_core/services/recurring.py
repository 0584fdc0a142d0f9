"""
Recurring invoice scheduler.

Each due period goes through claim/commit:

1. claim: in its own transaction, lock the schedule row (skipping rows
   another worker holds) and stamp claim_token + claimed_at. A claim older
   than RECURRING_CLAIM_TTL_SECONDS is treated as abandoned.
2. commit: in a second transaction, re-check the token, clone the
   template, advance next_due_date and release the claim.

If step 2 fails the claim is released with the error recorded and the
schedule is retried on the next tick. The (recurring_schedule,
schedule_period) unique constraint stops a second invoice for a period.
"""
import calendar
import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..choices import Frequency, InvoiceType
from ..conf import ledger_setting
from ..exceptions import NotFoundError
from ..models import Invoice, RecurringSchedule
from .audit_helper import log_action
from .invoicing import copy_invoice, issue_invoice

logger = logging.getLogger(__name__)

# Months per step for month-based frequencies
MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}
WEEK_STEPS = {
    Frequency.WEEKLY: 1,
    Frequency.BIWEEKLY: 2,
}

# Upper bound on missed periods generated for one schedule in one tick
MAX_CATCH_UP = 120


@dataclass
class RunSummary:
    created: List[str] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0


def add_months(date, months, anchor_day):
    """Move `date` by `months`, landing on `anchor_day` or the month's last day."""
    index = date.month - 1 + months
    year, month = date.year + index // 12, index % 12 + 1
    day = min(anchor_day, calendar.monthrange(year, month)[1])
    return datetime.date(year, month, day)


def advance_date(current, frequency, interval=1, anchor_day=None):
    """Next occurrence after `current` for frequency × interval."""
    if interval < 1:
        raise ValidationError("Interval must be at least 1")
    if frequency in WEEK_STEPS:
        return current + datetime.timedelta(weeks=WEEK_STEPS[frequency] * interval)
    if frequency in MONTH_STEPS:
        return add_months(current, MONTH_STEPS[frequency] * interval,
                          anchor_day or current.day)
    raise ValidationError(f"Unknown frequency: {frequency}")


def create_schedule(template_id, frequency, start_date, interval=1, end_date=None,
                    max_occurrences=None, auto_issue=False, name="", actor="system"):
    """
    Schedule copies of an invoice. A non-template invoice is first copied
    into a template so later edits to it do not leak into the series.
    """
    with transaction.atomic():
        source = Invoice.objects.filter(pk=template_id).first()
        if source is None:
            raise NotFoundError(f"Invoice {template_id} does not exist")
        if source.invoice_type != InvoiceType.INVOICE:
            raise ValidationError("Only invoices can recur")
        template = source
        if not source.is_template:
            template = copy_invoice(
                source, InvoiceType.INVOICE, source.issue_date,
                due_date=source.due_date, is_template=True,
            )
        schedule = RecurringSchedule(
            ledger=template.ledger,
            template=template,
            name=name,
            frequency=frequency,
            interval=interval,
            start_date=start_date,
            end_date=end_date,
            max_occurrences=max_occurrences,
            auto_issue=auto_issue,
        )
        schedule.save()
        log_action(action="create", instance=schedule, actor=actor,
                   changes={"frequency": frequency, "interval": interval})
    return schedule


def claim(schedule_id, now=None) -> Optional[str]:
    """Take the schedule for one period; returns the claim token or None."""
    now = now or timezone.now()
    ttl = ledger_setting("RECURRING_CLAIM_TTL_SECONDS")
    with transaction.atomic():
        schedule = (
            RecurringSchedule.objects.select_for_update(skip_locked=True)
            .filter(pk=schedule_id, is_active=True)
            .first()
        )
        if schedule is None:
            return None
        if schedule.is_claimed(ttl, now):
            logger.warning(
                "Schedule %s is claimed by another worker since %s",
                schedule.pk, schedule.claimed_at,
            )
            return None
        if schedule.claim_token:
            logger.warning("Taking over abandoned claim on schedule %s", schedule.pk)
        token = uuid.uuid4().hex
        schedule.claim_token = token
        schedule.claimed_at = now
        schedule.save(update_fields=["claim_token", "claimed_at"])
    return token


def release(schedule_id, token, error=""):
    """Drop a claim without advancing (the period will be retried)."""
    return RecurringSchedule.objects.filter(
        pk=schedule_id, claim_token=token
    ).update(claim_token="", claimed_at=None, last_error=error[:2000])


def process_schedule(schedule_id, token, actor="scheduler") -> Optional[Invoice]:
    """Generate the invoice for the claimed period and advance the schedule."""
    with transaction.atomic():
        schedule = RecurringSchedule.objects.select_for_update().get(pk=schedule_id)
        if schedule.claim_token != token:
            logger.warning("Lost claim on schedule %s; skipping", schedule.pk)
            return None

        period = schedule.next_due_date
        invoice = Invoice.objects.filter(
            recurring_schedule=schedule, schedule_period=period
        ).first()
        created = invoice is None
        if created:
            invoice = copy_invoice(
                schedule.template, InvoiceType.INVOICE, period,
                recurring_schedule=schedule, schedule_period=period,
            )
            if schedule.auto_issue:
                invoice = issue_invoice(invoice.pk, actor=actor)
            schedule.occurrences += 1
            schedule.last_created_date = period

        schedule.next_due_date = advance_date(
            period, schedule.frequency, schedule.interval,
            anchor_day=schedule.start_date.day,
        )
        if schedule.max_occurrences and schedule.occurrences >= schedule.max_occurrences:
            schedule.is_active = False
        if schedule.end_date and schedule.next_due_date > schedule.end_date:
            schedule.is_active = False
        schedule.claim_token = ""
        schedule.claimed_at = None
        schedule.last_error = ""
        schedule.save()

        log_action(action="generate", instance=schedule, actor=actor,
                   changes={"period": period.isoformat(), "invoice": invoice.number,
                            "next_due_date": schedule.next_due_date.isoformat()})

    if created:
        logger.info("Schedule %s generated %s for %s", schedule.pk, invoice.number, period)
        return invoice
    return None


def run_due_schedules(today=None, now=None) -> RunSummary:
    """One scheduler tick: every active schedule due on or before `today`."""
    today = today or timezone.localdate()
    summary = RunSummary()
    due_ids = list(
        RecurringSchedule.objects.filter(is_active=True, next_due_date__lte=today)
        .order_by("pk").values_list("pk", flat=True)
    )
    for schedule_id in due_ids:
        for _ in range(MAX_CATCH_UP):
            schedule = RecurringSchedule.objects.get(pk=schedule_id)
            if not schedule.is_active or schedule.next_due_date > today:
                break
            token = claim(schedule_id, now=now)
            if token is None:
                summary.skipped += 1
                break
            try:
                invoice = process_schedule(schedule_id, token)
            except Exception as exc:
                # retried on the next tick; other schedules keep running
                logger.exception("Schedule %s failed for %s",
                                 schedule_id, schedule.next_due_date)
                release(schedule_id, token, error=str(exc))
                summary.failed += 1
                break
            if invoice is not None:
                summary.created.append(invoice.number)

    logger.info(
        "Recurring run for %s: %d created, %d skipped, %d failed",
        today, len(summary.created), summary.skipped, summary.failed,
    )
    return summary
