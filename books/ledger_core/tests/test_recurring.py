import datetime
from unittest import mock

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase
from django.utils import timezone

from ..choices import Frequency
from ..models import Invoice, RecurringSchedule
from ..services import advance_date, create_schedule, run_due_schedules
from ..services.recurring import claim, process_schedule, release
from .base import LedgerTestCase

D = datetime.date


class AdvanceDateTests(SimpleTestCase):

    def test_weekly_and_biweekly(self):
        self.assertEqual(advance_date(D(2024, 1, 1), Frequency.WEEKLY), D(2024, 1, 8))
        self.assertEqual(advance_date(D(2024, 1, 1), Frequency.BIWEEKLY, 2), D(2024, 1, 29))

    def test_month_end_is_clamped_then_restored(self):
        feb = advance_date(D(2024, 1, 31), Frequency.MONTHLY)
        self.assertEqual(feb, D(2024, 2, 29))
        # anchored on the schedule's start day, not on the clamped date
        self.assertEqual(advance_date(feb, Frequency.MONTHLY, anchor_day=31), D(2024, 3, 31))
        self.assertEqual(advance_date(D(2023, 1, 31), Frequency.MONTHLY), D(2023, 2, 28))

    def test_quarterly_and_yearly_cross_years(self):
        self.assertEqual(advance_date(D(2024, 11, 30), Frequency.QUARTERLY), D(2025, 2, 28))
        self.assertEqual(advance_date(D(2024, 2, 29), Frequency.YEARLY), D(2025, 2, 28))
        self.assertEqual(advance_date(D(2024, 12, 15), Frequency.MONTHLY, 3), D(2025, 3, 15))

    def test_interval_must_be_positive(self):
        with self.assertRaises(ValidationError):
            advance_date(D(2024, 1, 1), Frequency.MONTHLY, 0)

    def test_unknown_frequency(self):
        with self.assertRaises(ValidationError):
            advance_date(D(2024, 1, 1), "fortnightly")


class RecurringScheduleTests(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.source = self.simple_invoice(
            amount="500.00", issue=False, issue_date=D(2024, 1, 1))

    def schedule(self, **kwargs):
        kwargs.setdefault("start_date", D(2024, 1, 1))
        return create_schedule(self.source.pk, Frequency.MONTHLY, **kwargs)

    def generated(self):
        return Invoice.objects.filter(recurring_schedule__isnull=False).order_by("issue_date")

    def test_schedule_copies_the_source_into_a_template(self):
        schedule = self.schedule()
        template = schedule.template

        self.assertTrue(template.is_template)
        self.assertNotEqual(template.pk, self.source.pk)
        self.assertTrue(template.number.startswith("TPL-"))
        self.assertEqual(template.total, self.source.total)
        self.assertEqual(schedule.next_due_date, D(2024, 1, 1))

    """ Running the same tick twice creates one invoice """
    def test_same_day_rerun_generates_once(self):
        schedule = self.schedule()
        RecurringSchedule.objects.filter(pk=schedule.pk).update(
            next_due_date=D(2024, 2, 1), occurrences=1)

        first = run_due_schedules(today=D(2024, 2, 1))
        second = run_due_schedules(today=D(2024, 2, 1))

        self.assertEqual(len(first.created), 1)
        self.assertEqual(second.created, [])
        self.assertEqual(self.generated().count(), 1)
        schedule.refresh_from_db()
        self.assertEqual(schedule.next_due_date, D(2024, 3, 1))
        self.assertEqual(schedule.last_created_date, D(2024, 2, 1))
        self.assertEqual(schedule.claim_token, "")

        invoice = self.generated().get()
        self.assertEqual(invoice.issue_date, D(2024, 2, 1))
        self.assertEqual(invoice.status, "draft")
        self.assertEqual(invoice.total, self.source.total)
        self.assertFalse(invoice.is_template)

    def test_missed_periods_are_caught_up(self):
        schedule = self.schedule()
        summary = run_due_schedules(today=D(2024, 3, 15))

        self.assertEqual(len(summary.created), 3)
        self.assertEqual(
            [i.issue_date for i in self.generated()],
            [D(2024, 1, 1), D(2024, 2, 1), D(2024, 3, 1)],
        )
        schedule.refresh_from_db()
        self.assertEqual(schedule.next_due_date, D(2024, 4, 1))
        self.assertEqual(schedule.occurrences, 3)

    def test_month_end_schedule_keeps_its_day(self):
        self.schedule(start_date=D(2024, 1, 31))
        run_due_schedules(today=D(2024, 3, 31))
        self.assertEqual(
            [i.issue_date for i in self.generated()],
            [D(2024, 1, 31), D(2024, 2, 29), D(2024, 3, 31)],
        )

    def test_max_occurrences_deactivates(self):
        schedule = self.schedule(max_occurrences=2)
        summary = run_due_schedules(today=D(2024, 6, 1))

        self.assertEqual(len(summary.created), 2)
        schedule.refresh_from_db()
        self.assertFalse(schedule.is_active)

    def test_end_date_deactivates(self):
        schedule = self.schedule(end_date=D(2024, 2, 15))
        run_due_schedules(today=D(2024, 6, 1))

        self.assertEqual(self.generated().count(), 2)
        schedule.refresh_from_db()
        self.assertFalse(schedule.is_active)

    def test_auto_issue_posts_each_invoice(self):
        self.schedule(auto_issue=True)
        run_due_schedules(today=D(2024, 1, 1))

        invoice = self.generated().get()
        self.assertEqual(invoice.status, "sent")
        self.assertEqual(self.balance("1100"), invoice.total)

    def test_templates_are_never_issued_or_reported(self):
        schedule = self.schedule()
        self.assertFalse(Invoice.objects.documents().filter(pk=schedule.template_id).exists())

    def test_live_claim_blocks_other_workers(self):
        schedule = self.schedule()
        t0 = timezone.now()
        token = claim(schedule.pk, now=t0)
        self.assertTrue(token)

        self.assertIsNone(claim(schedule.pk, now=t0 + datetime.timedelta(seconds=60)))
        summary = run_due_schedules(today=D(2024, 1, 1), now=t0 + datetime.timedelta(seconds=60))
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(self.generated().count(), 0)

        # an abandoned claim (older than the TTL) is taken over
        takeover = claim(schedule.pk, now=t0 + datetime.timedelta(seconds=601))
        self.assertTrue(takeover)
        self.assertNotEqual(takeover, token)

    def test_stale_token_does_not_generate(self):
        schedule = self.schedule()
        token = claim(schedule.pk)
        release(schedule.pk, token)
        self.assertIsNone(process_schedule(schedule.pk, token))
        self.assertEqual(self.generated().count(), 0)

    def test_failure_is_recorded_and_retried(self):
        schedule = self.schedule()
        with mock.patch("ledger_core.services.recurring.copy_invoice",
                        side_effect=RuntimeError("boom")):
            summary = run_due_schedules(today=D(2024, 1, 1))

        self.assertEqual(summary.failed, 1)
        schedule.refresh_from_db()
        self.assertEqual(schedule.last_error, "boom")
        self.assertEqual(schedule.claim_token, "")
        self.assertEqual(schedule.next_due_date, D(2024, 1, 1))

        # next tick succeeds
        summary = run_due_schedules(today=D(2024, 1, 1))
        self.assertEqual(len(summary.created), 1)
        schedule.refresh_from_db()
        self.assertEqual(schedule.last_error, "")

    def test_only_invoices_can_recur(self):
        estimate = self.make_invoice(invoice_type="estimate")
        with self.assertRaises(ValidationError):
            create_schedule(estimate.pk, Frequency.MONTHLY, D(2024, 1, 1))
