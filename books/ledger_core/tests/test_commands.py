import datetime
from decimal import Decimal
from io import StringIO

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db.models.deletion import ProtectedError

from ..choices import Frequency
from ..models import Account, Invoice, Ledger
from ..services import create_schedule, record_payment
from ..tasks import recompute_ledger_balances, run_recurring_invoices, verify_all_balances
from .base import LedgerTestCase


class ManagementCommandTests(LedgerTestCase):

    def test_seed_ledger(self):
        out = StringIO()
        call_command("seed_ledger", "--name", "Corner Shop", stdout=out)

        ledger = Ledger.objects.get(slug="corner-shop")
        self.assertEqual(Account.objects.filter(ledger=ledger).count(), 14)
        self.assertIn("corner-shop", out.getvalue())

        # re-running keeps what is there
        call_command("seed_ledger", "--name", "Corner Shop", stdout=StringIO())
        self.assertEqual(Account.objects.filter(ledger=ledger).count(), 14)

    def test_run_recurring(self):
        source = self.simple_invoice(issue=False)
        create_schedule(source.pk, Frequency.MONTHLY, datetime.date(2024, 1, 1))

        out = StringIO()
        call_command("run_recurring", "--date", "2024-02-01", stdout=out)
        self.assertIn("2 created", out.getvalue())

        with self.assertRaises(CommandError):
            call_command("run_recurring", "--date", "Feb 1")

    def test_recompute_balances(self):
        self.simple_invoice(amount="100.00")
        Account.objects.filter(ledger=self.ledger, code="1100").update(balance=Decimal("1"))

        out = StringIO()
        call_command("recompute_balances", "--ledger", "test-co", "--check", stdout=out)
        self.assertIn("1 account(s) drifted", out.getvalue())
        self.assertEqual(self.balance("1100"), Decimal("1.00"))

        call_command("recompute_balances", "--ledger", "test-co", stdout=StringIO())
        self.assertEqual(self.balance("1100"), Decimal("100.00"))

        with self.assertRaises(CommandError):
            call_command("recompute_balances", "--ledger", "nope")


class TaskTests(LedgerTestCase):

    def test_recurring_task_returns_a_summary(self):
        source = self.simple_invoice(issue=False)
        create_schedule(source.pk, Frequency.MONTHLY, datetime.date(2024, 1, 1))

        result = run_recurring_invoices("2024-01-01")
        self.assertEqual(len(result["created"]), 1)
        self.assertEqual(result["failed"], 0)

    def test_balance_tasks(self):
        self.simple_invoice(amount="100.00")
        self.assertEqual(verify_all_balances(), {})

        Account.objects.filter(ledger=self.ledger, code="1000").update(balance=Decimal("5"))
        self.assertEqual(verify_all_balances(), {"test-co": ["1000"]})
        self.assertEqual(recompute_ledger_balances(self.ledger.pk), ["1000"])
        self.assertEqual(verify_all_balances(), {})


class DeleteGuardTests(LedgerTestCase):

    def test_used_account_cannot_be_deleted(self):
        self.simple_invoice()
        with self.assertRaises(ProtectedError):
            self.account("4000").delete()

    def test_applied_payment_cannot_be_deleted(self):
        invoice = self.simple_invoice()
        payment = record_payment(invoice.pk, "10.00", date=datetime.date(2024, 1, 5))
        with self.assertRaises(ValidationError):
            payment.delete()

    def test_draft_invoice_can_be_deleted(self):
        invoice = self.simple_invoice(issue=False)
        invoice.delete()
        self.assertFalse(Invoice.objects.exists())
