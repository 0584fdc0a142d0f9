import datetime
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.utils import timezone

from ..exceptions import (InvalidTransitionError, NotFoundError,
                          OverAllocationError, OverpaymentError)
from ..models import Client, JournalEntry, Payment
from ..services import (CapturedPayment, apply_credit_note, create_invoice,
                        issue_credit_note, record_captured_payment,
                        record_payment, record_refund, record_split_payment)
from .base import LedgerTestCase

PAY_DAY = datetime.date(2024, 1, 20)


class RecordPaymentTests(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.invoice = self.make_invoice(issue=True)  # 97.20

    """ Partial then full payment """
    def test_partial_then_paid(self):
        record_payment(self.invoice.pk, "50.00", date=PAY_DAY)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "partial")
        self.assertEqual(self.invoice.amount_paid, Decimal("50.00"))
        self.assertEqual(self.invoice.amount_due, Decimal("47.20"))

        record_payment(self.invoice.pk, "47.20", date=PAY_DAY)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")
        self.assertEqual(self.invoice.amount_due, Decimal("0.00"))
        self.assertIsNotNone(self.invoice.paid_at)

        self.assertEqual(self.balance("1000"), Decimal("97.20"))  # cash
        self.assertEqual(self.balance("1100"), Decimal("0.00"))   # AR
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("0.00"))

    def test_each_payment_posts_one_entry(self):
        payment = record_payment(self.invoice.pk, "50.00", date=PAY_DAY)
        self.assertIsNotNone(payment.journal_entry_id)
        self.assertEqual(
            JournalEntry.objects.filter(reference_type="payment").count(), 1)
        self.assertEqual(payment.allocated_total(), Decimal("50.00"))
        self.assertEqual(payment.unallocated_amount(), Decimal("0.00"))

    def test_overpayment_is_rejected(self):
        with self.assertRaises(OverpaymentError):
            record_payment(self.invoice.pk, "97.21", date=PAY_DAY)

        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.amount_paid, Decimal("0.00"))
        self.assertFalse(Payment.objects.exists())
        self.assertEqual(self.balance("1000"), Decimal("0.00"))

    def test_paid_invoice_takes_no_more_money(self):
        record_payment(self.invoice.pk, "97.20", date=PAY_DAY)
        with self.assertRaises(OverpaymentError):
            record_payment(self.invoice.pk, "0.01", date=PAY_DAY)

    def test_draft_invoice_cannot_be_paid(self):
        draft = self.simple_invoice(issue=False)
        with self.assertRaises(InvalidTransitionError):
            record_payment(draft.pk, "10.00", date=PAY_DAY)

    def test_non_positive_and_float_amounts_are_refused(self):
        for amount in ("0", "-5.00", 5.0):
            with self.assertRaises(ValidationError):
                record_payment(self.invoice.pk, amount, date=PAY_DAY)

    def test_missing_invoice(self):
        with self.assertRaises(NotFoundError):
            record_payment(999999, "10.00")

    def test_payment_to_custom_deposit_account(self):
        bank = self.account("1000")
        record_payment(self.invoice.pk, "10.00", date=PAY_DAY,
                       deposit_account_id=bank.pk)
        self.assertEqual(self.balance("1000"), Decimal("10.00"))

        with self.assertRaises(ValidationError):
            record_payment(self.invoice.pk, "10.00", date=PAY_DAY,
                           deposit_account_id=self.account("4000").pk)


class SplitPaymentTests(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.first = self.simple_invoice(amount="100.00")
        self.second = self.simple_invoice(amount="60.00")

    def test_one_payment_across_invoices(self):
        payment = record_split_payment(
            self.ledger, "160.00", "bank_transfer", PAY_DAY,
            allocations=[(self.first.pk, "100.00"), (self.second.pk, "60.00")],
        )
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual(self.first.status, "paid")
        self.assertEqual(self.second.status, "paid")
        self.assertEqual(payment.allocations.count(), 2)
        self.assertEqual(self.balance("1100"), Decimal("0.00"))

    def test_allocations_beyond_the_payment_are_refused(self):
        with self.assertRaises(OverAllocationError):
            record_split_payment(
                self.ledger, "100.00", "bank_transfer", PAY_DAY,
                allocations=[(self.first.pk, "60.00"), (self.second.pk, "50.00")],
            )
        self.assertFalse(Payment.objects.exists())

    def test_unallocated_remainder_stays_on_the_payment(self):
        payment = record_split_payment(
            self.ledger, "120.00", "cash", PAY_DAY,
            allocations=[(self.first.pk, "100.00")],
        )
        self.assertEqual(payment.unallocated_amount(), Decimal("20.00"))
        self.assertEqual(self.balance("1000"), Decimal("120.00"))

    def test_one_overpaid_invoice_fails_the_whole_payment(self):
        with self.assertRaises(OverpaymentError):
            record_split_payment(
                self.ledger, "200.00", "cash", PAY_DAY,
                allocations=[(self.first.pk, "100.00"), (self.second.pk, "70.00")],
            )
        self.first.refresh_from_db()
        self.assertEqual(self.first.amount_paid, Decimal("0.00"))

    def test_invoices_of_different_clients_are_refused(self):
        other = Client.objects.create(ledger=self.ledger, name="Other Inc")
        other_invoice = create_invoice(
            self.ledger, other.pk, datetime.date(2024, 1, 1),
            [{"unit_price": "10.00"}], issue=True)
        with self.assertRaises(ValidationError):
            record_split_payment(
                self.ledger, "20.00", "cash", PAY_DAY,
                allocations=[(self.first.pk, "10.00"), (other_invoice.pk, "10.00")],
            )


class CapturedPaymentTests(LedgerTestCase):

    def test_replayed_capture_is_recorded_once(self):
        invoice = self.simple_invoice(amount="40.00")
        captured = CapturedPayment(
            amount=Decimal("40.00"), external_reference="ch_123",
            captured_at=timezone.now(),
        )
        first = record_captured_payment(invoice.pk, captured)
        again = record_captured_payment(invoice.pk, captured)

        self.assertEqual(first.pk, again.pk)
        self.assertEqual(first.method, "card")
        invoice.refresh_from_db()
        self.assertEqual(invoice.amount_paid, Decimal("40.00"))
        self.assertEqual(invoice.status, "paid")

    def test_same_reference_with_other_amount_is_refused(self):
        invoice = self.simple_invoice(amount="40.00")
        now = timezone.now()
        record_captured_payment(invoice.pk, CapturedPayment(Decimal("10.00"), "ch_9", now))
        with self.assertRaises(ValidationError):
            record_captured_payment(invoice.pk, CapturedPayment(Decimal("12.00"), "ch_9", now))


class CreditNoteSettlementTests(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.invoice = self.simple_invoice(amount="100.00")
        self.note = issue_credit_note(
            self.invoice.pk, issue_date=datetime.date(2024, 1, 5),
            items=[{"description": "Returned goods", "unit_price": "40.00"}],
        )

    def test_refund_pays_out_the_credit(self):
        refund = record_refund(self.note.pk, "40.00", date=PAY_DAY)

        self.assertEqual(refund.direction, "refund")
        self.note.refresh_from_db()
        self.assertEqual(self.note.status, "paid")
        self.assertEqual(self.balance("1000"), Decimal("-40.00"))
        # AR: +100 invoice, -40 credit note, +40 refund
        self.assertEqual(self.balance("1100"), Decimal("100.00"))

    def test_refund_cannot_exceed_the_credit(self):
        with self.assertRaises(OverpaymentError):
            record_refund(self.note.pk, "40.01", date=PAY_DAY)

    def test_only_credit_notes_are_refunded(self):
        with self.assertRaises(ValidationError):
            record_refund(self.invoice.pk, "10.00", date=PAY_DAY)

    def test_apply_credit_note_to_invoice(self):
        payment = apply_credit_note(self.note.pk, self.invoice.pk, "40.00", date=PAY_DAY)

        self.assertEqual(payment.method, "credit_note")
        self.assertIsNone(payment.journal_entry_id)
        self.invoice.refresh_from_db()
        self.note.refresh_from_db()
        self.assertEqual(self.invoice.status, "partial")
        self.assertEqual(self.invoice.amount_due, Decimal("60.00"))
        self.assertEqual(self.note.status, "paid")
        # AR was already credited when the note was posted
        self.assertEqual(self.balance("1100"), Decimal("60.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("60.00"))
