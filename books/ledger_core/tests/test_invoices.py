import datetime
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.utils import timezone

from ..exceptions import DataIntegrityError, InvalidTransitionError, NotFoundError
from ..models import AuditLog, Invoice, JournalEntry
from ..services import (DeliveryConfirmation, add_item, cancel_invoice,
                        convert_estimate, issue_credit_note, issue_invoice,
                        mark_viewed, quote_totals, recalculate_invoice,
                        record_delivery, render_invoice, set_discount,
                        verify_invoice_totals)
from .base import LedgerTestCase


class InvoiceCreationTests(LedgerTestCase):

    def test_totals_are_stored_on_create(self):
        invoice = self.make_invoice()

        self.assertEqual(invoice.status, "draft")
        self.assertEqual(invoice.number, "INV-00001")
        self.assertEqual(invoice.subtotal, Decimal("100.00"))
        self.assertEqual(invoice.discount_amount, Decimal("10.00"))
        self.assertEqual(invoice.tax_amount, Decimal("7.20"))
        self.assertEqual(invoice.total, Decimal("97.20"))
        self.assertEqual(invoice.amount_due, Decimal("97.20"))
        # default terms come from the client
        self.assertEqual(invoice.due_date, datetime.date(2024, 1, 31))

        item = invoice.items.get()
        self.assertEqual(item.line_subtotal, Decimal("100.00"))
        self.assertEqual(item.tax_amount, Decimal("7.20"))

    def test_numbers_are_sequential_per_type(self):
        first = self.make_invoice()
        second = self.make_invoice()
        estimate = self.make_invoice(invoice_type="estimate")

        self.assertEqual(first.number, "INV-00001")
        self.assertEqual(second.number, "INV-00002")
        self.assertEqual(estimate.number, "EST-00001")

    def test_quote_matches_the_stored_invoice(self):
        totals = quote_totals(
            self.ledger,
            [{"quantity": "2", "unit_price": "50.00"}],
            discount_type="percentage", discount_value="10",
            tax_rate_id=self.sales_tax.pk,
        )
        self.assertEqual(totals.total, self.make_invoice().total)

    def test_stored_totals_round_trip(self):
        invoice = self.make_invoice()
        totals = recalculate_invoice(invoice.pk)
        self.assertEqual(totals.total, invoice.total)
        verify_invoice_totals(invoice.pk)

        # tamper behind the model's back
        Invoice.objects.filter(pk=invoice.pk).update(tax_amount=Decimal("1.00"))
        with self.assertRaises(DataIntegrityError):
            verify_invoice_totals(invoice.pk)

    def test_tax_rate_is_frozen_once_an_issued_invoice_uses_it(self):
        invoice = self.make_invoice(issue=True)

        self.sales_tax.percentage = Decimal("10")
        with self.assertRaises(ValidationError):
            self.sales_tax.save()

        # renaming is still allowed, and stored totals still round-trip
        self.sales_tax.refresh_from_db()
        self.sales_tax.name = "State sales tax"
        self.sales_tax.save()
        self.assertEqual(verify_invoice_totals(invoice.pk).total, Decimal("97.20"))

    def test_tax_rate_used_only_by_drafts_can_change(self):
        invoice = self.make_invoice()
        self.sales_tax.percentage = Decimal("10")
        self.sales_tax.save()

        totals = recalculate_invoice(invoice.pk)
        self.assertEqual(totals.tax_amount, Decimal("9.00"))
        self.assertEqual(totals.total, Decimal("99.00"))

    def test_float_amounts_are_refused(self):
        with self.assertRaises(ValidationError):
            self.simple_invoice(amount=19.99, issue=False)
        self.assertFalse(Invoice.objects.exists())

    def test_unknown_tax_rate_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.make_invoice(items=[{"unit_price": "10.00", "tax_rate_id": 999999}])

    def test_due_date_before_issue_date_is_refused(self):
        with self.assertRaises(ValidationError):
            self.simple_invoice(issue=False, due_date=datetime.date(2023, 12, 1))

    def test_add_item_and_discount_recalculate_draft(self):
        invoice = self.simple_invoice(amount="100.00", issue=False)
        add_item(invoice.pk, description="Extra", quantity="1", unit_price="50.00")
        invoice = set_discount(invoice.pk, "fixed", "15.00")

        invoice.refresh_from_db()
        self.assertEqual(invoice.subtotal, Decimal("150.00"))
        self.assertEqual(invoice.discount_amount, Decimal("15.00"))
        self.assertEqual(invoice.total, Decimal("135.00"))
        self.assertEqual(invoice.items.count(), 2)

    def test_metadata_must_be_flat_scalars(self):
        invoice = self.simple_invoice(issue=False, metadata={"po": "PO-7", "priority": 2})
        self.assertEqual(invoice.get_metadata(), {"po": "PO-7", "priority": 2})

        with self.assertRaises(ValidationError):
            self.simple_invoice(issue=False, metadata={"rate": 1.5})

    def test_version_1_metadata_is_upgraded_on_read(self):
        invoice = self.simple_invoice(issue=False)
        Invoice.objects.filter(pk=invoice.pk).update(
            metadata={"extra": {"po": "PO-1"}}, metadata_version=1)
        invoice.refresh_from_db()
        self.assertEqual(invoice.get_metadata(), {"po": "PO-1"})


class InvoiceLifecycleTests(LedgerTestCase):

    def test_issue_posts_the_revenue_entry(self):
        invoice = issue_invoice(self.make_invoice().pk)

        self.assertEqual(invoice.status, "sent")
        entry = JournalEntry.objects.get(reference_type="invoice", reference_id=invoice.pk)
        self.assertEqual(entry.status, "posted")
        self.assertTrue(entry.is_balanced())

        self.assertEqual(self.balance("1100"), Decimal("97.20"))   # AR
        self.assertEqual(self.balance("4000"), Decimal("100.00"))  # sales
        self.assertEqual(self.balance("4900"), Decimal("-10.00"))  # discounts
        self.assertEqual(self.balance("2100"), Decimal("7.20"))    # tax owed

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("97.20"))
        self.assertTrue(AuditLog.objects.filter(
            action="issue", object_type="Invoice", object_id=str(invoice.pk)).exists())

    def test_invoice_without_items_cannot_be_issued(self):
        invoice = self.make_invoice(items=[])
        with self.assertRaises(ValidationError):
            issue_invoice(invoice.pk)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "draft")

    def test_invalid_transition_leaves_status_unchanged(self):
        invoice = self.make_invoice()
        with self.assertRaises(InvalidTransitionError):
            invoice.transition_to("paid")
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "draft")

        # viewed requires a sent invoice
        with self.assertRaises(InvalidTransitionError):
            mark_viewed(invoice.pk)

    def test_viewed_is_stamped_once(self):
        invoice = self.simple_invoice()
        invoice = mark_viewed(invoice.pk)
        self.assertEqual(invoice.status, "viewed")
        self.assertIsNotNone(invoice.viewed_at)

        # viewed → cancelled is not a transition
        with self.assertRaises(InvalidTransitionError):
            cancel_invoice(invoice.pk)

    def test_issued_invoice_is_immutable(self):
        invoice = self.simple_invoice()
        invoice.shipping_amount = Decimal("5.00")
        with self.assertRaises(ValidationError):
            invoice.save()

        with self.assertRaises(ValidationError):
            add_item(invoice.pk, unit_price="1.00")

        with self.assertRaises(ValidationError):
            invoice.items.first().delete()

        with self.assertRaises(ValidationError):
            Invoice.objects.get(pk=invoice.pk).delete()

    def test_overdue_is_derived_on_read(self):
        invoice = self.simple_invoice(issue_date=datetime.date(2024, 1, 1))

        self.assertEqual(invoice.effective_status(datetime.date(2024, 1, 31)), "sent")
        self.assertEqual(invoice.effective_status(datetime.date(2024, 2, 1)), "overdue")
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "sent")

    def test_drafts_are_never_overdue(self):
        invoice = self.simple_invoice(issue=False)
        self.assertFalse(invoice.is_overdue(datetime.date(2030, 1, 1)))

    def test_cancel_draft_posts_nothing(self):
        invoice = self.simple_invoice(issue=False)
        invoice = cancel_invoice(invoice.pk)
        self.assertEqual(invoice.status, "cancelled")
        self.assertIsNotNone(invoice.cancelled_at)
        self.assertFalse(JournalEntry.objects.exists())

    def test_cancel_sent_invoice_reverses_its_entry(self):
        invoice = self.simple_invoice()
        cancel_invoice(invoice.pk)

        self.assertEqual(self.balance("1100"), Decimal("0.00"))
        self.assertEqual(self.balance("4000"), Decimal("0.00"))
        self.assertEqual(JournalEntry.objects.filter(reference_type="reversal").count(), 1)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("0.00"))

        # terminal
        with self.assertRaises(InvalidTransitionError):
            issue_invoice(invoice.pk)

    def test_credited_invoice_cannot_be_cancelled(self):
        invoice = self.simple_invoice(amount="100.00")
        issue_credit_note(invoice.pk, issue_date=datetime.date(2024, 1, 5))

        with self.assertRaises(InvalidTransitionError):
            cancel_invoice(invoice.pk)

        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "sent")
        self.assertEqual(self.balance("1100"), Decimal("0.00"))
        self.assertFalse(JournalEntry.objects.filter(reference_type="reversal").exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("0.00"))

    def test_render_and_delivery(self):
        invoice = self.make_invoice(issue=True)
        rendered = render_invoice(invoice.pk, as_of=datetime.date(2024, 1, 10))

        self.assertEqual(rendered.number, invoice.number)
        self.assertEqual(rendered.client, "Acme Corp")
        self.assertEqual(rendered.client_email, "ap@acme.test")
        self.assertEqual(rendered.totals["total"], Decimal("97.20"))
        self.assertEqual(rendered.totals["amount_due"], Decimal("97.20"))
        self.assertEqual(len(rendered.items), 1)
        self.assertEqual(rendered.status, "sent")

        delivered = timezone.now()
        invoice = record_delivery(invoice.pk, DeliveryConfirmation(delivered_at=delivered))
        self.assertEqual(invoice.sent_at, delivered)

    def test_delivery_of_draft_is_refused(self):
        invoice = self.simple_invoice(issue=False)
        with self.assertRaises(ValidationError):
            record_delivery(invoice.pk, DeliveryConfirmation(delivered_at=timezone.now()))


class CreditNoteTests(LedgerTestCase):

    def test_full_credit_note_reverses_the_invoice(self):
        invoice = self.make_invoice(issue=True)
        note = issue_credit_note(invoice.pk, issue_date=datetime.date(2024, 1, 5))

        self.assertEqual(note.invoice_type, "credit_note")
        self.assertEqual(note.number, "CN-00001")
        self.assertEqual(note.status, "sent")
        self.assertEqual(note.credit_note_for_id, invoice.pk)
        self.assertEqual(note.total, Decimal("97.20"))

        self.assertEqual(self.balance("1100"), Decimal("0.00"))
        self.assertEqual(self.balance("4000"), Decimal("0.00"))
        self.assertEqual(self.balance("2100"), Decimal("0.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.balance, Decimal("0.00"))

    def test_partial_credit_note_with_own_items(self):
        invoice = self.simple_invoice(amount="100.00")
        note = issue_credit_note(
            invoice.pk, issue_date=datetime.date(2024, 1, 5),
            items=[{"description": "Goodwill", "unit_price": "30.00"}],
        )
        self.assertEqual(note.total, Decimal("30.00"))
        self.assertEqual(self.balance("1100"), Decimal("70.00"))

    def test_credit_notes_cannot_exceed_the_invoice(self):
        invoice = self.simple_invoice(amount="100.00")
        issue_credit_note(invoice.pk, items=[{"unit_price": "60.00"}])
        with self.assertRaises(ValidationError):
            issue_credit_note(invoice.pk, items=[{"unit_price": "50.00"}])
        self.assertEqual(Invoice.objects.filter(invoice_type="credit_note").count(), 1)

    def test_draft_invoice_cannot_be_credited(self):
        invoice = self.simple_invoice(issue=False)
        with self.assertRaises(InvalidTransitionError):
            issue_credit_note(invoice.pk)


class EstimateTests(LedgerTestCase):

    def test_estimates_are_never_posted(self):
        estimate = self.make_invoice(invoice_type="estimate", issue=True)
        self.assertEqual(estimate.status, "sent")
        self.assertFalse(JournalEntry.objects.exists())
        self.assertEqual(self.balance("1100"), Decimal("0.00"))

    def test_convert_estimate_once(self):
        estimate = self.make_invoice(invoice_type="estimate")
        invoice = convert_estimate(estimate.pk, issue_date=datetime.date(2024, 2, 1))

        self.assertEqual(invoice.invoice_type, "invoice")
        self.assertEqual(invoice.status, "draft")
        self.assertEqual(invoice.total, estimate.total)
        self.assertEqual(invoice.items.count(), 1)
        estimate.refresh_from_db()
        self.assertEqual(estimate.converted_to_id, invoice.pk)

        with self.assertRaises(ValidationError):
            convert_estimate(estimate.pk)

    def test_convert_and_issue(self):
        estimate = self.make_invoice(invoice_type="estimate")
        invoice = convert_estimate(estimate.pk, issue_date=datetime.date(2024, 2, 1),
                                   issue=True)
        self.assertEqual(invoice.status, "sent")
        self.assertEqual(self.balance("1100"), Decimal("97.20"))
