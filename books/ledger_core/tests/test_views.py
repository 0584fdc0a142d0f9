import datetime
import json

from django.urls import reverse

from ..services import create_ledger, record_payment
from .base import LedgerTestCase


class LedgerApiTests(LedgerTestCase):

    def url(self, name, **kwargs):
        return reverse(f"ledger_core:{name}", kwargs={"slug": self.ledger.slug, **kwargs})

    def test_invoice_detail(self):
        invoice = self.make_invoice()
        response = self.client.get(self.url("invoice-detail", invoice_id=invoice.pk))

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["number"], "INV-00001")
        self.assertEqual(data["totals"]["total"], "97.20")
        self.assertEqual(data["items"][0]["description"], "Widget")

    def test_issue_then_pay(self):
        invoice = self.make_invoice()
        response = self.client.post(self.url("invoice-issue", invoice_id=invoice.pk))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "sent")

        response = self.client.post(
            self.url("invoice-payments", invoice_id=invoice.pk),
            {"amount": "50.00", "method": "cash", "date": "2024-01-20"},
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["invoice_status"], "partial")
        self.assertEqual(data["amount_due"], "47.20")

    def test_bad_input_is_a_400(self):
        invoice = self.make_invoice(issue=True)
        url = self.url("invoice-payments", invoice_id=invoice.pk)

        overpay = self.client.post(url, {"amount": "500.00"})
        self.assertEqual(overpay.status_code, 400)
        self.assertFalse(overpay.json()["ok"])

        as_float = self.client.post(url, json.dumps({"amount": 10.5}),
                                    content_type="application/json")
        self.assertEqual(as_float.status_code, 400)

        bad_date = self.client.post(url, {"amount": "1.00", "date": "20/01/2024"})
        self.assertEqual(bad_date.status_code, 400)

        again = self.client.post(self.url("invoice-issue", invoice_id=invoice.pk))
        self.assertEqual(again.status_code, 400)

    def test_methods_are_enforced(self):
        invoice = self.make_invoice()
        response = self.client.get(self.url("invoice-issue", invoice_id=invoice.pk))
        self.assertEqual(response.status_code, 405)

    def test_invoices_are_scoped_to_the_ledger(self):
        invoice = self.make_invoice()
        other = create_ledger("Other", "other")
        response = self.client.get(reverse(
            "ledger_core:invoice-detail",
            kwargs={"slug": other.slug, "invoice_id": invoice.pk}))
        self.assertEqual(response.status_code, 404)

        response = self.client.get(reverse(
            "ledger_core:report-ar-aging", kwargs={"slug": "missing"}))
        self.assertEqual(response.status_code, 404)

    def test_reports(self):
        invoice = self.make_invoice(issue_date=datetime.date(2024, 1, 10), issue=True)
        record_payment(invoice.pk, "50.00", date=datetime.date(2024, 1, 20))

        pnl = self.client.get(self.url("report-pnl"),
                              {"start": "2024-01-01", "end": "2024-01-31"})
        self.assertEqual(pnl.status_code, 200)
        self.assertEqual(pnl.json()["net_income"], "90.00")

        sheet = self.client.get(self.url("report-balance-sheet"), {"as_of": "2024-01-31"})
        self.assertEqual(sheet.status_code, 200)
        self.assertEqual(sheet.json()["total_assets"], "97.20")

        aging = self.client.get(self.url("report-ar-aging"), {"as_of": "2024-03-15"})
        self.assertEqual(aging.status_code, 200)
        self.assertEqual(aging.json()["total"], "47.20")
        self.assertEqual(aging.json()["buckets"]["31_60"], "47.20")

    def test_report_dates_are_validated(self):
        missing = self.client.get(self.url("report-pnl"), {"start": "2024-01-01"})
        self.assertEqual(missing.status_code, 400)
        garbage = self.client.get(self.url("report-balance-sheet"), {"as_of": "yesterday"})
        self.assertEqual(garbage.status_code, 400)
