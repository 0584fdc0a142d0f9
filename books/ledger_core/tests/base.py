import datetime
from django.test import TestCase

from ..models import Account, Client, TaxRate, Vendor
from ..services import create_invoice, create_ledger


class LedgerTestCase(TestCase):
    """A seeded ledger (default chart + 8% sales tax) and one client."""

    def setUp(self):
        self.ledger = create_ledger("Test Co", "test-co")
        self.customer = Client.objects.create(
            ledger=self.ledger, name="Acme Corp", email="ap@acme.test",
            payment_terms_days=30,
        )
        self.vendor = Vendor.objects.create(ledger=self.ledger, name="Landlord LLC")
        self.sales_tax = TaxRate.objects.get(ledger=self.ledger, name="Sales tax")

    def account(self, code):
        return Account.objects.get(ledger=self.ledger, code=code)

    def balance(self, code):
        """Cached balance, always read fresh from the database."""
        return self.account(code).balance

    def make_invoice(self, issue_date=datetime.date(2024, 1, 1), items=None, **kwargs):
        # Scenario: 2 × 50.00, 10% invoice discount, 8% tax → 97.20
        if items is None:
            items = [{"description": "Widget", "quantity": "2", "unit_price": "50.00"}]
            kwargs.setdefault("discount_type", "percentage")
            kwargs.setdefault("discount_value", "10")
            kwargs.setdefault("tax_rate_id", self.sales_tax.pk)
        return create_invoice(self.ledger, self.customer.pk, issue_date, items, **kwargs)

    def simple_invoice(self, amount="100.00", issue_date=datetime.date(2024, 1, 1),
                       issue=True, **kwargs):
        """One untaxed item of `amount`."""
        return create_invoice(
            self.ledger, self.customer.pk, issue_date,
            [{"description": "Service", "quantity": "1", "unit_price": amount}],
            issue=issue, **kwargs,
        )
