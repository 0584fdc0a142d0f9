from django.db import models

# -----------------------------------------
# Enforce ledger scoping across all models
# that belong to a ledger
# -----------------------------------------
class LedgerQuerySet(models.QuerySet):
    def for_ledger(self, ledger):
        return self.filter(ledger=ledger)

    def active(self, ledger):
        return self.filter(
                            ledger=ledger,   # enforce ledger scoping
                            is_active=True   # only fetch active records
                        )
    # Enables query:
    # Account.objects.active(ledger)


# Attach LedgerQuerySet to .objects
class LedgerManager(models.Manager.from_queryset(LedgerQuerySet)):
    pass


class AccountQuerySet(LedgerQuerySet):
    def with_role(self, ledger, role):
        """The account carrying a system role (cash, receivable, ...) or None."""
        return self.filter(ledger=ledger, system_role=role).first()


class AccountManager(models.Manager.from_queryset(AccountQuerySet)):
    pass


class InvoiceQuerySet(LedgerQuerySet):
    def documents(self):
        """Real documents: templates of recurring schedules are excluded"""
        return self.filter(is_template=False)

    def receivables(self):
        """Issued invoices that can still carry an amount due"""
        return self.documents().filter(
            invoice_type="invoice",
            status__in=["sent", "viewed", "partial"],
        )


class InvoiceManager(models.Manager.from_queryset(InvoiceQuerySet)):
    pass
