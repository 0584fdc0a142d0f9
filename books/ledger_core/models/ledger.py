from django.db import models


# ---------- Ledger ----------
class Ledger(models.Model):

    """A complete set of accounts and journal entries.
    Codes and document numbers are unique per ledger."""
    name = models.CharField(max_length=200)

    slug = models.SlugField(  # A URL-friendly identifier
        max_length=80, unique=True  # no two ledgers can have the same slug
    )

    # Functional currency; every amount in the ledger is in this currency
    currency_code = models.CharField(max_length=3, default="USD")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("name",)

    def __str__(self):
        return f"{self.name} ({self.slug})"
