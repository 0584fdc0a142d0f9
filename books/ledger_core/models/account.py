from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models
from ..calculations import money
from ..choices import (DEBIT_NORMAL_TYPES, AccountSubtype, AccountType,
                       SystemRole)
from ..managers import AccountManager
from .ledger import Ledger

# Which account type a system role must live on
ROLE_TYPES = {
    SystemRole.RECEIVABLE: AccountType.ASSET,
    SystemRole.CASH: AccountType.ASSET,
    SystemRole.PAYABLE: AccountType.LIABILITY,
    SystemRole.TAX_LIABILITY: AccountType.LIABILITY,
    SystemRole.SALES: AccountType.REVENUE,
    # contra-revenue: a revenue account carrying a debit balance
    SystemRole.SALES_DISCOUNT: AccountType.REVENUE,
    SystemRole.SHIPPING_INCOME: AccountType.REVENUE,
    SystemRole.RETAINED_EARNINGS: AccountType.EQUITY,
}


class Account(models.Model):
    """
    Ledger account in the Chart of Accounts.
    - code is unique per ledger
    - ac_type: determines reporting - Balance Sheet vs P&L
    - balance: cached projection of posted journal lines, maintained by
      JournalEntry.post(); never written by hand
    """

    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    # Every account has a code
    # which lets you sort/group accounts consistently in reports.
    code = models.CharField(max_length=32)
    name = models.CharField(max_length=200)

    # One of the 5 basic accounting types
    ac_type = models.CharField(max_length=10, choices=AccountType.choices)
    subtype = models.CharField(
        max_length=10,
        choices=AccountSubtype.choices,
        default=AccountSubtype.CURRENT,
    )

    # Optional hierarchy:
    # (e.g. 1000 Cash, 1001 Petty Cash, 1002 Bank Account)
    parent = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        # you can't delete a parent if children exist
        related_name="children",
    )

    # Accounts the posting engine resolves by role instead of by code
    system_role = models.CharField(
        max_length=20, choices=SystemRole.choices, blank=True, default=""
    )

    # "soft deactivate" accounts (stop new postings) without deleting history
    is_active = models.BooleanField(default=True)
    # marker for accounts that must reconcile with subledgers (AR, AP)
    is_control_account = models.BooleanField(default=False)

    balance = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00")
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = AccountManager()

    class Meta:
        ordering = ("ledger", "code")
        indexes = [
            # For reports grouped by ac_type
            models.Index(fields=["ledger", "ac_type"]),
            models.Index(fields=["ledger", "parent"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "code"], name="uq_ledger_account_code"
            ),
            # at most one account per role in a ledger
            models.UniqueConstraint(
                fields=["ledger", "system_role"],
                condition=~models.Q(system_role=""),
                name="uq_ledger_account_role",
            ),
        ]

    def __str__(self):
        return f"{self.code} – {self.name}"

    @property
    def is_debit_normal(self):
        # Assets/Expenses -> Debit, Liabilities/Equity/Revenue -> Credit
        return self.ac_type in DEBIT_NORMAL_TYPES

    def signed_amount(self, debit, credit):
        """Effect of a debit/credit pair on this account's balance."""
        if self.is_debit_normal:
            return debit - credit
        return credit - debit

    def posted_balance(self, as_of=None):
        """Balance recomputed from scratch from posted journal lines."""
        from .journal import JournalLine

        lines = JournalLine.objects.filter(
            account=self, entry__status="posted")
        if as_of is not None:
            lines = lines.filter(entry__date__lte=as_of)
        agg = lines.aggregate(
            debit=models.Sum("debit"), credit=models.Sum("credit"))
        return self.signed_amount(
            money(agg["debit"] or Decimal("0.00")),
            money(agg["credit"] or Decimal("0.00")),
        )

    def ancestors(self):
        node, seen = self.parent, []
        while node is not None:
            seen.append(node)
            node = node.parent
        return seen

    def descendants(self):
        found, frontier = [], list(self.children.all())
        while frontier:
            node = frontier.pop()
            found.append(node)
            frontier.extend(node.children.all())
        return found

    def clean(self):
        """Keep the tree inside one ledger and free of cycles"""
        if self.parent_id:
            if self.parent.ledger_id != self.ledger_id:
                raise ValidationError(
                    "Parent & child accounts must belong to the same ledger")
            if self.parent.ac_type != self.ac_type:
                raise ValidationError(
                    "Parent & child accounts must have the same type")
            if self.pk and (
                self.parent_id == self.pk
                or any(a.pk == self.pk for a in self.parent.ancestors())
            ):
                raise ValidationError("Account hierarchy cannot contain a cycle")

        expected = ROLE_TYPES.get(self.system_role)
        if expected and self.ac_type != expected:
            raise ValidationError(
                f"Role '{self.system_role}' requires a {expected} account")

    def save(self, *args, **kwargs):
        """Can't disable accounts used in journal lines"""
        if self.pk:
            old = Account.objects.filter(pk=self.pk).first()
            # If account was active before, but now being set to inactive
            if old and old.is_active and not self.is_active:
                from .journal import JournalLine

                if JournalLine.objects.filter(account=self).exists():
                    raise ValidationError(
                        "Cannot disable an account that is used in journal lines."
                    )
        self.full_clean()
        return super().save(*args, **kwargs)
