import hashlib
import json
from collections import defaultdict
from decimal import Decimal
from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.db.models import F
from django.utils import timezone
from ..calculations import money
from ..choices import JournalStatus
from ..conf import ledger_setting
from ..exceptions import AlreadyPostedDifferentPayload, LedgerImbalanceError
from ..managers import LedgerManager
from .account import Account
from .ledger import Ledger
from .period import Period
from .sequence import NumberSequence


def posting_fingerprint(ledger_id, date, lines):
    """SHA-256 of a deterministic JSON snapshot of what gets posted.

    `lines` is an iterable of (account_id, debit, credit, description).
    The same data always gives the same string, so an already-posted entry
    can be compared with a re-submitted payload without touching the rows.
    """
    payload = {
        "ledger": ledger_id,
        "date": date.isoformat(),
        "lines": [
            {
                "acct": account_id,
                "debit": str(money(debit)),
                "credit": str(money(credit)),
                "desc": description or "",
            }
            for account_id, debit, credit, description in lines
        ],
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(raw.encode()).hexdigest()


# ---------- Journal (Header) & JournalLine ----------
class JournalEntry(models.Model):  # Represents one accounting transaction
    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    # Resolved from the entry date when posted
    period = models.ForeignKey(
        Period,
        null=True,
        blank=True,
        on_delete=models.PROTECT,  # Prevent breaking historical ledger
    )
    # Sequential "JE-00001", taken on first save
    number = models.CharField(max_length=32, blank=True)
    date = models.DateField()
    description = models.TextField(blank=True, default="")
    status = models.CharField(
        max_length=10,
        choices=JournalStatus.choices,
        default=JournalStatus.DRAFT,
    )
    posted_at = models.DateTimeField(null=True, blank=True)

    # Business document that caused the entry (invoice, payment, expense...)
    reference_type = models.CharField(max_length=50, blank=True, default="")
    reference_id = models.BigIntegerField(null=True, blank=True)

    # Fingerprint-based idempotency (safe to call twice if nothing has changed)
    posting_fingerprint = models.CharField(max_length=64, blank=True, default="")

    # Corrections are new entries pointing at what they undo
    reverses = models.OneToOneField(
        "self",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="reversed_by",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "date"]),
            models.Index(fields=["ledger", "status"]),
        ]

        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "number"], name="uq_je_ledger_number"
            ),
            # One entry per business document
            models.UniqueConstraint(
                fields=["ledger", "reference_type", "reference_id"],
                condition=models.Q(reference_id__isnull=False),
                name="uq_je_ledger_reference",
            ),
        ]

    def __str__(self):
        return f"{self.number or self.pk} {self.date} [{self.status}]"

    @property
    def is_posted(self):
        return self.status == JournalStatus.POSTED

    # Aggregate all debit and credit amounts across entry's lines
    def compute_totals(self):
        """Return debits, credits sums for lines"""
        aggs = self.lines.aggregate(
            total_debit=models.Sum("debit"),
            total_credit=models.Sum("credit"),
        )
        return (
            money(aggs["total_debit"] or Decimal("0.00")),
            money(aggs["total_credit"] or Decimal("0.00")),
        )

    # True if double-entry rule holds: total debits = total credits
    def is_balanced(self):
        debit, credit = self.compute_totals()
        return debit == credit

    def _fingerprint(self, lines=None):
        lines = self.lines.order_by("id") if lines is None else lines
        return posting_fingerprint(
            self.ledger_id,
            self.date,
            [(ln.account_id, ln.debit, ln.credit, ln.description) for ln in lines],
        )

    # Post the entry safely inside a database transaction
    @transaction.atomic
    def post(self):
        """
        Validate and post the entry, then move every touched account
        balance by the signed sum of its lines. Raises LedgerImbalanceError
        when debits != credits; the surrounding transaction is rolled back.
        """
        # Lock row + lines to prevent concurrent modifications
        je = JournalEntry.objects.select_for_update().get(pk=self.pk)
        lines = list(
            je.lines.select_for_update().select_related("account").order_by("id")
        )

        if not lines:  # Prevent posting an empty entry
            raise ValidationError("JournalEntry must have at least one JournalLine.")

        fp = je._fingerprint(lines)

        """ Idempotency & immutability """
        if je.is_posted:
            if je.posting_fingerprint == fp:
                # Idempotent: safe to return without raising
                return je
            raise AlreadyPostedDifferentPayload(
                f"Journal {je.number} already posted with different payload."
            )

        # Recompute totals from the locked rows, never cached values
        total_debit = sum((ln.debit for ln in lines), Decimal("0.00"))
        total_credit = sum((ln.credit for ln in lines), Decimal("0.00"))

        # Enforce double-entry rule: debits = credits (to the cent)
        if money(total_debit) != money(total_credit):
            raise LedgerImbalanceError(
                f"Journal not balanced: debits={total_debit}, credits={total_credit}"
            )

        for ln in lines:
            if ln.account.ledger_id != je.ledger_id:
                raise ValidationError(
                    "All journal lines must belong to the journal's ledger.")
            if not ln.account.is_active:
                raise ValidationError(
                    f"Account {ln.account.code} is inactive and cannot be posted to.")

        # Ensure the period is open
        period = Period.containing(je.ledger_id, je.date)
        if period and period.is_closed:
            raise ValidationError(f"Period {period.name} is closed")

        """ Update state """
        je.status = JournalStatus.POSTED
        je.posted_at = timezone.now()
        je.posting_fingerprint = fp
        je.period = period
        je.save(update_fields=["status", "posted_at", "posting_fingerprint", "period"])

        # Balance projection: one F() update per touched account
        deltas = defaultdict(lambda: Decimal("0.00"))
        for ln in lines:
            deltas[ln.account_id] += ln.account.signed_amount(ln.debit, ln.credit)
        for account_id in sorted(deltas):
            Account.objects.filter(pk=account_id).update(
                balance=F("balance") + deltas[account_id]
            )

        self.status, self.posted_at = je.status, je.posted_at
        self.posting_fingerprint, self.period = je.posting_fingerprint, je.period
        return je

    def clean(self):
        """Don't modify posted journals"""
        if self.pk:
            orig = JournalEntry.objects.filter(pk=self.pk).first()
            if orig and orig.is_posted:
                changed = [
                    f for f in ("date", "description", "reference_type",
                                "reference_id", "reverses_id", "number")
                    if getattr(orig, f) != getattr(self, f)
                ]
                if changed:
                    raise ValidationError(
                        "Cannot modify a posted JournalEntry. It is immutable."
                    )

        if self.period_id and self.period.ledger_id != self.ledger_id:
            raise ValidationError("Period must belong to the same ledger as journal")

    def save(self, *args, **kwargs):
        if self.pk:  # Does this row already exist in DB?
            orig = JournalEntry.objects.filter(pk=self.pk).first()
            if orig and orig.is_posted and not self.is_posted:
                # disallow toggling posted flag
                raise ValidationError("Cannot unpost a posted journal")

        if not self.number:
            self.number = NumberSequence.next_number(
                self.ledger, ledger_setting("JOURNAL_PREFIX"))
            if kwargs.get("update_fields") is not None:
                kwargs["update_fields"] = list(kwargs["update_fields"]) + ["number"]

        self.full_clean()
        super().save(*args, **kwargs)


class JournalLine(models.Model):  # Stores Lines ( credits / debits )
    entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.CASCADE,
        related_name="lines",
    )

    # Must point to one Account (can't delete account if lines exist → PROTECT)
    account = models.ForeignKey(
        Account, on_delete=models.PROTECT, related_name="journal_lines")

    description = models.CharField(max_length=400, blank=True, default="")

    debit = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00"))
    credit = models.DecimalField(
        max_digits=18, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        indexes = [
            models.Index(fields=["account"]),
            models.Index(fields=["entry"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(debit__gte=0) & models.Q(credit__gte=0),
                name="jl_non_negative_amounts",
            ),
            # exactly one side carries the amount
            models.CheckConstraint(
                condition=(
                    (models.Q(debit__gt=0) & models.Q(credit=0)) |
                    (models.Q(debit=0) & models.Q(credit__gt=0))
                ),
                name="jl_debit_xor_credit",
            ),
        ]

    def __str__(self):
        return (f"{self.entry_id} | {self.account.code} {self.account.name} "
                f"| D:{self.debit} C:{self.credit}")

    def clean(self):
        if self.debit < 0 or self.credit < 0:
            raise ValidationError("Debit and credit must be >= 0")
        if self.debit > 0 and self.credit > 0:
            raise ValidationError(
                "JournalLine should not have both debit and credit > 0")
        if self.debit == 0 and self.credit == 0:
            raise ValidationError(
                "JournalLine requires a non-0 amount on either debit or credit")

        if self.account_id and self.account.ledger_id != self.entry.ledger_id:
            raise ValidationError("JournalLine.account must belong to the same ledger.")

        # Lines of a posted entry are frozen
        if JournalEntry.objects.filter(
            pk=self.entry_id, status=JournalStatus.POSTED
        ).exists():
            raise ValidationError(
                "Cannot add or modify JournalLine: parent JournalEntry is posted.")

    def delete(self, *args, **kwargs):
        if JournalEntry.objects.filter(
            pk=self.entry_id, status=JournalStatus.POSTED
        ).exists():
            raise ValidationError(
                "Cannot delete JournalLine: parent JournalEntry is posted.")
        return super().delete(*args, **kwargs)

    def save(self, *args, **kwargs):
        self.debit = money(self.debit)
        self.credit = money(self.credit)
        self.full_clean()
        return super().save(*args, **kwargs)
