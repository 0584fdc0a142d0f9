from django.db import models, transaction

from ..conf import ledger_setting
from .ledger import Ledger


# ---------- Document number sequences ----------
class NumberSequence(models.Model):
    """Gap-free counter per (ledger, prefix): INV-00001, INV-00002, ...

    The row is locked while a number is taken, so two concurrent
    invoices can never receive the same number."""
    ledger = models.ForeignKey(Ledger, on_delete=models.CASCADE)
    prefix = models.CharField(max_length=16)
    next_value = models.PositiveIntegerField(default=1)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["ledger", "prefix"], name="uq_ledger_sequence_prefix"
            )
        ]

    def __str__(self):
        return f"{self.ledger.slug}:{self.prefix} next={self.next_value}"

    @classmethod
    @transaction.atomic
    def next_number(cls, ledger, prefix):
        # get_or_create first so select_for_update always has a row to lock
        cls.objects.get_or_create(ledger=ledger, prefix=prefix)
        seq = cls.objects.select_for_update().get(ledger=ledger, prefix=prefix)
        value = seq.next_value
        seq.next_value = value + 1
        seq.save(update_fields=["next_value"])
        padding = ledger_setting("NUMBER_PADDING")
        return f"{prefix}-{value:0{padding}d}"
