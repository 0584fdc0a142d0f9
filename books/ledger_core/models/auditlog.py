from django.db import models
from ..managers import LedgerManager
from .ledger import Ledger


# ---------- Audit / Event log ----------
class AuditLog(models.Model):  # Accountability and traceability across the ledger

    # Nullable because some actions might not belong to a specific ledger
    # (e.g., system-wide scheduler runs)
    ledger = models.ForeignKey(
        Ledger,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )
    # Who performed the action: a user name, "system" or a task name
    actor = models.CharField(max_length=150, default="system")
    # Type of event being logged
    action = models.CharField(max_length=50)  # e.g. issue, post, pay, cancel
    # What kind of object was affected
    object_type = models.CharField(max_length=100)  # e.g. "Invoice", "JournalEntry"
    object_id = models.CharField(max_length=100)
    # before/after details of what changed, in JSON format
    changes = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerManager()

    class Meta:
        indexes = [
            models.Index(fields=["ledger", "created_at"]),
            models.Index(fields=["object_type", "object_id"]),
        ]

    def __str__(self):
        return (f"[{self.created_at:%Y-%m-%d %H:%M}] {self.actor} "
                f"{self.action} {self.object_type}({self.object_id})")

    def save(self, *args, **kwargs):
        self.full_clean()  # run validations before saving
        return super().save(*args, **kwargs)
