from typing import Optional
from ..models import AuditLog, Ledger


def log_action(
    *,
    action: str,
    instance,
    actor: str = "system",
    ledger: Optional[Ledger] = None,
    changes: dict | None = None,
):
    """
    Central audit logger.
    Safe to call multiple times (caller ensures idempotency).
    """

    if not ledger:
        ledger = getattr(instance, "ledger", None)

    return AuditLog.objects.create(
        ledger=ledger,
        actor=actor or "system",
        action=action,
        object_type=instance.__class__.__name__,
        object_id=str(instance.pk),
        changes=changes,
    )
