import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task  # register this function as a Celery task
def run_recurring_invoices(today=None):
    """One scheduler tick; `today` is an ISO date string (default: today)."""
    # import lazily to avoid circular imports at module import time
    import datetime

    from .services.recurring import run_due_schedules

    day = datetime.date.fromisoformat(today) if today else None
    summary = run_due_schedules(today=day)
    return {"created": summary.created, "skipped": summary.skipped,
            "failed": summary.failed}


@shared_task
def recompute_ledger_balances(ledger_id):
    """Rebuild cached account balances of one ledger from posted lines."""
    from .models import Ledger
    from .services.chart import recompute_balances

    ledger = Ledger.objects.get(pk=ledger_id)
    drift = recompute_balances(ledger)
    return [account.code for account, _, _ in drift]


@shared_task
def verify_all_balances():
    """Nightly check: cached balances vs. posted journal lines."""
    from .models import Ledger
    from .services.chart import find_balance_drift

    drifted = {}
    for ledger in Ledger.objects.all():
        drift = find_balance_drift(ledger)
        if drift:
            logger.error("Ledger %s has %d account(s) with balance drift",
                         ledger.slug, len(drift))
            drifted[ledger.slug] = [account.code for account, _, _ in drift]
    return drifted
