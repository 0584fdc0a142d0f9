from decimal import Decimal

from django.conf import settings

# Defaults for the LEDGER settings dict
DEFAULTS = {
    "ROUNDING_TOLERANCE": "0.01",
    "RECURRING_CLAIM_TTL_SECONDS": 600,
    "NUMBER_PADDING": 5,
    "INVOICE_PREFIXES": {
        "invoice": "INV",
        "estimate": "EST",
        "credit_note": "CN",
        # recurring templates never consume invoice numbers
        "template": "TPL",
    },
    "JOURNAL_PREFIX": "JE",
}


def ledger_setting(name):
    """Look up a ledger setting, falling back to DEFAULTS."""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown ledger setting: {name}")
    return getattr(settings, "LEDGER", {}).get(name, DEFAULTS[name])


def rounding_tolerance() -> Decimal:
    return Decimal(str(ledger_setting("ROUNDING_TOLERANCE")))
