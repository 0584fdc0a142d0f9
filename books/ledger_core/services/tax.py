from ..choices import SystemRole
from ..exceptions import NotFoundError
from ..models import TaxRate
from .chart import role_account


def resolve_rate(ledger, tax_rate_id):
    """Look up an active tax rate of `ledger` by id."""
    if tax_rate_id is None:
        return None
    if isinstance(tax_rate_id, TaxRate):
        tax_rate_id = tax_rate_id.pk
    try:
        return TaxRate.objects.get(ledger=ledger, pk=tax_rate_id, is_active=True)
    except TaxRate.DoesNotExist:
        raise NotFoundError(f"No active tax rate {tax_rate_id} in ledger {ledger.slug}")


def resolve_percentage(ledger, tax_rate_id):
    """Percentage of a tax rate at calculation time (None when no rate)."""
    rate = resolve_rate(ledger, tax_rate_id)
    return rate.percentage if rate else None


def liability_account_for(ledger, tax_rate):
    """Where tax collected at `tax_rate` is credited."""
    if tax_rate is not None and tax_rate.liability_account_id:
        return tax_rate.liability_account
    return role_account(ledger, SystemRole.TAX_LIABILITY)
