import logging
from decimal import Decimal
from django.db import transaction
from ..choices import AccountSubtype, AccountType, SystemRole
from ..exceptions import NotFoundError
from ..models import Account, Ledger, TaxRate

logger = logging.getLogger(__name__)

# Default chart of accounts for a new ledger:
# (code, name, type, subtype, system role, control account)
DEFAULT_CHART = [
    ("1000", "Cash", AccountType.ASSET, AccountSubtype.CURRENT, SystemRole.CASH, False),
    ("1100", "Accounts Receivable", AccountType.ASSET, AccountSubtype.CURRENT,
     SystemRole.RECEIVABLE, True),
    ("1500", "Equipment", AccountType.ASSET, AccountSubtype.FIXED, "", False),
    ("2000", "Accounts Payable", AccountType.LIABILITY, AccountSubtype.CURRENT,
     SystemRole.PAYABLE, True),
    ("2100", "Sales Tax Payable", AccountType.LIABILITY, AccountSubtype.CURRENT,
     SystemRole.TAX_LIABILITY, False),
    ("3000", "Owner's Equity", AccountType.EQUITY, AccountSubtype.OTHER, "", False),
    ("3100", "Retained Earnings", AccountType.EQUITY, AccountSubtype.OTHER,
     SystemRole.RETAINED_EARNINGS, False),
    ("4000", "Sales", AccountType.REVENUE, AccountSubtype.OPERATING, SystemRole.SALES, False),
    ("4100", "Shipping Income", AccountType.REVENUE, AccountSubtype.OPERATING,
     SystemRole.SHIPPING_INCOME, False),
    ("4900", "Sales Discounts", AccountType.REVENUE, AccountSubtype.OPERATING,
     SystemRole.SALES_DISCOUNT, False),
    ("5000", "Cost of Goods Sold", AccountType.EXPENSE, AccountSubtype.OPERATING, "", False),
    ("6000", "Rent", AccountType.EXPENSE, AccountSubtype.OPERATING, "", False),
    ("6100", "Utilities", AccountType.EXPENSE, AccountSubtype.OPERATING, "", False),
    ("6200", "Office Supplies", AccountType.EXPENSE, AccountSubtype.OPERATING, "", False),
]

DEFAULT_TAX_RATE = ("Sales tax", Decimal("8.0000"))


def create_account(ledger, code, name, ac_type, subtype=AccountSubtype.CURRENT,
                   parent=None, system_role="", is_control_account=False):
    """Add an account to the chart. Model validation enforces unique
    codes, same-ledger parents of the same type and role/type pairing."""
    account = Account(
        ledger=ledger,
        code=code,
        name=name,
        ac_type=ac_type,
        subtype=subtype,
        parent=parent,
        system_role=system_role,
        is_control_account=is_control_account,
    )
    account.save()
    logger.info("Created account %s %s in ledger %s", code, name, ledger.slug)
    return account


def get_account(ledger, code):
    try:
        return Account.objects.get(ledger=ledger, code=code)
    except Account.DoesNotExist:
        raise NotFoundError(f"No account {code} in ledger {ledger.slug}")


def role_account(ledger, role):
    """The account carrying a system role; NotFoundError if unconfigured."""
    account = Account.objects.with_role(ledger, role)
    if account is None:
        raise NotFoundError(
            f"Ledger {ledger.slug} has no account with role '{role}'")
    return account


def account_tree(ledger):
    """Nested dicts of the chart: [{account, balance, children: [...]}]."""
    accounts = list(Account.objects.for_ledger(ledger).order_by("code"))
    nodes = {a.pk: {"account": a, "balance": a.balance, "children": []}
             for a in accounts}
    roots = []
    for a in accounts:
        if a.parent_id in nodes:
            nodes[a.parent_id]["children"].append(nodes[a.pk])
        else:
            roots.append(nodes[a.pk])
    return roots


def find_balance_drift(ledger):
    """Accounts whose cached balance differs from their posted lines.

    Returns a list of (account, cached, actual)."""
    drift = []
    for account in Account.objects.for_ledger(ledger).order_by("code"):
        actual = account.posted_balance()
        if actual != account.balance:
            drift.append((account, account.balance, actual))
    return drift


@transaction.atomic
def recompute_balances(ledger):
    """Rebuild every cached balance from scratch; returns the drift found."""
    drift = find_balance_drift(ledger)
    for account, cached, actual in drift:
        logger.warning(
            "Balance drift on %s/%s: cached=%s actual=%s",
            ledger.slug, account.code, cached, actual,
        )
        Account.objects.filter(pk=account.pk).update(balance=actual)
    return drift


@transaction.atomic
def seed_chart(ledger):
    """Create the default accounts and tax rate (existing codes are kept)."""
    created = []
    for code, name, ac_type, subtype, role, control in DEFAULT_CHART:
        if Account.objects.filter(ledger=ledger, code=code).exists():
            continue
        created.append(create_account(
            ledger, code, name, ac_type, subtype=subtype,
            system_role=role, is_control_account=control,
        ))

    name, percentage = DEFAULT_TAX_RATE
    if not TaxRate.objects.filter(ledger=ledger, name=name).exists():
        TaxRate.objects.create(
            ledger=ledger,
            name=name,
            percentage=percentage,
            liability_account=role_account(ledger, SystemRole.TAX_LIABILITY),
        )
    return created


def create_ledger(name, slug, currency_code="USD", with_chart=True):
    ledger = Ledger.objects.create(name=name, slug=slug, currency_code=currency_code)
    if with_chart:
        seed_chart(ledger)
    return ledger
