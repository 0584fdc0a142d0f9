from django.db import models


# Closed enumerations shared by models, calculations and services.
class AccountType(models.TextChoices):
    ASSET = "asset", "Asset"
    LIABILITY = "liability", "Liability"
    EQUITY = "equity", "Equity"
    REVENUE = "revenue", "Revenue"
    EXPENSE = "expense", "Expense"


# Debit-normal types grow with debits; everything else grows with credits
DEBIT_NORMAL_TYPES = frozenset({AccountType.ASSET, AccountType.EXPENSE})


class AccountSubtype(models.TextChoices):
    CURRENT = "current", "Current"
    FIXED = "fixed", "Fixed"
    LONG_TERM = "long_term", "Long-term"
    OPERATING = "operating", "Operating"
    OTHER = "other", "Other"


class SystemRole(models.TextChoices):
    # Accounts the posting engine looks up by role instead of by code
    RECEIVABLE = "receivable", "Accounts receivable"
    PAYABLE = "payable", "Accounts payable"
    CASH = "cash", "Cash / deposit"
    TAX_LIABILITY = "tax_liability", "Tax liability"
    SALES = "sales", "Sales revenue"
    SALES_DISCOUNT = "sales_discount", "Sales discounts"
    SHIPPING_INCOME = "shipping_income", "Shipping income"
    RETAINED_EARNINGS = "retained_earnings", "Retained earnings"


class DiscountType(models.TextChoices):
    PERCENTAGE = "percentage", "Percentage"
    FIXED = "fixed", "Fixed amount"


class InvoiceType(models.TextChoices):
    INVOICE = "invoice", "Invoice"
    ESTIMATE = "estimate", "Estimate"
    CREDIT_NOTE = "credit_note", "Credit note"


class InvoiceStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    SENT = "sent", "Sent"
    VIEWED = "viewed", "Viewed"
    PARTIAL = "partial", "Partially paid"
    PAID = "paid", "Paid"
    # derived on read, never stored
    OVERDUE = "overdue", "Overdue"
    CANCELLED = "cancelled", "Cancelled"


class PaymentDirection(models.TextChoices):
    RECEIVED = "received", "Received"
    SENT = "sent", "Sent"
    REFUND = "refund", "Refund"


class PaymentMethod(models.TextChoices):
    CASH = "cash", "Cash"
    CHEQUE = "cheque", "Cheque"
    BANK_TRANSFER = "bank_transfer", "Bank transfer"
    CARD = "card", "Card"
    CREDIT_NOTE = "credit_note", "Credit note"
    OTHER = "other", "Other"


class JournalStatus(models.TextChoices):
    DRAFT = "draft", "Draft"      # lines still being written
    POSTED = "posted", "Posted"   # finalized, immutable


class Frequency(models.TextChoices):
    WEEKLY = "weekly", "Weekly"
    BIWEEKLY = "biweekly", "Every two weeks"
    MONTHLY = "monthly", "Monthly"
    QUARTERLY = "quarterly", "Quarterly"
    YEARLY = "yearly", "Yearly"
