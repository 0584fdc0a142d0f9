from .account import Account
from .auditlog import AuditLog
from .banking import BankTransaction
from .client import Client
from .expense import Expense
from .invoice import Invoice, InvoiceItem
from .journal import JournalEntry, JournalLine
from .ledger import Ledger
from .payment import Payment, PaymentAllocation
from .period import Period
from .recurring import RecurringSchedule
from .sequence import NumberSequence
from .tax import TaxRate
from .vendor import Vendor
