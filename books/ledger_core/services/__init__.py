from .banking import import_bank_transactions, match_transaction
from .chart import (account_tree, create_account, create_ledger,
                    find_balance_drift, get_account, recompute_balances,
                    role_account, seed_chart)
from .expenses import bill_expense_to_client, create_expense, pay_expense
from .invoicing import (DeliveryConfirmation, RenderableInvoice, add_item,
                        cancel_invoice, convert_estimate, create_invoice,
                        issue_credit_note, issue_invoice, mark_viewed,
                        quote_totals, recalculate_invoice, record_delivery,
                        render_invoice, set_discount, verify_invoice_totals)
from .payment import (CapturedPayment, apply_credit_note,
                      record_captured_payment, record_payment, record_refund,
                      record_split_payment)
from .periods import close_period, reopen_period
from .posting import Posting, post_entry, reverse_entry
from .recurring import advance_date, create_schedule, run_due_schedules
from .reports import (ar_aging, balance_sheet, cash_flow, profit_and_loss,
                      tax_summary, trial_balance)
