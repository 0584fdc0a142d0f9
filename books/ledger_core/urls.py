from django.urls import path

from . import views

app_name = "ledger_core"

urlpatterns = [
    path("<slug:slug>/invoices/<int:invoice_id>/",
         views.invoice_detail_view, name="invoice-detail"),
    path("<slug:slug>/invoices/<int:invoice_id>/issue/",
         views.issue_invoice_view, name="invoice-issue"),
    path("<slug:slug>/invoices/<int:invoice_id>/payments/",
         views.record_payment_view, name="invoice-payments"),
    path("<slug:slug>/reports/profit-and-loss/",
         views.profit_and_loss_view, name="report-pnl"),
    path("<slug:slug>/reports/balance-sheet/",
         views.balance_sheet_view, name="report-balance-sheet"),
    path("<slug:slug>/reports/ar-aging/",
         views.ar_aging_view, name="report-ar-aging"),
]
