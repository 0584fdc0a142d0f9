import dataclasses
import datetime
import functools
import json
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST

from .exceptions import NotFoundError
from .models import Invoice, Ledger
from .services import (ar_aging, balance_sheet, issue_invoice,
                       profit_and_loss, record_payment, render_invoice)


def json_errors(view):
    """Map bad input to 400 and missing references to 404.
    Anything else (e.g. a ledger imbalance) is a defect and propagates."""
    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except NotFoundError as e:
            return JsonResponse({"ok": False, "error": str(e)}, status=404)
        except ValidationError as e:
            return JsonResponse({"ok": False, "error": e.messages}, status=400)
    return wrapper


def _parse_date(raw, name):
    try:
        return datetime.date.fromisoformat(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be a YYYY-MM-DD date")


def _date_param(request, name, default=None):
    raw = request.GET.get(name)
    if not raw:
        if default is None:
            raise ValidationError(f"Query parameter '{name}' is required")
        return default
    return _parse_date(raw, name)


def _body(request):
    if request.content_type == "application/json":
        try:
            return json.loads(request.body or b"{}")
        except json.JSONDecodeError:
            raise ValidationError("Request body is not valid JSON")
    return request.POST


def _invoice(ledger, invoice_id):
    # Look up the invoice inside the ledger from the URL (404 otherwise)
    return get_object_or_404(Invoice, ledger=ledger, pk=invoice_id)


@require_GET
@json_errors
def invoice_detail_view(request, slug, invoice_id):
    ledger = get_object_or_404(Ledger, slug=slug)
    invoice = _invoice(ledger, invoice_id)
    rendered = render_invoice(invoice.pk)
    return JsonResponse({
        "number": rendered.number,
        "type": rendered.invoice_type,
        "client": rendered.client,
        "status": rendered.status,
        "issue_date": rendered.issue_date,
        "due_date": rendered.due_date,
        "items": [dataclasses.asdict(item) for item in rendered.items],
        "totals": rendered.totals,
        "notes": rendered.notes,
    })


@require_POST
@json_errors
def issue_invoice_view(request, slug, invoice_id):
    ledger = get_object_or_404(Ledger, slug=slug)
    invoice = issue_invoice(_invoice(ledger, invoice_id).pk, actor="api")
    return JsonResponse({"ok": True, "number": invoice.number,
                         "status": invoice.status, "total": invoice.total})


@require_POST
@json_errors
def record_payment_view(request, slug, invoice_id):
    ledger = get_object_or_404(Ledger, slug=slug)
    invoice = _invoice(ledger, invoice_id)
    data = _body(request)
    amount = data.get("amount")
    if isinstance(amount, float):
        # JSON numbers would arrive as binary floats
        raise ValidationError("Send amounts as strings, e.g. \"50.00\"")
    date = data.get("date")
    payment = record_payment(
        invoice.pk,
        amount,
        method=data.get("method") or "bank_transfer",
        date=_parse_date(date, "date") if date else None,
        external_reference=data.get("external_reference", ""),
        actor="api",
    )
    invoice.refresh_from_db()
    return JsonResponse({
        "ok": True,
        "payment_id": payment.pk,
        "invoice_status": invoice.status,
        "amount_paid": invoice.amount_paid,
        "amount_due": invoice.amount_due,
    })


@require_GET
@json_errors
def profit_and_loss_view(request, slug):
    ledger = get_object_or_404(Ledger, slug=slug)
    report = profit_and_loss(
        ledger, _date_param(request, "start"), _date_param(request, "end"))
    return JsonResponse(report)


@require_GET
@json_errors
def balance_sheet_view(request, slug):
    ledger = get_object_or_404(Ledger, slug=slug)
    as_of = _date_param(request, "as_of", datetime.date.today())
    return JsonResponse(balance_sheet(ledger, as_of))


@require_GET
@json_errors
def ar_aging_view(request, slug):
    ledger = get_object_or_404(Ledger, slug=slug)
    as_of = _date_param(request, "as_of", datetime.date.today())
    return JsonResponse(ar_aging(ledger, as_of))
