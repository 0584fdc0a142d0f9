from django.core.exceptions import ValidationError
from django.db.models.signals import pre_delete
from django.dispatch import receiver

from .models import Invoice, JournalEntry, Payment

# Accounts and periods referenced by journal lines/entries are covered
# by on_delete=PROTECT on those foreign keys.


""" Issued invoices are corrected with credit notes, never deleted."""


# pre_delete signal auto-fires just before Django deletes a model instance
@receiver(pre_delete, sender=Invoice)
def prevent_delete_issued_invoice(sender, instance, **kwargs):
    if instance.status != "draft":
        raise ValidationError(
            f"Cannot delete a {instance.status} invoice; cancel or credit it instead.")


@receiver(pre_delete, sender=Payment)
def prevent_delete_posted_payment(sender, instance, **kwargs):
    if instance.journal_entry_id or instance.allocations.exists():
        raise ValidationError("Cannot delete a payment that has been applied.")


"""Posted journals are append-only."""


@receiver(pre_delete, sender=JournalEntry)
def prevent_delete_posted_journal(sender, instance, **kwargs):
    if instance.status == "posted":
        raise ValidationError("Cannot delete a posted journal entry.")
