from django.core.exceptions import ObjectDoesNotExist, ValidationError


class InvalidTransitionError(ValidationError):
    """Raised when a document is asked to move to a status its
    state machine does not allow. State is left unchanged."""
    pass


class OverpaymentError(ValidationError):
    """Raised when an allocation would push amount_paid past the invoice total."""
    pass


class OverAllocationError(ValidationError):
    """Raised when allocations add up to more than the payment amount."""
    pass


class NotFoundError(ObjectDoesNotExist):
    """Raised when an account, invoice, schedule or tax rate reference is missing."""
    pass


class LedgerImbalanceError(Exception):
    """Raised when a JournalEntry fails the double-entry balance check.

    This is an engine defect, not bad input: the posting transaction is
    aborted and nothing is persisted."""
    pass


class AlreadyPostedDifferentPayload(Exception):
    """Raised when a JournalEntry already posted with different payload """
    pass


class DataIntegrityError(Exception):
    """Raised when a report consistency check fails
    (e.g. assets != liabilities + equity, cached balance drift)."""
    pass
