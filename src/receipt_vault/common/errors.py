class ReceiptVaultError(Exception):
    """Base class for all receipt vault errors."""


class ValidationError(ReceiptVaultError, ValueError):
    """Input rejected before it was stored. Never retried."""


class NotFoundError(ReceiptVaultError, LookupError):
    pass


class TransientFailure(ReceiptVaultError):
    """A handler or transport failure that is worth retrying."""


class PermanentFailure(ReceiptVaultError):
    """A handler failure that will not succeed on retry (e.g. a corrupt file)."""


class SignatureFailure(ReceiptVaultError):
    """A webhook signature did not match its body."""
