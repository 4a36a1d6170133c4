"""
PayDrop — Error taxonomy
Every error raised on purpose carries the HTTP status it maps to.
Rendered as {"error": message} by the handler registered in main.py.
"""


class PayDropError(Exception):
    status_code = 500
    public_message: str | None = None  # shown instead of the detail for 5xx errors

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PayDropError):
    """Bad duration, missing or oversized file. Raised before any payment interaction."""
    status_code = 400


class NotFoundError(PayDropError):
    status_code = 404


class ExpiredError(PayDropError):
    """The record existed but its retention window has elapsed."""
    status_code = 410


class PersistenceError(PayDropError):
    status_code = 500
    public_message = "Internal server error"


class ShareLinkTaken(PersistenceError):
    """The generated share link already belongs to another file."""


class StorageIOError(PayDropError):
    status_code = 500
    public_message = "Internal server error"


# ── Payment gate ──────────────────────────────────────────────────────────────

class PriceConversionError(ValueError):
    """A price cannot be expressed in the asset's atomic units."""


class PaymentError(PayDropError):
    status_code = 402

    def __init__(self, message: str, payer: str | None = None):
        super().__init__(message)
        self.payer = payer


class PaymentHeaderMissing(PaymentError):
    pass


class MalformedProofError(PaymentError):
    pass


class VerificationRejected(PaymentError):
    pass


class SettlementError(PaymentError):
    """Verification passed but the facilitator could not finalize the transfer."""
