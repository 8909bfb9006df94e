"""
Exceptions raised by the settlement engine.

Input, authorization, settlement and conflict errors are caller-visible and
leave no state behind. Reconciliation never raises these to a caller.
"""

from typing import Optional


class PaymentError(Exception):
    """Base exception for payment errors."""
    code = "payment_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


# ===================
# Input rejection
# ===================

class InputRejectedError(PaymentError):
    """Malformed request, nothing was sent to the relay."""
    code = "invalid_request"


class ItemNotFoundError(InputRejectedError):
    """Raised when the item does not exist or is unpublished."""
    code = "item_not_found"


class QuoteExpiredError(InputRejectedError):
    """Raised when the quote's expiry has passed."""
    code = "quote_expired"


class PriceMismatchError(InputRejectedError):
    """Raised when the quoted amount differs from the item's current price."""
    code = "price_mismatch"


class InvalidAuthorizationError(InputRejectedError):
    """Raised when the signed authorization does not match the quote."""
    code = "invalid_authorization"


# ===================
# Relay outcomes
# ===================

class AuthorizationRejectedError(PaymentError):
    """Relay refused the authorization during verify; no funds moved."""
    code = "authorization_rejected"


class SettlementFailedError(PaymentError):
    """Relay settle failed after a successful verify; no entitlement was written."""
    code = "settlement_failed"


class SettlementUnavailableError(PaymentError):
    """No settlement relay is configured."""
    code = "settlement_unavailable"


# ===================
# Conflicts
# ===================

class ConflictError(PaymentError):
    """Persisting the settlement would violate a ledger uniqueness invariant."""
    code = "conflict"


class AlreadyEntitledError(ConflictError):
    """Buyer already holds an active entitlement for the item."""
    code = "already_entitled"


class ReplayConflictError(ConflictError):
    """Transaction hash was already used for a purchase."""
    code = "transaction_already_used"


# ===================
# Collaborator transport
# ===================

class RelayError(PaymentError):
    """Settlement relay could not be reached or answered garbage."""
    code = "relay_error"


class ChainReadError(PaymentError):
    """Chain-state reader failed or timed out."""
    code = "chain_read_error"
