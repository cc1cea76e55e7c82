"""
Error taxonomy for the escrow service.

Validation and authorization errors are raised synchronously to the caller
before any state changes. Provider errors are raised only by payment adapters
and are converted into failed/skipped ledger entries by the reconciliation
engine.
"""

from typing import Any, Optional


class EscrowError(Exception):
    """Base exception for escrow errors."""
    pass


class InvalidInput(EscrowError):
    """Raised when a request is malformed (bad amount, unsupported method...)."""
    pass


class InvalidTransition(EscrowError):
    """Raised when the order's current status does not permit the event."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class NotAuthorized(EscrowError):
    """Raised when the actor is not a valid party for the event."""
    pass


class SellerNotEligible(EscrowError):
    """Raised when the seller's role does not allow selling."""
    pass


class OrderNotFound(EscrowError):
    """Raised when an order id does not exist."""
    pass


class DuplicateCorrelationRef(EscrowError):
    """
    Raised when (provider, correlation_ref) is already recorded.

    The existing transaction is attached so callers can treat a replay
    as a lookup.
    """

    def __init__(self, provider: str, correlation_ref: str, existing: Any = None):
        super().__init__(
            f"Correlation ref '{correlation_ref}' already recorded for provider '{provider}'"
        )
        self.provider = provider
        self.correlation_ref = correlation_ref
        self.existing = existing


class Inconsistent(EscrowError):
    """Raised when a transaction update and an order transition could not both commit."""
    pass


class ProviderError(EscrowError):
    """Base exception for payment provider adapter failures."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or returned a server error."""
    pass


class ProviderRejected(ProviderError):
    """Provider refused the request."""
    pass


class ProviderTimeout(ProviderError):
    """Provider did not answer within the configured timeout."""
    pass
