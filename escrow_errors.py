"""
Exception hierarchy for the escrow engine.

Every error a caller can see derives from EscrowError so that HTTP and
webhook layers can map them in one place.
"""


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    pass


class ValidationError(EscrowError):
    """Raised when input to a ledger or service operation is malformed."""
    pass


class NotFoundError(EscrowError):
    """Raised when a referenced record does not exist."""
    pass


class ConflictError(EscrowError):
    """Raised when a compare-and-swap precondition fails."""

    def __init__(self, message: str, expected_status: str = None, actual_status: str = None):
        super().__init__(message)
        self.expected_status = expected_status
        self.actual_status = actual_status


class UnauthorizedTransitionError(EscrowError):
    """Raised when the caller's role may not trigger the requested edge."""
    pass


class InvalidTransitionError(EscrowError):
    """Raised when the requested edge does not exist from the current state."""
    pass


class WindowExpiredError(EscrowError):
    """Raised when a dispute is attempted after the dispute window."""
    pass


class InsufficientFundsError(EscrowError):
    """Raised when a wallet debit cannot be covered."""
    pass


class WalletFrozenError(InsufficientFundsError):
    """Raised when debiting a wallet that risk monitoring has frozen."""
    pass


class RateLimitError(EscrowError):
    """Raised when a caller exceeds an action rate limit."""
    pass


class StoreError(EscrowError):
    """Raised when the persistence layer fails for infrastructure reasons."""
    pass
