"""Exception taxonomy shared by every marketplace component.

Every failure is a rejected call, never a corrupted state: the ledger rolls
back the whole call (or the current bulk entry) before the exception reaches
the caller.
"""
from typing import Optional


class MarketplaceError(Exception):
    """Base exception for marketplace operations."""
    code = 'marketplace_error'

    def __init__(self, message: str, entity_id: Optional[int] = None):
        self.entity_id = entity_id
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Raised for malformed input (zero price, bad duration, bad arrays)."""
    code = 'validation_error'


class StateError(MarketplaceError):
    """Raised when an entity is inactive, expired or already terminal."""
    code = 'state_error'


class ReentrancyError(StateError):
    """Raised when a call re-enters an exclusive region that is still open."""
    code = 'reentrancy_error'


class AuthorizationError(MarketplaceError):
    """Raised when the caller is not allowed to perform the operation."""
    code = 'authorization_error'


class PaymentError(MarketplaceError):
    """Raised on payment mismatch or insufficient funds."""
    code = 'payment_error'

    def __init__(self, message: str, expected: Optional[int] = None,
                 received: Optional[int] = None, entity_id: Optional[int] = None):
        self.expected = expected
        self.received = received
        super().__init__(message, entity_id)


class SettlementError(MarketplaceError):
    """Raised when an asset transfer cannot be completed."""
    code = 'settlement_error'
