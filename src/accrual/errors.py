"""
Ledger Error Hierarchy

Every public ledger operation reports failure synchronously as one of these
typed exceptions. The category base classes let transport adapters map a
failure without knowing every concrete type:

- AuthorizationError: caller identity does not own the record
- NotFoundError: handle has no live record
- ValidationError: fee, deposit, key or provider list out of bounds
- StateConflictError: the record is in the wrong state for the operation
- CapacityError: a configured ceiling would be exceeded
- TransferFailed: the asset-transfer collaborator refused the movement

No exception raised from a public operation leaves a partial mutation behind.
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base class for all ledger failures."""
    code = "LedgerError"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "context": self.context,
        }


class AuthorizationError(LedgerError):
    code = "Unauthorized"


class NotFoundError(LedgerError):
    code = "NotFound"


class ValidationError(LedgerError):
    code = "ValidationFailed"


class StateConflictError(LedgerError):
    code = "StateConflict"


class CapacityError(LedgerError):
    code = "CapacityError"


# Authorization

class NotOwner(AuthorizationError):
    """Raised when the caller is not the owner of the provider or subscriber."""
    code = "NotOwner"


# Not found

class ProviderNotFound(NotFoundError):
    code = "ProviderNotFound"


class SubscriberNotFound(NotFoundError):
    code = "SubscriberNotFound"


class UnknownProviderId(NotFoundError):
    """Raised by bulk status changes naming a handle with no live record."""
    code = "UnknownProviderId"


# Validation

class FeeTooLow(ValidationError):
    code = "FeeTooLow"


class KeyAlreadyUsed(ValidationError):
    code = "KeyAlreadyUsed"


class InvalidProviderCount(ValidationError):
    code = "InvalidProviderCount"


class DuplicateProvider(ValidationError):
    code = "DuplicateProvider"


class ProviderInactive(ValidationError):
    code = "ProviderInactive"


class InsufficientDeposit(ValidationError):
    code = "InsufficientDeposit"


class InvalidAmount(ValidationError):
    code = "InvalidAmount"


# State conflicts

class InvalidState(StateConflictError):
    code = "InvalidState"


class AlreadyPaused(StateConflictError):
    code = "AlreadyPaused"


# Capacity

class CapacityExceeded(CapacityError):
    code = "CapacityExceeded"


class TransferFailed(LedgerError):
    """Raised when the asset-transfer collaborator rejects a movement."""
    code = "TransferFailed"
