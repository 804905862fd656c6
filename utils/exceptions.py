"""
Escrow error taxonomy.

Every failure raised by the deal services derives from ``EscrowError`` so that the
chat layer can turn it into a user-facing reply with a single ``except`` clause.
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all escrow core errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EscrowError):
    """Bad input, disallowed transition, or wrong current status"""
    pass


class AuthorizationError(ValidationError):
    """Actor lacks the role or ownership required for the operation"""
    pass


class DealNotFoundError(ValidationError):
    """No deal with the given code"""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Deal {code} not found")


class StaleStateError(EscrowError):
    """The deal changed status between read and conditional write"""

    def __init__(self, code: str, expected: Optional[str], actual: Optional[str]):
        self.code = code
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Deal {code} changed state: expected {expected}, found {actual}"
        )


class PersistenceError(EscrowError):
    """Store unavailable or a write failed"""
    pass


class DuplicateDealCodeError(PersistenceError):
    """Generated deal code collided with an existing one"""
    pass


class LedgerError(EscrowError):
    """Ledger call failed, reverted, or reported an unexpected state"""
    pass


class LedgerTimeoutError(LedgerError):
    """Ledger call or confirmation exceeded its deadline"""
    pass


class AuditWriteError(EscrowError):
    """Audit entry could not be recorded"""
    pass


__all__ = [
    "EscrowError",
    "ValidationError",
    "AuthorizationError",
    "DealNotFoundError",
    "StaleStateError",
    "PersistenceError",
    "DuplicateDealCodeError",
    "LedgerError",
    "LedgerTimeoutError",
    "AuditWriteError",
]
