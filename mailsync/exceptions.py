"""
Error taxonomy for email connection and synchronization.

Every failure raised by connectors, connection managers and the sync engine
belongs to one of these families. The ``retryable`` flag tells the job queue
whether another attempt could succeed; the HTTP layer maps families to status
codes.
"""

from typing import Any, Dict, Optional


class EmailSyncError(Exception):
    """Base exception for email connection and sync errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(EmailSyncError):
    """Malformed input, rejected before any I/O."""
    pass


class AuthenticationError(EmailSyncError):
    """Credential expired or revoked. Needs re-authentication, not a retry."""
    pass


class ExternalServiceError(EmailSyncError):
    """Provider unreachable or returned an unexpected shape."""

    retryable = True


class RateLimitError(ExternalServiceError):
    """Provider throttled the request."""

    def __init__(self, message: str, retry_after: Optional[float] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class NotFoundError(EmailSyncError):
    """A provider or store resource does not exist."""
    pass


class CursorNotFoundError(NotFoundError):
    """Delta cursor too old for the provider to resolve."""
    pass


class AccountNotFoundError(NotFoundError):
    """No account with the requested id."""
    pass


class AccountInactiveError(EmailSyncError):
    """Operation requires an active account."""
    pass


class DuplicateAccountError(EmailSyncError):
    """The user already connected this mailbox."""
    pass


class PermissionDeniedError(EmailSyncError):
    """The caller does not own the account."""
    pass
