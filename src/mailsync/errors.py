"""Centralized error definitions for mailsync.

Every failure the sync engine can surface derives from :class:`MailSyncError`.
The hierarchy mirrors how the orchestrator reacts to a failure:

* :class:`MailConnectionError` - terminal for the current pass
* :class:`TransientIOError` - retried with bounded backoff
* :class:`DecodeError` - message skipped, cursor may advance
* :class:`ConsistencyError` - pass aborted without advancing the cursor
* :class:`ConfigurationError` - startup aborted

Usage:
    from mailsync.errors import MailSyncError, TransientIOError

    try:
        await engine.run_sync_pass()
    except MailSyncError as e:
        logger.error(e.message, extra=e.to_dict())
"""

from __future__ import annotations

from typing import Any, Dict, Optional


# =============================================================================
# Base Error
# =============================================================================


class MailSyncError(Exception):
    """Base exception for all mailsync errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether retrying within the same pass may succeed
        details: Additional error details for debugging
    """

    code: str = "MAILSYNC_ERROR"
    default_message: str = "An unexpected sync error occurred"
    recoverable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "error_code": self.code,
            "error_message": self.message,
            "recoverable": self.recoverable,
            **self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# Startup Errors
# =============================================================================


class ConfigurationError(MailSyncError):
    """Required settings are absent or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"


# =============================================================================
# Connection Errors
# =============================================================================


class MailConnectionError(MailSyncError):
    """Network, TLS or authentication failure reaching the mail origin."""

    code = "CONNECTION_ERROR"
    default_message = "Could not connect to the mail server"


class AuthenticationError(MailConnectionError):
    """Credentials were rejected or could not be resolved."""

    code = "AUTHENTICATION_ERROR"
    default_message = "Mail server rejected the credentials"


class MailboxNotFoundError(MailConnectionError):
    """The configured mailbox does not exist on the server."""

    code = "MAILBOX_NOT_FOUND"
    default_message = "Mailbox not found"


# =============================================================================
# I/O Errors
# =============================================================================


class TransientIOError(MailSyncError):
    """Timeout or temporary unavailability of the server, store or database."""

    code = "TRANSIENT_IO_ERROR"
    default_message = "Temporary I/O failure"
    recoverable = True


class PermanentWriteError(MailSyncError):
    """A metadata row was rejected by the relational store's constraints."""

    code = "PERMANENT_WRITE_ERROR"
    default_message = "Metadata row rejected"


class ContentNotFoundError(MailSyncError):
    """No object is stored under the requested key."""

    code = "CONTENT_NOT_FOUND"
    default_message = "Content not found"


class ContentStoreError(MailSyncError):
    """The object store rejected a request for a non-transient reason."""

    code = "CONTENT_STORE_ERROR"
    default_message = "Object store request rejected"


# =============================================================================
# Message and State Errors
# =============================================================================


class DecodeError(MailSyncError):
    """A raw message could not be parsed."""

    code = "DECODE_ERROR"
    default_message = "Malformed message"


class ConsistencyError(MailSyncError):
    """Cursor, content and metadata state disagree."""

    code = "CONSISTENCY_ERROR"
    default_message = "Sync state is inconsistent"


class BatchFailedError(MailSyncError):
    """A batch could not be made durable.

    Carries the per-batch tally so the caller can report what was committed
    before the failure. The original failure is available as ``cause``.
    """

    code = "BATCH_FAILED"
    default_message = "Batch could not be committed"

    def __init__(
        self,
        cause: BaseException,
        *,
        tally: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"Batch failed: {cause}", details=details)
        self.cause = cause
        self.tally = tally

    @property
    def recoverable(self) -> bool:  # type: ignore[override]
        return isinstance(self.cause, TransientIOError)


__all__ = [
    "AuthenticationError",
    "BatchFailedError",
    "ConfigurationError",
    "ConsistencyError",
    "ContentNotFoundError",
    "ContentStoreError",
    "DecodeError",
    "MailConnectionError",
    "MailSyncError",
    "MailboxNotFoundError",
    "PermanentWriteError",
    "TransientIOError",
]
