"""Centralized error definitions for the dealdesk mail listener.

Every failure the listener knows how to classify is a ``DealdeskError``
subclass carrying a stable ``code`` and a ``recoverable`` hint so the API
layer can render status without importing listener internals.

Usage:
    from dealdesk.errors import DealdeskError, handle_error

    try:
        settings = load_listener_settings()
    except DealdeskError as e:
        print(handle_error(e))
"""

from __future__ import annotations


# =============================================================================
# Base Error
# =============================================================================


class DealdeskError(Exception):
    """Base exception for all dealdesk errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "DEALDESK_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Address Errors
# =============================================================================


class AddressMissing(DealdeskError):
    """No usable email address could be read from a sender/recipient field."""

    code = "ADDRESS_MISSING"
    default_message = "No email address present"


# =============================================================================
# Mailbox Errors
# =============================================================================


class MailboxError(DealdeskError):
    """Base error for mailbox listener operations."""

    code = "MAILBOX_ERROR"
    default_message = "Mailbox operation failed"


class MailboxConnectionError(MailboxError):
    """Connecting, authenticating or holding the IMAP session failed."""

    code = "MAILBOX_CONNECTION_ERROR"
    default_message = "Mailbox connection failed"


class InvalidStateTransitionError(MailboxError):
    """A listener state change outside the allowed transitions was attempted."""

    code = "INVALID_STATE_TRANSITION"
    default_message = "Invalid listener state transition"
    recoverable = False


class DirectoryRefreshError(MailboxError):
    """Loading tracked user addresses from the store failed."""

    code = "DIRECTORY_REFRESH_ERROR"
    default_message = "Failed to refresh user directory"


class ProvisioningError(MailboxError):
    """A fallback staff account could not be resolved or created."""

    code = "PROVISIONING_ERROR"
    default_message = "Fallback recipient unavailable"


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(DealdeskError):
    """Base error for configuration issues."""

    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    recoverable = False


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    code = "MISSING_CONFIG"
    default_message = "Required configuration missing"


# =============================================================================
# Helpers
# =============================================================================


def handle_error(error: Exception) -> str:
    """Render an exception as a one-line operator message."""
    if isinstance(error, DealdeskError):
        return f"[{error.code}] {error.message}"
    return f"[UNEXPECTED] {error}"


def is_recoverable(error: Exception) -> bool:
    """Check whether retrying the failed operation can succeed."""
    if isinstance(error, DealdeskError):
        return error.recoverable
    return True


__all__ = [
    "AddressMissing",
    "ConfigurationError",
    "DealdeskError",
    "DirectoryRefreshError",
    "InvalidConfigError",
    "InvalidStateTransitionError",
    "MailboxConnectionError",
    "MailboxError",
    "MissingConfigError",
    "ProvisioningError",
    "handle_error",
    "is_recoverable",
]
