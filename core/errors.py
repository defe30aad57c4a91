"""
core/errors.py -- Error taxonomy for the QR login service.

Every failure the core can produce is a QRAuthError subclass. Each class
carries three things the HTTP layer needs and nothing more:

  code           -- stable machine-readable identifier for clients.
  status_code    -- HTTP status for the JSON representation.
  public_message -- coarse, human-readable text that is safe to show to an
                    end user (it ends up in ?error= on redirects).

The constructor's message argument is internal detail. It is logged, never
sent to the client.

TokenInvalidOrExpired is a single class covering "never
existed", "deactivated", "expired" and "malformed" so a caller probing
tokens learns nothing about which case applied.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations


class QRAuthError(Exception):
    """Base class for all classified QR login failures."""

    code: str = "qr_auth_error"
    status_code: int = 500
    public_message: str = "An unexpected error occurred."

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.public_message)


class ConfigurationError(QRAuthError):
    """Required external-service configuration is absent."""

    code = "configuration_error"
    status_code = 503
    public_message = "Service is not configured."


class TokenMissing(QRAuthError):
    code = "token_missing"
    status_code = 400
    public_message = "Token is required."


class TokenInvalidOrExpired(QRAuthError):
    code = "token_invalid"
    status_code = 401
    public_message = "Invalid or expired QR token."


class IdentityNotFound(QRAuthError):
    """The identity authority has no record for the email or user id."""

    code = "identity_not_found"
    status_code = 404
    public_message = "User not found."


class ExchangeFailed(QRAuthError):
    """The identity authority refused or failed to produce what we asked for.

    Retryable by the caller. This service never retries on its own.
    """

    code = "exchange_failed"
    status_code = 502
    public_message = "Could not sign you in. Please try again."


class StorageError(QRAuthError):
    code = "storage_error"
    status_code = 503
    public_message = "Token storage is unavailable."


class ActiveTokenConflict(StorageError):
    """A concurrent writer already holds the active token slot for this user.

    Raised by the store when the partial unique index on (user_id) WHERE
    is_active = 1 rejects an insert. The issuer catches it and re-reads the
    winning row instead of surfacing an error.
    """

    code = "active_token_conflict"
    status_code = 409
