"""
Error taxonomy for HealthVault.

Every failure the custody core raises derives from HealthVaultError so the
HTTP layer can translate it in one place. Credential failures always expose
the same generic public message regardless of which check failed.
"""

from enum import Enum
from typing import Optional


GENERIC_ACCESS_MESSAGE = "Invalid or expired access credential"


class HealthVaultError(Exception):
    """Base class for all custody-core errors."""

    retryable = False


class CryptoError(HealthVaultError):
    """Bad key length, malformed ciphertext, or authentication failure."""


class StorageError(HealthVaultError):
    """Transient blob-store transport failure. Safe to retry with backoff."""

    retryable = True

    def __init__(self, message: str, address: Optional[str] = None):
        self.address = address
        super().__init__(message)


class LedgerError(HealthVaultError):
    """The ledger rejected or could not complete a call."""


class TokenFailure(str, Enum):
    """Reasons an AccessToken can fail verification."""
    MALFORMED = "MALFORMED"
    EXPIRED = "EXPIRED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    REVOKED = "REVOKED"


class EnvelopeFailure(str, Enum):
    """Reasons an EmergencyEnvelope can fail verification."""
    MALFORMED = "MALFORMED"
    EXPIRED = "EXPIRED"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    REVOKED = "REVOKED"


class CredentialError(HealthVaultError):
    """Common base for token and envelope verification failures."""

    public_message = GENERIC_ACCESS_MESSAGE

    def __init__(self, reason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class TokenError(CredentialError):
    """AccessToken verification failed."""

    def __init__(self, reason: TokenFailure, detail: str = ""):
        super().__init__(reason, detail)


class EnvelopeError(CredentialError):
    """EmergencyEnvelope verification failed."""

    def __init__(self, reason: EnvelopeFailure, detail: str = ""):
        super().__init__(reason, detail)


class ValidationError(HealthVaultError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFoundError(HealthVaultError):
    """A referenced subject, document, token or job does not exist."""


class AuthorizationError(HealthVaultError):
    """The caller does not own the resource it is acting on."""


class RateLimitError(HealthVaultError):
    """Too many requests for an endpoint, client or credential."""

    def __init__(self, scope: str, retry_after: float):
        self.scope = scope
        self.retry_after = retry_after
        super().__init__(f"rate limit exceeded for {scope}; retry in {retry_after:.0f}s")
