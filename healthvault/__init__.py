"""
HealthVault Custody Core

Encrypted document custody and controlled disclosure for patient health
records:

- per-document authenticated encryption with keys derived from a master
  secret, stored off-site in a content-addressed blob store
- signed, time-boxed AccessTokens (JWT) and EmergencyEnvelopes (HMAC)
- a disclosure pipeline that records an on-chain grant and an audit entry
  before decrypting anything, and tolerates per-document failure

Usage:
    from healthvault import build_service, load_settings

    service = build_service(load_settings())
    issued = service.issue_emergency_envelope("u1")
    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})
"""

__version__ = "1.0.0"

from .config import Settings, load_settings
from .disclosure import DisclosurePacket, DisclosureResult, DisclosureState
from .errors import (
    AuthorizationError,
    CryptoError,
    EnvelopeError,
    EnvelopeFailure,
    HealthVaultError,
    LedgerError,
    NotFoundError,
    StorageError,
    TokenError,
    TokenFailure,
    ValidationError,
)
from .service import CustodyService, build_service

__all__ = [
    "Settings",
    "load_settings",
    "CustodyService",
    "build_service",
    "DisclosurePacket",
    "DisclosureResult",
    "DisclosureState",
    "HealthVaultError",
    "CryptoError",
    "StorageError",
    "LedgerError",
    "TokenError",
    "TokenFailure",
    "EnvelopeError",
    "EnvelopeFailure",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
]
