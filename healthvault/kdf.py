"""
Key derivation unit for HealthVault.

Keys are derived on demand and never stored:

    key = HMAC-SHA256(master_secret, len(c1) || c1 || len(c2) || c2 ...)

Each context component is length-prefixed so that ("ab", "c") and
("a", "bc") produce different keys.
"""

import hashlib
import hmac
import struct
from typing import Sequence

from .errors import CryptoError

KEY_SIZE = 32


def derive_key(master_secret: bytes, context: Sequence[str]) -> bytes:
    """
    Deterministically derive a 32-byte key from the master secret.

    Args:
        master_secret: Process-wide master secret
        context: Ordered context identifiers (subject id, document id, ...)

    Returns:
        32-byte derived key

    Raises:
        CryptoError: If the master secret or the context is empty
    """
    if not master_secret:
        raise CryptoError("master secret is empty")
    if isinstance(context, str):
        context = [context]
    if not context:
        raise CryptoError("key derivation requires at least one context component")

    mac = hmac.new(master_secret, digestmod=hashlib.sha256)
    for component in context:
        if not isinstance(component, str) or not component:
            raise CryptoError("context components must be non-empty strings")
        raw = component.encode("utf-8")
        mac.update(struct.pack(">I", len(raw)))
        mac.update(raw)
    return mac.digest()


def derive_subject_key(master_secret: bytes, subject_id: str) -> bytes:
    """Subject-only policy, used for DID-document encryption."""
    return derive_key(master_secret, [subject_id])


def derive_document_key(master_secret: bytes, subject_id: str, document_id: str) -> bytes:
    """Subject+document policy, used for per-document encryption."""
    return derive_key(master_secret, [subject_id, document_id])
