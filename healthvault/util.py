"""
Utility functions for HealthVault.

Provides canonical JSON serialization, hashing, encoding, and time utilities.
"""

import json
import hashlib
import base64
import time
import hmac
import secrets
from datetime import datetime, timezone
from typing import Any, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def now_millis() -> int:
    """Get current Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes (strict alphabet)."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def utc_rfc3339(ts_epoch: int) -> str:
    """Convert Unix timestamp to RFC3339 UTC string."""
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_id(length: int = 16) -> str:
    """Generate a cryptographically secure random ID."""
    return secrets.token_hex(length)


def decode_secret(value: str) -> bytes:
    """
    Decode a configured secret.

    Accepts hex (even length, hex alphabet) or standard base64. Anything
    else is taken as raw UTF-8 so development setups can use passphrases.
    """
    value = value.strip()
    try:
        if len(value) % 2 == 0:
            return bytes.fromhex(value)
    except ValueError:
        pass
    try:
        return b64d(value)
    except (ValueError, UnicodeEncodeError):
        return value.encode('utf-8')


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
