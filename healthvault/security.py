"""
Security module for HealthVault.

Provides input validation, sanitization, and security utilities.
"""

import re
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .domain import DocumentCategory
from .errors import ValidationError
from .util import mask_sensitive


# ============================================================
# Input Validation
# ============================================================

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_:.-]{1,128}$')
WALLET_ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

MAX_DOCUMENTS_PER_TOKEN = 100


def validate_identifier(value: Any, field_name: str) -> str:
    """
    Validate a subject, document or token identifier.

    Raises:
        ValidationError: If the value is not a short identifier string
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(field_name, "cannot be empty")
    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_document_ids(values: Any, field_name: str = "document_ids") -> List[str]:
    """
    Validate a list of document identifiers.

    Returns the identifiers as an ordered, de-duplicated list.
    """
    if isinstance(values, str) or not isinstance(values, Iterable):
        raise ValidationError(field_name, "must be a list")
    result: List[str] = []
    for value in values:
        doc_id = validate_identifier(value, field_name)
        if doc_id not in result:
            result.append(doc_id)
    if not result:
        raise ValidationError(field_name, "must contain at least one document")
    if len(result) > MAX_DOCUMENTS_PER_TOKEN:
        raise ValidationError(field_name, f"must not exceed {MAX_DOCUMENTS_PER_TOKEN} documents")
    return result


def validate_categories(values: Optional[Iterable[str]], field_name: str = "categories") -> List[str]:
    """Validate document category names against DocumentCategory."""
    if values is None:
        return []
    if isinstance(values, str):
        raise ValidationError(field_name, "must be a list")
    allowed = {c.value for c in DocumentCategory}
    result: List[str] = []
    for value in values:
        value = getattr(value, "value", value)
        if value not in allowed:
            raise ValidationError(field_name, f"invalid category: {value!r}")
        if value not in result:
            result.append(value)
    return result


def validate_positive_int(value: Any, field_name: str, max_value: Optional[int] = None) -> int:
    """
    Validate that a value is a positive integer.

    Raises:
        ValidationError: If validation fails
    """
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be an integer")
    try:
        int_value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be an integer")

    if int_value <= 0:
        raise ValidationError(field_name, "must be positive")

    if max_value and int_value > max_value:
        raise ValidationError(field_name, f"must not exceed {max_value}")

    return int_value


def validate_wallet_address(value: Any, field_name: str = "address") -> str:
    """Validate a 0x-prefixed 20-byte account address."""
    if not isinstance(value, str) or not WALLET_ADDRESS_PATTERN.match(value):
        raise ValidationError(field_name, "must be a 0x-prefixed 40 hex character address")
    return value


def validate_responder(
    responder: Dict[str, Any],
    require_name: bool = True,
    require_credential: bool = False,
    require_location: bool = False
) -> None:
    """
    Check a responder against the requirements recorded on the credential.

    Raises:
        ValidationError: If a required responder field is missing
    """
    checks = (
        ("name", require_name),
        ("credential", require_credential),
        ("location", require_location),
    )
    for field, required in checks:
        if required and not str(responder.get(field) or "").strip():
            raise ValidationError(f"responder.{field}", "is required")


# ============================================================
# Request ID Generation
# ============================================================

def generate_request_id() -> str:
    """Generate a unique request ID for audit trail correlation."""
    return str(uuid.uuid4())


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_id(headers: Dict[str, str]) -> str:
    """
    Extract a client identifier from request headers for rate limiting.
    Falls back to a default if no identifier is found.
    """
    subject = headers.get("x-subject-id", "")
    if subject:
        return f"subject:{subject}"

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    return "anonymous"


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["token", "envelope", "signature", "secret", "master_secret",
                            "signing_secret", "plaintext", "key"]

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = mask_sensitive(value)
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
