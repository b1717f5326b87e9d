"""
Emergency envelope issuance and verification.

An EmergencyEnvelope is the payload behind a patient's emergency code. It is
deliberately not a JWT: the signature is an HMAC-SHA256 (hex) over the
canonical JSON of every claim except "signature", and the serialized form is
standard base64 of the signed canonical JSON.

Envelopes carry no expiry claim. Age is computed from issuedAtMillis against
a fixed 24 hour ceiling, so any holder of the signing secret can verify an
envelope offline (see verifier/verify_envelope.py).
"""

import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .db import DataStore
from .domain import AccessCategory, CredentialKind, TokenRecord
from .errors import EnvelopeError, EnvelopeFailure
from .logging_config import audit_log
from .security import validate_categories, validate_document_ids, validate_identifier
from .tokens import revoke_credential
from .util import b64d, b64e, canonicalize, constant_time_compare, generate_id, now_millis

logger = logging.getLogger(__name__)

ENVELOPE_MAX_AGE_MILLIS = 24 * 60 * 60 * 1000
SIGNATURE_FIELD = "signature"


@dataclass(frozen=True)
class EmergencyEnvelope:
    """A verified EmergencyEnvelope."""
    envelope_id: str
    subject_id: str
    did: str
    document_ids: Tuple[str, ...]
    categories: Tuple[str, ...]
    issued_at_millis: int

    @property
    def expires_at(self) -> int:
        """Epoch seconds after which the envelope no longer verifies."""
        return (self.issued_at_millis + ENVELOPE_MAX_AGE_MILLIS) // 1000


@dataclass(frozen=True)
class IssuedEnvelope:
    serialized_envelope: str
    envelope_id: str
    issued_at_millis: int
    expires_at: int


def envelope_signature(secret: bytes, claims: Dict[str, Any]) -> str:
    """HMAC-SHA256 (hex) over the canonical JSON of claims minus the signature."""
    body = {k: v for k, v in claims.items() if k != SIGNATURE_FIELD}
    return hmac.new(secret, canonicalize(body), hashlib.sha256).hexdigest()


def _load_claims(serialized: Any) -> Dict[str, Any]:
    if not isinstance(serialized, str) or not serialized:
        raise EnvelopeError(EnvelopeFailure.MALFORMED, "envelope must be a non-empty string")
    try:
        claims = json.loads(b64d(serialized).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise EnvelopeError(EnvelopeFailure.MALFORMED, f"undecodable envelope: {e}") from e
    if not isinstance(claims, dict):
        raise EnvelopeError(EnvelopeFailure.MALFORMED, "envelope is not a JSON object")
    return claims


def _parse_claims(claims: Dict[str, Any]) -> EmergencyEnvelope:
    def is_str_list(value):
        return isinstance(value, list) and all(isinstance(v, str) for v in value)

    issued = claims.get("issuedAtMillis")
    checks = (
        isinstance(claims.get("envelopeId"), str),
        isinstance(claims.get("subjectId"), str),
        isinstance(claims.get("did"), str),
        is_str_list(claims.get("documentIds")),
        is_str_list(claims.get("categories", [])),
        isinstance(issued, int) and not isinstance(issued, bool),
        isinstance(claims.get(SIGNATURE_FIELD), str),
    )
    if not all(checks):
        raise EnvelopeError(EnvelopeFailure.MALFORMED, "missing or mistyped envelope claims")
    return EmergencyEnvelope(
        envelope_id=claims["envelopeId"],
        subject_id=claims["subjectId"],
        did=claims["did"],
        document_ids=tuple(claims["documentIds"]),
        categories=tuple(claims.get("categories", [])),
        issued_at_millis=issued,
    )


def verify_envelope_offline(serialized: str, secret: bytes, now_ms: int) -> EmergencyEnvelope:
    """
    Structure, signature and age checks; needs nothing but the secret.

    Raises:
        EnvelopeError: MALFORMED, SIGNATURE_MISMATCH or EXPIRED
    """
    claims = _load_claims(serialized)
    envelope = _parse_claims(claims)

    expected = envelope_signature(secret, claims)
    if not constant_time_compare(expected, claims[SIGNATURE_FIELD]):
        raise EnvelopeError(EnvelopeFailure.SIGNATURE_MISMATCH, "envelope signature does not match")

    if now_ms - envelope.issued_at_millis > ENVELOPE_MAX_AGE_MILLIS:
        raise EnvelopeError(EnvelopeFailure.EXPIRED, f"issued at {envelope.issued_at_millis}")

    return envelope


class EmergencyEnvelopeService:
    """Issues, verifies and revokes EmergencyEnvelopes."""

    def __init__(
        self,
        signing_secret: bytes,
        store: DataStore,
        clock_millis: Callable[[], int] = now_millis
    ):
        if not signing_secret:
            raise ValueError("signing secret is required")
        self._secret = signing_secret
        self._store = store
        self._clock_millis = clock_millis

    def issue(
        self,
        subject_id: str,
        did: str,
        document_ids: List[str],
        categories: Optional[List[str]] = None
    ) -> IssuedEnvelope:
        """Sign a new envelope and persist its record."""
        subject_id = validate_identifier(subject_id, "subject_id")
        did = validate_identifier(did, "did")
        document_ids = validate_document_ids(document_ids)
        categories = validate_categories(categories)

        issued_at_millis = self._clock_millis()
        envelope_id = generate_id(16)
        claims = {
            "envelopeId": envelope_id,
            "subjectId": subject_id,
            "did": did,
            "documentIds": document_ids,
            "categories": categories,
            "issuedAtMillis": issued_at_millis,
        }
        claims[SIGNATURE_FIELD] = envelope_signature(self._secret, claims)
        serialized = b64e(canonicalize(claims))

        expires_at = (issued_at_millis + ENVELOPE_MAX_AGE_MILLIS) // 1000
        self._store.create_token_record(TokenRecord(
            token_id=envelope_id,
            subject_id=subject_id,
            kind=CredentialKind.EMERGENCY_ENVELOPE,
            access_category=AccessCategory.EMERGENCY,
            document_ids=document_ids,
            categories=categories,
            expires_at=expires_at,
            created_at=issued_at_millis // 1000,
        ))
        audit_log.envelope_issued(envelope_id, subject_id, did, len(document_ids))
        return IssuedEnvelope(
            serialized_envelope=serialized,
            envelope_id=envelope_id,
            issued_at_millis=issued_at_millis,
            expires_at=expires_at,
        )

    def verify(self, serialized: str) -> EmergencyEnvelope:
        """
        Verify a serialized envelope, including revocation.

        Raises:
            EnvelopeError: MALFORMED, SIGNATURE_MISMATCH, EXPIRED or REVOKED
        """
        envelope = verify_envelope_offline(serialized, self._secret, self._clock_millis())
        if self._store.is_revoked(envelope.envelope_id):
            raise EnvelopeError(EnvelopeFailure.REVOKED, f"envelope {envelope.envelope_id} is not active")
        return envelope

    def revoke(self, envelope_id: str, subject_id: str) -> bool:
        return revoke_credential(self._store, envelope_id, subject_id)
