"""
AccessToken issuance and verification.

AccessTokens are JWTs (HS256) carrying the subject, token id, ordered
document ids, access category, optional category restriction and
issued/expiry claims. Expiry is checked against an injectable clock rather
than by the JWT library so tests can move time.

Verification order: structure -> signature -> expiry -> revocation.
Revocation is consulted only for tokens that passed the cryptographic
checks; an unknown token record counts as revoked.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt

from .config import MAX_TOKEN_HOURS
from .db import DataStore
from .domain import AccessCategory, CredentialKind, TokenRecord
from .errors import AuthorizationError, NotFoundError, TokenError, TokenFailure
from .logging_config import audit_log
from .security import validate_categories, validate_document_ids, validate_identifier, validate_positive_int
from .util import generate_id, now_epoch

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "jti", "doc_ids", "access", "iat", "exp"]


@dataclass(frozen=True)
class AccessToken:
    """A verified AccessToken."""
    token_id: str
    subject_id: str
    document_ids: Tuple[str, ...]
    access_category: AccessCategory
    categories: Tuple[str, ...]
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class IssuedToken:
    """What the issuer hands back to the subject."""
    serialized_token: str
    token_id: str
    expires_at: int


def revoke_credential(store: DataStore, token_id: str, subject_id: str) -> bool:
    """
    Revoke an AccessToken or EmergencyEnvelope record.

    Only the owning subject may revoke. Returns False if the record was
    already inactive.

    Raises:
        NotFoundError: If no such record exists
        AuthorizationError: If subject_id does not own the record
    """
    record = store.get_token_record(token_id)
    if record is None:
        raise NotFoundError(f"token {token_id} not found")
    if record.subject_id != subject_id:
        audit_log.security_event("REVOKE_NOT_OWNER", "high", token_id=token_id, subject_id=subject_id)
        raise AuthorizationError("only the owning subject may revoke this token")

    revoked = store.mark_revoked(token_id)
    if revoked:
        audit_log.token_revoked(token_id, subject_id)
    return revoked


class AccessTokenService:
    """Issues, verifies, revokes and regenerates AccessTokens."""

    def __init__(
        self,
        signing_secret: bytes,
        store: DataStore,
        clock: Callable[[], int] = now_epoch,
        max_hours: int = MAX_TOKEN_HOURS
    ):
        if not signing_secret:
            raise ValueError("signing secret is required")
        self._secret = signing_secret
        self._store = store
        self._clock = clock
        self._max_hours = max_hours

    def issue(
        self,
        subject_id: str,
        document_ids: List[str],
        category: AccessCategory,
        duration_hours: int,
        categories: Optional[List[str]] = None,
        require_name: bool = True,
        require_credential: bool = False,
        require_location: bool = False
    ) -> IssuedToken:
        """
        Sign a new AccessToken and persist its record.

        Raises:
            ValidationError: If any argument is invalid
        """
        subject_id = validate_identifier(subject_id, "subject_id")
        document_ids = validate_document_ids(document_ids)
        categories = validate_categories(categories)
        duration_hours = validate_positive_int(duration_hours, "duration_hours", self._max_hours)
        category = AccessCategory(category)

        issued_at = self._clock()
        expires_at = issued_at + duration_hours * 3600
        token_id = generate_id(16)

        claims = {
            "sub": subject_id,
            "jti": token_id,
            "doc_ids": document_ids,
            "access": category.value,
            "cats": categories,
            "iat": issued_at,
            "exp": expires_at,
        }
        serialized = jwt.encode(claims, self._secret, algorithm=ALGORITHM)

        self._store.create_token_record(TokenRecord(
            token_id=token_id,
            subject_id=subject_id,
            kind=CredentialKind.ACCESS_TOKEN,
            access_category=category,
            document_ids=document_ids,
            categories=categories,
            expires_at=expires_at,
            require_name=require_name,
            require_credential=require_credential,
            require_location=require_location,
            created_at=issued_at,
        ))
        audit_log.token_issued(token_id, subject_id, category.value, len(document_ids), expires_at)
        return IssuedToken(serialized_token=serialized, token_id=token_id, expires_at=expires_at)

    def _decode(self, serialized: Any) -> Dict[str, Any]:
        if not isinstance(serialized, str) or serialized.count(".") != 2:
            raise TokenError(TokenFailure.MALFORMED, "not a compact JWT")
        try:
            return jwt.decode(
                serialized,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": REQUIRED_CLAIMS},
            )
        except jwt.InvalidSignatureError as e:
            raise TokenError(TokenFailure.SIGNATURE_INVALID, str(e)) from e
        except jwt.InvalidTokenError as e:
            raise TokenError(TokenFailure.MALFORMED, str(e)) from e

    @staticmethod
    def _parse_claims(claims: Dict[str, Any]) -> AccessToken:
        try:
            doc_ids = claims["doc_ids"]
            cats = claims.get("cats") or []
            if not isinstance(doc_ids, list) or not all(isinstance(d, str) for d in doc_ids):
                raise TypeError("doc_ids must be a list of strings")
            if not isinstance(cats, list) or not all(isinstance(c, str) for c in cats):
                raise TypeError("cats must be a list of strings")
            if not isinstance(claims["sub"], str) or not isinstance(claims["jti"], str):
                raise TypeError("sub and jti must be strings")
            return AccessToken(
                token_id=claims["jti"],
                subject_id=claims["sub"],
                document_ids=tuple(doc_ids),
                access_category=AccessCategory(claims["access"]),
                categories=tuple(cats),
                issued_at=int(claims["iat"]),
                expires_at=int(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenError(TokenFailure.MALFORMED, str(e)) from e

    def verify(self, serialized: str) -> AccessToken:
        """
        Verify a serialized AccessToken.

        Raises:
            TokenError: MALFORMED, SIGNATURE_INVALID, EXPIRED or REVOKED
        """
        token = self._parse_claims(self._decode(serialized))

        if self._clock() >= token.expires_at:
            raise TokenError(TokenFailure.EXPIRED, f"expired at {token.expires_at}")

        if self._store.is_revoked(token.token_id):
            raise TokenError(TokenFailure.REVOKED, f"token {token.token_id} is not active")

        return token

    def revoke(self, token_id: str, subject_id: str) -> bool:
        return revoke_credential(self._store, token_id, subject_id)

    def regenerate(self, token_id: str, subject_id: str, duration_hours: int) -> IssuedToken:
        """
        Deactivate an existing token and issue a replacement with the same
        documents, categories and responder requirements.
        """
        record = self._store.get_token_record(token_id)
        if record is None or record.kind != CredentialKind.ACCESS_TOKEN:
            raise NotFoundError(f"token {token_id} not found")
        if record.subject_id != subject_id:
            audit_log.security_event("REGENERATE_NOT_OWNER", "high", token_id=token_id, subject_id=subject_id)
            raise AuthorizationError("only the owning subject may regenerate this token")

        self.revoke(token_id, subject_id)
        return self.issue(
            subject_id,
            record.document_ids,
            record.access_category,
            duration_hours,
            categories=record.categories,
            require_name=record.require_name,
            require_credential=record.require_credential,
            require_location=record.require_location,
        )
