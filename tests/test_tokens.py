import jwt
import pytest
from unittest.mock import MagicMock

from healthvault.domain import AccessCategory
from healthvault.errors import AuthorizationError, NotFoundError, TokenError, TokenFailure, ValidationError
from healthvault.tokens import AccessTokenService

from conftest import SIGNING_SECRET


@pytest.fixture
def tokens(store, clock):
    return AccessTokenService(SIGNING_SECRET, store, clock=clock)


def flip_char(serialized: str, segment: int) -> str:
    parts = serialized.split(".")
    s = parts[segment]
    i = len(s) // 2
    parts[segment] = s[:i] + ("A" if s[i] != "A" else "B") + s[i + 1:]
    return ".".join(parts)


# TV-01: issue then verify immediately returns the original claims
def test_tv01_issue_then_verify(tokens):
    issued = tokens.issue("u1", ["d1", "d2"], AccessCategory.SHARE, 1)
    token = tokens.verify(issued.serialized_token)
    assert token.subject_id == "u1"
    assert token.document_ids == ("d1", "d2")
    assert token.access_category == AccessCategory.SHARE
    assert token.token_id == issued.token_id
    assert token.expires_at == issued.expires_at


# TV-02: expiry follows the requested duration and the injected clock
def test_tv02_expired_after_duration(tokens, clock):
    issued = tokens.issue("u1", ["d1"], AccessCategory.EMERGENCY, 2)
    assert issued.expires_at == clock() + 2 * 3600

    clock.advance(2 * 3600 - 1)
    tokens.verify(issued.serialized_token)

    clock.advance(1)
    with pytest.raises(TokenError) as exc:
        tokens.verify(issued.serialized_token)
    assert exc.value.reason == TokenFailure.EXPIRED


# TV-03: a flipped character in the signature is SIGNATURE_INVALID, not MALFORMED
def test_tv03_flipped_signature(tokens):
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    with pytest.raises(TokenError) as exc:
        tokens.verify(flip_char(issued.serialized_token, 2))
    assert exc.value.reason == TokenFailure.SIGNATURE_INVALID


# TV-04: a flipped character in the claims still parses but fails the signature
def test_tv04_flipped_payload(tokens):
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    with pytest.raises(TokenError) as exc:
        tokens.verify(flip_char(issued.serialized_token, 1))
    assert exc.value.reason == TokenFailure.SIGNATURE_INVALID


# TV-05: token signed with another secret
def test_tv05_wrong_secret(tokens, store, clock):
    other = AccessTokenService(b"another-signing-secret-000000000000", store, clock=clock)
    issued = other.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    with pytest.raises(TokenError) as exc:
        tokens.verify(issued.serialized_token)
    assert exc.value.reason == TokenFailure.SIGNATURE_INVALID


@pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c", 42, None])
def test_tv06_garbage_is_malformed(tokens, garbage):
    with pytest.raises(TokenError) as exc:
        tokens.verify(garbage)
    assert exc.value.reason == TokenFailure.MALFORMED


# TV-07: correctly signed but missing required claims
def test_tv07_missing_claims_malformed(tokens):
    forged = jwt.encode({"sub": "u1", "jti": "x"}, SIGNING_SECRET, algorithm="HS256")
    with pytest.raises(TokenError) as exc:
        tokens.verify(forged)
    assert exc.value.reason == TokenFailure.MALFORMED


# TV-08: unsigned tokens are refused
def test_tv08_alg_none_rejected(tokens, clock):
    forged = jwt.encode(
        {"sub": "u1", "jti": "x", "doc_ids": ["d1"], "access": "SHARE", "iat": clock(), "exp": clock() + 60},
        None,
        algorithm="none",
    )
    with pytest.raises(TokenError) as exc:
        tokens.verify(forged)
    assert exc.value.reason in (TokenFailure.MALFORMED, TokenFailure.SIGNATURE_INVALID)


# TV-09: revoked token fails with REVOKED even though signature and expiry pass
def test_tv09_revoked(tokens):
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    assert tokens.revoke(issued.token_id, "u1") is True
    with pytest.raises(TokenError) as exc:
        tokens.verify(issued.serialized_token)
    assert exc.value.reason == TokenFailure.REVOKED


# TV-10: revocation is not consulted for bad signatures
def test_tv10_revocation_checked_after_signature(store, clock):
    spy = MagicMock(wraps=store)
    tokens = AccessTokenService(SIGNING_SECRET, spy, clock=clock)
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    with pytest.raises(TokenError):
        tokens.verify(flip_char(issued.serialized_token, 2))
    spy.is_revoked.assert_not_called()


# TV-11: expired tokens are rejected before the store is asked
def test_tv11_revocation_checked_after_expiry(store, clock):
    spy = MagicMock(wraps=store)
    tokens = AccessTokenService(SIGNING_SECRET, spy, clock=clock)
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    clock.advance(3600)
    with pytest.raises(TokenError) as exc:
        tokens.verify(issued.serialized_token)
    assert exc.value.reason == TokenFailure.EXPIRED
    spy.is_revoked.assert_not_called()


# TV-12: a validly signed token with no persisted record counts as revoked
def test_tv12_unknown_record_is_revoked(tokens, clock):
    forged = jwt.encode(
        {"sub": "u1", "jti": "never-issued", "doc_ids": ["d1"], "access": "SHARE",
         "cats": [], "iat": clock(), "exp": clock() + 60},
        SIGNING_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(TokenError) as exc:
        tokens.verify(forged)
    assert exc.value.reason == TokenFailure.REVOKED


def test_only_owner_can_revoke(tokens):
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    with pytest.raises(AuthorizationError):
        tokens.revoke(issued.token_id, "u2")
    with pytest.raises(NotFoundError):
        tokens.revoke("missing", "u1")


def test_double_revoke_is_noop(tokens):
    issued = tokens.issue("u1", ["d1"], AccessCategory.SHARE, 1)
    assert tokens.revoke(issued.token_id, "u1") is True
    assert tokens.revoke(issued.token_id, "u1") is False


def test_regenerate_replaces_token(tokens, store):
    issued = tokens.issue("u1", ["d1", "d2"], AccessCategory.EMERGENCY, 1,
                          categories=["LAB_RESULT"], require_credential=True)
    fresh = tokens.regenerate(issued.token_id, "u1", 4)

    with pytest.raises(TokenError):
        tokens.verify(issued.serialized_token)
    token = tokens.verify(fresh.serialized_token)
    assert token.document_ids == ("d1", "d2")
    assert token.categories == ("LAB_RESULT",)
    assert store.get_token_record(fresh.token_id).require_credential is True


def test_issue_persists_record(tokens, store):
    issued = tokens.issue("u1", ["d1", "d1", "d2"], AccessCategory.SHARE, 1)
    record = store.get_token_record(issued.token_id)
    assert record.document_ids == ["d1", "d2"]
    assert record.is_active is True
    assert record.access_count == 0


@pytest.mark.parametrize("kwargs", [
    {"document_ids": []},
    {"duration_hours": 0},
    {"duration_hours": 100000},
    {"categories": ["NOT_A_CATEGORY"]},
])
def test_issue_validation(tokens, kwargs):
    args = {"subject_id": "u1", "document_ids": ["d1"], "category": AccessCategory.SHARE, "duration_hours": 1}
    args.update(kwargs)
    with pytest.raises(ValidationError):
        tokens.issue(**args)


def test_public_message_is_generic(tokens):
    with pytest.raises(TokenError) as exc:
        tokens.verify("a.b.c")
    assert exc.value.public_message == "Invalid or expired access credential"
