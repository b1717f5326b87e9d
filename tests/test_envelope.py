import base64
import json

import pytest
from unittest.mock import MagicMock

from healthvault.envelope import (
    ENVELOPE_MAX_AGE_MILLIS,
    EmergencyEnvelopeService,
    envelope_signature,
    verify_envelope_offline,
)
from healthvault.errors import EnvelopeError, EnvelopeFailure
from healthvault.util import canonicalize

from conftest import SIGNING_SECRET

DID = "did:healthvault:u1"


@pytest.fixture
def envelopes(store, clock):
    return EmergencyEnvelopeService(SIGNING_SECRET, store, clock_millis=clock.millis)


def decode(serialized):
    return json.loads(base64.b64decode(serialized))


def encode(claims):
    return base64.b64encode(canonicalize(claims)).decode("ascii")


def test_issue_then_verify(envelopes, clock):
    issued = envelopes.issue("u1", DID, ["d1", "d2"])
    envelope = envelopes.verify(issued.serialized_envelope)
    assert envelope.subject_id == "u1"
    assert envelope.did == DID
    assert envelope.document_ids == ("d1", "d2")
    assert envelope.envelope_id == issued.envelope_id
    assert envelope.issued_at_millis == clock.millis()


def test_wire_format_is_base64_signed_canonical_json(envelopes):
    issued = envelopes.issue("u1", DID, ["d1"])
    claims = decode(issued.serialized_envelope)
    assert set(claims) == {"envelopeId", "subjectId", "did", "documentIds", "categories",
                           "issuedAtMillis", "signature"}
    assert claims["signature"] == envelope_signature(SIGNING_SECRET, claims)
    assert len(claims["signature"]) == 64


def test_expires_after_24_hours(envelopes, clock):
    issued = envelopes.issue("u1", DID, ["d1"])
    assert issued.expires_at == clock() + 24 * 3600

    clock.advance(24 * 3600)
    envelopes.verify(issued.serialized_envelope)

    clock.advance(1)
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(issued.serialized_envelope)
    assert exc.value.reason == EnvelopeFailure.EXPIRED


def test_tampered_signature_mismatch(envelopes):
    claims = decode(envelopes.issue("u1", DID, ["d1"]).serialized_envelope)
    claims["signature"] = "0" * 64
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(encode(claims))
    assert exc.value.reason == EnvelopeFailure.SIGNATURE_MISMATCH


def test_tampered_claims_mismatch(envelopes):
    claims = decode(envelopes.issue("u1", DID, ["d1"]).serialized_envelope)
    claims["documentIds"] = ["d1", "d9"]
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(encode(claims))
    assert exc.value.reason == EnvelopeFailure.SIGNATURE_MISMATCH


def test_backdated_issue_time_is_signature_mismatch_not_expired(envelopes):
    claims = decode(envelopes.issue("u1", DID, ["d1"]).serialized_envelope)
    claims["issuedAtMillis"] -= ENVELOPE_MAX_AGE_MILLIS * 2
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(encode(claims))
    assert exc.value.reason == EnvelopeFailure.SIGNATURE_MISMATCH


@pytest.mark.parametrize("garbage", [
    "",
    "%%%not-base64%%%",
    base64.b64encode(b"not json").decode(),
    base64.b64encode(b"[1, 2, 3]").decode(),
    base64.b64encode(b'{"subjectId": "u1"}').decode(),
    None,
])
def test_garbage_is_malformed(envelopes, garbage):
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(garbage)
    assert exc.value.reason == EnvelopeFailure.MALFORMED


def test_revoked(envelopes):
    issued = envelopes.issue("u1", DID, ["d1"])
    assert envelopes.revoke(issued.envelope_id, "u1") is True
    with pytest.raises(EnvelopeError) as exc:
        envelopes.verify(issued.serialized_envelope)
    assert exc.value.reason == EnvelopeFailure.REVOKED


def test_revocation_not_consulted_on_signature_mismatch(store, clock):
    spy = MagicMock(wraps=store)
    envelopes = EmergencyEnvelopeService(SIGNING_SECRET, spy, clock_millis=clock.millis)
    claims = decode(envelopes.issue("u1", DID, ["d1"]).serialized_envelope)
    claims["signature"] = "f" * 64
    with pytest.raises(EnvelopeError):
        envelopes.verify(encode(claims))
    spy.is_revoked.assert_not_called()


def test_offline_verification_needs_only_the_secret(envelopes, clock):
    issued = envelopes.issue("u1", DID, ["d1"], categories=["LAB_RESULT"])
    envelope = verify_envelope_offline(issued.serialized_envelope, SIGNING_SECRET, clock.millis())
    assert envelope.categories == ("LAB_RESULT",)

    with pytest.raises(EnvelopeError) as exc:
        verify_envelope_offline(issued.serialized_envelope, b"wrong-secret", clock.millis())
    assert exc.value.reason == EnvelopeFailure.SIGNATURE_MISMATCH


def test_envelope_is_not_a_jwt(envelopes):
    assert "." not in envelopes.issue("u1", DID, ["d1"]).serialized_envelope
