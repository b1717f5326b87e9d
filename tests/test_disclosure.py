"""
Disclosure pipeline tests.

Drive CustodyService end to end over a temporary SQLite store, the
in-memory blob transport and the in-memory ledger, with MagicMock wrappers
recording every collaborator call.
"""

import pytest
from unittest.mock import DEFAULT, MagicMock

from healthvault import disclosure
from healthvault.disclosure import DisclosureState
from healthvault.domain import AccessCategory, AccessLevel, DocumentCategory, DocumentRecord
from healthvault.errors import (
    EnvelopeError,
    EnvelopeFailure,
    LedgerError,
    TokenError,
    TokenFailure,
    ValidationError,
)
from healthvault.ledger import LedgerGrant
from healthvault.service import build_service

from conftest import WALLET

ALL_STATES = [
    DisclosureState.RECEIVED,
    DisclosureState.TOKEN_VERIFIED,
    DisclosureState.GRANT_ISSUED,
    DisclosureState.LOGGED,
    DisclosureState.DOCUMENTS_RESOLVED,
    DisclosureState.AGGREGATED,
    DisclosureState.RESPONDED,
]


def plaintexts(result):
    return {d.document_id: d.plaintext for docs in result.packet.documents.values() for d in docs}


# TV-01: emergency envelope for u1 covering d1, d2 disclosed to "Dr. A"
def test_tv01_end_to_end_emergency_disclosure(service, subject, seed_document, ledger):
    seed_document("u1", "d1", b'{"allergies": ["penicillin"]}', DocumentCategory.PROFILE)
    seed_document("u1", "d2", b'{"hb": 13.5}', DocumentCategory.LAB_RESULT)
    issued = service.issue_emergency_envelope("u1", ["d1", "d2"])
    ledger.reset_mock()

    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    ledger.issue_grant.assert_called_once()
    assert ledger.issue_grant.call_args.kwargs["subject_did"] == service.store.get_subject("u1").did

    records = service.access_log("u1")
    assert len(records) == 1
    assert records[0].subject_id == "u1"
    assert records[0].responder_name == "Dr. A"
    assert records[0].on_chain_grant_id == result.grant_id
    assert records[0].record_id == result.record_id
    assert records[0].data_accessed == ["d1", "d2"]
    assert records[0].categories_accessed == ["LAB_RESULT", "PROFILE"]

    assert plaintexts(result) == {
        "d1": b'{"allergies": ["penicillin"]}',
        "d2": b'{"hb": 13.5}',
    }
    assert result.packet.categories() == ["LAB_RESULT", "PROFILE"]
    assert result.state == DisclosureState.RESPONDED
    assert result.transitions == ALL_STATES


# TV-02: 2 of 3 documents decrypt; the failure is skipped, not raised
def test_tv02_partial_failure_skips_document(service, subject, seed_document, clock):
    d1 = seed_document("u1", "d1", b"one")
    seed_document("u1", "d3", b"three")
    # d2 points at d1's blob, which is sealed under d1's key
    service.store.create_document(DocumentRecord(
        document_id="d2", subject_id="u1", category=DocumentCategory.LAB_RESULT,
        blob_address=d1.blob_address, uploaded_at=clock(),
    ))
    issued = service.issue_emergency_envelope("u1", ["d1", "d2", "d3"])

    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    assert plaintexts(result) == {"d1": b"one", "d3": b"three"}
    assert result.skipped == ["d2"]
    assert result.state == DisclosureState.RESPONDED


# TV-03: storage failures are isolated the same way as decryption failures
def test_tv03_fetch_failure_isolated(service, subject, seed_document, transport):
    d1 = seed_document("u1", "d1", b"one")
    seed_document("u1", "d2", b"two")
    issued = service.issue_emergency_envelope("u1", ["d1", "d2"])

    def fetch(address):
        if address == d1.blob_address:
            raise ConnectionError("gateway timeout")
        return DEFAULT

    transport.get.side_effect = fetch
    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    assert plaintexts(result) == {"d2": b"two"}
    assert result.skipped == ["d1"]


# TV-04: every document failing yields an empty packet, not an error
def test_tv04_all_documents_fail_empty_packet(service, subject, seed_document, transport):
    seed_document("u1", "d1", b"one")
    seed_document("u1", "d2", b"two")
    issued = service.issue_emergency_envelope("u1", ["d1", "d2"])
    transport.get.side_effect = ConnectionError("blob store down")

    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    assert len(result.packet) == 0
    assert sorted(result.skipped) == ["d1", "d2"]
    assert len(service.access_log("u1")) == 1


# TV-04b: an unexpected error in one document is isolated like a typed failure
def test_tv04b_unexpected_document_error_isolated(service, subject, seed_document, monkeypatch):
    seed_document("u1", "d1", b"one")
    seed_document("u1", "d2", b"two")
    issued = service.issue_emergency_envelope("u1", ["d1", "d2"])

    real_derive = disclosure.derive_document_key

    def derive(master_secret, subject_id, document_id):
        if document_id == "d1":
            raise TypeError("unexpected key material")
        return real_derive(master_secret, subject_id, document_id)

    monkeypatch.setattr(disclosure, "derive_document_key", derive)
    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    assert plaintexts(result) == {"d2": b"two"}
    assert result.skipped == ["d1"]
    assert result.state == DisclosureState.RESPONDED


# TV-05: ledger failure -> no grant record and no document retrieval
def test_tv05_ledger_failure_logs_and_retrieves_nothing(settings, store, ledger, transport, clock, seed_document):
    spy = MagicMock(wraps=store)
    svc = build_service(settings, store=spy, ledger=ledger, blob_transport=transport,
                        clock=clock, clock_millis=clock.millis)
    svc.register_subject("u1", wallet_address=WALLET)
    svc.initiate_did_creation("u1")
    svc.jobs.run_pending()
    svc.upload_document("u1", DocumentCategory.LAB_RESULT, b"one")
    issued = svc.issue_emergency_envelope("u1")

    spy.reset_mock()
    transport.reset_mock()
    ledger.issue_grant.side_effect = LedgerError("transaction reverted")

    with pytest.raises(LedgerError):
        svc.disclose(issued.serialized_envelope, {"name": "Dr. A"})

    ledger.issue_grant.assert_called_once()
    spy.create_grant_record.assert_not_called()
    spy.increment_access_count.assert_not_called()
    spy.find_active_documents.assert_not_called()
    transport.get.assert_not_called()
    assert store.list_grant_records("u1") == []


# TV-06: the grant record is on disk before the first blob is fetched
def test_tv06_logged_before_decryption(service, subject, seed_document, transport):
    seed_document("u1", "d1", b"one")
    issued = service.issue_emergency_envelope("u1", ["d1"])
    seen = []

    def fetch(address):
        seen.append(len(service.store.list_grant_records("u1")))
        return DEFAULT

    transport.get.side_effect = fetch
    service.disclose(issued.serialized_envelope, {"name": "Dr. A"})
    assert seen == [1]


# TV-07: each presentation is its own grant and its own log entry
def test_tv07_new_grant_per_presentation(service, subject, seed_document, ledger):
    seed_document("u1", "d1", b"one")
    issued = service.issue_emergency_envelope("u1", ["d1"])
    ledger.reset_mock()

    first = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})
    second = service.disclose(issued.serialized_envelope, {"name": "Dr. B"})

    assert ledger.issue_grant.call_count == 2
    assert first.grant_id != second.grant_id
    assert [r.responder_name for r in service.access_log("u1")] == ["Dr. A", "Dr. B"]
    assert service.store.get_token_record(issued.envelope_id).access_count == 2


# TV-08: emergency grants are 24h CRITICAL; the ledger's expiry is authoritative
def test_tv08_emergency_grant_parameters(service, subject, seed_document, ledger, clock):
    seed_document("u1", "d1", b"one")
    issued = service.issue_emergency_envelope("u1", ["d1"])

    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A", "location": "ER 3"})
    kwargs = ledger.issue_grant.call_args.kwargs
    assert kwargs["duration_seconds"] == 24 * 3600
    assert kwargs["access_level"] == AccessLevel.CRITICAL
    assert kwargs["location"] == "ER 3"
    assert result.expires_at == clock() + 24 * 3600

    ledger.issue_grant.return_value = LedgerGrant("grant-fixed", 1234, AccessLevel.CRITICAL)
    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})
    assert result.grant_id == "grant-fixed"
    assert result.expires_at == 1234
    assert service.access_log("u1")[-1].grant_expires_at == 1234


# TV-09: SHARE tokens use BASIC grants and may be narrowed to an approved subset
def test_tv09_share_token_subset(service, subject, seed_document, ledger, settings):
    for doc_id in ("d1", "d2", "d3"):
        seed_document("u1", doc_id, doc_id.encode())
    issued = service.issue_access_token("u1", ["d1", "d2", "d3"], AccessCategory.SHARE, 1)

    result = service.disclose(issued.serialized_token, {"name": "Researcher"}, approved_document_ids=["d2"])

    assert plaintexts(result) == {"d2": b"d2"}
    kwargs = ledger.issue_grant.call_args.kwargs
    assert kwargs["access_level"] == AccessLevel.BASIC
    assert kwargs["duration_seconds"] == settings.share_grant_seconds
    assert service.access_log("u1")[0].data_accessed == ["d2"]


def test_share_subset_outside_token_rejected(service, subject, seed_document, ledger):
    seed_document("u1", "d1", b"one")
    seed_document("u1", "d2", b"two")
    issued = service.issue_access_token("u1", ["d1"], AccessCategory.SHARE, 1)
    ledger.reset_mock()

    with pytest.raises(ValidationError):
        service.disclose(issued.serialized_token, {"name": "Researcher"}, approved_document_ids=["d2"])
    ledger.issue_grant.assert_not_called()
    assert service.access_log("u1") == []


def test_emergency_token_cannot_be_narrowed(service, subject, seed_document):
    seed_document("u1", "d1", b"one")
    issued = service.issue_access_token("u1", ["d1"], AccessCategory.EMERGENCY, 1)
    with pytest.raises(ValidationError):
        service.disclose(issued.serialized_token, {"name": "Dr. A"}, approved_document_ids=["d1"])


# TV-10: category restriction on the token filters resolved documents
def test_tv10_category_filter(service, subject, seed_document):
    seed_document("u1", "d1", b"labs", DocumentCategory.LAB_RESULT)
    seed_document("u1", "d2", b"scan", DocumentCategory.IMAGING)
    issued = service.issue_access_token("u1", ["d1", "d2"], AccessCategory.EMERGENCY, 1,
                                        categories=["IMAGING"])

    result = service.disclose(issued.serialized_token, {"name": "Dr. A"})
    assert plaintexts(result) == {"d2": b"scan"}
    assert list(result.packet.documents) == ["IMAGING"]
    assert service.access_log("u1")[0].categories_accessed == ["IMAGING"]


# TV-11: documents deactivated after issuance are not disclosed
def test_tv11_inactive_documents_excluded(service, subject, seed_document):
    seed_document("u1", "d1", b"one")
    seed_document("u1", "d2", b"two")
    issued = service.issue_emergency_envelope("u1", ["d1", "d2"])
    service.deactivate_document("u1", "d2")

    result = service.disclose(issued.serialized_envelope, {"name": "Dr. A"})
    assert plaintexts(result) == {"d1": b"one"}
    assert result.skipped == []


# TV-12: responder requirements recorded on the token are enforced before the grant
def test_tv12_responder_requirements(service, subject, seed_document, ledger):
    seed_document("u1", "d1", b"one")
    issued = service.issue_access_token("u1", ["d1"], AccessCategory.EMERGENCY, 1,
                                        require_credential=True, require_location=True)
    ledger.reset_mock()

    with pytest.raises(ValidationError) as exc:
        service.disclose(issued.serialized_token, {"name": "Dr. A", "location": "ER"})
    assert exc.value.field == "responder.credential"
    ledger.issue_grant.assert_not_called()

    result = service.disclose(issued.serialized_token,
                              {"name": "Dr. A", "credential": "MD-123", "location": "ER"})
    assert plaintexts(result) == {"d1": b"one"}
    record = service.access_log("u1")[0]
    assert record.responder_credential == "MD-123"
    assert record.responder_location == "ER"


def test_envelope_requires_responder_name(service, subject, seed_document, ledger):
    seed_document("u1", "d1", b"one")
    issued = service.issue_emergency_envelope("u1", ["d1"])
    ledger.reset_mock()
    with pytest.raises(ValidationError):
        service.disclose(issued.serialized_envelope, {"name": "  "})
    ledger.issue_grant.assert_not_called()


# TV-13: rejected credentials never reach the ledger
def test_tv13_revoked_and_expired_rejected(service, subject, seed_document, ledger, clock):
    seed_document("u1", "d1", b"one")
    token = service.issue_access_token("u1", ["d1"], AccessCategory.SHARE, 1)
    envelope = service.issue_emergency_envelope("u1", ["d1"])
    service.revoke(token.token_id, "u1")
    ledger.reset_mock()

    with pytest.raises(TokenError) as exc:
        service.disclose(token.serialized_token, {"name": "Dr. A"})
    assert exc.value.reason == TokenFailure.REVOKED

    clock.advance(24 * 3600 + 1)
    with pytest.raises(EnvelopeError) as exc:
        service.disclose(envelope.serialized_envelope, {"name": "Dr. A"})
    assert exc.value.reason == EnvelopeFailure.EXPIRED

    ledger.issue_grant.assert_not_called()
    assert service.access_log("u1") == []


def test_disclosure_is_scoped_to_token_subject(service, subject, seed_document):
    seed_document("u1", "d1", b"mine")
    service.register_subject("u2", wallet_address=WALLET)
    seed_document("u2", "d2", b"theirs")
    issued = service.issue_access_token("u1", ["d1"], AccessCategory.EMERGENCY, 1)

    result = service.disclose(issued.serialized_token, {"name": "Dr. A"})
    assert plaintexts(result) == {"d1": b"mine"}
