import pytest
import requests
from unittest.mock import MagicMock

from healthvault.domain import AccessLevel
from healthvault.errors import LedgerError
from healthvault.ledger import InMemoryLedger, JsonRpcLedgerClient

from conftest import T0, WALLET, FixedClock


def rpc_session(result=None, error=None, exc=None):
    session = MagicMock()
    if exc is not None:
        session.post.side_effect = exc
        return session
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    session.post.return_value.json.return_value = body
    return session


def test_jsonrpc_issue_grant():
    session = rpc_session({"grantId": 7, "expiresAt": T0 + 86400, "accessLevel": 2})
    client = JsonRpcLedgerClient("http://node:8545", timeout=5, session=session)

    grant = client.issue_grant("did:healthvault:x", "0x" + "0" * 40, {"name": "Dr. A"}, 86400, AccessLevel.CRITICAL)

    assert grant.grant_id == "7"
    assert grant.expires_at == T0 + 86400
    assert grant.access_level == AccessLevel.CRITICAL
    args, kwargs = session.post.call_args
    assert args == ("http://node:8545",)
    assert kwargs["timeout"] == 5
    assert kwargs["json"]["method"] == "healthvault_grantEmergencyAccess"
    assert kwargs["json"]["params"][0]["responderName"] == "Dr. A"


def test_jsonrpc_error_object_is_ledger_error():
    client = JsonRpcLedgerClient("http://node", session=rpc_session(error={"code": -32000, "message": "revert"}))
    with pytest.raises(LedgerError, match="revert"):
        client.create_did(WALLET, "sha256-abc")


def test_jsonrpc_transport_failure_is_ledger_error():
    client = JsonRpcLedgerClient("http://node", session=rpc_session(exc=requests.ConnectionError("refused")))
    with pytest.raises(LedgerError):
        client.register_document(WALLET, "sha256-abc", "LAB_RESULT")
    assert client.health_check() is False


def test_jsonrpc_malformed_grant_response():
    client = JsonRpcLedgerClient("http://node", session=rpc_session({"grantId": 1}))
    with pytest.raises(LedgerError):
        client.issue_grant("did:x", WALLET, {}, 60, AccessLevel.BASIC)


def test_in_memory_ledger_records_grants_and_dids():
    clock = FixedClock()
    ledger = InMemoryLedger(clock=clock)

    grant = ledger.issue_grant("did:x", WALLET, {"name": "Dr. A"}, 3600, AccessLevel.BASIC, location="ER 3")
    assert grant.expires_at == T0 + 3600
    assert ledger.get_grant(grant.grant_id)["location"] == "ER 3"
    assert ledger.grant_count == 1

    did = ledger.create_did(WALLET, "sha256-doc")
    assert did.startswith("did:healthvault:")
    assert ledger.resolve_did(did) == {"owner": WALLET, "document_address": "sha256-doc"}

    assert ledger.register_document(WALLET, "sha256-a", "IMAGING") == 1
    assert ledger.register_document(WALLET, "sha256-b", "IMAGING") == 2

    with pytest.raises(LedgerError):
        ledger.issue_grant("did:x", WALLET, {}, 0, AccessLevel.BASIC)
