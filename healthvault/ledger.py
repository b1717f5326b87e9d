"""
Ledger client for HealthVault.

The custody core talks to the on-chain contracts through the narrow
LedgerClient interface: issue an emergency/share grant, create a DID,
register a document. The contract implementations themselves live outside
this repository.

Two implementations:
- JsonRpcLedgerClient: JSON-RPC 2.0 over HTTP to a contract gateway
- InMemoryLedger: deterministic development/test ledger
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from .domain import AccessLevel
from .errors import LedgerError
from .util import generate_id, now_epoch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerGrant:
    """A grant as confirmed by the ledger. expires_at is authoritative."""
    grant_id: str
    expires_at: int
    access_level: AccessLevel


class LedgerClient(ABC):
    """Abstract interface for the on-chain collaborators."""

    @abstractmethod
    def issue_grant(
        self,
        subject_did: str,
        responder_address: str,
        responder_meta: Dict[str, str],
        duration_seconds: int,
        access_level: AccessLevel,
        location: str = ""
    ) -> LedgerGrant:
        """
        Record a time-boxed access grant on-chain.

        Raises:
            LedgerError: If the ledger rejects or cannot complete the call
        """
        pass

    @abstractmethod
    def create_did(self, wallet_address: str, document_address: str) -> str:
        """
        Register a DID whose document is stored at document_address.

        Returns:
            The DID string
        """
        pass

    @abstractmethod
    def register_document(self, owner_address: str, blob_address: str, category: str) -> int:
        """
        Register an encrypted document on-chain.

        Returns:
            The on-chain document id
        """
        pass

    def health_check(self) -> bool:
        return True


class JsonRpcLedgerClient(LedgerClient):
    """
    JSON-RPC 2.0 client for the contract gateway.

    Each call carries its own timeout; transport errors, non-success HTTP
    statuses and JSON-RPC error objects all surface as LedgerError.
    """

    def __init__(self, rpc_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}
        try:
            response = self._session.post(self._rpc_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise LedgerError(f"{method} failed: {e}") from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise LedgerError(f"{method} rejected: {message}")
        if "result" not in body:
            raise LedgerError(f"{method} returned no result")
        return body["result"]

    def issue_grant(
        self,
        subject_did: str,
        responder_address: str,
        responder_meta: Dict[str, str],
        duration_seconds: int,
        access_level: AccessLevel,
        location: str = ""
    ) -> LedgerGrant:
        result = self._call("healthvault_grantEmergencyAccess", [{
            "did": subject_did,
            "responder": responder_address,
            "responderName": responder_meta.get("name", ""),
            "responderCredential": responder_meta.get("credential", ""),
            "duration": int(duration_seconds),
            "accessLevel": int(access_level),
            "location": location,
        }])
        try:
            return LedgerGrant(
                grant_id=str(result["grantId"]),
                expires_at=int(result["expiresAt"]),
                access_level=AccessLevel(int(result.get("accessLevel", access_level))),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"malformed grant response: {e}") from e

    def create_did(self, wallet_address: str, document_address: str) -> str:
        result = self._call("healthvault_createDID", [{
            "owner": wallet_address,
            "documentAddress": document_address,
        }])
        did = result.get("did") if isinstance(result, dict) else result
        if not did:
            raise LedgerError("createDID returned no DID")
        return str(did)

    def register_document(self, owner_address: str, blob_address: str, category: str) -> int:
        result = self._call("healthvault_registerDocument", [{
            "owner": owner_address,
            "blobAddress": blob_address,
            "category": category,
        }])
        try:
            return int(result["documentId"] if isinstance(result, dict) else result)
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"malformed registerDocument response: {e}") from e

    def health_check(self) -> bool:
        try:
            self._call("web3_clientVersion", [])
            return True
        except LedgerError as e:
            logger.warning("Ledger health check failed: %s", e)
            return False


class InMemoryLedger(LedgerClient):
    """
    In-memory ledger for development/testing.

    WARNING: Not suitable for production.
    - Not persistent across restarts
    - Grants are never enforced by anything but this process
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or now_epoch
        self._lock = threading.Lock()
        self._grants: Dict[str, Dict[str, Any]] = {}
        self._dids: Dict[str, Dict[str, str]] = {}
        self._documents: Dict[int, Dict[str, str]] = {}
        self._document_ids = itertools.count(1)

    def issue_grant(
        self,
        subject_did: str,
        responder_address: str,
        responder_meta: Dict[str, str],
        duration_seconds: int,
        access_level: AccessLevel,
        location: str = ""
    ) -> LedgerGrant:
        if duration_seconds <= 0:
            raise LedgerError("grant duration must be positive")
        grant = LedgerGrant(
            grant_id=generate_id(8),
            expires_at=self._clock() + int(duration_seconds),
            access_level=AccessLevel(access_level),
        )
        with self._lock:
            self._grants[grant.grant_id] = {
                "did": subject_did,
                "responder": responder_address,
                "responder_meta": dict(responder_meta),
                "location": location,
                "grant": grant,
            }
        return grant

    def create_did(self, wallet_address: str, document_address: str) -> str:
        did = f"did:healthvault:{generate_id(8)}"
        with self._lock:
            self._dids[did] = {"owner": wallet_address, "document_address": document_address}
        return did

    def register_document(self, owner_address: str, blob_address: str, category: str) -> int:
        with self._lock:
            document_id = next(self._document_ids)
            self._documents[document_id] = {
                "owner": owner_address,
                "blob_address": blob_address,
                "category": category,
            }
        return document_id

    def get_grant(self, grant_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._grants.get(grant_id)

    def resolve_did(self, did: str) -> Optional[Dict[str, str]]:
        with self._lock:
            return self._dids.get(did)

    @property
    def grant_count(self) -> int:
        with self._lock:
            return len(self._grants)


def get_ledger_client(settings) -> LedgerClient:
    """Factory for the configured ledger client."""
    if settings.ledger_backend == "jsonrpc":
        return JsonRpcLedgerClient(settings.ledger_rpc_url, timeout=settings.ledger_timeout_seconds)
    return InMemoryLedger()
