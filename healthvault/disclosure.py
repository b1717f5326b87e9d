"""
Disclosure orchestrator for HealthVault.

One disclosure request walks a fixed state machine:

    RECEIVED -> TOKEN_VERIFIED -> GRANT_ISSUED -> LOGGED
             -> DOCUMENTS_RESOLVED -> AGGREGATED -> RESPONDED

REJECTED is reachable from any state before LOGGED. Ordering is strict:
the ledger grant completes before the grant record is written, and the
grant record is written before any document is decrypted, so every
disclosure that reveals data is logged.

Per-document failures (fetch or decrypt) are logged and skipped; they never
fail the request. A disclosure in which every document fails returns an
empty packet.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .blobstore import EncryptedBlobStore
from .config import EMERGENCY_GRANT_SECONDS, SHARE_GRANT_SECONDS, DISCLOSURE_MAX_WORKERS
from .db import DataStore
from .domain import AccessCategory, AccessLevel, DocumentRecord, ResponderInfo
from .envelope import EmergencyEnvelopeService
from .errors import HealthVaultError, StorageError, TokenError, TokenFailure, ValidationError
from .kdf import derive_document_key
from .ledger import LedgerClient, LedgerGrant
from .log_backends import GrantLogBackend, SqliteHashChainLog
from .logging_config import audit_log
from .security import validate_document_ids, validate_responder
from .tokens import AccessTokenService
from .util import b64e

logger = logging.getLogger(__name__)


class DisclosureState(str, Enum):
    RECEIVED = "RECEIVED"
    TOKEN_VERIFIED = "TOKEN_VERIFIED"
    GRANT_ISSUED = "GRANT_ISSUED"
    LOGGED = "LOGGED"
    DOCUMENTS_RESOLVED = "DOCUMENTS_RESOLVED"
    AGGREGATED = "AGGREGATED"
    RESPONDED = "RESPONDED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class DisclosedDocument:
    document_id: str
    plaintext: bytes
    uploaded_at: int
    file_name: str = ""


@dataclass
class DisclosurePacket:
    """Decrypted documents grouped by category. Built per request, never persisted."""
    documents: Dict[str, List[DisclosedDocument]] = field(default_factory=dict)

    def add(self, category: str, document: DisclosedDocument) -> None:
        self.documents.setdefault(category, []).append(document)

    def document_ids(self) -> List[str]:
        return [d.document_id for docs in self.documents.values() for d in docs]

    def categories(self) -> List[str]:
        return sorted(self.documents)

    def __len__(self) -> int:
        return sum(len(docs) for docs in self.documents.values())

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            category: [
                {
                    "document_id": d.document_id,
                    "file_name": d.file_name,
                    "uploaded_at": d.uploaded_at,
                    "content_b64": b64e(d.plaintext),
                }
                for d in docs
            ]
            for category, docs in self.documents.items()
        }


@dataclass
class DisclosureResult:
    packet: DisclosurePacket
    grant_id: str
    expires_at: int
    record_id: str
    subject_id: str
    state: DisclosureState
    transitions: List[DisclosureState] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _VerifiedCredential:
    credential_id: str
    subject_id: str
    did: Optional[str]
    document_ids: Tuple[str, ...]
    categories: Tuple[str, ...]
    access_category: AccessCategory


class DisclosureOrchestrator:
    """Runs the disclosure state machine over injected collaborators."""

    def __init__(
        self,
        master_secret: bytes,
        store: DataStore,
        ledger: LedgerClient,
        blob_store: EncryptedBlobStore,
        tokens: AccessTokenService,
        envelopes: EmergencyEnvelopeService,
        grant_log: Optional[GrantLogBackend] = None,
        max_workers: int = DISCLOSURE_MAX_WORKERS,
        emergency_grant_seconds: int = EMERGENCY_GRANT_SECONDS,
        share_grant_seconds: int = SHARE_GRANT_SECONDS
    ):
        self._master_secret = master_secret
        self._store = store
        self._ledger = ledger
        self._blob_store = blob_store
        self._tokens = tokens
        self._envelopes = envelopes
        self._grant_log = grant_log or SqliteHashChainLog(store)
        self._max_workers = max(1, max_workers)
        self._grant_policy = {
            AccessCategory.EMERGENCY: (emergency_grant_seconds, AccessLevel.CRITICAL),
            AccessCategory.SHARE: (share_grant_seconds, AccessLevel.BASIC),
        }

    # ============================================================
    # RECEIVED -> TOKEN_VERIFIED
    # ============================================================

    def _verify(self, serialized: str) -> _VerifiedCredential:
        # Compact JWTs always contain dots; base64 envelopes never do.
        if isinstance(serialized, str) and "." in serialized:
            token = self._tokens.verify(serialized)
            return _VerifiedCredential(
                credential_id=token.token_id,
                subject_id=token.subject_id,
                did=None,
                document_ids=token.document_ids,
                categories=token.categories,
                access_category=token.access_category,
            )
        envelope = self._envelopes.verify(serialized)
        return _VerifiedCredential(
            credential_id=envelope.envelope_id,
            subject_id=envelope.subject_id,
            did=envelope.did,
            document_ids=envelope.document_ids,
            categories=envelope.categories,
            access_category=AccessCategory.EMERGENCY,
        )

    def _check_responder(self, credential: _VerifiedCredential, responder: ResponderInfo) -> None:
        record = self._store.get_token_record(credential.credential_id)
        if record is None:
            raise TokenError(TokenFailure.REVOKED, f"no record for {credential.credential_id}")
        validate_responder(
            responder.to_dict(),
            require_name=record.require_name,
            require_credential=record.require_credential,
            require_location=record.require_location,
        )

    def _target_documents(
        self,
        credential: _VerifiedCredential,
        approved_document_ids: Optional[List[str]]
    ) -> List[str]:
        if approved_document_ids is None:
            return list(credential.document_ids)
        if credential.access_category != AccessCategory.SHARE:
            raise ValidationError("approved_document_ids", "only SHARE tokens may be narrowed")
        approved = validate_document_ids(approved_document_ids, "approved_document_ids")
        outside = [d for d in approved if d not in credential.document_ids]
        if outside:
            raise ValidationError("approved_document_ids", "not covered by the token")
        return approved

    # ============================================================
    # TOKEN_VERIFIED -> GRANT_ISSUED
    # ============================================================

    def _issue_grant(self, credential: _VerifiedCredential, responder: ResponderInfo) -> LedgerGrant:
        duration, level = self._grant_policy[credential.access_category]
        did = credential.did
        if not did:
            subject = self._store.get_subject(credential.subject_id)
            did = (subject.did if subject else None) or f"did:healthvault:{credential.subject_id}"
        return self._ledger.issue_grant(
            subject_did=did,
            responder_address=responder.address,
            responder_meta={"name": responder.name, "credential": responder.credential},
            duration_seconds=duration,
            access_level=level,
            location=responder.location,
        )

    def _categories_accessed(self, credential: _VerifiedCredential, target_ids: List[str]) -> List[str]:
        """Categories the grant covers: the credential's own filter, else those of the target records."""
        if credential.categories:
            return sorted(credential.categories)
        categories = set()
        for document_id in target_ids:
            document = self._store.get_document(document_id)
            if document is not None and document.subject_id == credential.subject_id:
                categories.add(document.category.value)
        return sorted(categories)

    # ============================================================
    # DOCUMENTS_RESOLVED -> AGGREGATED
    # ============================================================

    def _open_document(self, document: DocumentRecord) -> DisclosedDocument:
        if not document.blob_address:
            raise StorageError(f"document {document.document_id} has no blob address")
        key = derive_document_key(self._master_secret, document.subject_id, document.document_id)
        plaintext = self._blob_store.retrieve_and_decrypt(document.blob_address, key)
        return DisclosedDocument(
            document_id=document.document_id,
            plaintext=plaintext,
            uploaded_at=document.uploaded_at,
            file_name=document.file_name,
        )

    def _aggregate(self, documents: List[DocumentRecord], grant_id: str) -> Tuple[DisclosurePacket, List[str]]:
        packet = DisclosurePacket()
        skipped: List[str] = []
        if not documents:
            return packet, skipped

        workers = min(self._max_workers, len(documents))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="disclosure") as pool:
            futures = [(doc, pool.submit(self._open_document, doc)) for doc in documents]
            for doc, future in futures:
                try:
                    packet.add(doc.category.value, future.result())
                except HealthVaultError as e:
                    skipped.append(doc.document_id)
                    audit_log.document_skipped(doc.document_id, grant_id, type(e).__name__, str(e))
                except Exception as e:
                    logger.exception("Unexpected failure opening document %s", doc.document_id)
                    skipped.append(doc.document_id)
                    audit_log.document_skipped(doc.document_id, grant_id, type(e).__name__, str(e))
        return packet, skipped

    # ============================================================
    # Entry point
    # ============================================================

    def disclose(
        self,
        serialized: str,
        responder: Union[ResponderInfo, Dict[str, Any]],
        approved_document_ids: Optional[List[str]] = None
    ) -> DisclosureResult:
        """
        Verify a token or envelope and disclose the documents it covers.

        Raises:
            TokenError / EnvelopeError: Credential failed verification
            ValidationError: Responder requirements or subset not satisfied
            LedgerError: Grant issuance failed (nothing logged or retrieved)
        """
        if not isinstance(responder, ResponderInfo):
            responder = ResponderInfo.from_dict(responder or {})

        transitions = [DisclosureState.RECEIVED]
        credential_id = None
        try:
            credential = self._verify(serialized)
            credential_id = credential.credential_id
            self._check_responder(credential, responder)
            target_ids = self._target_documents(credential, approved_document_ids)
            transitions.append(DisclosureState.TOKEN_VERIFIED)

            grant = self._issue_grant(credential, responder)
            transitions.append(DisclosureState.GRANT_ISSUED)
        except HealthVaultError as e:
            reason = getattr(e, "reason", None)
            audit_log.disclosure_rejected(
                transitions[-1].value,
                reason.value if reason is not None else type(e).__name__,
                credential_id,
            )
            raise

        audit_log.grant_issued(grant.grant_id, credential.subject_id, responder.name, grant.expires_at)

        record = self._grant_log.write_grant(
            subject_id=credential.subject_id,
            credential_id=credential.credential_id,
            on_chain_grant_id=grant.grant_id,
            responder=responder,
            data_accessed=target_ids,
            categories_accessed=self._categories_accessed(credential, target_ids),
            grant_expires_at=grant.expires_at,
        )
        self._store.increment_access_count(credential.credential_id)
        transitions.append(DisclosureState.LOGGED)

        documents = self._store.find_active_documents(
            credential.subject_id, ids=target_ids, categories=credential.categories
        )
        transitions.append(DisclosureState.DOCUMENTS_RESOLVED)

        packet, skipped = self._aggregate(documents, grant.grant_id)
        transitions.append(DisclosureState.AGGREGATED)

        audit_log.disclosure_complete(
            grant.grant_id, credential.subject_id, len(documents), len(packet), packet.categories()
        )
        transitions.append(DisclosureState.RESPONDED)
        return DisclosureResult(
            packet=packet,
            grant_id=grant.grant_id,
            expires_at=grant.expires_at,
            record_id=record.record_id,
            subject_id=credential.subject_id,
            state=DisclosureState.RESPONDED,
            transitions=transitions,
            skipped=skipped,
        )
