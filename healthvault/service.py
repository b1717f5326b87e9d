"""
Custody service for HealthVault.

CustodyService is the caller-facing façade the HTTP controllers use. It owns
no global state: every collaborator (data store, ledger, blob transport,
secrets) is passed in, and build_service() wires the defaults from Settings.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .blobstore import BlobTransport, EncryptedBlobStore, get_blob_transport
from .config import Settings
from .db import DataStore, SqliteDataStore
from .disclosure import DisclosureOrchestrator, DisclosureResult
from .domain import (
    AccessCategory,
    AccessGrantRecord,
    CreationStatus,
    CredentialKind,
    DocumentCategory,
    DocumentRecord,
    ResponderInfo,
    SubjectRecord,
    TokenRecord,
)
from .envelope import EmergencyEnvelopeService, IssuedEnvelope
from .errors import AuthorizationError, NotFoundError, ValidationError
from .jobs import CreateDidHandler, JobQueue, JobType, RegisterDocumentHandler
from .kdf import derive_document_key
from .ledger import LedgerClient, get_ledger_client
from .log_backends import GrantLogBackend, get_log_backend
from .logging_config import audit_log
from .rate_limit import RequestLimits
from .security import validate_categories, validate_document_ids, validate_identifier, validate_wallet_address
from .tokens import AccessTokenService, IssuedToken, revoke_credential
from .util import generate_id, now_epoch, now_millis

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 25 * 1024 * 1024


@dataclass(frozen=True)
class UploadResult:
    document: DocumentRecord
    job_id: str


class CustodyService:
    """Caller-facing custody operations."""

    def __init__(
        self,
        settings: Settings,
        store: DataStore,
        ledger: LedgerClient,
        blob_store: EncryptedBlobStore,
        grant_log: Optional[GrantLogBackend] = None,
        clock: Callable[[], int] = now_epoch,
        clock_millis: Callable[[], int] = now_millis
    ):
        self.settings = settings
        self.store = store
        self.ledger = ledger
        self.blob_store = blob_store
        self._clock = clock

        self.limits = RequestLimits.from_settings(settings, clock=clock)
        self.tokens = AccessTokenService(
            settings.signing_secret, store, clock=clock, max_hours=settings.max_token_hours
        )
        self.envelopes = EmergencyEnvelopeService(
            settings.envelope_signing_secret, store, clock_millis=clock_millis
        )
        self.orchestrator = DisclosureOrchestrator(
            master_secret=settings.master_secret,
            store=store,
            ledger=ledger,
            blob_store=blob_store,
            tokens=self.tokens,
            envelopes=self.envelopes,
            grant_log=grant_log,
            max_workers=settings.disclosure_max_workers,
            emergency_grant_seconds=settings.emergency_grant_seconds,
            share_grant_seconds=settings.share_grant_seconds,
        )
        self.jobs = JobQueue(store, {
            JobType.CREATE_DID: CreateDidHandler(store, ledger, blob_store, settings.master_secret),
            JobType.REGISTER_DOCUMENT: RegisterDocumentHandler(store, ledger),
        }, max_attempts=settings.job_max_attempts, retry_backoff_seconds=settings.job_retry_backoff_seconds)

    def start(self) -> None:
        self.jobs.start()

    def stop(self) -> None:
        self.jobs.stop()

    # ============================================================
    # Subjects and DIDs
    # ============================================================

    def register_subject(
        self,
        subject_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        wallet_address: Optional[str] = None
    ) -> SubjectRecord:
        subject_id = validate_identifier(subject_id, "subject_id")
        if wallet_address is not None:
            wallet_address = validate_wallet_address(wallet_address, "wallet_address")
        if self.store.get_subject(subject_id) is not None:
            raise ValidationError("subject_id", "already registered")
        return self.store.create_subject(SubjectRecord(
            subject_id=subject_id, name=name, email=email, wallet_address=wallet_address
        ))

    def _require_subject(self, subject_id: str) -> SubjectRecord:
        subject = self.store.get_subject(subject_id)
        if subject is None:
            raise NotFoundError(f"subject {subject_id} not found")
        return subject

    def initiate_did_creation(self, subject_id: str) -> str:
        """Mark the subject's DID PENDING and queue its creation. Returns the job id."""
        subject = self._require_subject(subject_id)
        if not subject.wallet_address:
            raise ValidationError("wallet_address", "required before creating a DID")
        if subject.did_status == CreationStatus.CONFIRMED:
            raise ValidationError("did", "already exists")
        if subject.did_status == CreationStatus.PENDING:
            raise ValidationError("did", "creation already in progress")

        self.store.set_did_status(subject_id, CreationStatus.PENDING)
        return self.jobs.submit(JobType.CREATE_DID, {"subject_id": subject_id})

    def did_status(self, subject_id: str) -> Dict[str, Any]:
        subject = self._require_subject(subject_id)
        return {
            "subject_id": subject.subject_id,
            "did": subject.did,
            "status": subject.did_status.value,
            "did_document_address": subject.did_document_address,
        }

    # ============================================================
    # Documents
    # ============================================================

    def upload_document(
        self,
        subject_id: str,
        category: Union[DocumentCategory, str],
        content: bytes,
        file_name: str = ""
    ) -> UploadResult:
        """
        Encrypt and store a document, then queue its on-chain registration.

        The document is PENDING until the worker confirms it.
        """
        self._require_subject(subject_id)
        try:
            category = DocumentCategory(category)
        except ValueError:
            raise ValidationError("category", f"invalid category: {category!r}")
        if not content:
            raise ValidationError("content", "cannot be empty")
        if len(content) > MAX_DOCUMENT_BYTES:
            raise ValidationError("content", f"must not exceed {MAX_DOCUMENT_BYTES} bytes")

        document_id = generate_id(12)
        key = derive_document_key(self.settings.master_secret, subject_id, document_id)
        stored = self.blob_store.store_encrypted(content, key, name=file_name or document_id)

        document = self.store.create_document(DocumentRecord(
            document_id=document_id,
            subject_id=subject_id,
            category=category,
            blob_address=stored.blob_address,
            file_name=file_name,
            file_size=len(content),
            uploaded_at=self._clock(),
        ))
        job_id = self.jobs.submit(JobType.REGISTER_DOCUMENT, {"document_id": document_id})
        return UploadResult(document=document, job_id=job_id)

    def _owned_document(self, subject_id: str, document_id: str) -> DocumentRecord:
        document = self.store.get_document(document_id)
        if document is None or not document.is_active:
            raise NotFoundError(f"document {document_id} not found")
        if document.subject_id != subject_id:
            audit_log.security_event("DOCUMENT_NOT_OWNER", "high", document_id=document_id, subject_id=subject_id)
            raise AuthorizationError("document belongs to another subject")
        return document

    def download_document(self, subject_id: str, document_id: str) -> bytes:
        """Owner-only retrieval of a document's plaintext."""
        document = self._owned_document(subject_id, document_id)
        key = derive_document_key(self.settings.master_secret, subject_id, document_id)
        return self.blob_store.retrieve_and_decrypt(document.blob_address, key)

    def deactivate_document(self, subject_id: str, document_id: str) -> bool:
        self._owned_document(subject_id, document_id)
        return self.store.deactivate_document(document_id)

    def document_status(self, subject_id: str, document_id: str) -> Dict[str, Any]:
        document = self._owned_document(subject_id, document_id)
        return {
            "document_id": document.document_id,
            "status": document.creation_status.value,
            "on_chain_id": document.on_chain_id,
        }

    def list_documents(self, subject_id: str) -> List[DocumentRecord]:
        self._require_subject(subject_id)
        return self.store.find_active_documents(subject_id)

    # ============================================================
    # Credentials
    # ============================================================

    def _check_documents(self, subject_id: str, document_ids: List[str]) -> List[str]:
        document_ids = validate_document_ids(document_ids)
        found = {d.document_id for d in self.store.find_active_documents(subject_id, ids=document_ids)}
        missing = [d for d in document_ids if d not in found]
        if missing:
            raise ValidationError("document_ids", f"unknown or inactive documents: {', '.join(missing)}")
        return document_ids

    def issue_access_token(
        self,
        subject_id: str,
        document_ids: List[str],
        category: Union[AccessCategory, str],
        duration_hours: int,
        categories: Optional[List[str]] = None,
        require_name: bool = True,
        require_credential: bool = False,
        require_location: bool = False
    ) -> IssuedToken:
        self._require_subject(subject_id)
        try:
            category = AccessCategory(category)
        except ValueError:
            raise ValidationError("category", f"invalid access category: {category!r}")
        document_ids = self._check_documents(subject_id, document_ids)
        return self.tokens.issue(
            subject_id,
            document_ids,
            category,
            duration_hours,
            categories=categories,
            require_name=require_name,
            require_credential=require_credential,
            require_location=require_location,
        )

    def issue_emergency_envelope(
        self,
        subject_id: str,
        document_ids: Optional[List[str]] = None,
        categories: Optional[List[str]] = None
    ) -> IssuedEnvelope:
        """
        Issue an emergency envelope. Without document_ids it covers every
        active document of the subject (narrowed by categories, if given).
        """
        subject = self._require_subject(subject_id)
        if subject.did_status != CreationStatus.CONFIRMED or not subject.did:
            raise ValidationError("did", "a confirmed DID is required for emergency access")

        if document_ids is None:
            documents = self.store.find_active_documents(subject_id, categories=validate_categories(categories))
            document_ids = [d.document_id for d in documents]
            if not document_ids:
                raise ValidationError("document_ids", "subject has no active documents")
        else:
            document_ids = self._check_documents(subject_id, document_ids)
        return self.envelopes.issue(subject_id, subject.did, document_ids, categories=categories)

    def disclose(
        self,
        serialized: str,
        responder: Union[ResponderInfo, Dict[str, Any]],
        approved_document_ids: Optional[List[str]] = None
    ) -> DisclosureResult:
        return self.orchestrator.disclose(serialized, responder, approved_document_ids)

    def revoke(self, token_id: str, subject_id: str) -> bool:
        return revoke_credential(self.store, token_id, subject_id)

    def regenerate_token(
        self,
        token_id: str,
        subject_id: str,
        duration_hours: Optional[int] = None
    ) -> Union[IssuedToken, IssuedEnvelope]:
        """Deactivate a token or envelope and issue a replacement with the same configuration."""
        record = self.store.get_token_record(token_id)
        if record is None:
            raise NotFoundError(f"token {token_id} not found")
        if record.kind == CredentialKind.EMERGENCY_ENVELOPE:
            revoke_credential(self.store, token_id, subject_id)
            return self.issue_emergency_envelope(subject_id, record.document_ids, record.categories)
        if duration_hours is None:
            raise ValidationError("duration_hours", "is required for access tokens")
        return self.tokens.regenerate(token_id, subject_id, duration_hours)

    def list_tokens(self, subject_id: str) -> List[TokenRecord]:
        return self.store.list_token_records(subject_id)

    def access_log(self, subject_id: str) -> List[AccessGrantRecord]:
        return self.store.list_grant_records(subject_id)

    # ============================================================
    # Health
    # ============================================================

    def health_check(self) -> Dict[str, bool]:
        try:
            self.store.get_db_stats()
            database = True
        except sqlite3.Error as e:
            logger.warning("Database health check failed: %s", e)
            database = False
        return {
            "database": database,
            "blob_store": self.blob_store.transport.health_check(),
            "ledger": self.ledger.health_check(),
        }


def build_service(
    settings: Settings,
    store: Optional[DataStore] = None,
    ledger: Optional[LedgerClient] = None,
    blob_transport: Optional[BlobTransport] = None,
    clock: Callable[[], int] = now_epoch,
    clock_millis: Callable[[], int] = now_millis
) -> CustodyService:
    """Wire a CustodyService from Settings, substituting any collaborator passed in."""
    if store is None:
        store = SqliteDataStore(settings.db_path)
        store.init_db()
    ledger = ledger or get_ledger_client(settings)
    blob_store = EncryptedBlobStore(blob_transport or get_blob_transport(settings))
    grant_log = get_log_backend(store, settings.grant_log_backend)
    return CustodyService(
        settings, store, ledger, blob_store, grant_log=grant_log, clock=clock, clock_millis=clock_millis
    )
