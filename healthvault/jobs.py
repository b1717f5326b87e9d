"""
Background job queue for HealthVault.

DID creation and on-chain document registration are slow ledger round
trips. The caller records the target as PENDING, submits a job and gets a
job id back immediately; a worker thread runs the job and performs the
PENDING -> CONFIRMED / FAILED transition. Submitters observe the outcome by
polling get_job() or blocking on wait().

Jobs are persisted through the DataStore so their status survives the
request that created them.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .blobstore import EncryptedBlobStore
from .db import DataStore
from .domain import CreationStatus
from .errors import HealthVaultError, NotFoundError
from .kdf import derive_subject_key
from .ledger import LedgerClient
from .util import canonicalize, generate_id, now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    CREATE_DID = "CREATE_DID"
    REGISTER_DOCUMENT = "REGISTER_DOCUMENT"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass
class Job:
    job_id: str
    job_type: JobType
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: int = field(default_factory=now_epoch)
    completed_at: Optional[int] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.CONFIRMED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["job_id"],
            job_type=JobType(data["job_type"]),
            payload=data["payload"],
            status=JobStatus(data["status"]),
            attempts=data.get("attempts", 0),
            result=data.get("result"),
            error=data.get("error"),
            created_at=data["created_at"],
            completed_at=data.get("completed_at"),
        )


class JobHandler:
    """Work for one job type. run() returns the job result; failed() records
    the terminal failure on the target row."""

    def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def failed(self, payload: Dict[str, Any], error: Exception) -> None:
        pass


class CreateDidHandler(JobHandler):
    """Build the subject's DID document, store it encrypted, register the DID."""

    def __init__(self, store: DataStore, ledger: LedgerClient, blob_store: EncryptedBlobStore, master_secret: bytes):
        self._store = store
        self._ledger = ledger
        self._blob_store = blob_store
        self._master_secret = master_secret

    def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        subject_id = payload["subject_id"]
        subject = self._store.get_subject(subject_id)
        if subject is None:
            raise NotFoundError(f"subject {subject_id} not found")

        # No "id": the ledger assigns the DID when this document is registered,
        # and it is recorded on the subject.
        did_document = {
            "@context": "https://www.w3.org/ns/did/v1",
            "controller": subject.wallet_address,
            "created": utc_rfc3339(now_epoch()),
            "subject": {"name": subject.name, "email": subject.email},
        }
        key = derive_subject_key(self._master_secret, subject_id)
        stored = self._blob_store.store_encrypted(canonicalize(did_document), key, name=f"did-{subject_id}")
        did = self._ledger.create_did(subject.wallet_address or "", stored.blob_address)

        self._store.set_did_status(subject_id, CreationStatus.CONFIRMED, did=did,
                                   did_document_address=stored.blob_address)
        return {"did": did, "did_document_address": stored.blob_address}

    def failed(self, payload: Dict[str, Any], error: Exception) -> None:
        self._store.set_did_status(payload["subject_id"], CreationStatus.FAILED)


class RegisterDocumentHandler(JobHandler):
    """Register an uploaded document on-chain."""

    def __init__(self, store: DataStore, ledger: LedgerClient):
        self._store = store
        self._ledger = ledger

    def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        document = self._store.get_document(payload["document_id"])
        if document is None:
            raise NotFoundError(f"document {payload['document_id']} not found")
        subject = self._store.get_subject(document.subject_id)
        owner = (subject.wallet_address if subject else None) or ""

        on_chain_id = self._ledger.register_document(owner, document.blob_address, document.category.value)
        self._store.set_document_status(document.document_id, CreationStatus.CONFIRMED, on_chain_id=on_chain_id)
        return {"on_chain_id": on_chain_id}

    def failed(self, payload: Dict[str, Any], error: Exception) -> None:
        self._store.set_document_status(payload["document_id"], CreationStatus.FAILED)


class JobQueue:
    """
    In-process job queue with a single worker thread.

    Retryable failures (StorageError) are re-queued until max_attempts, after
    a delay of retry_backoff_seconds times the attempt number; everything
    else fails the job on the first attempt.
    """

    def __init__(
        self,
        store: DataStore,
        handlers: Dict[JobType, JobHandler],
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._store = store
        self._handlers = handlers
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = max(0.0, retry_backoff_seconds)
        self._sleep = sleep
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._done: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the worker thread (idempotent)."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._worker_loop, name="healthvault-jobs", daemon=True)
            self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after the jobs already queued have run."""
        worker = self._worker
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout)
        self._worker = None

    def submit(self, job_type: JobType, payload: Dict[str, Any]) -> str:
        """Persist a PENDING job and queue it. Returns the job id."""
        if job_type not in self._handlers:
            raise ValueError(f"no handler for job type {job_type}")
        job = Job(job_id=generate_id(12), job_type=JobType(job_type), payload=dict(payload))
        self._store.save_job(job.to_dict())
        with self._lock:
            self._done[job.job_id] = threading.Event()
        self._queue.put(job.job_id)
        logger.info("Job %s submitted (%s)", job.job_id, job.job_type.value)
        return job.job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        data = self._store.get_job(job_id)
        return Job.from_dict(data) if data else None

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """
        Block until the job finishes or timeout elapses, then return it.

        Raises:
            NotFoundError: If the job id is unknown
        """
        with self._lock:
            event = self._done.get(job_id)
        if event is not None:
            event.wait(timeout)
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return job

    def run_pending(self) -> int:
        """Run queued jobs on the calling thread until the queue is empty."""
        processed = 0
        while True:
            try:
                job_id = self._queue.get_nowait()
            except queue.Empty:
                return processed
            if job_id is not None:
                self._process(job_id)
                processed += 1

    def _worker_loop(self) -> None:
        while True:
            job_id = self._queue.get()
            if job_id is None:
                return
            try:
                self._process(job_id)
            except Exception:
                logger.exception("Job %s crashed the worker step", job_id)

    def _process(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job is None or job.is_finished:
            return
        handler = self._handlers[job.job_type]

        job.status = JobStatus.RUNNING
        job.attempts += 1
        self._store.save_job(job.to_dict())

        try:
            job.result = handler.run(job.payload)
            job.status = JobStatus.CONFIRMED
            job.error = None
        except HealthVaultError as e:
            if e.retryable and job.attempts < self._max_attempts:
                logger.warning("Job %s attempt %d failed, retrying: %s", job_id, job.attempts, e)
                job.status = JobStatus.PENDING
                job.error = str(e)
                self._store.save_job(job.to_dict())
                self._sleep(self._retry_backoff * job.attempts)
                self._queue.put(job_id)
                return
            self._fail(job, handler, e)
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job_id)
            self._fail(job, handler, e)

        job.completed_at = now_epoch()
        self._store.save_job(job.to_dict())
        self._finish(job)

    def _fail(self, job: Job, handler: JobHandler, error: Exception) -> None:
        logger.warning("Job %s failed: %s", job.job_id, error)
        job.status = JobStatus.FAILED
        job.error = str(error)
        handler.failed(job.payload, error)

    def _finish(self, job: Job) -> None:
        logger.info("Job %s finished with %s", job.job_id, job.status.value)
        with self._lock:
            event = self._done.pop(job.job_id, None)
        if event is not None:
            event.set()
