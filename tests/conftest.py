import os, sys
import pytest
from unittest.mock import MagicMock

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from healthvault.blobstore import InMemoryBlobTransport
from healthvault.config import Settings
from healthvault.db import SqliteDataStore
from healthvault.domain import DocumentCategory, DocumentRecord
from healthvault.kdf import derive_document_key
from healthvault.ledger import InMemoryLedger
from healthvault.service import build_service

MASTER_SECRET = bytes(range(32))
SIGNING_SECRET = b"test-signing-secret-0123456789abcdef"
WALLET = "0x" + "ab" * 20
T0 = 1_700_000_000
ADMIN_TOKEN = "operator-token-for-tests"


class FixedClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def millis(self) -> int:
        return self.now * 1000

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(
        master_secret=MASTER_SECRET,
        signing_secret=SIGNING_SECRET,
        db_path=str(tmp_path / "healthvault.db"),
        disclosure_max_workers=3,
        admin_token=ADMIN_TOKEN,
        job_retry_backoff_seconds=0,
    )


@pytest.fixture
def store(settings):
    s = SqliteDataStore(settings.db_path)
    s.init_db()
    yield s
    s.close_connection()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def ledger(clock):
    return MagicMock(wraps=InMemoryLedger(clock=clock))


@pytest.fixture
def transport():
    return MagicMock(wraps=InMemoryBlobTransport())


@pytest.fixture
def service(settings, store, ledger, transport, clock):
    svc = build_service(
        settings,
        store=store,
        ledger=ledger,
        blob_transport=transport,
        clock=clock,
        clock_millis=clock.millis,
    )
    yield svc
    svc.stop()


@pytest.fixture
def subject(service):
    """Subject u1 with a confirmed DID."""
    service.register_subject("u1", name="Ada Patient", email="u1@example.org", wallet_address=WALLET)
    service.initiate_did_creation("u1")
    service.jobs.run_pending()
    return "u1"


@pytest.fixture
def seed_document(service, clock):
    """Store an encrypted document under a caller-chosen id."""

    def _seed(subject_id, document_id, content, category=DocumentCategory.LAB_RESULT):
        key = derive_document_key(service.settings.master_secret, subject_id, document_id)
        stored = service.blob_store.store_encrypted(content, key)
        return service.store.create_document(DocumentRecord(
            document_id=document_id,
            subject_id=subject_id,
            category=category,
            blob_address=stored.blob_address,
            file_name=f"{document_id}.json",
            file_size=len(content),
            uploaded_at=clock(),
        ))

    return _seed
