"""
Grant log backends.

Every successful disclosure appends exactly one AccessGrantRecord. The
SQLite hash chain is always the system of record; S3ObjectLockLog mirrors
each record as an immutable object for WORM retention.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import List

from .db import DataStore
from .domain import AccessGrantRecord, ResponderInfo


class GrantLogBackend:
    def write_grant(
        self,
        subject_id: str,
        credential_id: str,
        on_chain_grant_id: str,
        responder: ResponderInfo,
        data_accessed: List[str],
        categories_accessed: List[str],
        grant_expires_at: int
    ) -> AccessGrantRecord:
        raise NotImplementedError


class SqliteHashChainLog(GrantLogBackend):
    def __init__(self, store: DataStore):
        self.store = store

    def write_grant(
        self,
        subject_id: str,
        credential_id: str,
        on_chain_grant_id: str,
        responder: ResponderInfo,
        data_accessed: List[str],
        categories_accessed: List[str],
        grant_expires_at: int
    ) -> AccessGrantRecord:
        return self.store.create_grant_record(
            subject_id, credential_id, on_chain_grant_id, responder, data_accessed,
            categories_accessed, grant_expires_at
        )


class S3ObjectLockLog(SqliteHashChainLog):
    """Appends to the SQLite chain, then writes the record JSON as a separate
    immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, store: DataStore, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF"):
        super().__init__(store)
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold

    def write_grant(
        self,
        subject_id: str,
        credential_id: str,
        on_chain_grant_id: str,
        responder: ResponderInfo,
        data_accessed: List[str],
        categories_accessed: List[str],
        grant_expires_at: int
    ) -> AccessGrantRecord:
        try:
            import boto3
        except ImportError as e:
            raise RuntimeError("boto3 required for S3 Object Lock logging. Install healthvault[aws]") from e

        record = super().write_grant(
            subject_id, credential_id, on_chain_grant_id, responder, data_accessed,
            categories_accessed, grant_expires_at
        )

        s3 = boto3.client("s3")
        key = f"{self.prefix}{record.created_at}-{record.seq}-{record.record_id}.json"
        # Retain until now + retention_days
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=json.dumps(record.to_dict(), sort_keys=True).encode("utf-8"),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )
        return record


def get_log_backend(store: DataStore, backend: str = "sqlite_hash_chain") -> GrantLogBackend:
    if backend == "s3_object_lock":
        bucket = os.environ["S3_BUCKET"]
        prefix = os.getenv("S3_PREFIX", "healthvault/grant-log/")
        retention_days = int(os.getenv("S3_RETENTION_DAYS", "365"))
        legal_hold = os.getenv("S3_LEGAL_HOLD", "OFF")
        return S3ObjectLockLog(store, bucket=bucket, prefix=prefix, retention_days=retention_days, legal_hold=legal_hold)
    return SqliteHashChainLog(store)
