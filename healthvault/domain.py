"""
Domain types shared by the HealthVault custody core.

Plain dataclasses and string enums; persistence lives in db.py and the
wire shapes for HTTP live in models.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class DocumentCategory(str, Enum):
    """Medical document categories."""
    LAB_RESULT = "LAB_RESULT"
    IMAGING = "IMAGING"
    PRESCRIPTION = "PRESCRIPTION"
    VISIT_NOTES = "VISIT_NOTES"
    PROFILE = "PROFILE"


class AccessCategory(str, Enum):
    """What an access credential was issued for."""
    EMERGENCY = "EMERGENCY"
    SHARE = "SHARE"


class AccessLevel(int, Enum):
    """Ledger grant access levels."""
    BASIC = 0
    FULL = 1
    CRITICAL = 2


class CreationStatus(str, Enum):
    """Status of work handed to the background worker."""
    NONE = "NONE"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class CredentialKind(str, Enum):
    """Which signing discipline produced a persisted credential record."""
    ACCESS_TOKEN = "ACCESS_TOKEN"
    EMERGENCY_ENVELOPE = "EMERGENCY_ENVELOPE"


@dataclass
class SubjectRecord:
    """A patient who owns documents."""
    subject_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    wallet_address: Optional[str] = None
    did: Optional[str] = None
    did_status: CreationStatus = CreationStatus.NONE
    did_document_address: Optional[str] = None


@dataclass
class DocumentRecord:
    """Metadata of an encrypted document held in the blob store."""
    document_id: str
    subject_id: str
    category: DocumentCategory
    blob_address: Optional[str]
    file_name: str = ""
    file_size: int = 0
    uploaded_at: int = 0
    is_active: bool = True
    creation_status: CreationStatus = CreationStatus.PENDING
    on_chain_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "subject_id": self.subject_id,
            "category": self.category.value,
            "blob_address": self.blob_address,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "uploaded_at": self.uploaded_at,
            "is_active": self.is_active,
            "creation_status": self.creation_status.value,
            "on_chain_id": self.on_chain_id,
        }


@dataclass
class TokenRecord:
    """Persisted state of an issued AccessToken or EmergencyEnvelope."""
    token_id: str
    subject_id: str
    kind: CredentialKind
    access_category: AccessCategory
    document_ids: List[str]
    expires_at: int
    categories: List[str] = field(default_factory=list)
    is_active: bool = True
    access_count: int = 0
    require_name: bool = True
    require_credential: bool = False
    require_location: bool = False
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "subject_id": self.subject_id,
            "kind": self.kind.value,
            "access_category": self.access_category.value,
            "document_ids": list(self.document_ids),
            "categories": list(self.categories),
            "expires_at": self.expires_at,
            "is_active": self.is_active,
            "access_count": self.access_count,
            "require_name": self.require_name,
            "require_credential": self.require_credential,
            "require_location": self.require_location,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ResponderInfo:
    """Who is presenting a credential."""
    name: str = ""
    credential: str = ""
    location: str = ""
    address: str = "0x0000000000000000000000000000000000000000"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponderInfo":
        return cls(
            name=str(data.get("name") or ""),
            credential=str(data.get("credential") or ""),
            location=str(data.get("location") or ""),
            address=str(data.get("address") or cls.address),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "credential": self.credential,
            "location": self.location,
            "address": self.address,
        }


@dataclass(frozen=True)
class AccessGrantRecord:
    """Append-only log entry written once per successful disclosure."""
    seq: int
    record_id: str
    subject_id: str
    credential_id: str
    on_chain_grant_id: str
    responder_name: str
    responder_credential: str
    responder_location: str
    responder_address: str
    data_accessed: List[str]
    categories_accessed: List[str]
    grant_expires_at: int
    created_at: int
    payload_hash: str
    prev_entry_hash: Optional[str]
    entry_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "record_id": self.record_id,
            "subject_id": self.subject_id,
            "credential_id": self.credential_id,
            "on_chain_grant_id": self.on_chain_grant_id,
            "responder_name": self.responder_name,
            "responder_credential": self.responder_credential,
            "responder_location": self.responder_location,
            "responder_address": self.responder_address,
            "data_accessed": list(self.data_accessed),
            "categories_accessed": list(self.categories_accessed),
            "grant_expires_at": self.grant_expires_at,
            "created_at": self.created_at,
            "payload_hash": self.payload_hash,
            "prev_entry_hash": self.prev_entry_hash,
            "entry_hash": self.entry_hash,
        }
