from pydantic import BaseModel, Field
from typing import List, Optional


class RegisterSubjectRequest(BaseModel):
    subject_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    wallet_address: Optional[str] = None


class UploadDocumentRequest(BaseModel):
    category: str
    content_b64: str
    file_name: str = ""


class IssueTokenRequest(BaseModel):
    document_ids: List[str]
    category: str = "SHARE"
    duration_hours: int = 1
    categories: Optional[List[str]] = None
    require_name: bool = True
    require_credential: bool = False
    require_location: bool = False


class IssueEnvelopeRequest(BaseModel):
    document_ids: Optional[List[str]] = None
    categories: Optional[List[str]] = None


class RegenerateTokenRequest(BaseModel):
    duration_hours: Optional[int] = None


class Responder(BaseModel):
    name: str = ""
    credential: str = ""
    location: str = ""
    address: str = "0x0000000000000000000000000000000000000000"


class DiscloseRequest(BaseModel):
    credential: str
    responder: Responder = Field(default_factory=Responder)
    approved_document_ids: Optional[List[str]] = None
