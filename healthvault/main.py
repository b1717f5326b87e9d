"""
HTTP surface for HealthVault.

Thin controllers over CustodyService. The calling subject is identified by
the X-Subject-Id header; session authentication happens upstream. Every
token or envelope failure is answered with the same generic 403.
"""

import binascii
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import is_debug, load_settings, validate_config
from .errors import (
    GENERIC_ACCESS_MESSAGE,
    AuthorizationError,
    CredentialError,
    CryptoError,
    LedgerError,
    NotFoundError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    DiscloseRequest,
    IssueEnvelopeRequest,
    IssueTokenRequest,
    RegenerateTokenRequest,
    RegisterSubjectRequest,
    UploadDocumentRequest,
)
from .security import extract_client_id, generate_request_id
from .service import CustodyService, build_service
from .util import b64d, b64e, constant_time_compare

logger = logging.getLogger(__name__)

SERVICE: Optional[CustodyService] = None


def set_service(service: Optional[CustodyService]) -> None:
    global SERVICE
    SERVICE = service


def get_service() -> CustodyService:
    if SERVICE is None:
        raise HTTPException(503, "SERVICE_NOT_READY")
    return SERVICE


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(level="DEBUG" if is_debug() else "INFO")
    if SERVICE is None:
        missing = [name for name, ok in validate_config().items() if not ok]
        if missing:
            logger.warning("Configuration incomplete: %s", ", ".join(missing))
        set_service(build_service(load_settings()))
    SERVICE.start()
    yield
    SERVICE.stop()


app = FastAPI(title="HealthVault Custody Core", lifespan=lifespan)


# ============================================================
# Middleware and error translation
# ============================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or generate_request_id())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(CredentialError)
async def _credential_error(request: Request, exc: CredentialError):
    return JSONResponse(status_code=403, content={"error": "INVALID_OR_EXPIRED_ACCESS", "message": GENERIC_ACCESS_MESSAGE})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": "VALIDATION_ERROR", "field": exc.field, "message": exc.message})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": "NOT_FOUND"})


@app.exception_handler(AuthorizationError)
async def _forbidden(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"error": "FORBIDDEN"})


@app.exception_handler(RateLimitError)
async def _rate_limited(request: Request, exc: RateLimitError):
    return JSONResponse(
        status_code=429,
        content={"error": "RATE_LIMIT"},
        headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
    )


@app.exception_handler(StorageError)
async def _storage_error(request: Request, exc: StorageError):
    logger.warning("Blob store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"error": "STORAGE_UNAVAILABLE"})


@app.exception_handler(LedgerError)
async def _ledger_error(request: Request, exc: LedgerError):
    logger.warning("Ledger call failed: %s", exc)
    return JSONResponse(status_code=502, content={"error": "LEDGER_UNAVAILABLE"})


@app.exception_handler(CryptoError)
async def _crypto_error(request: Request, exc: CryptoError):
    logger.error("Decryption failed: %s", exc)
    return JSONResponse(status_code=500, content={"error": "DECRYPTION_FAILED"})


def _subject(x_subject_id: Optional[str]) -> str:
    if not x_subject_id:
        raise HTTPException(401, "MISSING_SUBJECT")
    return x_subject_id


def _client_id(request: Request) -> str:
    return extract_client_id(dict(request.headers))


def _require_operator(x_admin_token: Optional[str]) -> None:
    expected = get_service().settings.admin_token
    if not expected or not x_admin_token or not constant_time_compare(x_admin_token, expected):
        audit_log.security_event("OPERATOR_AUTH_FAILED", "high", endpoint="grant_log")
        raise AuthorizationError("operator credential required")


# ============================================================
# Subjects and DIDs
# ============================================================

@app.post("/subjects", status_code=201)
def register_subject(req: RegisterSubjectRequest):
    subject = get_service().register_subject(req.subject_id, req.name, req.email, req.wallet_address)
    return {"subject_id": subject.subject_id}


@app.post("/did", status_code=202)
def create_did(x_subject_id: Optional[str] = Header(None)):
    job_id = get_service().initiate_did_creation(_subject(x_subject_id))
    return {"job_id": job_id, "status": "PENDING"}


@app.get("/did")
def did_status(x_subject_id: Optional[str] = Header(None)):
    return get_service().did_status(_subject(x_subject_id))


# ============================================================
# Documents
# ============================================================

@app.post("/documents", status_code=202)
def upload_document(req: UploadDocumentRequest, x_subject_id: Optional[str] = Header(None)):
    try:
        content = b64d(req.content_b64)
    except (binascii.Error, ValueError):
        raise ValidationError("content_b64", "must be base64")
    result = get_service().upload_document(_subject(x_subject_id), req.category, content, req.file_name)
    return {"document": result.document.to_dict(), "job_id": result.job_id}


@app.get("/documents")
def list_documents(x_subject_id: Optional[str] = Header(None)):
    return [d.to_dict() for d in get_service().list_documents(_subject(x_subject_id))]


@app.get("/documents/{document_id}")
def download_document(document_id: str, x_subject_id: Optional[str] = Header(None)):
    content = get_service().download_document(_subject(x_subject_id), document_id)
    return {"document_id": document_id, "content_b64": b64e(content)}


@app.get("/documents/{document_id}/status")
def document_status(document_id: str, x_subject_id: Optional[str] = Header(None)):
    return get_service().document_status(_subject(x_subject_id), document_id)


@app.delete("/documents/{document_id}")
def deactivate_document(document_id: str, x_subject_id: Optional[str] = Header(None)):
    return {"deactivated": get_service().deactivate_document(_subject(x_subject_id), document_id)}


# ============================================================
# Credentials
# ============================================================

@app.post("/tokens", status_code=201)
def issue_token(req: IssueTokenRequest, request: Request, x_subject_id: Optional[str] = Header(None)):
    get_service().limits.check_issue(_client_id(request))
    issued = get_service().issue_access_token(
        _subject(x_subject_id),
        req.document_ids,
        req.category,
        req.duration_hours,
        categories=req.categories,
        require_name=req.require_name,
        require_credential=req.require_credential,
        require_location=req.require_location,
    )
    return {"token": issued.serialized_token, "token_id": issued.token_id, "expires_at": issued.expires_at}


@app.post("/envelopes", status_code=201)
def issue_envelope(req: IssueEnvelopeRequest, request: Request, x_subject_id: Optional[str] = Header(None)):
    get_service().limits.check_issue(_client_id(request))
    issued = get_service().issue_emergency_envelope(
        _subject(x_subject_id), req.document_ids, req.categories
    )
    return {"envelope": issued.serialized_envelope, "envelope_id": issued.envelope_id, "expires_at": issued.expires_at}


@app.get("/tokens")
def list_tokens(x_subject_id: Optional[str] = Header(None)):
    return [t.to_dict() for t in get_service().list_tokens(_subject(x_subject_id))]


@app.delete("/tokens/{token_id}")
def revoke_token(token_id: str, x_subject_id: Optional[str] = Header(None)):
    return {"revoked": get_service().revoke(token_id, _subject(x_subject_id))}


@app.post("/tokens/{token_id}/regenerate", status_code=201)
def regenerate_token(token_id: str, req: RegenerateTokenRequest, x_subject_id: Optional[str] = Header(None)):
    issued = get_service().regenerate_token(token_id, _subject(x_subject_id), req.duration_hours)
    if hasattr(issued, "serialized_envelope"):
        return {"envelope": issued.serialized_envelope, "envelope_id": issued.envelope_id, "expires_at": issued.expires_at}
    return {"token": issued.serialized_token, "token_id": issued.token_id, "expires_at": issued.expires_at}


# ============================================================
# Disclosure and audit
# ============================================================

@app.post("/disclose")
def disclose(req: DiscloseRequest, request: Request):
    get_service().limits.check_disclose(_client_id(request), req.credential)
    result = get_service().disclose(req.credential, req.responder.model_dump(), req.approved_document_ids)
    return {
        "grant_id": result.grant_id,
        "expires_at": result.expires_at,
        "record_id": result.record_id,
        "documents": result.packet.to_dict(),
    }


@app.get("/access-log")
def access_log(x_subject_id: Optional[str] = Header(None)):
    return [r.to_dict() for r in get_service().access_log(_subject(x_subject_id))]


@app.get("/grant_log")
def grant_log(x_admin_token: Optional[str] = Header(None)):
    _require_operator(x_admin_token)
    return get_service().store.export_grant_log()


@app.get("/jobs/{job_id}")
def job_status(job_id: str):
    job = get_service().jobs.get_job(job_id)
    if job is None:
        raise HTTPException(404, "NOT_FOUND")
    return job.to_dict()


@app.get("/health")
def health():
    checks = get_service().health_check()
    status = 200 if all(checks.values()) else 503
    return JSONResponse(status_code=status, content={"status": "ok" if status == 200 else "degraded", "checks": checks})
