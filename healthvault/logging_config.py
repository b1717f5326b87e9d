"""
Logging configuration for HealthVault.

Provides structured JSON logging for audit trails and debugging.
Derived keys, secrets and decrypted plaintext are never passed to a logger.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, List, Optional

from .security import sanitize_for_logging

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Provides one method per custody event: credential issuance,
    revocation, disclosure decisions and security-relevant actions.
    """

    def __init__(self, name: str = "healthvault.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs: Any) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **sanitize_for_logging(kwargs)
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def token_issued(
        self,
        token_id: str,
        subject_id: str,
        access_category: str,
        document_count: int,
        expires_at: int
    ) -> None:
        """Log issuance of an AccessToken."""
        self._log(
            logging.INFO,
            "TOKEN_ISSUED",
            token_id=token_id,
            subject_id=subject_id,
            access_category=access_category,
            document_count=document_count,
            expires_at=expires_at,
            message=f"{access_category} token issued for subject {subject_id}"
        )

    def envelope_issued(self, envelope_id: str, subject_id: str, did: str, document_count: int) -> None:
        """Log issuance of an EmergencyEnvelope."""
        self._log(
            logging.INFO,
            "ENVELOPE_ISSUED",
            envelope_id=envelope_id,
            subject_id=subject_id,
            did=did,
            document_count=document_count,
            message=f"Emergency envelope issued for subject {subject_id}"
        )

    def token_revoked(self, token_id: str, subject_id: str) -> None:
        """Log revocation of a token or envelope record."""
        self._log(
            logging.INFO,
            "TOKEN_REVOKED",
            token_id=token_id,
            subject_id=subject_id,
            message=f"Token {token_id} revoked"
        )

    def disclosure_rejected(self, stage: str, reason: str, credential_id: Optional[str] = None) -> None:
        """Log a disclosure that ended in REJECTED."""
        self._log(
            logging.WARNING,
            "DISCLOSURE_REJECTED",
            stage=stage,
            reason=reason,
            credential_id=credential_id,
            message=f"Disclosure rejected at {stage}: {reason}"
        )

    def grant_issued(self, grant_id: str, subject_id: str, responder_name: str, expires_at: int) -> None:
        """Log an on-chain grant obtained for a disclosure."""
        self._log(
            logging.INFO,
            "GRANT_ISSUED",
            grant_id=grant_id,
            subject_id=subject_id,
            responder_name=responder_name,
            expires_at=expires_at,
            message=f"Ledger grant {grant_id} issued"
        )

    def disclosure_complete(
        self,
        grant_id: str,
        subject_id: str,
        resolved: int,
        disclosed: int,
        categories: List[str]
    ) -> None:
        """Log completion of a disclosure, including partial ones."""
        level = logging.INFO if disclosed == resolved else logging.WARNING
        self._log(
            level,
            "DISCLOSURE_COMPLETE",
            grant_id=grant_id,
            subject_id=subject_id,
            documents_resolved=resolved,
            documents_disclosed=disclosed,
            categories=categories,
            message=f"Disclosed {disclosed}/{resolved} documents under grant {grant_id}"
        )

    def document_skipped(self, document_id: str, grant_id: str, error_type: str, error: str) -> None:
        """Log a document that could not be retrieved or decrypted."""
        self._log(
            logging.WARNING,
            "DOCUMENT_SKIPPED",
            document_id=document_id,
            grant_id=grant_id,
            error_type=error_type,
            error=error,
            message=f"Document {document_id} skipped: {error_type}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details: Any
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance (stateless wrapper around a named logger)
audit_log = AuditLogger()
