"""
Configuration module for HealthVault.

Centralizes all configuration with environment variable support and
validation. Secrets are loaded once into an immutable Settings object that
is passed explicitly to every component that needs it.
"""

import os
import json
from dataclasses import dataclass
from typing import Dict, Optional
from pathlib import Path

from .util import decode_secret

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("HEALTHVAULT_ENV", "dev")  # dev|stage|prod

# Rate limits (requests per minute)
DISCLOSE_RPM = int(os.getenv("DISCLOSE_RPM", "60"))
ISSUE_RPM = int(os.getenv("ISSUE_RPM", "120"))
# Attempts per minute against any single presented credential
CREDENTIAL_RPM = int(os.getenv("CREDENTIAL_RPM", "10"))

# Paths
DB_PATH = os.getenv("DB_PATH", "data/healthvault.db")
SECRETS_PATH = os.getenv("SECRETS_PATH", "secrets/healthvault_secrets.json")

# Blob store
BLOB_BACKEND = os.getenv("BLOB_BACKEND", "memory")  # memory|pinata
PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud")
PINATA_GATEWAY_URL = os.getenv("PINATA_GATEWAY_URL", "https://gateway.pinata.cloud/ipfs/")
PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
PINATA_SECRET_KEY = os.getenv("PINATA_SECRET_KEY", "")
BLOB_TIMEOUT_SECONDS = float(os.getenv("BLOB_TIMEOUT_SECONDS", "15"))

# Ledger
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # memory|jsonrpc
LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "http://localhost:8545")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "30"))

# Grant durations (seconds)
EMERGENCY_GRANT_SECONDS = int(os.getenv("EMERGENCY_GRANT_SECONDS", str(24 * 60 * 60)))
SHARE_GRANT_SECONDS = int(os.getenv("SHARE_GRANT_SECONDS", str(60 * 60)))

# Disclosure
DISCLOSURE_MAX_WORKERS = int(os.getenv("DISCLOSURE_MAX_WORKERS", "4"))
MAX_TOKEN_HOURS = int(os.getenv("MAX_TOKEN_HOURS", str(24 * 30)))

# Background jobs
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_RETRY_BACKOFF_SECONDS = float(os.getenv("JOB_RETRY_BACKOFF_SECONDS", "0.5"))

# Grant log backend
GRANT_LOG_BACKEND = os.getenv("GRANT_LOG_BACKEND", "sqlite_hash_chain")

MIN_PRODUCTION_SECRET_BYTES = 32


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Built once at startup by load_settings() and handed to the service
    factory. Nothing in the custody core reads secrets from the
    environment directly.
    """
    master_secret: bytes
    signing_secret: bytes
    envelope_secret: Optional[bytes] = None
    admin_token: Optional[str] = None
    env: str = "dev"
    db_path: str = DB_PATH
    blob_backend: str = "memory"
    pinata_api_url: str = PINATA_API_URL
    pinata_gateway_url: str = PINATA_GATEWAY_URL
    pinata_api_key: str = ""
    pinata_secret_key: str = ""
    blob_timeout_seconds: float = BLOB_TIMEOUT_SECONDS
    ledger_backend: str = "memory"
    ledger_rpc_url: str = LEDGER_RPC_URL
    ledger_timeout_seconds: float = LEDGER_TIMEOUT_SECONDS
    emergency_grant_seconds: int = EMERGENCY_GRANT_SECONDS
    share_grant_seconds: int = SHARE_GRANT_SECONDS
    disclosure_max_workers: int = DISCLOSURE_MAX_WORKERS
    max_token_hours: int = MAX_TOKEN_HOURS
    job_max_attempts: int = JOB_MAX_ATTEMPTS
    job_retry_backoff_seconds: float = JOB_RETRY_BACKOFF_SECONDS
    grant_log_backend: str = GRANT_LOG_BACKEND
    disclose_rpm: int = DISCLOSE_RPM
    issue_rpm: int = ISSUE_RPM
    credential_rpm: int = CREDENTIAL_RPM

    @property
    def envelope_signing_secret(self) -> bytes:
        """Secret used for emergency envelope HMACs (shared unless split)."""
        return self.envelope_secret or self.signing_secret

    def __repr__(self) -> str:
        return f"Settings(env={self.env!r}, db_path={self.db_path!r}, blob_backend={self.blob_backend!r}, ledger_backend={self.ledger_backend!r})"


# ============================================================
# Secret Loading
# ============================================================

def _load_secrets_file(path: str) -> Dict[str, str]:
    p = Path(path)
    if not p.exists():
        return {}
    with open(p, "r", encoding="utf-8") as f:
        return json.load(f)


def load_settings(secrets_path: Optional[str] = None) -> Settings:
    """
    Build Settings from the environment and the secrets file.

    Environment variables take precedence over the secrets file written by
    tools/gen_secrets.py.

    Raises:
        RuntimeError: If a required secret is missing, or too short in prod
    """
    file_secrets = _load_secrets_file(secrets_path or SECRETS_PATH)

    def secret(env_name: str, file_key: str, required: bool = True) -> Optional[bytes]:
        raw = os.getenv(env_name) or file_secrets.get(file_key)
        if not raw:
            if required:
                raise RuntimeError(f"{env_name} is not set and {file_key} is missing from the secrets file")
            return None
        value = decode_secret(raw)
        if is_production() and len(value) < MIN_PRODUCTION_SECRET_BYTES:
            raise RuntimeError(f"{env_name} must be at least {MIN_PRODUCTION_SECRET_BYTES} bytes in production")
        return value

    return Settings(
        master_secret=secret("HEALTHVAULT_MASTER_SECRET", "master_secret"),
        signing_secret=secret("HEALTHVAULT_SIGNING_SECRET", "signing_secret"),
        envelope_secret=secret("HEALTHVAULT_ENVELOPE_SECRET", "envelope_secret", required=False),
        admin_token=os.getenv("HEALTHVAULT_ADMIN_TOKEN") or file_secrets.get("admin_token") or None,
        env=ENV,
        db_path=DB_PATH,
        blob_backend=BLOB_BACKEND,
        pinata_api_url=PINATA_API_URL,
        pinata_gateway_url=PINATA_GATEWAY_URL,
        pinata_api_key=PINATA_API_KEY,
        pinata_secret_key=PINATA_SECRET_KEY,
        blob_timeout_seconds=BLOB_TIMEOUT_SECONDS,
        ledger_backend=LEDGER_BACKEND,
        ledger_rpc_url=LEDGER_RPC_URL,
        ledger_timeout_seconds=LEDGER_TIMEOUT_SECONDS,
        emergency_grant_seconds=EMERGENCY_GRANT_SECONDS,
        share_grant_seconds=SHARE_GRANT_SECONDS,
        disclosure_max_workers=DISCLOSURE_MAX_WORKERS,
        max_token_hours=MAX_TOKEN_HOURS,
        job_max_attempts=JOB_MAX_ATTEMPTS,
        job_retry_backoff_seconds=JOB_RETRY_BACKOFF_SECONDS,
        grant_log_backend=GRANT_LOG_BACKEND,
        disclose_rpm=DISCLOSE_RPM,
        issue_rpm=ISSUE_RPM,
        credential_rpm=CREDENTIAL_RPM,
    )


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of check name -> ok.
    """
    file_secrets = _load_secrets_file(SECRETS_PATH)
    checks = {
        "master_secret": bool(os.getenv("HEALTHVAULT_MASTER_SECRET") or file_secrets.get("master_secret")),
        "signing_secret": bool(os.getenv("HEALTHVAULT_SIGNING_SECRET") or file_secrets.get("signing_secret")),
    }

    if BLOB_BACKEND == "pinata":
        checks["pinata_credentials"] = bool(PINATA_API_KEY and PINATA_SECRET_KEY)

    if LEDGER_BACKEND == "jsonrpc":
        checks["ledger_rpc_url"] = bool(LEDGER_RPC_URL)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("HEALTHVAULT_DEBUG", "").lower() in ("1", "true", "yes")
