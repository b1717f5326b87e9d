"""
Encrypted blob store client for HealthVault.

Ciphertext is pushed to and pulled from an external content-addressed
store through a BlobTransport. EncryptedBlobStore wraps the transport so
that plaintext never leaves the process: encryption completes before any
network call, and decryption happens only after the bytes are back.

Fetch failures surface as StorageError (transient, retryable); decryption
failures surface as CryptoError (wrong key or corrupted data, never retried
with the same key). Callers must keep the two apart.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from . import cipher
from .errors import StorageError

logger = logging.getLogger(__name__)


class BlobTransport(ABC):
    """Abstract interface for the external content-addressed store."""

    @abstractmethod
    def put(self, data: bytes, name: Optional[str] = None) -> str:
        """
        Upload bytes and return the content address assigned by the store.

        Raises:
            StorageError: If the upload fails
        """
        pass

    @abstractmethod
    def get(self, address: str) -> bytes:
        """
        Fetch the bytes stored at address.

        Raises:
            StorageError: If the fetch fails or the store answers non-success
        """
        pass

    def health_check(self) -> bool:
        return True


class InMemoryBlobTransport(BlobTransport):
    """
    In-memory content-addressed store for development/testing.

    WARNING: Not suitable for production.
    - Not persistent across restarts
    - Not shared between processes
    """

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        address = "sha256-" + hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[address] = bytes(data)
        return address

    def get(self, address: str) -> bytes:
        with self._lock:
            data = self._blobs.get(address)
        if data is None:
            raise StorageError(f"blob not found: {address}", address=address)
        return data

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class HttpBlobTransport(BlobTransport):
    """
    IPFS pinning-service transport.

    Uploads go to the pinning API (pinFileToIPFS), downloads go through the
    public gateway. Every request carries its own timeout so a stalled store
    surfaces as StorageError instead of hanging the caller.
    """

    def __init__(
        self,
        api_url: str,
        gateway_url: str,
        api_key: str,
        secret_key: str,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None
    ):
        self._api_url = api_url.rstrip("/")
        self._gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._auth_headers = {
            "pinata_api_key": api_key,
            "pinata_secret_api_key": secret_key,
        }

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        name = name or "healthvault-blob"
        try:
            response = self._session.post(
                f"{self._api_url}/pinning/pinFileToIPFS",
                headers=self._auth_headers,
                files={"file": (name, data, "application/octet-stream")},
                data={
                    "pinataOptions": json.dumps({"cidVersion": 0}),
                    "pinataMetadata": json.dumps({"name": name}),
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
            address = response.json().get("IpfsHash")
        except (requests.RequestException, ValueError) as e:
            raise StorageError(f"blob upload failed: {e}") from e
        if not address:
            raise StorageError("blob upload returned no content address")
        return address

    def get(self, address: str) -> bytes:
        try:
            response = self._session.get(f"{self._gateway_url}{address}", timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"blob fetch failed for {address}: {e}", address=address) from e
        return response.content

    def health_check(self) -> bool:
        try:
            response = self._session.get(
                f"{self._api_url}/data/testAuthentication",
                headers=self._auth_headers,
                timeout=self._timeout,
            )
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning("Blob store health check failed: %s", e)
            return False


@dataclass(frozen=True)
class StoredBlob:
    """Result of storing an encrypted payload."""
    blob_address: str
    size: int


class EncryptedBlobStore:
    """Encrypt-before-send / decrypt-after-receive wrapper over a transport."""

    def __init__(self, transport: BlobTransport):
        self._transport = transport

    @property
    def transport(self) -> BlobTransport:
        return self._transport

    def store_encrypted(self, plaintext: bytes, key: bytes, name: Optional[str] = None) -> StoredBlob:
        """
        Encrypt plaintext and hand the ciphertext to the transport.

        Raises:
            CryptoError: If encryption fails (nothing is sent)
            StorageError: If the upload fails
        """
        blob = cipher.encrypt(plaintext, key)
        try:
            address = self._transport.put(blob, name)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"blob upload failed: {e}") from e
        return StoredBlob(blob_address=address, size=len(blob))

    def retrieve_and_decrypt(self, blob_address: str, key: bytes) -> bytes:
        """
        Fetch the blob at blob_address and decrypt it.

        Raises:
            StorageError: If the fetch fails
            CryptoError: If decryption fails
        """
        try:
            blob = self._transport.get(blob_address)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"blob fetch failed for {blob_address}: {e}", address=blob_address) from e
        return cipher.decrypt(blob, key)


def get_blob_transport(settings) -> BlobTransport:
    """Factory for the configured blob transport."""
    if settings.blob_backend == "pinata":
        if not (settings.pinata_api_key and settings.pinata_secret_key):
            raise ValueError("PINATA_API_KEY and PINATA_SECRET_KEY required for pinata blob backend")
        return HttpBlobTransport(
            api_url=settings.pinata_api_url,
            gateway_url=settings.pinata_gateway_url,
            api_key=settings.pinata_api_key,
            secret_key=settings.pinata_secret_key,
            timeout=settings.blob_timeout_seconds,
        )
    return InMemoryBlobTransport()
