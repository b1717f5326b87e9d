"""
Symmetric cipher unit for HealthVault.

Authenticated encryption of opaque byte payloads with PyNaCl's SecretBox
(XSalsa20-Poly1305, 256-bit key). Every call to encrypt() draws a fresh
random nonce, and the nonce travels at the head of the returned blob:

    blob = nonce (24 bytes) || ciphertext (plaintext + 16-byte MAC)

The functions are pure and hold no state, so they may be called
concurrently with different keys.
"""

import nacl.exceptions
import nacl.secret
import nacl.utils

from .errors import CryptoError

KEY_SIZE = nacl.secret.SecretBox.KEY_SIZE
NONCE_SIZE = nacl.secret.SecretBox.NONCE_SIZE
MAC_SIZE = nacl.secret.SecretBox.MACBYTES


def _box(key: bytes) -> nacl.secret.SecretBox:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError(f"key must be {KEY_SIZE} bytes")
    return nacl.secret.SecretBox(bytes(key))


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt plaintext under key with a fresh random nonce.

    Args:
        plaintext: Bytes to encrypt
        key: 32-byte key

    Returns:
        nonce || ciphertext

    Raises:
        CryptoError: If the key length is wrong
    """
    box = _box(key)
    nonce = nacl.utils.random(NONCE_SIZE)
    try:
        message = box.encrypt(bytes(plaintext), nonce)
    except nacl.exceptions.CryptoError as e:
        raise CryptoError(f"encryption failed: {e}") from e
    return bytes(message)


def decrypt(blob: bytes, key: bytes) -> bytes:
    """
    Split the nonce from the head of blob and decrypt the remainder.

    Raises:
        CryptoError: If the blob is too short, the key is wrong, or the
            ciphertext fails authentication
    """
    box = _box(key)
    if blob is None or len(blob) < NONCE_SIZE + MAC_SIZE:
        raise CryptoError("ciphertext too short to contain nonce and MAC")
    nonce, ciphertext = bytes(blob[:NONCE_SIZE]), bytes(blob[NONCE_SIZE:])
    try:
        return box.decrypt(ciphertext, nonce)
    except nacl.exceptions.CryptoError as e:
        raise CryptoError("decryption failed: wrong key or corrupted data") from e
