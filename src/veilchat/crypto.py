"""
VeilChat - Conversation cryptography.

This module implements the stateless codec used for every message payload:
- AES-256-GCM authenticated encryption, no associated data
- A fresh random 96-bit nonce for every encryption call
- Raw 256-bit keys generated from the operating system CSPRNG
- Lossless base64 export/import of keys, ciphertexts and nonces

There is no password-based key derivation, ratcheting or rotation: each
conversation uses one static key that both participants share through the
backend (see key_bootstrap).

All cryptographic operations use the cryptography library (Apache 2.0/BSD).
"""

import asyncio
import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Dict, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import KEY_SIZE, NONCE_SIZE, TAG_SIZE, TEXT_ENCODING
from .errors import CryptoError, DecryptionError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedPayload:
    """Transport-safe form of one encryption: base64 ciphertext and nonce."""

    encrypted_content: str
    iv: str

    def to_dict(self) -> Dict[str, str]:
        return {"encrypted_content": self.encrypted_content, "iv": self.iv}


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    # validate=True rejects stray characters instead of silently dropping them
    return base64.b64decode(text.encode("ascii"), validate=True)


def generate_key() -> bytes:
    """
    Generate a new conversation key.

    Returns:
        32 random bytes suitable for AES-256-GCM

    Raises:
        CryptoError: If the random source fails
    """
    try:
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8)
    except (OSError, ValueError) as e:
        raise CryptoError(
            ErrorCode.E104_KEY_GENERATION_FAILED, f"Key generation failed: {e}"
        ) from e


def export_key(key: bytes) -> str:
    """
    Export raw key bytes to base64 text for storage in the backend or cache.

    Raises:
        CryptoError: If the key is not 32 bytes
    """
    _check_key(key, CryptoError)
    return _b64encode(key)


def import_key(key_text: str) -> bytes:
    """
    Import a key previously produced by export_key.

    Args:
        key_text: base64 text

    Returns:
        Raw 32-byte key

    Raises:
        CryptoError: If the text is not valid base64 or has the wrong length
    """
    try:
        key = _b64decode(key_text)
    except (binascii.Error, ValueError, AttributeError, UnicodeEncodeError) as e:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Key is not valid base64") from e
    _check_key(key, CryptoError)
    return key


def _check_key(key: bytes, error_cls) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        size = len(key) if isinstance(key, (bytes, bytearray)) else None
        raise error_cls(
            ErrorCode.E103_INVALID_KEY,
            f"Key must be {KEY_SIZE} bytes",
            {"size": size},
        )


def encrypt(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt bytes with AES-256-GCM under a fresh random nonce.

    Each call draws a new 96-bit nonce from os.urandom, so no nonce is
    reused under the same key within any realistic message volume.

    Args:
        plaintext: Data to encrypt
        key: Raw 32-byte key

    Returns:
        (ciphertext with 16-byte tag appended, 12-byte nonce)

    Raises:
        CryptoError: If the key is invalid
    """
    _check_key(key, CryptoError)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
    return ciphertext, nonce


def decrypt(ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
    """
    Decrypt and authenticate an AES-256-GCM ciphertext.

    Raises:
        DecryptionError: If the tag does not verify, or the key or nonce
            has the wrong size
    """
    _check_key(key, DecryptionError)
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(
            ErrorCode.E105_INVALID_NONCE,
            f"Nonce must be {NONCE_SIZE} bytes",
            {"size": len(nonce)},
        )
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError(message="Ciphertext is shorter than the authentication tag")

    try:
        return AESGCM(bytes(key)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError(message="Authentication tag verification failed") from e


def encrypt_message(text: str, key: bytes) -> EncryptedPayload:
    """
    Encrypt a text message into its transport-safe payload.

    Args:
        text: Message plaintext
        key: Raw 32-byte key

    Returns:
        EncryptedPayload with base64 ciphertext and nonce
    """
    ciphertext, nonce = encrypt(text.encode(TEXT_ENCODING), key)
    return EncryptedPayload(encrypted_content=_b64encode(ciphertext), iv=_b64encode(nonce))


def decrypt_message(encrypted_content: str, iv: str, key: bytes) -> str:
    """
    Decrypt a payload produced by encrypt_message.

    Raises:
        DecryptionError: On malformed base64, authentication failure or
            plaintext that is not valid UTF-8
    """
    try:
        ciphertext = _b64decode(encrypted_content)
        nonce = _b64decode(iv)
    except (binascii.Error, ValueError, AttributeError, UnicodeEncodeError) as e:
        raise DecryptionError(message="Ciphertext or nonce is not valid base64") from e

    plaintext = decrypt(ciphertext, nonce, key)

    try:
        return plaintext.decode(TEXT_ENCODING)
    except UnicodeDecodeError as e:
        raise DecryptionError(message="Decrypted payload is not valid text") from e


# Async wrappers for use in the pipeline's event loop


async def generate_key_async() -> bytes:
    """Async wrapper for generate_key."""
    await asyncio.sleep(0)
    return generate_key()


async def encrypt_message_async(text: str, key: bytes) -> EncryptedPayload:
    """Async wrapper for encrypt_message."""
    await asyncio.sleep(0)
    return encrypt_message(text, key)


async def decrypt_message_async(encrypted_content: str, iv: str, key: bytes) -> str:
    """Async wrapper for decrypt_message."""
    await asyncio.sleep(0)
    return decrypt_message(encrypted_content, iv, key)
