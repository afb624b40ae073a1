"""
Fixed-key AES-256-CBC helpers.

Ciphertexts are encoded as ``<iv hex>:<ciphertext hex>`` with PKCS7 padding.
The key comes from ``ENCRYPTION_KEY`` (64 hex chars); when it is not set a
random key is generated once per process, so values do not survive restarts.

Standalone helper: no route encrypts or decrypts through it. Callers that
need the same wire format import it directly.
"""

import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.config import settings

KEY_LENGTH = 32
IV_LENGTH = 16

_process_key: bytes | None = None


def _default_key() -> bytes:
    global _process_key
    if settings.ENCRYPTION_KEY:
        key = bytes.fromhex(settings.ENCRYPTION_KEY)
        if len(key) != KEY_LENGTH:
            raise ValueError("ENCRYPTION_KEY must be 32 bytes encoded as hex")
        return key
    if _process_key is None:
        _process_key = os.urandom(KEY_LENGTH)
    return _process_key


def encrypt(data: bytes, key: bytes | None = None, iv: bytes | None = None) -> str:
    """Encrypt ``data``; pass ``iv`` to reproduce a previous ciphertext exactly."""
    key = key or _default_key()
    iv = iv or os.urandom(IV_LENGTH)
    if len(iv) != IV_LENGTH:
        raise ValueError("IV must be 16 bytes")

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def split_ciphertext(value: str) -> tuple[bytes, bytes]:
    try:
        iv_hex, body_hex = value.split(":", 1)
        iv = bytes.fromhex(iv_hex)
        body = bytes.fromhex(body_hex)
    except ValueError as exc:
        raise ValueError("Malformed ciphertext") from exc
    if len(iv) != IV_LENGTH:
        raise ValueError("Malformed ciphertext")
    return iv, body


def decrypt(value: str, key: bytes | None = None) -> bytes:
    key = key or _default_key()
    iv, body = split_ciphertext(value)
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise ValueError("Decryption failed") from exc


def encrypt_text(text: str, key: bytes | None = None) -> str:
    return encrypt(text.encode("utf-8"), key=key)


def decrypt_text(value: str, key: bytes | None = None) -> str:
    return decrypt(value, key=key).decode("utf-8")
