"""Field-level encryption helpers for personally identifiable data.

Three tiers are provided:

- highest security: AES-256-GCM with a random nonce, serialised as
  ``b64(nonce).b64(tag).b64(ciphertext)``; used for national ID numbers.
- searchable: deterministic AES-256-CBC with a fixed IV per field kind so
  equal plaintexts produce equal ciphertexts; used for email and phone.
- basic: AES-256-CBC with a random IV, serialised as ``b64(iv).b64(ct)``.

Lookups by PII go through `search_hash`, a peppered SHA-256 digest, so
the encrypted columns never have to be decrypted to find a row.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import settings

SEARCHABLE_KINDS = ("email", "phone", "general")
_GCM_TAG_BYTES = 16


def _key() -> bytes:
    return bytes.fromhex(settings.ENCRYPTION_KEY)


def _fixed_iv(kind: str) -> bytes:
    if kind == "email":
        return bytes.fromhex(settings.FIXED_IV_EMAIL)
    if kind == "phone":
        return bytes.fromhex(settings.FIXED_IV_PHONE)
    if kind == "general":
        return bytes.fromhex(settings.FIXED_IV_GENERAL)
    raise ValueError(f"unknown searchable field kind: {kind}")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64 in encrypted value") from exc


def _cbc_encrypt(plaintext: str, iv: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(data: bytes, iv: bytes) -> str:
    if not data or len(data) % 16:
        raise ValueError("invalid AES-CBC ciphertext length")
    decryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        raw = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise ValueError("invalid padding in AES-CBC ciphertext") from exc
    return raw.decode("utf-8")


def encrypt_highest_security(plaintext: str) -> str:
    """Encrypt with AES-256-GCM; output is ``nonce.tag.ciphertext`` in base64."""
    nonce = os.urandom(12)
    sealed = AESGCM(_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_GCM_TAG_BYTES], sealed[-_GCM_TAG_BYTES:]
    return f"{_b64(nonce)}.{_b64(tag)}.{_b64(ciphertext)}"


def decrypt_highest_security(token: str) -> str:
    """Reverse `encrypt_highest_security`; raises ValueError on tampering."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("invalid encrypted format for AES-GCM")
    nonce, tag, ciphertext = (_unb64(p) for p in parts)
    try:
        plain = AESGCM(_key()).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise ValueError("AES-GCM authentication failed") from exc
    return plain.decode("utf-8")


def encrypt_searchable(data: str, kind: str) -> str:
    """Deterministically encrypt `data` using the fixed IV for `kind`."""
    return _b64(_cbc_encrypt(data, _fixed_iv(kind)))


def decrypt_searchable(token: str, kind: str) -> str:
    return _cbc_decrypt(_unb64(token), _fixed_iv(kind))


def encrypt_basic(data: str) -> str:
    iv = os.urandom(16)
    return f"{_b64(iv)}.{_b64(_cbc_encrypt(data, iv))}"


def decrypt_basic(token: str) -> str:
    iv_b64, sep, data_b64 = token.partition(".")
    if not sep or not iv_b64 or not data_b64:
        raise ValueError("invalid encrypted format for AES-CBC")
    return _cbc_decrypt(_unb64(data_b64), _unb64(iv_b64))


def search_hash(data: str) -> str:
    """Peppered SHA-256 hex digest used as an equality index for PII."""
    return hashlib.sha256((data + settings.HASH_PEPPER).encode("utf-8")).hexdigest()


def verify_search_hash(data: str, expected: str) -> bool:
    return hmac.compare_digest(search_hash(data), expected)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit() or ch == "+")
