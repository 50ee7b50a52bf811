"""
AES-256-GCM envelope for provider secrets at rest.

Token format: ``v1:<iv>:<tag>:<ciphertext>`` with each part base64url
encoded without padding. The 32-byte key comes from
``APP_CREDENTIALS_ENCRYPTION_KEY`` (64 hex chars, or base64/base64url);
when unset, a development key is derived as SHA-256 of ``APP_AUTH_SECRET``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from domain.exceptions import CredentialDecryptionError

logger = logging.getLogger(__name__)

VERSION = "v1"
IV_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
DEV_FALLBACK_SECRET = "dev-secret"

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def parse_key(raw: str) -> bytes | None:
    """Decode a configured key; ``None`` when it is not exactly 32 bytes."""
    value = raw.strip()
    if not value:
        return None
    if len(value) == 64 and _HEX_RE.match(value):
        return bytes.fromhex(value)
    normalized = value.replace("+", "-").replace("/", "_").rstrip("=")
    try:
        decoded = _b64url_decode(normalized)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) == KEY_BYTES else None


class CredentialCipher:
    """Encrypts and decrypts credential strings with one fixed key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("Credential key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, encryption_key: str, auth_secret: str = "") -> CredentialCipher:
        key = parse_key(encryption_key) if encryption_key else None
        if key is None:
            if encryption_key:
                logger.warning("Configured credential key is not 32 bytes; using derived key")
            else:
                logger.warning("No credential encryption key configured; deriving from auth secret")
            key = hashlib.sha256((auth_secret or DEV_FALLBACK_SECRET).encode("utf-8")).digest()
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        # AESGCM appends the 16-byte tag to the ciphertext.
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(
            [VERSION, _b64url_encode(iv), _b64url_encode(tag), _b64url_encode(ciphertext)]
        )

    def decrypt(self, token: str) -> str:
        parts = (token or "").split(":")
        if len(parts) != 4 or parts[0] != VERSION:
            raise CredentialDecryptionError("unrecognised token format")
        try:
            iv = _b64url_decode(parts[1])
            tag = _b64url_decode(parts[2])
            ciphertext = _b64url_decode(parts[3])
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptionError("token is not valid base64url") from exc
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise CredentialDecryptionError("token has wrong iv or tag length")
        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialDecryptionError("authentication tag mismatch") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialDecryptionError("plaintext is not utf-8") from exc
