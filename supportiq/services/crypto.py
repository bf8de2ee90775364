from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from supportiq.core.config import get_settings
from supportiq.core.errors import ProviderConfigError


_TOKEN_VERSION = "v1"
_NONCE_BYTES = 12


def _derive_key(secret: str | None = None) -> bytes:
    # Stretch the configured secret to a fixed 256-bit AES key.
    material = secret if secret is not None else get_settings().encryption_key
    if not material:
        raise ProviderConfigError("ENCRYPTION_KEY is required to store third-party tokens")
    return hashlib.sha256(material.encode("utf-8")).digest()


def encrypt(plaintext: str, *, secret: str | None = None) -> str:
    key = _derive_key(secret)
    nonce = os.urandom(_NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), _TOKEN_VERSION.encode("ascii"))
    encoded = base64.urlsafe_b64encode(nonce + sealed).decode("ascii")
    return f"{_TOKEN_VERSION}:{encoded}"


def decrypt(token: str, *, secret: str | None = None) -> str:
    version, _, encoded = token.partition(":")
    if version != _TOKEN_VERSION or not encoded:
        raise ValueError("unsupported token format")
    try:
        raw = base64.urlsafe_b64decode(encoded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("malformed token") from exc
    nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(nonce, sealed, _TOKEN_VERSION.encode("ascii"))
    except InvalidTag as exc:
        raise ValueError("token failed authentication") from exc
    return plaintext.decode("utf-8")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
