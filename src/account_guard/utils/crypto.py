"""Cryptographic helpers — hashing, HMAC, random tokens."""

from __future__ import annotations

import hashlib
import hmac
import secrets


def sha256_hex(data: str | bytes) -> str:
    """SHA-256 hash of *data* as lowercase hex. Strings are UTF-8 encoded."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hmac_sha256_hex(key: str | bytes, data: str | bytes) -> str:
    """HMAC-SHA256 of *data* keyed by *key*, as hex."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking the mismatch position through timing."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def random_hex(nbytes: int = 16) -> str:
    """Random hex string of *nbytes* bytes of entropy."""
    return secrets.token_hex(nbytes)


def random_token(nbytes: int = 32) -> str:
    """URL-safe random token of *nbytes* bytes of entropy."""
    return secrets.token_urlsafe(nbytes)


def new_id(prefix: str, nbytes: int = 16) -> str:
    """Opaque identifier: ``<prefix>_<hex>``."""
    return f"{prefix}_{random_hex(nbytes)}"
