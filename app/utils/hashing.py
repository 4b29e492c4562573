"""Helpers for logging identifiers without exposing them."""

from __future__ import annotations

import hashlib


def hash_identifier(value: str, length: int = 16) -> str:
    """Return a short, stable SHA-256 prefix of ``value`` for log correlation."""

    return hashlib.sha256(value.encode()).hexdigest()[:length]
