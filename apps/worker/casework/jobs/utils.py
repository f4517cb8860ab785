"""Shared helpers for worker job handlers."""

from __future__ import annotations

import time


def mask_email(email: str | None) -> str:
    """Log-safe form of an address: first three characters of the local part and the domain."""
    if not email:
        return ""
    local, _, domain = email.strip().partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)
