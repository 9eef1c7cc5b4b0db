"""Mask KTP/NPWP identity numbers and contact details before they are logged."""

from __future__ import annotations

import re
from typing import Any, Mapping

REDACTION_TOKEN = "[REDACTED]"

# Order matters: the dotted NPWP form must be consumed before bare digit runs.
IDENTITY_PATTERNS: dict[str, re.Pattern[str]] = {
    "npwp_formatted": re.compile(r"\b\d{2}\.\d{3}\.\d{3}\.\d-\d{3}\.\d{3}\b"),
    "nik": re.compile(r"\b\d{16}\b"),
    "npwp": re.compile(r"\b\d{15}\b"),
    "email": re.compile(r"\b[\w.%+-]+@[\w.-]+\.[a-z]{2,}\b", re.IGNORECASE),
    "mobile": re.compile(r"(?:\+62|\b0)8\d{8,11}\b"),
}

# Masked whole, whatever their content.
SENSITIVE_KEYS: frozenset[str] = frozenset({"nik", "npwp", "npwp_number", "ocr_text", "ocrText"})


def redact_text(value: str, *, replacement: str = REDACTION_TOKEN) -> str:
    for pattern in IDENTITY_PATTERNS.values():
        value = pattern.sub(replacement, value)
    return value


def redact_mapping(payload: Mapping[str, Any], *, replacement: str = REDACTION_TOKEN) -> dict[str, Any]:
    """Return a scrubbed deep copy of ``payload``; the input is left untouched."""
    return {key: _scrub_entry(key, value, replacement) for key, value in payload.items()}


def _scrub_entry(key: str, value: Any, replacement: str) -> Any:
    if key in SENSITIVE_KEYS and value:
        return replacement
    return _scrub(value, replacement)


def _scrub(value: Any, replacement: str) -> Any:
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        return redact_mapping(value, replacement=replacement)
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(item, replacement) for item in value)
    return value


__all__ = ["IDENTITY_PATTERNS", "REDACTION_TOKEN", "SENSITIVE_KEYS", "redact_mapping", "redact_text"]
