"""Regex field extraction for KTP (national ID) and NPWP (tax ID) OCR text."""

from __future__ import annotations

import re
from typing import Any, Callable, Dict

from src.models.documents import DocumentType

_NIK = re.compile(r"NIK[\s:]*([0-9]{16})", re.IGNORECASE)
_NAME = re.compile(r"Nama[ \t:]*([A-Z][A-Z ]*)", re.IGNORECASE)
_BIRTH = re.compile(
    r"Tempat[/\s]*Tgl\s*Lahir[ \t:]*([A-Z ]+),\s*([0-9/-]+)", re.IGNORECASE
)
_ADDRESS = re.compile(r"Alamat[ \t:]*([A-Za-z0-9 ,./]+)", re.IGNORECASE)
_GENDER = re.compile(r"Jenis\s*Kelamin[ \t:]*([A-Z ]+)", re.IGNORECASE)
_RELIGION = re.compile(r"Agama[ \t:]*([A-Z ]+)", re.IGNORECASE)
_MARITAL = re.compile(r"Status\s*Perkawinan[ \t:]*([A-Z ]+)", re.IGNORECASE)
_NPWP_NUMBER = re.compile(r"([0-9]{2}\.[0-9]{3}\.[0-9]{3}\.[0-9]-[0-9]{3}\.[0-9]{3})")


def _first(pattern: re.Pattern[str], text: str, group: int = 1) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(group).strip()
    return value or None


def parse_ktp(text: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for name, pattern in (
        ("nik", _NIK),
        ("name", _NAME),
        ("address", _ADDRESS),
        ("gender", _GENDER),
        ("religion", _RELIGION),
        ("marital_status", _MARITAL),
    ):
        value = _first(pattern, text)
        if value is not None:
            fields[name] = value
    birth = _BIRTH.search(text)
    if birth:
        fields["birth_place"] = birth.group(1).strip()
        fields["birth_date"] = birth.group(2).strip()
    return fields


def parse_npwp(text: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    number = _first(_NPWP_NUMBER, text)
    if number is not None:
        fields["npwp_number"] = number
    name = _first(_NAME, text)
    if name is not None:
        fields["name"] = name
    return fields


PARSERS: Dict[DocumentType, Callable[[str], Dict[str, Any]]] = {
    DocumentType.KTP: parse_ktp,
    DocumentType.NPWP: parse_npwp,
}


def parse_fields(document_type: DocumentType, text: str) -> Dict[str, Any]:
    return PARSERS[document_type](text or "")


__all__ = ["PARSERS", "parse_fields", "parse_ktp", "parse_npwp"]
