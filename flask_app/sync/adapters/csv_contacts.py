"""CSV adapter for uploaded contact lists.

Validates the header row against the known contact columns (with aliases),
streams rows, and exposes them page by page so uploads flow through the same
staging and merge path as the API-backed providers. The cursor is the number
of data rows already consumed.
"""

from __future__ import annotations

import csv
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Iterator, Mapping, Sequence

from flask_app.sync.pipeline.normalize import clean_text, join_name, normalize_email, normalize_phone

from .base import AdapterPage, ContactFields, OptIns, ProviderAdapter, RawRecord, SyncWindow

PAGE_SIZE = 500

HEADER_ALIASES = {
    "email": "email",
    "e mail": "email",
    "email address": "email",
    "phone": "phone",
    "phone number": "phone",
    "mobile": "phone",
    "whatsapp": "phone",
    "full name": "full_name",
    "name": "full_name",
    "first name": "first_name",
    "last name": "last_name",
    "tags": "tags",
}
IDENTITY_COLUMNS = ("email", "phone")


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the header row cannot identify any contact."""

    def __init__(self, *, duplicates: Sequence[str] | None = None, missing_identity: bool = False) -> None:
        details: list[str] = []
        if missing_identity:
            details.append("At least one of the columns email or phone is required.")
        if duplicates:
            details.append("Duplicate columns detected: " + ", ".join(sorted(duplicates)) + ".")
        super().__init__("CSV header validation failed. " + " ".join(details))
        self.duplicates = tuple(duplicates or ())
        self.missing_identity = missing_identity


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    canonical_headers: tuple[str | None, ...]


def _sanitize_header(header: str | None) -> str:
    return (header or "").strip().lstrip("\ufeff")


def _normalize_header(header: str) -> str:
    return " ".join(header.replace("_", " ").replace("-", " ").lower().split())


def _validate_headers(raw_headers: Sequence[str]) -> HeaderValidationResult:
    sanitized = tuple(_sanitize_header(header) for header in raw_headers)
    canonical: list[str | None] = []
    seen: set[str] = set()
    duplicates: list[str] = []
    for header in sanitized:
        name = HEADER_ALIASES.get(_normalize_header(header))
        if name is not None:
            if name in seen:
                duplicates.append(name)
            seen.add(name)
        canonical.append(name)
    missing_identity = not any(column in seen for column in IDENTITY_COLUMNS)
    if missing_identity or duplicates:
        raise CSVHeaderError(duplicates=duplicates, missing_identity=missing_identity)
    return HeaderValidationResult(raw_headers=sanitized, canonical_headers=tuple(canonical))


def _row_is_blank(row: Mapping[str, Any]) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in row.values())


def row_external_id(row: Mapping[str, Any]) -> str:
    """Stable id: normalized email, else phone, else a checksum of the row."""
    email = normalize_email(row.get("email"))
    if email:
        return email
    phone = normalize_phone(row.get("phone"))
    if phone:
        return phone
    serialized = json.dumps(row, sort_keys=True, default=str)
    return "row-" + hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class CSVContactAdapter(ProviderAdapter):
    """Reads an uploaded CSV; no network, so retries and rate limits never engage."""

    name = "csv"
    kind = "contact"

    def __init__(self, file_path: str | Path, *, page_size: int = PAGE_SIZE, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.file_path = Path(file_path)
        self.page_size = max(1, int(page_size))
        self.header: HeaderValidationResult | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "CSVContactAdapter":
        file_path = kwargs.pop("file_path", None)
        if not file_path:
            raise CSVAdapterError("CSV sync requires an uploaded file.")
        return cls(file_path, **kwargs)

    def _iter_rows(self, handle: IO[str]) -> Iterator[dict[str, Any]]:
        reader = csv.reader(handle)
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise CSVHeaderError(missing_identity=True) from None
        self.header = _validate_headers(raw_headers)
        for values in reader:
            row: dict[str, Any] = {}
            for name, value in zip(self.header.canonical_headers, values):
                if name is not None:
                    row[name] = value
            if _row_is_blank(row):
                continue
            yield row

    def validate_header(self) -> HeaderValidationResult:
        """Read only the header row so bad uploads are rejected before a run starts."""
        with self.file_path.open("r", encoding="utf-8-sig", newline="") as handle:
            try:
                raw_headers = next(csv.reader(handle))
            except StopIteration:
                raise CSVHeaderError(missing_identity=True) from None
        self.header = _validate_headers(raw_headers)
        return self.header

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        offset = int(cursor) if cursor else 0
        records: list[RawRecord] = []
        consumed = 0
        exhausted = True
        with self.file_path.open("r", encoding="utf-8-sig", newline="") as handle:
            for index, row in enumerate(self._iter_rows(handle)):
                if index < offset:
                    continue
                if consumed >= self.page_size:
                    exhausted = False
                    break
                records.append(RawRecord(external_id=row_external_id(row), payload=row))
                consumed += 1
        next_offset = offset + consumed
        return AdapterPage(
            records=tuple(records),
            next_cursor=None if exhausted else str(next_offset),
            has_more=not exhausted,
        )

    @staticmethod
    def normalize_contact(payload: Mapping[str, Any]) -> ContactFields:
        full_name = clean_text(payload.get("full_name")) or join_name(
            payload.get("first_name"), payload.get("last_name")
        )
        raw_tags = payload.get("tags") or ""
        if isinstance(raw_tags, str):
            raw_tags = raw_tags.split(",")
        tags = tuple(sorted({str(tag).strip() for tag in raw_tags if str(tag).strip()}))
        return ContactFields(
            email=normalize_email(payload.get("email")),
            phone=normalize_phone(payload.get("phone")),
            full_name=full_name,
            tags=tags,
            opt_ins=OptIns(whatsapp=False, sms=False, email=True),
        )
