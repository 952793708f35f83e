"""
Projection of format-native raw properties onto the production-metadata vocabulary.

Each document class has a fixed vocabulary. A raw property lands in the record only when its key is a
known alias of a vocabulary field and its value normalizes cleanly; every other raw property is kept in
the extension map. Values are never synthesized.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

from discovery_worker.detection import MESSAGE_TYPE
from discovery_worker.models import DocumentClass, ProductionRecord

logger = logging.getLogger(__name__)

MESSAGE_MIMETYPES = {MESSAGE_TYPE, "application/vnd.ms-outlook"}
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
PDF_DATE_PATTERN = re.compile(
    r"^D:(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?(Z|[+-]\d{2}'?\d{2}'?)?"
)
EXIF_DATE_PATTERN = re.compile(r"^(\d{4}):(\d{2}):(\d{2}) (\d{2}):(\d{2}):(\d{2})$")
TRUE_VALUES = {"true", "yes", "1", "y"}
FALSE_VALUES = {"false", "no", "0", "n"}

DATE_FIELDS = {"DateSent", "DateReceived", "DateCreated", "DateAccessed", "DateModified", "DatePrinted"}
INT_FIELDS = {"AttachmentCount", "StartPage", "EndPage", "FileSize"}
BOOL_FIELDS = {"HasAttachments", "ReadFlag"}
LIST_FIELDS = {"AttachmentNames"}

FIELD_ALIASES: dict[DocumentClass, dict[str, tuple[str, ...]]] = {
    DocumentClass.MESSAGE: {
        "From": ("from", "message:from", "message-from"),
        "To": ("to", "message:to", "message-to"),
        "CC": ("cc", "message:cc", "message-cc"),
        "BCC": ("bcc", "message:bcc", "message-bcc"),
        "Subject": ("subject", "message:subject"),
        "Header": ("header", "message:raw-header"),
        "DateSent": ("date", "message:date-sent", "dcterms:created"),
        "DateReceived": ("delivery-date", "message:date-received"),
        "HasAttachments": ("has-attachments",),
        "AttachmentCount": ("attachment-count",),
        "AttachmentNames": ("attachment-names",),
        "ReadFlag": ("read-flag", "message:read"),
        "ImportanceFlag": ("importance", "x-priority"),
        "MessageClass": ("message-class", "x-ms-exchange-messageclass"),
        "FlagStatus": ("flag-status", "x-message-flag"),
    },
    DocumentClass.DOCUMENT: {
        "Language": ("language", "dc:language", "content-language"),
        "StartPage": ("start-page",),
        "EndPage": ("end-page",),
        "ReviewComment": ("review-comment",),
        "FileName": ("file-name", "resourcename"),
        "FilePath": ("file-path",),
        "FileSize": ("file-size", "content-length"),
        "Hash": ("content-hash", "md5"),
    },
    DocumentClass.FILE: {
        "FileName": ("file-name", "resourcename"),
        "FileExtension": ("file-extension",),
        "FileSize": ("file-size", "content-length"),
        "DateCreated": ("dcterms:created", "creation-date", "/creationdate", "meta:creation-date"),
        "DateAccessed": ("date-accessed",),
        "DateModified": ("dcterms:modified", "last-modified", "/moddate", "modified"),
        "DatePrinted": ("cp:lastprinted", "last-printed"),
        "Title": ("dc:title", "title", "/title"),
        "Subject": ("dc:subject", "subject", "/subject"),
        "Author": ("dc:creator", "author", "/author", "meta:author", "creator"),
        "Company": ("extended-properties:company", "company"),
        "Category": ("cp:category", "category"),
        "Keywords": ("cp:keywords", "keywords", "/keywords", "meta:keyword"),
        "Comments": ("dc:description", "comments", "comment", "description"),
    },
}


@dataclass
class MetadataProjection:
    record: ProductionRecord
    extensions: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def classify_document_class(
    mimetype: str | None,
    hint: DocumentClass | None = None,
    raw_properties: dict[str, Any] | None = None,
) -> DocumentClass:
    normalized = (mimetype or "").lower()
    if normalized in MESSAGE_MIMETYPES:
        return DocumentClass.MESSAGE
    if normalized.startswith("image/"):
        return DocumentClass.DOCUMENT
    if normalized == "application/pdf" and (raw_properties or {}).get("Has-Text-Layer") is False:
        return DocumentClass.DOCUMENT
    return hint or DocumentClass.FILE


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_pdf_date(text: str) -> datetime | None:
    match = PDF_DATE_PATTERN.match(text)
    if not match:
        return None
    year, month, day, hour, minute, second, offset = match.groups()
    tzinfo = timezone.utc
    if offset and offset != "Z":
        digits = offset.replace("'", "")
        sign = 1 if digits[0] == "+" else -1
        tzinfo = timezone(sign * timedelta(hours=int(digits[1:3]), minutes=int(digits[3:5] or 0)))
    return datetime(
        int(year),
        int(month or 1),
        int(day or 1),
        int(hour or 0),
        int(minute or 0),
        int(second or 0),
        tzinfo=tzinfo,
    )


def normalize_date(value: Any) -> str:
    if isinstance(value, datetime):
        return _to_utc(value).strftime(TIMESTAMP_FORMAT)

    text = str(value).strip()
    if not text:
        raise ValueError("empty date")

    parsed = _parse_pdf_date(text)
    if parsed is None:
        exif = EXIF_DATE_PATTERN.match(text)
        if exif:
            parsed = datetime(*(int(part) for part in exif.groups()))
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    if parsed is None:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError) as exc:
            raise ValueError(f"unrecognized date '{text}'") from exc
    return _to_utc(parsed).strftime(TIMESTAMP_FORMAT)


def normalize_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a count")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    number = float(text)
    if not number.is_integer():
        raise ValueError(f"'{text}' is not a whole number")
    return int(number)


def normalize_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def normalize_list(value: Any) -> list[str]:
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


def normalize_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "; ".join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


def _normalizer(field_name: str) -> Callable[[Any], Any]:
    if field_name in DATE_FIELDS:
        return normalize_date
    if field_name in INT_FIELDS:
        return normalize_int
    if field_name in BOOL_FIELDS:
        return normalize_bool
    if field_name in LIST_FIELDS:
        return normalize_list
    return normalize_text


def project_metadata(document_class: DocumentClass, raw_properties: dict[str, Any]) -> MetadataProjection:
    """Project raw properties onto ``document_class``'s vocabulary.

    Alias lookup is case-insensitive. When several raw keys alias the same field, the earliest alias in
    the table wins.
    """

    by_lower_key: dict[str, str] = {}
    for key in raw_properties:
        by_lower_key.setdefault(key.strip().lower(), key)

    entries: dict[str, Any] = {}
    consumed: set[str] = set()
    warnings: list[str] = []
    for field_name, aliases in FIELD_ALIASES[document_class].items():
        for alias in aliases:
            raw_key = by_lower_key.get(alias)
            if raw_key is None:
                continue
            raw_value = raw_properties[raw_key]
            if raw_value is None or raw_value == "" or raw_value == []:
                continue
            try:
                value = _normalizer(field_name)(raw_value)
            except (TypeError, ValueError) as exc:
                warnings.append(f"Could not normalize '{raw_key}' for {field_name}: {exc}")
                continue
            if value in ("", []):
                continue
            entries[field_name] = value
            consumed.add(raw_key)
            break

    extensions = {key: value for key, value in raw_properties.items() if key not in consumed}
    record = ProductionRecord(document_class=document_class, entries=entries)
    if warnings:
        logger.debug("Metadata projection warnings for %s: %s", document_class.value, warnings)
    return MetadataProjection(record=record, extensions=extensions, warnings=warnings)
