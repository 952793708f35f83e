from __future__ import annotations

import io
import logging
import mimetypes
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from discovery_worker.errors import ProcessingError

logger = logging.getLogger(__name__)

GENERIC_BINARY_TYPE = "application/octet-stream"
ZIP_TYPE = "application/zip"
OLE_TYPE = "application/x-tika-msoffice"
MBOX_TYPE = "application/mbox"
MESSAGE_TYPE = "message/rfc822"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

DETECTION_PREFIX_BYTES = 8192

MAGIC_SIGNATURES: list[tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"PK\x03\x04", ZIP_TYPE),
    (b"PK\x05\x06", ZIP_TYPE),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", OLE_TYPE),
    (b"{\\rtf", "application/rtf"),
    (b"\x1f\x8b", "application/gzip"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"Rar!\x1a\x07", "application/vnd.rar"),
]

# Zip-based formats are told apart by their internal part names.
OOXML_MARKERS: list[tuple[str, str]] = [
    ("word/", DOCX_TYPE),
    ("xl/", XLSX_TYPE),
    ("ppt/", PPTX_TYPE),
]

OLE_EXTENSION_TYPES = {
    ".doc": "application/msword",
    ".dot": "application/msword",
    ".xls": "application/vnd.ms-excel",
    ".ppt": "application/vnd.ms-powerpoint",
    ".msg": "application/vnd.ms-outlook",
}

EXTENSION_TYPES = {
    **OLE_EXTENSION_TYPES,
    ".eml": MESSAGE_TYPE,
    ".mbox": MBOX_TYPE,
    ".mbx": MBOX_TYPE,
    ".docx": DOCX_TYPE,
    ".xlsx": XLSX_TYPE,
    ".pptx": PPTX_TYPE,
    ".txt": "text/plain",
    ".log": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
    ".xml": "application/xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".rtf": "application/rtf",
}

MESSAGE_HEADER_NAMES = {
    b"from",
    b"to",
    b"cc",
    b"subject",
    b"date",
    b"message-id",
    b"mime-version",
    b"received",
    b"return-path",
    b"reply-to",
    b"content-type",
}
HEADER_LINE_PATTERN = re.compile(rb"^([A-Za-z][A-Za-z0-9-]*):[ \t]?(.*)$")
MBOX_FROM_LINE_PATTERN = re.compile(rb"^From \S+")


class DetectionCapability(Protocol):
    def detect(self, content: bytes, filename: str | None = None) -> str:
        ...


@dataclass(frozen=True)
class Detection:
    mimetype: str
    source: str
    warnings: list[str] = field(default_factory=list)

    @property
    def is_generic(self) -> bool:
        return self.mimetype == GENERIC_BINARY_TYPE


def _normalize_extension(filename: str | None) -> str:
    return Path(filename or "").suffix.lower().strip()


def _match_signature(prefix: bytes) -> str | None:
    for signature, mimetype in MAGIC_SIGNATURES:
        if prefix.startswith(signature):
            return mimetype
    return None


def _looks_like_message(prefix: bytes) -> bool:
    known_headers = 0
    for line in prefix.lstrip().splitlines()[:40]:
        if not line.strip():
            break
        if line[:1] in (b" ", b"\t"):
            continue
        match = HEADER_LINE_PATTERN.match(line)
        if match is None:
            return False
        if match.group(1).lower() in MESSAGE_HEADER_NAMES:
            known_headers += 1
    return known_headers >= 2


def _match_text_signature(prefix: bytes) -> str | None:
    stripped = prefix.lstrip(b"\xef\xbb\xbf").lstrip()
    lowered = stripped[:64].lower()
    if MBOX_FROM_LINE_PATTERN.match(stripped):
        first_break = stripped.find(b"\n")
        if first_break != -1 and _looks_like_message(stripped[first_break + 1 :]):
            return MBOX_TYPE
    if _looks_like_message(stripped):
        return MESSAGE_TYPE
    if lowered.startswith(b"<!doctype html") or lowered.startswith(b"<html"):
        return "text/html"
    if lowered.startswith(b"<?xml"):
        return "application/xml"
    return None


def _refine_zip(content: bytes) -> str | None:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = archive.namelist()
    except (zipfile.BadZipFile, OSError, ValueError):
        return None

    if "[Content_Types].xml" not in names:
        return None
    for marker, mimetype in OOXML_MARKERS:
        if any(name.startswith(marker) for name in names):
            return mimetype
    return None


def _extension_type(filename: str | None) -> str | None:
    extension = _normalize_extension(filename)
    if not extension:
        return None
    if extension in EXTENSION_TYPES:
        return EXTENSION_TYPES[extension]
    guessed, _ = mimetypes.guess_type(f"file{extension}")
    return guessed


def _looks_like_text(prefix: bytes) -> bool:
    if not prefix:
        return False
    if b"\x00" in prefix:
        return False
    try:
        prefix.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte sequence cut off at the prefix boundary still counts as text.
        if exc.start < len(prefix) - 4:
            return False
    printable = sum(1 for byte in prefix if 32 <= byte <= 126 or byte in {9, 10, 13} or byte >= 128)
    return printable / len(prefix) >= 0.95


class TypeDetector:
    """Classifies raw bytes into a mimetype.

    Resolution order: magic-byte and content signatures, then the filename extension when the
    signature is missing or ambiguous, then the external detection capability for binary content.
    Anything still unresolved is reported as the generic binary type.
    """

    def __init__(self, external: DetectionCapability | None = None, retry_policy=None) -> None:
        self.external = external
        self.retry_policy = retry_policy

    def detect(self, content: bytes, filename: str | None = None) -> Detection:
        prefix = content[:DETECTION_PREFIX_BYTES]
        if not prefix:
            return Detection(GENERIC_BINARY_TYPE, "fallback", ["Empty content."])

        magic_type = _match_signature(prefix)
        if magic_type == ZIP_TYPE:
            return Detection(_refine_zip(content) or ZIP_TYPE, "magic")
        if magic_type == OLE_TYPE:
            return self._resolve_ole(content, filename)
        if magic_type:
            return Detection(magic_type, "magic")

        text_type = _match_text_signature(prefix)
        if text_type:
            return Detection(text_type, "magic")

        extension_type = _extension_type(filename)
        if extension_type:
            return Detection(extension_type, "extension")

        if _looks_like_text(prefix):
            return Detection("text/plain", "text_heuristic")

        return self._detect_externally(content, filename)

    def _resolve_ole(self, content: bytes, filename: str | None) -> Detection:
        extension = _normalize_extension(filename)
        if extension in OLE_EXTENSION_TYPES:
            return Detection(OLE_EXTENSION_TYPES[extension], "extension")

        external = self._detect_externally(content, filename)
        if not external.is_generic:
            return external
        return Detection(OLE_TYPE, "magic", external.warnings)

    def _detect_externally(self, content: bytes, filename: str | None) -> Detection:
        if self.external is None:
            return Detection(GENERIC_BINARY_TYPE, "fallback")

        try:
            if self.retry_policy is not None:
                mimetype = self.retry_policy.call(self.external.detect, content, filename)
            else:
                mimetype = self.external.detect(content, filename)
        except ProcessingError as exc:
            logger.warning("External detection failed for %s: %s", filename or "<unnamed>", exc)
            return Detection(GENERIC_BINARY_TYPE, "fallback", [f"{exc.kind}: {exc.message}"])

        if not mimetype or mimetype == GENERIC_BINARY_TYPE:
            return Detection(GENERIC_BINARY_TYPE, "fallback")
        return Detection(mimetype, "external")
