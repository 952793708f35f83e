from __future__ import annotations

import hashlib
import html
import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from xml.etree import ElementTree as ET

from PIL import ExifTags, Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from discovery_worker import rendering
from discovery_worker.detection import MESSAGE_TYPE
from discovery_worker.errors import CorruptInput, UnsupportedFormat

logger = logging.getLogger(__name__)

CONTAINER_MAX_ENTRY_SIZE_BYTES = 50 * 1024 * 1024
CONTAINER_MAX_TOTAL_UNCOMPRESSED_BYTES = 200 * 1024 * 1024
CONTAINER_MAX_COMPRESSION_RATIO = 200

TRANSCRIPT_HEADERS = ("Date", "From", "To", "CC", "BCC", "Subject")

OOXML_NAMESPACE_PREFIXES = {
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://purl.org/dc/terms/": "dcterms",
    "http://schemas.openxmlformats.org/package/2006/metadata/core-properties": "cp",
    "http://schemas.openxmlformats.org/officeDocument/2006/extended-properties": "extended-properties",
}
OOXML_PART_PREFIXES = ("word/", "xl/", "ppt/")

RESERVED_WINDOWS_NAMES = {
    "con",
    "prn",
    "aux",
    "nul",
    *(f"com{index}" for index in range(1, 10)),
    *(f"lpt{index}" for index in range(1, 10)),
}

EXIF_PROPERTY_TAGS = {"DateTime", "DateTimeOriginal", "Artist", "ImageDescription", "Make", "Model", "Software", "Copyright"}


class ProcessorKind(str, Enum):
    ZIP = "zip"
    MBOX = "mbox"
    RFC822 = "rfc822"
    PDF = "pdf"
    OOXML = "ooxml"
    TEXT = "text"
    IMAGE = "image"
    LEGACY_OFFICE = "legacy_office"
    GENERIC_BINARY = "generic_binary"


@dataclass(frozen=True)
class EmbeddedItem:
    name: str
    content: bytes = field(repr=False)
    mimetype_hint: str | None = None


@dataclass
class Expansion:
    children: list[EmbeddedItem] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def dedupe_checksum(content: bytes, mimetype: str | None = None) -> str:
    """MD5 content checksum; messages are identified by their Message-ID when they carry one."""

    if mimetype == MESSAGE_TYPE:
        message_id = _message_id(content)
        if message_id:
            return hashlib.md5(message_id.encode("utf-8")).hexdigest()
    return hashlib.md5(content).hexdigest()


def _message_id(content: bytes) -> str | None:
    try:
        headers = BytesParser(policy=policy.default).parsebytes(content, headersonly=True)
        value = headers.get("Message-ID")
    except (ValueError, TypeError, IndexError):
        return None
    cleaned = str(value or "").strip()
    return cleaned or None


def _is_unsafe_archive_name(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if normalized.startswith("/"):
        return True
    parts = [segment for segment in normalized.split("/") if segment]
    return any(segment == ".." for segment in parts)


def _is_dangerous_archive_name(name: str) -> bool:
    normalized = name.replace("\\", "/")
    parts = [segment for segment in normalized.split("/") if segment]
    for segment in parts:
        if any(ord(char) < 32 for char in segment):
            return True
        if segment.strip() != segment or segment.endswith("."):
            return True
        if ":" in segment:
            return True
        base = segment.split(".", 1)[0].lower()
        if base in RESERVED_WINDOWS_NAMES:
            return True
    return False


def _open_zip(content: bytes, label: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as exc:
        raise CorruptInput(f"{label} could not be read: {exc}") from exc


def _read_guarded_entries(archive: zipfile.ZipFile, prefixes: tuple[str, ...] | None = None) -> Expansion:
    """Read archive members in order, skipping entries the container guards reject."""

    expansion = Expansion()
    total_uncompressed_bytes = 0

    for info in archive.infolist():
        if info.is_dir():
            continue
        safe_name = info.filename.replace("\\", "/")
        if prefixes is not None and not safe_name.startswith(prefixes):
            continue

        if _is_unsafe_archive_name(info.filename):
            expansion.warnings.append(f"Blocked unsafe container entry path: {safe_name}")
            continue
        if _is_dangerous_archive_name(info.filename):
            expansion.warnings.append(f"Blocked dangerous container entry filename: {safe_name}")
            continue
        if info.flag_bits & 0x1:
            expansion.warnings.append(f"Container entry '{safe_name}' is password protected and was skipped.")
            continue
        if info.file_size > CONTAINER_MAX_ENTRY_SIZE_BYTES:
            expansion.warnings.append(f"Blocked oversized container entry '{safe_name}'.")
            continue
        if (
            info.file_size > 0
            and info.compress_size > 0
            and (info.file_size / info.compress_size) > CONTAINER_MAX_COMPRESSION_RATIO
        ):
            expansion.warnings.append(f"Blocked suspicious compression ratio for '{safe_name}'.")
            continue
        if (total_uncompressed_bytes + info.file_size) > CONTAINER_MAX_TOTAL_UNCOMPRESSED_BYTES:
            expansion.warnings.append(
                f"Blocked container entry '{safe_name}' due to total uncompressed-size guard."
            )
            continue

        try:
            member_bytes = archive.read(info)
        except RuntimeError:
            expansion.warnings.append(f"Container entry '{safe_name}' requires a password and was skipped.")
            continue
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError):
            expansion.warnings.append(f"Container entry '{safe_name}' appears corrupt and was skipped.")
            continue

        total_uncompressed_bytes += info.file_size
        expansion.children.append(EmbeddedItem(name=safe_name, content=member_bytes))

    return expansion


def html_to_text(markup: str) -> str:
    without_scripts = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", markup, flags=re.IGNORECASE | re.DOTALL)
    with_breaks = re.sub(r"<br\s*/?>|</(p|div|li|tr|h[1-6])>", "\n", without_scripts, flags=re.IGNORECASE)
    stripped = html.unescape(re.sub(r"<[^>]+>", "", with_breaks))
    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in stripped.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def _decode_text(content: bytes) -> tuple[str, str]:
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return content.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    return content.decode("latin-1"), "latin-1"


def _local_name(tag: str) -> tuple[str | None, str]:
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return None, tag


def _xml_text_nodes(payload: bytes) -> list[str]:
    root = ET.fromstring(payload)
    return [node.text for node in root.iter() if node.tag.endswith("}t") and node.text]


def _numbered_parts(names: list[str], prefix: str, stem: str) -> list[str]:
    pattern = re.compile(rf"{re.escape(stem)}(\d+)\.xml$")

    def _order(value: str) -> int:
        match = pattern.search(value)
        return int(match.group(1)) if match else 0

    return sorted(
        [name for name in names if name.startswith(prefix) and pattern.search(name)],
        key=_order,
    )


class ContentProcessor:
    """Base for the closed set of format processors.

    Capabilities a processor does not implement raise ``UnsupportedFormat``; the registry only routes
    declared capabilities, so reaching these defaults indicates a registry/processor mismatch.
    """

    kind: ProcessorKind

    def extract_embedded(self, content: bytes, name: str | None = None, mimetype: str | None = None) -> Expansion:
        raise UnsupportedFormat(mimetype or "unknown", "extract_embedded")

    def extract_text(self, content: bytes, name: str | None = None, mimetype: str | None = None) -> str:
        raise UnsupportedFormat(mimetype or "unknown", "extract_text")

    def extract_metadata(
        self, content: bytes, name: str | None = None, mimetype: str | None = None
    ) -> dict[str, Any]:
        raise UnsupportedFormat(mimetype or "unknown", "extract_metadata")

    def render(self, content: bytes, name: str | None = None, mimetype: str | None = None) -> bytes:
        raise UnsupportedFormat(mimetype or "unknown", "render")


class ZipProcessor(ContentProcessor):
    kind = ProcessorKind.ZIP

    def extract_embedded(self, content, name=None, mimetype=None):
        with _open_zip(content, "ZIP archive") as archive:
            return _read_guarded_entries(archive)

    def extract_metadata(self, content, name=None, mimetype=None):
        with _open_zip(content, "ZIP archive") as archive:
            infos = [info for info in archive.infolist() if not info.is_dir()]
            properties: dict[str, Any] = {
                "Entry-Count": len(infos),
                "Uncompressed-Size": sum(info.file_size for info in infos),
            }
            if archive.comment:
                properties["Comments"] = archive.comment.decode("utf-8", errors="replace")
        return properties


def _split_mbox(content: bytes) -> list[bytes]:
    messages: list[list[bytes]] = []
    previous_blank = True
    for line in content.lstrip().splitlines(keepends=True):
        if line.startswith(b"From ") and previous_blank:
            messages.append([])
        elif not messages:
            raise CorruptInput("Mailbox does not start with a 'From ' separator line.")
        else:
            messages[-1].append(line[1:] if line.startswith(b">From ") else line)
        previous_blank = not line.strip()
    return [b"".join(lines) for lines in messages if any(line.strip() for line in lines)]


class MboxProcessor(ContentProcessor):
    kind = ProcessorKind.MBOX

    def extract_embedded(self, content, name=None, mimetype=None):
        expansion = Expansion()
        for index, message in enumerate(_split_mbox(content), start=1):
            expansion.children.append(
                EmbeddedItem(name=f"mbox-message-{index}.eml", content=message, mimetype_hint=MESSAGE_TYPE)
            )
        return expansion

    def extract_metadata(self, content, name=None, mimetype=None):
        return {"Message-Count": len(_split_mbox(content))}


def _parse_message(content: bytes) -> EmailMessage:
    try:
        message = BytesParser(policy=policy.default).parsebytes(content)
    except (ValueError, TypeError, IndexError) as exc:
        raise CorruptInput(f"Message could not be parsed: {exc}") from exc
    if not message.keys():
        raise CorruptInput("Message has no headers.")
    return message


def _message_attachments(message: EmailMessage) -> list[EmbeddedItem]:
    attachments: list[EmbeddedItem] = []
    for index, part in enumerate(message.iter_attachments(), start=1):
        filename = part.get_filename() or f"attachment-{index}"
        if part.get_content_type() == MESSAGE_TYPE and part.is_multipart():
            payload = part.get_payload(0).as_bytes()
            attachments.append(EmbeddedItem(name=filename, content=payload, mimetype_hint=MESSAGE_TYPE))
            continue
        payload = part.get_payload(decode=True) or b""
        attachments.append(EmbeddedItem(name=filename, content=payload))
    return attachments


def _message_body(message: EmailMessage) -> str:
    body = message.get_body(preferencelist=("plain", "html"))
    if body is None:
        return ""
    try:
        text = body.get_content()
    except (LookupError, ValueError) as exc:
        raise CorruptInput(f"Message body could not be decoded: {exc}") from exc
    if body.get_content_type() == "text/html":
        return html_to_text(str(text))
    return str(text).strip()


def message_transcript(message: EmailMessage) -> str:
    lines = []
    for header in TRANSCRIPT_HEADERS:
        value = message.get(header)
        if value is not None and str(value).strip():
            lines.append(f"{header}: {value}")
    return "\n".join(lines) + "\n\n" + _message_body(message)


class Rfc822Processor(ContentProcessor):
    kind = ProcessorKind.RFC822

    def extract_embedded(self, content, name=None, mimetype=None):
        return Expansion(children=_message_attachments(_parse_message(content)))

    def extract_text(self, content, name=None, mimetype=None):
        return message_transcript(_parse_message(content))

    def extract_metadata(self, content, name=None, mimetype=None):
        message = _parse_message(content)
        properties: dict[str, Any] = {}
        for key, value in message.items():
            cleaned = str(value).strip()
            if cleaned and key not in properties:
                properties[key] = cleaned

        attachment_names = [item.name for item in _message_attachments(message)]
        properties["File-Extension"] = "eml"
        properties["File-Size"] = len(content)
        properties["Has-Attachments"] = bool(attachment_names)
        properties["Attachment-Count"] = len(attachment_names)
        if attachment_names:
            properties["Attachment-Names"] = ", ".join(attachment_names)
        return properties

    def render(self, content, name=None, mimetype=None):
        return rendering.text_to_pdf(message_transcript(_parse_message(content)))


def _open_pdf(content: bytes) -> PdfReader:
    try:
        reader = PdfReader(io.BytesIO(content))
        if reader.is_encrypted and not reader.decrypt(""):
            raise CorruptInput("PDF is encrypted with a non-empty password.")
        return reader
    except (PyPdfError, ValueError, KeyError, OSError) as exc:
        raise CorruptInput(f"PDF could not be read: {exc}") from exc


def _pdf_text(reader: PdfReader) -> str:
    pages: list[str] = []
    try:
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
    except (PyPdfError, ValueError, KeyError) as exc:
        raise CorruptInput(f"PDF text extraction failed: {exc}") from exc
    return "\n\n".join(pages).strip()


class PdfProcessor(ContentProcessor):
    kind = ProcessorKind.PDF

    def extract_text(self, content, name=None, mimetype=None):
        return _pdf_text(_open_pdf(content))

    def extract_metadata(self, content, name=None, mimetype=None):
        reader = _open_pdf(content)
        properties: dict[str, Any] = {}
        for key, value in (reader.metadata or {}).items():
            cleaned = str(value).strip()
            if cleaned:
                properties[key] = cleaned
        properties["Page-Count"] = len(reader.pages)
        properties["Has-Text-Layer"] = bool(_pdf_text(reader))
        return properties

    def render(self, content, name=None, mimetype=None):
        _open_pdf(content)
        return content


def _docx_text(archive: zipfile.ZipFile) -> str:
    return "\n".join(_xml_text_nodes(archive.read("word/document.xml")))


def _pptx_text(archive: zipfile.ZipFile) -> str:
    slides = []
    for index, slide_path in enumerate(_numbered_parts(archive.namelist(), "ppt/slides/", "slide"), start=1):
        slide_text = "\n".join(text.strip() for text in _xml_text_nodes(archive.read(slide_path)) if text.strip())
        if slide_text:
            slides.append(f"Slide {index}:\n{slide_text}")
    return "\n\n".join(slides)


def _xlsx_text(archive: zipfile.ZipFile) -> str:
    names = archive.namelist()
    shared: list[str] = []
    if "xl/sharedStrings.xml" in names:
        root = ET.fromstring(archive.read("xl/sharedStrings.xml"))
        for item in root.iter():
            if item.tag.endswith("}si"):
                shared.append("".join(node.text or "" for node in item.iter() if node.tag.endswith("}t")))

    sheets = []
    for index, sheet_path in enumerate(_numbered_parts(names, "xl/worksheets/", "sheet"), start=1):
        rows = []
        for row in ET.fromstring(archive.read(sheet_path)).iter():
            if not row.tag.endswith("}row"):
                continue
            values = []
            for cell in row:
                if not cell.tag.endswith("}c"):
                    continue
                cell_type = cell.get("t")
                value_node = next((child for child in cell if child.tag.endswith("}v")), None)
                raw_value = value_node.text if value_node is not None else None
                if cell_type == "s" and raw_value is not None:
                    position = int(raw_value)
                    values.append(shared[position] if position < len(shared) else "")
                elif cell_type == "inlineStr":
                    values.append("".join(node.text or "" for node in cell.iter() if node.tag.endswith("}t")))
                elif raw_value is not None:
                    values.append(raw_value)
            if any(value.strip() for value in values):
                rows.append("\t".join(values))
        if rows:
            sheets.append(f"Sheet {index}:\n" + "\n".join(rows))
    return "\n\n".join(sheets)


def _docprops(archive: zipfile.ZipFile) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    for part in ("docProps/core.xml", "docProps/app.xml"):
        if part not in archive.namelist():
            continue
        root = ET.fromstring(archive.read(part))
        for element in root:
            namespace, local = _local_name(element.tag)
            value = (element.text or "").strip()
            if not value:
                continue
            prefix = OOXML_NAMESPACE_PREFIXES.get(namespace or "")
            properties[f"{prefix}:{local}" if prefix else local] = value
    return properties


class OoxmlProcessor(ContentProcessor):
    kind = ProcessorKind.OOXML

    def extract_embedded(self, content, name=None, mimetype=None):
        with _open_zip(content, "Office document") as archive:
            prefixes = tuple(f"{part}{folder}" for part in OOXML_PART_PREFIXES for folder in ("embeddings/", "media/"))
            expansion = _read_guarded_entries(archive, prefixes)
        expansion.children = [
            EmbeddedItem(name=PurePosixPath(item.name).name, content=item.content) for item in expansion.children
        ]
        return expansion

    def extract_text(self, content, name=None, mimetype=None):
        with _open_zip(content, "Office document") as archive:
            names = archive.namelist()
            try:
                if "word/document.xml" in names:
                    return _docx_text(archive)
                if any(item.startswith("ppt/") for item in names):
                    return _pptx_text(archive)
                if any(item.startswith("xl/") for item in names):
                    return _xlsx_text(archive)
            except (KeyError, ET.ParseError, ValueError, zipfile.BadZipFile, zlib.error) as exc:
                raise CorruptInput(f"Office document parts could not be parsed: {exc}") from exc
        raise CorruptInput("Office document contains no recognized main part.")

    def extract_metadata(self, content, name=None, mimetype=None):
        with _open_zip(content, "Office document") as archive:
            try:
                return _docprops(archive)
            except (ET.ParseError, zipfile.BadZipFile, zlib.error) as exc:
                raise CorruptInput(f"Office document properties could not be parsed: {exc}") from exc


class TextProcessor(ContentProcessor):
    kind = ProcessorKind.TEXT

    def extract_text(self, content, name=None, mimetype=None):
        text, _ = _decode_text(content)
        if mimetype == "text/html":
            return html_to_text(text)
        return text

    def extract_metadata(self, content, name=None, mimetype=None):
        text, encoding = _decode_text(content)
        properties: dict[str, Any] = {
            "Content-Encoding": encoding,
            "Line-Count": len(text.splitlines()),
        }
        if mimetype == "text/html":
            title = re.search(r"<title[^>]*>(.*?)</title>", text, flags=re.IGNORECASE | re.DOTALL)
            if title and title.group(1).strip():
                properties["dc:title"] = html.unescape(title.group(1).strip())
            language = re.search(r"<html[^>]*\blang=[\"']([^\"']+)[\"']", text, flags=re.IGNORECASE)
            if language:
                properties["Content-Language"] = language.group(1)
        return properties

    def render(self, content, name=None, mimetype=None):
        return rendering.text_to_pdf(self.extract_text(content, name, mimetype))


class ImageProcessor(ContentProcessor):
    kind = ProcessorKind.IMAGE

    def extract_metadata(self, content, name=None, mimetype=None):
        try:
            with Image.open(io.BytesIO(content)) as image:
                properties: dict[str, Any] = {
                    "Image-Width": image.width,
                    "Image-Height": image.height,
                    "Image-Format": image.format,
                    "Image-Mode": image.mode,
                }
                for tag_id, value in image.getexif().items():
                    tag_name = ExifTags.TAGS.get(tag_id)
                    if tag_name in EXIF_PROPERTY_TAGS and str(value).strip():
                        properties[f"Exif:{tag_name}"] = str(value).strip()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise CorruptInput(f"Image could not be read: {exc}") from exc
        return properties

    def render(self, content, name=None, mimetype=None):
        return rendering.image_to_pdf(content)


class LegacyOfficeProcessor(ContentProcessor):
    """OLE2 and RTF formats; text comes from the external extraction fallback."""

    kind = ProcessorKind.LEGACY_OFFICE

    def extract_metadata(self, content, name=None, mimetype=None):
        return {"Container-Format": "rtf" if content.startswith(b"{\\rtf") else "ole2"}


class GenericBinaryProcessor(ContentProcessor):
    kind = ProcessorKind.GENERIC_BINARY

    def extract_metadata(self, content, name=None, mimetype=None):
        return {}


PROCESSORS: dict[ProcessorKind, ContentProcessor] = {
    processor.kind: processor
    for processor in (
        ZipProcessor(),
        MboxProcessor(),
        Rfc822Processor(),
        PdfProcessor(),
        OoxmlProcessor(),
        TextProcessor(),
        ImageProcessor(),
        LegacyOfficeProcessor(),
        GenericBinaryProcessor(),
    )
}
