import hashlib
import io
import unittest
import zipfile
from email.message import EmailMessage

from PIL import Image
from pypdf import PdfWriter

from discovery_worker.detection import MESSAGE_TYPE
from discovery_worker.errors import CorruptInput
from discovery_worker.processors import (
    PROCESSORS,
    ProcessorKind,
    dedupe_checksum,
    html_to_text,
)
from discovery_worker.rendering import text_to_pdf

CORE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<cp:coreProperties xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties"
    xmlns:dc="http://purl.org/dc/elements/1.1/"
    xmlns:dcterms="http://purl.org/dc/terms/">
  <dc:title>Quarterly Plan</dc:title>
  <dc:creator>Ann Analyst</dc:creator>
  <dcterms:created>2024-03-01T10:00:00Z</dcterms:created>
</cp:coreProperties>
"""

DOCUMENT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">
  <w:body>
    <w:p><w:r><w:t>First paragraph</w:t></w:r></w:p>
    <w:p><w:r><w:t>Second paragraph</w:t></w:r></w:p>
  </w:body>
</w:document>
"""


def _zip_bytes(entries: dict) -> bytes:
    payload = io.BytesIO()
    with zipfile.ZipFile(payload, mode="w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return payload.getvalue()


def _docx_bytes(extra: dict | None = None) -> bytes:
    entries = {
        "[Content_Types].xml": "<Types/>",
        "word/document.xml": DOCUMENT_XML,
        "docProps/core.xml": CORE_XML,
    }
    entries.update(extra or {})
    return _zip_bytes(entries)


def _message_with_attachment() -> bytes:
    message = EmailMessage()
    message["From"] = "alice@example.com"
    message["To"] = "bob@example.com"
    message["Subject"] = "Contract"
    message["Date"] = "Tue, 02 Jan 2024 10:00:00 -0500"
    message["Message-ID"] = "<contract-1@example.com>"
    message.set_content("Please review the attached file.")
    message.add_attachment(b"attachment-bytes", maintype="application", subtype="octet-stream", filename="terms.bin")
    return message.as_bytes()


def _png_bytes(size=(4, 3)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, "red").save(buffer, format="PNG")
    return buffer.getvalue()


def _blank_pdf_bytes() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.add_metadata({"/Title": "Scanned Exhibit"})
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestZipProcessor(unittest.TestCase):
    def setUp(self):
        self.processor = PROCESSORS[ProcessorKind.ZIP]

    def test_children_in_archive_order(self):
        content = _zip_bytes({"b.txt": "bee", "a.txt": "ay", "nested/c.txt": "see"})
        expansion = self.processor.extract_embedded(content)
        self.assertEqual([item.name for item in expansion.children], ["b.txt", "a.txt", "nested/c.txt"])
        self.assertEqual(expansion.children[1].content, b"ay")

    def test_traversal_entries_are_skipped_with_warning(self):
        content = _zip_bytes({"../evil.txt": "nope", "ok.txt": "fine"})
        expansion = self.processor.extract_embedded(content)
        self.assertEqual([item.name for item in expansion.children], ["ok.txt"])
        self.assertTrue(any("unsafe" in warning for warning in expansion.warnings))

    def test_corrupt_archive_raises(self):
        with self.assertRaises(CorruptInput):
            self.processor.extract_embedded(b"PK\x03\x04not really a zip")

    def test_metadata_counts_entries(self):
        content = _zip_bytes({"a.txt": "12345", "b.txt": "678"})
        properties = self.processor.extract_metadata(content)
        self.assertEqual(properties["Entry-Count"], 2)
        self.assertEqual(properties["Uncompressed-Size"], 8)


class TestMboxProcessor(unittest.TestCase):
    def setUp(self):
        self.processor = PROCESSORS[ProcessorKind.MBOX]

    def test_messages_split_and_unescaped(self):
        content = (
            b"From alice@example.com Mon Jan  1 00:00:00 2024\n"
            b"From: alice@example.com\nSubject: one\n\n>From the desk of Alice\n\n"
            b"From bob@example.com Mon Jan  1 00:00:00 2024\n"
            b"From: bob@example.com\nSubject: two\n\nSecond\n"
        )
        expansion = self.processor.extract_embedded(content)

        self.assertEqual([item.name for item in expansion.children], ["mbox-message-1.eml", "mbox-message-2.eml"])
        self.assertTrue(all(item.mimetype_hint == MESSAGE_TYPE for item in expansion.children))
        self.assertIn(b"\nFrom the desk of Alice", expansion.children[0].content)
        self.assertEqual(self.processor.extract_metadata(content), {"Message-Count": 2})

    def test_missing_separator_is_corrupt(self):
        with self.assertRaises(CorruptInput):
            self.processor.extract_embedded(b"garbage first line\nFrom x\n")


class TestRfc822Processor(unittest.TestCase):
    def setUp(self):
        self.processor = PROCESSORS[ProcessorKind.RFC822]
        self.content = _message_with_attachment()

    def test_attachments_become_children(self):
        expansion = self.processor.extract_embedded(self.content)
        self.assertEqual(len(expansion.children), 1)
        self.assertEqual(expansion.children[0].name, "terms.bin")
        self.assertEqual(expansion.children[0].content, b"attachment-bytes")

    def test_transcript_lists_headers_before_body(self):
        text = self.processor.extract_text(self.content)
        self.assertTrue(text.startswith("Date: Tue, 02 Jan 2024 10:00:00 -0500\nFrom: alice@example.com"))
        self.assertIn("Subject: Contract", text)
        self.assertIn("Please review the attached file.", text)

    def test_metadata_reports_attachments(self):
        properties = self.processor.extract_metadata(self.content)
        self.assertEqual(properties["From"], "alice@example.com")
        self.assertTrue(properties["Has-Attachments"])
        self.assertEqual(properties["Attachment-Count"], 1)
        self.assertEqual(properties["Attachment-Names"], "terms.bin")

    def test_render_produces_pdf(self):
        self.assertTrue(self.processor.render(self.content).startswith(b"%PDF"))


class TestOoxmlProcessor(unittest.TestCase):
    def setUp(self):
        self.processor = PROCESSORS[ProcessorKind.OOXML]

    def test_docx_text(self):
        text = self.processor.extract_text(_docx_bytes())
        self.assertEqual(text, "First paragraph\nSecond paragraph")

    def test_docx_core_properties(self):
        properties = self.processor.extract_metadata(_docx_bytes())
        self.assertEqual(properties["dc:title"], "Quarterly Plan")
        self.assertEqual(properties["dc:creator"], "Ann Analyst")
        self.assertEqual(properties["dcterms:created"], "2024-03-01T10:00:00Z")

    def test_embedded_media_named_by_basename(self):
        content = _docx_bytes({"word/media/image1.png": _png_bytes(), "word/styles.xml": "<styles/>"})
        expansion = self.processor.extract_embedded(content)
        self.assertEqual([item.name for item in expansion.children], ["image1.png"])


class TestTextAndImageProcessors(unittest.TestCase):
    def test_html_text_strips_markup(self):
        processor = PROCESSORS[ProcessorKind.TEXT]
        markup = b"<html lang='de'><head><title>Memo</title><style>p{}</style></head><body><p>Hello &amp; bye</p></body></html>"
        text = processor.extract_text(markup, "memo.html", "text/html")
        self.assertIn("Hello & bye", text)
        self.assertNotIn("<", text)
        self.assertNotIn("p{}", text)
        properties = processor.extract_metadata(markup, "memo.html", "text/html")
        self.assertEqual(properties["dc:title"], "Memo")
        self.assertEqual(properties["Content-Language"], "de")

    def test_legacy_encoding_decoded(self):
        processor = PROCESSORS[ProcessorKind.TEXT]
        self.assertEqual(processor.extract_text(b"caf\xe9", "menu.txt", "text/plain"), "caf\xe9")
        self.assertEqual(processor.extract_metadata(b"caf\xe9")["Content-Encoding"], "cp1252")

    def test_image_metadata(self):
        properties = PROCESSORS[ProcessorKind.IMAGE].extract_metadata(_png_bytes((4, 3)))
        self.assertEqual(properties["Image-Width"], 4)
        self.assertEqual(properties["Image-Height"], 3)
        self.assertEqual(properties["Image-Format"], "PNG")

    def test_image_render(self):
        self.assertTrue(PROCESSORS[ProcessorKind.IMAGE].render(_png_bytes()).startswith(b"%PDF"))

    def test_unreadable_image_is_corrupt(self):
        with self.assertRaises(CorruptInput):
            PROCESSORS[ProcessorKind.IMAGE].extract_metadata(b"\x89PNG\r\n\x1a\nbroken")


class TestPdfProcessor(unittest.TestCase):
    def setUp(self):
        self.processor = PROCESSORS[ProcessorKind.PDF]

    def test_metadata_of_blank_pdf(self):
        properties = self.processor.extract_metadata(_blank_pdf_bytes())
        self.assertEqual(properties["/Title"], "Scanned Exhibit")
        self.assertEqual(properties["Page-Count"], 1)
        self.assertFalse(properties["Has-Text-Layer"])

    def test_render_passes_pdf_through(self):
        content = _blank_pdf_bytes()
        self.assertEqual(self.processor.render(content), content)

    def test_unreadable_pdf_is_corrupt(self):
        with self.assertRaises(CorruptInput):
            self.processor.extract_metadata(b"not a pdf at all")


def test_dedupe_checksum_uses_message_id_for_messages():
    first = b"Message-ID: <same@example.com>\nSubject: a\n\nOne"
    second = b"Message-ID: <same@example.com>\nSubject: b\n\nTwo"

    assert dedupe_checksum(first, MESSAGE_TYPE) == dedupe_checksum(second, MESSAGE_TYPE)
    assert dedupe_checksum(first, MESSAGE_TYPE) == hashlib.md5(b"<same@example.com>").hexdigest()
    assert dedupe_checksum(first) == hashlib.md5(first).hexdigest()


def test_html_to_text_collapses_whitespace():
    assert html_to_text("<div>a   b</div><div>c</div>") == "a b\nc"


def test_text_to_pdf_paginates_long_text():
    pdf = text_to_pdf("\n".join(f"line {index}" for index in range(200)))
    assert pdf.startswith(b"%PDF")


if __name__ == "__main__":
    unittest.main()
