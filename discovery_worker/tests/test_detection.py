import io
import unittest
import zipfile

from discovery_worker.detection import (
    DOCX_TYPE,
    GENERIC_BINARY_TYPE,
    MBOX_TYPE,
    MESSAGE_TYPE,
    ZIP_TYPE,
    TypeDetector,
)
from discovery_worker.errors import ExternalServiceUnavailable

OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def _zip_bytes(entries: dict) -> bytes:
    payload = io.BytesIO()
    with zipfile.ZipFile(payload, mode="w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return payload.getvalue()


class _FakeExternal:
    def __init__(self, mimetype=None, error=None):
        self.mimetype = mimetype
        self.error = error
        self.calls = 0

    def detect(self, content, filename=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.mimetype


class TestTypeDetector(unittest.TestCase):
    def setUp(self):
        self.detector = TypeDetector()

    def test_pdf_magic(self):
        detection = self.detector.detect(b"%PDF-1.7\n%binary", "whatever.bin")
        self.assertEqual(detection.mimetype, "application/pdf")
        self.assertEqual(detection.source, "magic")

    def test_zip_refined_to_docx_by_part_names(self):
        content = _zip_bytes({"[Content_Types].xml": "<Types/>", "word/document.xml": "<w:document/>"})
        detection = self.detector.detect(content, "renamed.zip")
        self.assertEqual(detection.mimetype, DOCX_TYPE)

    def test_plain_zip_stays_zip(self):
        content = _zip_bytes({"notes.txt": "hello"})
        self.assertEqual(self.detector.detect(content, "bundle.docx").mimetype, ZIP_TYPE)

    def test_message_headers_detected_without_extension(self):
        content = b"From: alice@example.com\nTo: bob@example.com\nSubject: Hi\n\nBody"
        detection = self.detector.detect(content, None)
        self.assertEqual(detection.mimetype, MESSAGE_TYPE)

    def test_mbox_from_line(self):
        content = (
            b"From alice@example.com Mon Jan  1 00:00:00 2024\n"
            b"From: alice@example.com\nTo: bob@example.com\n\nHello\n"
        )
        self.assertEqual(self.detector.detect(content, "archive").mimetype, MBOX_TYPE)

    def test_extension_used_when_no_signature(self):
        detection = self.detector.detect(b"\x00\x01\x02binary", "export.csv")
        self.assertEqual(detection.mimetype, "text/csv")
        self.assertEqual(detection.source, "extension")

    def test_text_heuristic(self):
        detection = self.detector.detect(b"just a few plain words", None)
        self.assertEqual(detection.mimetype, "text/plain")
        self.assertEqual(detection.source, "text_heuristic")

    def test_unknown_binary_without_external_is_generic(self):
        detection = self.detector.detect(b"\x00\x01\x02\x03binary-blob", None)
        self.assertTrue(detection.is_generic)
        self.assertEqual(detection.source, "fallback")

    def test_empty_content_is_generic(self):
        detection = self.detector.detect(b"", "empty.txt")
        self.assertEqual(detection.mimetype, GENERIC_BINARY_TYPE)
        self.assertTrue(detection.warnings)

    def test_ole_container_resolved_by_extension(self):
        detection = self.detector.detect(OLE_MAGIC + b"\x00" * 64, "mail.msg")
        self.assertEqual(detection.mimetype, "application/vnd.ms-outlook")

    def test_external_detection_used_for_unknown_binary(self):
        external = _FakeExternal(mimetype="application/x-custom")
        detection = TypeDetector(external).detect(b"\x00\x01\x02\x03binary-blob", None)
        self.assertEqual(detection.mimetype, "application/x-custom")
        self.assertEqual(detection.source, "external")
        self.assertEqual(external.calls, 1)

    def test_external_failure_falls_back_with_warning(self):
        external = _FakeExternal(error=ExternalServiceUnavailable("tika down"))
        detection = TypeDetector(external).detect(b"\x00\x01\x02\x03binary-blob", None)
        self.assertTrue(detection.is_generic)
        self.assertIn("ExternalServiceUnavailable", detection.warnings[0])

    def test_external_not_consulted_for_magic_match(self):
        external = _FakeExternal(mimetype="application/x-custom")
        TypeDetector(external).detect(b"%PDF-1.4", None)
        self.assertEqual(external.calls, 0)


if __name__ == "__main__":
    unittest.main()
