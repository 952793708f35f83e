from __future__ import annotations

from dataclasses import dataclass

from discovery_worker.detection import (
    DOCX_TYPE,
    GENERIC_BINARY_TYPE,
    MBOX_TYPE,
    MESSAGE_TYPE,
    OLE_TYPE,
    PPTX_TYPE,
    XLSX_TYPE,
    ZIP_TYPE,
)
from discovery_worker.errors import UnsupportedFormat
from discovery_worker.models import Capability, DocumentClass
from discovery_worker.processors import PROCESSORS, ContentProcessor, ProcessorKind

EMBEDDED = Capability.EXTRACT_EMBEDDED
TEXT = Capability.EXTRACT_TEXT
METADATA = Capability.EXTRACT_METADATA
RENDER = Capability.RENDER


@dataclass(frozen=True)
class ProcessorDescriptor:
    pattern: str
    kind: ProcessorKind
    capabilities: frozenset[Capability]
    priority: int
    document_class: DocumentClass = DocumentClass.FILE

    @property
    def is_wildcard(self) -> bool:
        return self.pattern.endswith("/*")

    def matches(self, mimetype: str) -> bool:
        if self.pattern == "*/*":
            return True
        if self.is_wildcard:
            return mimetype.startswith(self.pattern[:-1])
        return mimetype == self.pattern

    def declares(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass(frozen=True)
class ResolvedProcessor:
    descriptor: ProcessorDescriptor
    processor: ContentProcessor

    @property
    def kind(self) -> ProcessorKind:
        return self.descriptor.kind

    def declares(self, capability: Capability) -> bool:
        return self.descriptor.declares(capability)


@dataclass(frozen=True)
class ProcessorRegistry:
    """Immutable mimetype to processor table.

    Exact patterns win over wildcard patterns; within a tier the highest priority wins and equal
    priorities resolve to the first registered descriptor.
    """

    descriptors: tuple[ProcessorDescriptor, ...]

    def resolve(self, mimetype: str | None) -> ResolvedProcessor:
        normalized = (mimetype or GENERIC_BINARY_TYPE).split(";", 1)[0].strip().lower()
        exact = [descriptor for descriptor in self.descriptors if not descriptor.is_wildcard and descriptor.matches(normalized)]
        candidates = exact or [descriptor for descriptor in self.descriptors if descriptor.is_wildcard and descriptor.matches(normalized)]
        if not candidates:
            raise UnsupportedFormat(normalized, "dispatch", f"No processor registered for '{normalized}'.")

        # max() keeps the first of equal keys, which gives first-registered precedence on ties.
        selected = max(candidates, key=lambda descriptor: descriptor.priority)
        return ResolvedProcessor(descriptor=selected, processor=PROCESSORS[selected.kind])


def _descriptor(pattern, kind, capabilities, priority, document_class=DocumentClass.FILE) -> ProcessorDescriptor:
    return ProcessorDescriptor(
        pattern=pattern,
        kind=kind,
        capabilities=frozenset(capabilities),
        priority=priority,
        document_class=document_class,
    )


def build_registry() -> ProcessorRegistry:
    return ProcessorRegistry(
        descriptors=(
            _descriptor(ZIP_TYPE, ProcessorKind.ZIP, {EMBEDDED, METADATA}, 95),
            _descriptor("application/x-zip-compressed", ProcessorKind.ZIP, {EMBEDDED, METADATA}, 95),
            _descriptor(MBOX_TYPE, ProcessorKind.MBOX, {EMBEDDED, METADATA}, 90),
            _descriptor(
                MESSAGE_TYPE,
                ProcessorKind.RFC822,
                {EMBEDDED, TEXT, METADATA, RENDER},
                100,
                DocumentClass.MESSAGE,
            ),
            _descriptor("application/pdf", ProcessorKind.PDF, {TEXT, METADATA, RENDER}, 100),
            _descriptor(DOCX_TYPE, ProcessorKind.OOXML, {EMBEDDED, TEXT, METADATA}, 90),
            _descriptor(XLSX_TYPE, ProcessorKind.OOXML, {EMBEDDED, TEXT, METADATA}, 90),
            _descriptor(PPTX_TYPE, ProcessorKind.OOXML, {EMBEDDED, TEXT, METADATA}, 90),
            _descriptor("application/msword", ProcessorKind.LEGACY_OFFICE, {METADATA}, 60),
            _descriptor("application/vnd.ms-excel", ProcessorKind.LEGACY_OFFICE, {METADATA}, 60),
            _descriptor("application/vnd.ms-powerpoint", ProcessorKind.LEGACY_OFFICE, {METADATA}, 60),
            _descriptor(
                "application/vnd.ms-outlook",
                ProcessorKind.LEGACY_OFFICE,
                {METADATA},
                60,
                DocumentClass.MESSAGE,
            ),
            _descriptor("application/rtf", ProcessorKind.LEGACY_OFFICE, {METADATA}, 60),
            _descriptor(OLE_TYPE, ProcessorKind.LEGACY_OFFICE, {METADATA}, 50),
            _descriptor("application/json", ProcessorKind.TEXT, {TEXT, METADATA, RENDER}, 70),
            _descriptor("application/xml", ProcessorKind.TEXT, {TEXT, METADATA, RENDER}, 70),
            _descriptor("text/*", ProcessorKind.TEXT, {TEXT, METADATA, RENDER}, 80),
            _descriptor("image/*", ProcessorKind.IMAGE, {METADATA, RENDER}, 70, DocumentClass.DOCUMENT),
            _descriptor("*/*", ProcessorKind.GENERIC_BINARY, {METADATA}, 0),
        )
    )


PROCESSOR_REGISTRY = build_registry()
