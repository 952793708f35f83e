from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeStatus(str, Enum):
    PENDING = "Pending"
    DETECTING = "Detecting"
    EXPANDING = "Expanding"
    EXTRACTING = "Extracting"
    DONE = "Done"
    FAILED = "Failed"


NODE_STATUS_ORDER = {
    NodeStatus.PENDING: 0,
    NodeStatus.DETECTING: 1,
    NodeStatus.EXPANDING: 2,
    NodeStatus.EXTRACTING: 3,
    NodeStatus.DONE: 4,
    NodeStatus.FAILED: 4,
}
TERMINAL_NODE_STATUSES = {NodeStatus.DONE, NodeStatus.FAILED}


class JobStatus(str, Enum):
    QUEUED = "Queued"
    DETECTING = "Detecting"
    EXPANDING = "Expanding"
    PER_NODE_EXTRACTION = "PerNodeExtraction"
    PERSISTING = "Persisting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class OutputKind(str, Enum):
    TEXT = "text"
    METADATA = "metadata"
    EMBEDDED = "embedded"
    RENDER = "render"


# Output kinds that produce a persisted artifact per node.
ARTIFACT_KINDS = (OutputKind.TEXT, OutputKind.METADATA, OutputKind.RENDER)


class Capability(str, Enum):
    EXTRACT_EMBEDDED = "extract_embedded"
    EXTRACT_TEXT = "extract_text"
    EXTRACT_METADATA = "extract_metadata"
    RENDER = "render"


OUTPUT_CAPABILITIES = {
    OutputKind.TEXT: Capability.EXTRACT_TEXT,
    OutputKind.METADATA: Capability.EXTRACT_METADATA,
    OutputKind.EMBEDDED: Capability.EXTRACT_EMBEDDED,
    OutputKind.RENDER: Capability.RENDER,
}


class DocumentClass(str, Enum):
    DOCUMENT = "Document"
    MESSAGE = "Message"
    FILE = "File"


FILE_ELEMENTS = ("FileName", "FilePath", "FileSize", "Hash")

PRODUCTION_VOCABULARY: dict[DocumentClass, tuple[str, ...]] = {
    DocumentClass.MESSAGE: (
        "From",
        "To",
        "CC",
        "BCC",
        "Subject",
        "Header",
        "DateSent",
        "DateReceived",
        "HasAttachments",
        "AttachmentCount",
        "AttachmentNames",
        "ReadFlag",
        "ImportanceFlag",
        "MessageClass",
        "FlagStatus",
    ),
    DocumentClass.DOCUMENT: ("Language", "StartPage", "EndPage", "ReviewComment", *FILE_ELEMENTS),
    DocumentClass.FILE: (
        "FileName",
        "FileExtension",
        "FileSize",
        "DateCreated",
        "DateAccessed",
        "DateModified",
        "DatePrinted",
        "Title",
        "Subject",
        "Author",
        "Company",
        "Category",
        "Keywords",
        "Comments",
    ),
}


class MessageFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    From: str | None = None
    To: str | None = None
    CC: str | None = None
    BCC: str | None = None
    Subject: str | None = None
    Header: str | None = None
    DateSent: str | None = None
    DateReceived: str | None = None
    HasAttachments: bool | None = None
    AttachmentCount: int | None = None
    AttachmentNames: list[str] | None = None
    ReadFlag: bool | None = None
    ImportanceFlag: str | None = None
    MessageClass: str | None = None
    FlagStatus: str | None = None


class DocumentFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    Language: str | None = None
    StartPage: int | None = None
    EndPage: int | None = None
    ReviewComment: str | None = None
    FileName: str | None = None
    FilePath: str | None = None
    FileSize: int | None = None
    Hash: str | None = None


class FileFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    FileName: str | None = None
    FileExtension: str | None = None
    FileSize: int | None = None
    DateCreated: str | None = None
    DateAccessed: str | None = None
    DateModified: str | None = None
    DatePrinted: str | None = None
    Title: str | None = None
    Subject: str | None = None
    Author: str | None = None
    Company: str | None = None
    Category: str | None = None
    Keywords: str | None = None
    Comments: str | None = None


CLASS_FIELD_MODELS: dict[DocumentClass, type[BaseModel]] = {
    DocumentClass.MESSAGE: MessageFields,
    DocumentClass.DOCUMENT: DocumentFields,
    DocumentClass.FILE: FileFields,
}


class ProductionRecord(BaseModel):
    """Metadata projection of one node onto its document class vocabulary."""

    model_config = ConfigDict(extra="forbid")

    document_class: DocumentClass
    entries: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fields_belong_to_class(self) -> "ProductionRecord":
        model = CLASS_FIELD_MODELS[self.document_class]
        validated = model.model_validate(self.entries)
        self.entries = validated.model_dump(exclude_none=True)
        return self

    def keys(self) -> set[str]:
        return set(self.entries)


class IntakeEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    source_location: str
    requested_outputs: list[OutputKind] = Field(
        default_factory=lambda: [OutputKind.TEXT, OutputKind.METADATA, OutputKind.EMBEDDED]
    )
    filename: str | None = None

    @field_validator("job_id", "source_location")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator("requested_outputs")
    @classmethod
    def _at_least_one_output(cls, value: list[OutputKind]) -> list[OutputKind]:
        deduplicated = list(dict.fromkeys(value))
        if not deduplicated:
            raise ValueError("at least one output must be requested")
        return deduplicated


@dataclass(frozen=True)
class NodeError:
    kind: str
    message: str
    capability: str | None = None

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        if self.capability:
            payload["capability"] = self.capability
        return payload


@dataclass
class FileNode:
    """One file or embedded sub-file in a job's extraction tree.

    ``parent_id`` is a lookup-only back-reference; ownership runs through the parent's ``children`` ids.
    """

    node_id: str
    name: str
    position: str
    depth: int
    content_hash: str
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    content: bytes | None = field(default=None, repr=False)
    mimetype: str | None = None
    detection_source: str | None = None
    processor: str | None = None
    document_class: DocumentClass | None = None
    text: str | None = None
    raw_properties: dict[str, Any] = field(default_factory=dict)
    production_record: ProductionRecord | None = None
    extensions: dict[str, Any] = field(default_factory=dict)
    render_bytes: bytes | None = field(default=None, repr=False)
    render_unavailable: bool = False
    status: NodeStatus = NodeStatus.PENDING
    error: NodeError | None = None
    capability_errors: list[NodeError] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)
    occurrences: list[str] = field(default_factory=list)
    cycle_of: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES

    def transition(self, status: NodeStatus) -> None:
        if self.status == status and not self.is_terminal:
            return
        if self.is_terminal:
            raise ValueError(f"Node {self.node_id} is already terminal ({self.status.value}).")
        if NODE_STATUS_ORDER[status] < NODE_STATUS_ORDER[self.status]:
            raise ValueError(
                f"Node {self.node_id} cannot move from {self.status.value} back to {status.value}."
            )
        self.status = status

    def fail(self, kind: str, message: str) -> None:
        self.transition(NodeStatus.FAILED)
        self.error = NodeError(kind=kind, message=message)

    def record_capability_error(self, kind: str, message: str, capability: str) -> None:
        self.capability_errors.append(NodeError(kind=kind, message=message, capability=capability))


@dataclass
class ProcessingJob:
    job_id: str
    root_node_id: str | None
    requested_outputs: frozenset[OutputKind]
    attempt: int = 1
    status: JobStatus = JobStatus.QUEUED
    error: NodeError | None = None

    def wants(self, output: OutputKind) -> bool:
        return output in self.requested_outputs


def derive_job_status(root: FileNode | None, nodes: list[FileNode]) -> JobStatus | None:
    """Aggregate job status from node statuses; ``None`` while any node is still in flight."""

    if root is None:
        return JobStatus.FAILED
    if any(not node.is_terminal for node in nodes):
        return None
    if root.status == NodeStatus.FAILED:
        return JobStatus.FAILED
    return JobStatus.COMPLETED


class NodeManifestEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    node_id: str
    parent_id: str | None
    children: list[str]
    name: str
    position: str
    depth: int
    content_hash: str
    size_bytes: int | None = None
    mimetype: str | None
    detection_source: str | None
    processor: str | None
    document_class: DocumentClass | None
    status: NodeStatus
    error: dict[str, str] | None = None
    capability_errors: list[dict[str, str]] = Field(default_factory=list)
    artifacts: dict[str, str] = Field(default_factory=dict)
    render_unavailable: bool = False
    occurrences: list[str] = Field(default_factory=list)
    cycle_of: str | None = None
    warnings: list[str] = Field(default_factory=list)


class JobManifest(BaseModel):
    """Final job record enumerating every node's terminal status."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    attempt: int
    requested_outputs: list[OutputKind]
    root_node_id: str | None
    error: dict[str, str] | None = None
    node_count: int
    failed_node_count: int
    nodes: list[NodeManifestEntry]
    started_at: str
    finished_at: str
