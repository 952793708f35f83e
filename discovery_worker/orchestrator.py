from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from discovery_worker.artifact_store import ArtifactStore, artifact_key
from discovery_worker.detection import GENERIC_BINARY_TYPE, TypeDetector
from discovery_worker.errors import (
    CorruptInput,
    JobCancelled,
    ProcessingError,
    ResourceLimitExceeded,
    StorageError,
    UnsupportedFormat,
)
from discovery_worker.metadata_mapper import classify_document_class, project_metadata
from discovery_worker.models import (
    ARTIFACT_KINDS,
    OUTPUT_CAPABILITIES,
    Capability,
    DocumentClass,
    FileNode,
    IntakeEntry,
    JobManifest,
    JobStatus,
    NodeError,
    NodeManifestEntry,
    NodeStatus,
    OutputKind,
    ProcessingJob,
    ProductionRecord,
    derive_job_status,
)
from discovery_worker.registry import PROCESSOR_REGISTRY, ProcessorRegistry, ResolvedProcessor
from discovery_worker.retry_policy import RetryPolicy
from discovery_worker.scheduler import Scheduler, SynchronousScheduler
from discovery_worker.tika_client import ExternalResult
from discovery_worker.tree_builder import ExtractionTree, TreeBuilder

logger = logging.getLogger(__name__)

RENDER_FAILURES = (ProcessingError, OSError, ValueError, UnicodeError)


@dataclass(frozen=True)
class NodeRef:
    job_id: str
    node_id: str


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    status: str
    node_id: str | None = None
    attempt: int | None = None
    detail: str | None = None


StatusListener = Callable[[JobEvent], None]


@dataclass
class _JobRun:
    job: ProcessingJob
    source_name: str
    started_at: str
    tree: ExtractionTree | None = None
    builder: TreeBuilder | None = None
    exception: ProcessingError | None = None
    failed_stage: str | None = None


@dataclass
class JobOutcome:
    job: ProcessingJob
    manifest: JobManifest
    tree: ExtractionTree | None = None
    written_keys: list[str] = field(default_factory=list)
    exception: ProcessingError | None = None
    failed_stage: str | None = None

    @property
    def status(self) -> JobStatus:
        return self.job.status


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineOrchestrator:
    """Drives one job through detection, expansion, per-node extraction and persistence.

    Each stage is a unit of work submitted to the scheduler and is safe to replay: detection skips
    detected nodes, extraction skips output kinds whose artifact already exists and persistence never
    rewrites an existing key. Node-level failures stay on the node; only a failed root, a job-scope
    resource limit or a storage failure that outlives its retries fails the job.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        detector: TypeDetector | None = None,
        external=None,
        registry: ProcessorRegistry = PROCESSOR_REGISTRY,
        scheduler: Scheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        max_depth: int = 8,
        max_nodes: int = 10000,
        node_parallelism: int = 4,
        cancellation_check: Callable[[str], bool] | None = None,
    ) -> None:
        self.store = store
        self.external = external
        self.retry_policy = retry_policy or RetryPolicy()
        self.detector = detector or TypeDetector(external, self.retry_policy)
        self.registry = registry
        self.scheduler = scheduler or SynchronousScheduler()
        self.max_depth = max_depth
        self.max_nodes = max_nodes
        self.node_parallelism = max(1, node_parallelism)
        self.cancellation_check = cancellation_check
        self._listeners: list[StatusListener] = []
        self._runs: dict[str, _JobRun] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config,
        store: ArtifactStore,
        *,
        external=None,
        scheduler: Scheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        cancellation_check: Callable[[str], bool] | None = None,
    ) -> "PipelineOrchestrator":
        return cls(
            store,
            external=external,
            scheduler=scheduler,
            retry_policy=retry_policy or RetryPolicy.from_config(config),
            max_depth=config.max_depth,
            max_nodes=config.max_nodes,
            node_parallelism=config.node_parallelism,
            cancellation_check=cancellation_check,
        )

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def stage_handlers(self) -> dict[str, Callable[[NodeRef], Any]]:
        return {
            "detect": self.detect,
            "expand": self.expand,
            "extract_node": self.extract_node,
            "persist": self.persist,
        }

    def _emit(self, run: _JobRun, status: str, node_id: str | None = None, detail: str | None = None) -> None:
        event = JobEvent(job_id=run.job.job_id, status=status, node_id=node_id, attempt=run.job.attempt, detail=detail)
        for listener in self._listeners:
            listener(event)

    def _set_job_status(self, run: _JobRun, status: JobStatus, detail: str | None = None) -> None:
        run.job.status = status
        self._emit(run, status.value, detail=detail)

    def cancel(self, job_id: str) -> bool:
        """Cancel a running job; returns False when no run of ``job_id`` is in progress."""

        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is not None and event.is_set():
            return True
        return bool(self.cancellation_check and self.cancellation_check(job_id))

    def _run_for(self, ref: NodeRef) -> _JobRun:
        with self._lock:
            return self._runs[ref.job_id]

    # Stage handlers

    def detect(self, ref: NodeRef) -> str | None:
        run = self._run_for(ref)
        node = run.tree.get(ref.node_id)
        run.builder.detect_node(node)
        return node.mimetype

    def expand(self, ref: NodeRef) -> list[str]:
        run = self._run_for(ref)
        node = run.tree.get(ref.node_id)
        run.builder.expand(run.tree, node, expand_embedded=run.job.wants(OutputKind.EMBEDDED))
        return list(node.children)

    def extract_node(self, ref: NodeRef) -> NodeStatus:
        run = self._run_for(ref)
        node = run.tree.get(ref.node_id)
        if node.is_terminal or self.is_cancelled(ref.job_id):
            return node.status

        self._move(run, node, NodeStatus.EXTRACTING)
        resolved = self.registry.resolve(node.mimetype)
        try:
            self._extract_metadata_and_text(run, node, resolved)
        except (StorageError, JobCancelled):
            raise
        except ProcessingError as exc:
            self._fail_node(run, node, exc)
            return node.status
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected processor failure on node %s", node.node_id)
            self._fail_node(run, node, CorruptInput(f"Processor '{resolved.kind.value}' failed: {exc}"))
            return node.status

        if run.job.wants(OutputKind.RENDER):
            self._render(run, node, resolved)

        self._move(run, node, NodeStatus.DONE)
        return node.status

    def persist(self, ref: NodeRef) -> list[str]:
        run = self._run_for(ref)
        node = run.tree.get(ref.node_id)
        if node.status != NodeStatus.DONE or node.cycle_of is not None:
            return []

        written = []
        for kind in ARTIFACT_KINDS:
            if not run.job.wants(kind):
                continue
            payload = self._artifact_payload(node, kind)
            if payload is None:
                continue
            key = artifact_key(run.job.job_id, node.node_id, kind)
            if self._store_call(self.store.exists, key):
                node.artifacts[kind.value] = key
                continue
            if self.is_cancelled(ref.job_id):
                raise JobCancelled(f"Job {ref.job_id} was cancelled before {key} was written.")
            self._store_call(self.store.put, key, payload)
            node.artifacts[kind.value] = key
            written.append(key)
        return written

    # Extraction internals

    def _move(self, run: _JobRun, node: FileNode, status: NodeStatus) -> None:
        if node.status == status:
            return
        node.transition(status)
        self._emit(run, status.value, node_id=node.node_id)

    def _fail_node(self, run: _JobRun, node: FileNode, error: ProcessingError) -> None:
        node.fail(error.kind, error.message)
        self._emit(run, NodeStatus.FAILED.value, node_id=node.node_id)
        logger.info("Node %s (%s) failed: %s", node.node_id, node.name, error)

    def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return self.retry_policy.call(fn, *args, retry_on=(StorageError,), exhausted=StorageError)

    def _existing(self, run: _JobRun, node: FileNode, kind: OutputKind) -> str | None:
        key = artifact_key(run.job.job_id, node.node_id, kind)
        if self._store_call(self.store.exists, key):
            node.artifacts[kind.value] = key
            return key
        return None

    def _extract_metadata_and_text(self, run: _JobRun, node: FileNode, resolved: ResolvedProcessor) -> None:
        content = node.content or b""
        want_metadata = run.job.wants(OutputKind.METADATA) and self._existing(run, node, OutputKind.METADATA) is None
        want_text = run.job.wants(OutputKind.TEXT) and self._existing(run, node, OutputKind.TEXT) is None

        if run.job.wants(OutputKind.METADATA) and not want_metadata:
            self._load_metadata(node, self._store_call(self.store.get, node.artifacts[OutputKind.METADATA.value]))

        if want_metadata:
            if resolved.declares(OUTPUT_CAPABILITIES[OutputKind.METADATA]):
                node.raw_properties.update(resolved.processor.extract_metadata(content, node.name, node.mimetype))
            else:
                self._capability_unsupported(node, OUTPUT_CAPABILITIES[OutputKind.METADATA])

        if want_text:
            if resolved.declares(OUTPUT_CAPABILITIES[OutputKind.TEXT]):
                node.text = resolved.processor.extract_text(content, node.name, node.mimetype)
            else:
                self._external_text(node, want_metadata)

        if want_metadata:
            self._project(run, node, resolved)

    def _capability_unsupported(self, node: FileNode, capability: Capability, message: str | None = None) -> None:
        error = UnsupportedFormat(node.mimetype or GENERIC_BINARY_TYPE, capability.value, message)
        node.record_capability_error(error.kind, error.message, capability.value)

    def _external_text(self, node: FileNode, want_metadata: bool) -> None:
        if node.mimetype == GENERIC_BINARY_TYPE:
            self._capability_unsupported(node, Capability.EXTRACT_TEXT, "Generic binary content has no text.")
            return
        if self.external is None:
            self._capability_unsupported(
                node, Capability.EXTRACT_TEXT, "No external extraction service is configured."
            )
            return

        try:
            result: ExternalResult = self.external.request(
                node.content or b"",
                node.mimetype,
                want_text=True,
                want_metadata=want_metadata,
                retry_policy=self.retry_policy,
            )
        except UnsupportedFormat as exc:
            node.record_capability_error(exc.kind, exc.message, Capability.EXTRACT_TEXT.value)
            return

        node.text = result.extracted_text or ""
        for key, value in result.raw_properties.items():
            node.raw_properties.setdefault(key, value)

    def _project(self, run: _JobRun, node: FileNode, resolved: ResolvedProcessor) -> None:
        derived = {
            "File-Name": node.name,
            "File-Path": run.tree.path(node.node_id),
            "File-Size": len(node.content or b""),
            "Content-Hash": node.content_hash,
        }
        for key, value in derived.items():
            node.raw_properties.setdefault(key, value)

        node.document_class = classify_document_class(
            node.mimetype, resolved.descriptor.document_class, node.raw_properties
        )
        projection = project_metadata(node.document_class, node.raw_properties)
        node.production_record = projection.record
        node.extensions = projection.extensions
        node.warnings.extend(projection.warnings)

    def _load_metadata(self, node: FileNode, payload: bytes) -> None:
        stored = json.loads(payload.decode("utf-8"))
        node.document_class = DocumentClass(stored["document_class"])
        node.production_record = ProductionRecord(document_class=node.document_class, entries=stored["record"])
        node.extensions = stored.get("extensions", {})
        node.raw_properties = stored.get("raw_properties", {})

    def _render(self, run: _JobRun, node: FileNode, resolved: ResolvedProcessor) -> None:
        if self._existing(run, node, OutputKind.RENDER) is not None:
            return
        if not resolved.declares(OUTPUT_CAPABILITIES[OutputKind.RENDER]):
            node.render_unavailable = True
            self._capability_unsupported(node, OUTPUT_CAPABILITIES[OutputKind.RENDER])
            return
        try:
            node.render_bytes = resolved.processor.render(node.content or b"", node.name, node.mimetype)
        except RENDER_FAILURES as exc:
            node.render_unavailable = True
            kind = getattr(exc, "kind", CorruptInput.kind)
            node.record_capability_error(kind, str(exc), Capability.RENDER.value)
            logger.info("Render unavailable for node %s: %s", node.node_id, exc)

    def _artifact_payload(self, node: FileNode, kind: OutputKind) -> bytes | None:
        if kind == OutputKind.TEXT:
            return node.text.encode("utf-8") if node.text is not None else None
        if kind == OutputKind.METADATA:
            if node.production_record is None:
                return None
            payload = {
                "node_id": node.node_id,
                "document_class": node.production_record.document_class.value,
                "record": node.production_record.entries,
                "extensions": node.extensions,
                "raw_properties": node.raw_properties,
            }
            return json.dumps(payload, indent=2, default=str, ensure_ascii=False).encode("utf-8")
        if kind == OutputKind.RENDER:
            return node.render_bytes
        return None

    # Job driver

    def _fan_out(self, run: _JobRun, handler: Callable[[NodeRef], Any], node_ids: Iterable[str]) -> list[Any]:
        results: list[Any] = []
        pending: set[Future] = set()

        def _collect(done: set[Future]) -> None:
            for future in done:
                results.append(future.result())

        try:
            for node_id in node_ids:
                if self.is_cancelled(run.job.job_id):
                    break
                while len(pending) >= self.node_parallelism:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    _collect(done)
                pending.add(self.scheduler.submit(handler, NodeRef(run.job.job_id, node_id)))
        finally:
            if pending:
                done, _ = wait(pending)
                _collect(done)
        return results

    def run_entry(self, entry: IntakeEntry, content: bytes, *, attempt: int = 1) -> JobOutcome:
        name = entry.filename or entry.source_location.rstrip("/").rsplit("/", 1)[-1]
        return self.run(
            entry.job_id,
            content,
            name=name,
            requested_outputs=entry.requested_outputs,
            attempt=attempt,
        )

    def run(
        self,
        job_id: str,
        content: bytes,
        *,
        name: str,
        requested_outputs: Iterable[OutputKind | str] = (OutputKind.TEXT, OutputKind.METADATA, OutputKind.EMBEDDED),
        attempt: int = 1,
    ) -> JobOutcome:
        outputs = frozenset(OutputKind(output) for output in requested_outputs)
        with self._lock:
            self._cancel_events[job_id] = threading.Event()
            run = _JobRun(
                job=ProcessingJob(job_id=job_id, root_node_id=None, requested_outputs=outputs, attempt=attempt),
                source_name=name,
                started_at=_now(),
            )
            self._runs[job_id] = run

        written: list[str] = []
        try:
            self._emit(run, JobStatus.QUEUED.value)
            self._drive(run, content, written)
        except ResourceLimitExceeded as exc:
            self._finish_failed(run, exc)
        except StorageError as exc:
            self._finish_failed(run, exc)
        except JobCancelled as exc:
            run.job.error = NodeError(kind=exc.kind, message=exc.message)
            self._terminalize(run, exc)
            self._set_job_status(run, JobStatus.CANCELLED, detail=exc.message)
        finally:
            manifest = self._manifest(run)
            with self._lock:
                self._runs.pop(job_id, None)
                self._cancel_events.pop(job_id, None)

        logger.info(
            "Job %s finished as %s (%d nodes, %d failed, %d artifacts written)",
            job_id,
            run.job.status.value,
            manifest.node_count,
            manifest.failed_node_count,
            len(written),
        )
        return JobOutcome(
            job=run.job,
            manifest=manifest,
            tree=run.tree,
            written_keys=written,
            exception=run.exception,
            failed_stage=run.failed_stage,
        )

    def _check_cancelled(self, run: _JobRun) -> None:
        if self.is_cancelled(run.job.job_id):
            raise JobCancelled(f"Job {run.job.job_id} was cancelled.")

    def _drive(self, run: _JobRun, content: bytes, written: list[str]) -> None:
        job_id = run.job.job_id
        run.builder = TreeBuilder(
            self.detector,
            self.registry,
            max_depth=self.max_depth,
            max_nodes=self.max_nodes,
            on_transition=lambda node, status: self._emit(run, status.value, node_id=node.node_id),
            should_stop=lambda: self.is_cancelled(job_id),
        )
        run.tree = run.builder.create_root(job_id, content, run.source_name)
        run.job.root_node_id = run.tree.root_id
        root_ref = NodeRef(job_id, run.tree.root_id)

        self._check_cancelled(run)
        self._set_job_status(run, JobStatus.DETECTING)
        self.scheduler.submit(self.detect, root_ref).result()

        self._check_cancelled(run)
        self._set_job_status(run, JobStatus.EXPANDING)
        self.scheduler.submit(self.expand, root_ref).result()
        if self._fail_on_root(run, JobStatus.EXPANDING):
            return

        self._check_cancelled(run)
        self._set_job_status(run, JobStatus.PER_NODE_EXTRACTION)
        pending_nodes = [node.node_id for node in run.tree.ordered() if not node.is_terminal]
        self._fan_out(run, self.extract_node, pending_nodes)

        self._check_cancelled(run)
        if self._fail_on_root(run, JobStatus.PER_NODE_EXTRACTION):
            return

        self._set_job_status(run, JobStatus.PERSISTING)
        for keys in self._fan_out(run, self.persist, [node.node_id for node in run.tree.ordered()]):
            written.extend(keys)
        self._check_cancelled(run)
        self._set_job_status(run, derive_job_status(run.tree.root, run.tree.ordered()) or JobStatus.FAILED)

    def _fail_on_root(self, run: _JobRun, stage: JobStatus) -> bool:
        """Fail the job when its root node failed during ``stage``."""

        root = run.tree.root
        if root is not None and root.status != NodeStatus.FAILED:
            return False
        run.job.error = root.error if root is not None else NodeError("ProcessingError", "Root node missing.")
        run.failed_stage = stage.value
        self._set_job_status(run, JobStatus.FAILED, detail=run.job.error.message)
        return True

    def _finish_failed(self, run: _JobRun, error: ProcessingError) -> None:
        run.exception = error
        run.failed_stage = run.job.status.value
        run.job.error = NodeError(kind=error.kind, message=error.message)
        self._terminalize(run, error)
        logger.warning("Job %s failed: %s", run.job.job_id, error)
        self._set_job_status(run, JobStatus.FAILED, detail=error.message)

    def _terminalize(self, run: _JobRun, error: ProcessingError) -> None:
        if run.tree is None:
            return
        for node in run.tree.ordered():
            if not node.is_terminal:
                self._fail_node(run, node, error)

    def _manifest(self, run: _JobRun) -> JobManifest:
        nodes = run.tree.ordered() if run.tree is not None else []
        entries = [
            NodeManifestEntry(
                node_id=node.node_id,
                parent_id=node.parent_id,
                children=list(node.children),
                name=node.name,
                position=node.position,
                depth=node.depth,
                content_hash=node.content_hash,
                size_bytes=len(node.content) if node.content is not None else None,
                mimetype=node.mimetype,
                detection_source=node.detection_source,
                processor=node.processor,
                document_class=node.document_class,
                status=node.status,
                error=node.error.to_dict() if node.error else None,
                capability_errors=[error.to_dict() for error in node.capability_errors],
                artifacts=dict(node.artifacts),
                render_unavailable=node.render_unavailable,
                occurrences=list(node.occurrences),
                cycle_of=node.cycle_of,
                warnings=list(node.warnings),
            )
            for node in nodes
        ]
        return JobManifest(
            job_id=run.job.job_id,
            status=run.job.status,
            attempt=run.job.attempt,
            requested_outputs=sorted(run.job.requested_outputs, key=lambda output: output.value),
            root_node_id=run.job.root_node_id,
            error=run.job.error.to_dict() if run.job.error else None,
            node_count=len(entries),
            failed_node_count=sum(1 for node in nodes if node.status == NodeStatus.FAILED),
            nodes=entries,
            started_at=run.started_at,
            finished_at=_now(),
        )
