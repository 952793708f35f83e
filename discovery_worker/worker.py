from __future__ import annotations

import logging
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from discovery_worker.artifact_store import ArtifactStore, FilesystemArtifactStore
from discovery_worker.config import WorkerConfig, configure_logging, load_worker_config
from discovery_worker.errors import StorageError
from discovery_worker.models import JobManifest, JobStatus, NodeError
from discovery_worker.observability import JobRecorder
from discovery_worker.orchestrator import JobEvent, JobOutcome, PipelineOrchestrator
from discovery_worker.retry_policy import RetryPolicy
from discovery_worker.scheduler import ThreadPoolScheduler
from discovery_worker.tika_client import TikaClient
from discovery_worker.work_queue import Claim, FileWorkQueue, WorkQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerResult:
    job_id: str
    status: str
    delivery_count: int
    acknowledged: bool
    record_path: str | None = None


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ClaimHeartbeat:
    """Extends a queue claim every ``interval`` seconds while its job runs.

    When an extension is refused the claim has been lost to another worker, and ``on_lost`` is called once.
    """

    def __init__(
        self,
        queue: WorkQueue,
        claim: Claim,
        *,
        interval: float,
        on_lost: Callable[[], None] | None = None,
    ) -> None:
        self.queue = queue
        self.claim = claim
        self.interval = interval
        self.on_lost = on_lost
        self.lost = False
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def beat(self) -> bool:
        if self.lost:
            return False
        try:
            extended = self.queue.extend(self.claim)
        except StorageError as exc:
            logger.warning("Could not extend claim on job %s: %s", self.claim.entry.job_id, exc)
            return True
        if extended is None:
            self.lost = True
            logger.warning("Claim on job %s was lost; cancelling the run.", self.claim.entry.job_id)
            if self.on_lost is not None:
                self.on_lost()
            return False
        self.claim = extended
        return True

    def _loop(self) -> None:
        while not self._stopped.wait(self.interval):
            if not self.beat():
                return

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._loop, name=f"claim-heartbeat-{self.claim.message_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "ClaimHeartbeat":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


def attach_recorder(orchestrator: PipelineOrchestrator, recorder: JobRecorder) -> None:
    def _record(event: JobEvent) -> None:
        recorder.record_transition(
            event.job_id,
            event.status,
            node_id=event.node_id,
            attempt=event.attempt,
            detail=event.detail,
        )

    orchestrator.add_listener(_record)


def _fail_without_source(
    claim: Claim,
    recorder: JobRecorder,
    error: StorageError,
    started_at: str,
) -> Path:
    entry = claim.entry
    manifest = JobManifest(
        job_id=entry.job_id,
        status=JobStatus.FAILED,
        attempt=claim.delivery_count,
        requested_outputs=sorted(entry.requested_outputs, key=lambda output: output.value),
        root_node_id=None,
        error=NodeError(kind=error.kind, message=error.message).to_dict(),
        node_count=0,
        failed_node_count=0,
        nodes=[],
        started_at=started_at,
        finished_at=_now(),
    )
    recorder.record_transition(entry.job_id, JobStatus.FAILED.value, attempt=claim.delivery_count, detail=error.message)
    record_path = recorder.write_job_record(manifest)
    recorder.record_dead_letter(
        job_id=entry.job_id,
        stage=JobStatus.QUEUED.value,
        kind=error.kind,
        message=error.message,
        exception=error,
        attempt=claim.delivery_count,
        extra={"source_location": entry.source_location, "record_path": str(record_path)},
    )
    return record_path


def process_next_job(
    queue: WorkQueue,
    store: ArtifactStore,
    orchestrator: PipelineOrchestrator,
    recorder: JobRecorder,
    *,
    worker_id: str = "worker",
    heartbeat_interval: float | None = None,
    max_deliveries: int | None = None,
) -> WorkerResult | None:
    """Claim one intake entry, run it to a terminal status and acknowledge it.

    The source bytes are read from the artifact store under ``source_location``. A source that does not
    exist fails the job at once; one that cannot be read is released for redelivery until
    ``max_deliveries`` (default: the retry policy's attempt count) is reached, then fails the job.
    The claim is extended in the background for as long as the job runs.
    """

    claim = queue.claim(worker_id)
    if claim is None:
        return None

    entry = claim.entry
    started_at = _now()
    max_deliveries = max_deliveries or orchestrator.retry_policy.attempts
    logger.info(
        "Worker %s claimed job %s (delivery %d)", worker_id, entry.job_id, claim.delivery_count
    )
    heartbeat = ClaimHeartbeat(
        queue,
        claim,
        interval=heartbeat_interval or queue.visibility_timeout / 3,
        on_lost=lambda: orchestrator.cancel(entry.job_id),
    )
    found = True
    source_error: StorageError | None = None
    with heartbeat:
        try:
            found = orchestrator.retry_policy.call(
                store.exists, entry.source_location, retry_on=(StorageError,), exhausted=StorageError
            )
            if not found:
                raise StorageError(
                    f"Source '{entry.source_location}' does not exist.", {"source_location": entry.source_location}
                )
            content = orchestrator.retry_policy.call(
                store.get, entry.source_location, retry_on=(StorageError,), exhausted=StorageError
            )
        except StorageError as exc:
            source_error = exc
        else:
            if not heartbeat.lost:
                outcome: JobOutcome = orchestrator.run_entry(entry, content, attempt=claim.delivery_count)

    if heartbeat.lost:
        logger.warning("Job %s was handed to another worker; its result is discarded.", entry.job_id)
        return WorkerResult(entry.job_id, "ClaimLost", claim.delivery_count, acknowledged=False)

    if source_error is not None:
        logger.warning("Source for job %s is unavailable: %s", entry.job_id, source_error)
        if found and claim.delivery_count < max_deliveries:
            recorder.record_transition(
                entry.job_id, "SourceUnavailable", attempt=claim.delivery_count, detail=str(source_error)
            )
            queue.release(heartbeat.claim)
            return WorkerResult(entry.job_id, "SourceUnavailable", claim.delivery_count, acknowledged=False)
        record_path = _fail_without_source(heartbeat.claim, recorder, source_error, started_at)
        recorder.clear_cancel(entry.job_id)
        acknowledged = queue.ack(heartbeat.claim)
        return WorkerResult(
            entry.job_id, JobStatus.FAILED.value, claim.delivery_count, acknowledged, str(record_path)
        )

    record_path = recorder.write_job_record(outcome.manifest)
    if outcome.status == JobStatus.FAILED:
        error = outcome.job.error
        recorder.record_dead_letter(
            job_id=entry.job_id,
            stage=outcome.failed_stage or "job",
            kind=error.kind if error else "ProcessingError",
            message=error.message if error else "Job failed without a recorded error.",
            exception=outcome.exception,
            attempt=claim.delivery_count,
            extra={"source_location": entry.source_location, "record_path": str(record_path)},
        )
    recorder.clear_cancel(entry.job_id)

    acknowledged = queue.ack(heartbeat.claim)
    return WorkerResult(
        job_id=entry.job_id,
        status=outcome.status.value,
        delivery_count=claim.delivery_count,
        acknowledged=acknowledged,
        record_path=str(record_path),
    )


def build_orchestrator(
    config: WorkerConfig,
    store: ArtifactStore,
    recorder: JobRecorder,
    *,
    external=None,
) -> PipelineOrchestrator:
    orchestrator = PipelineOrchestrator.from_config(
        config,
        store,
        external=external if external is not None else TikaClient.from_config(config),
        scheduler=ThreadPoolScheduler(config.node_parallelism),
        retry_policy=RetryPolicy.from_config(config),
        cancellation_check=recorder.is_cancel_requested,
    )
    attach_recorder(orchestrator, recorder)
    return orchestrator


def run_worker(
    config: WorkerConfig | None = None,
    *,
    max_jobs: int | None = None,
    poll_interval: float = 1.0,
    worker_id: str | None = None,
) -> int:
    """Poll the intake queue until ``max_jobs`` jobs are processed; returns the number processed."""

    config = config or load_worker_config()
    configure_logging(config.log_level)
    worker_id = worker_id or default_worker_id()
    store = FilesystemArtifactStore.from_config(config)
    queue = FileWorkQueue.from_config(config)
    recorder = JobRecorder.from_config(config)
    orchestrator = build_orchestrator(config, store, recorder)

    processed = 0
    logger.info("Worker %s started (config=%s)", worker_id, config.to_dict())
    try:
        while max_jobs is None or processed < max_jobs:
            result = process_next_job(queue, store, orchestrator, recorder, worker_id=worker_id)
            if result is None:
                time.sleep(poll_interval)
                continue
            processed += 1
            logger.info("Job %s finished with status %s", result.job_id, result.status)
    finally:
        orchestrator.scheduler.shutdown()
    return processed


if __name__ == "__main__":
    run_worker()
