from __future__ import annotations

import hashlib
import json
import logging
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from discovery_worker.errors import StorageError
from discovery_worker.models import JobManifest

logger = logging.getLogger(__name__)

TRANSITIONS_LOG_NAME = "transitions.jsonl"
METRICS_NAME = "job_metrics.json"
DEAD_LETTER_DIR_NAME = "dead_letter"
CANCEL_REQUESTS_DIR_NAME = "cancel_requests"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobRecorder:
    """Writes job-status transitions, final job records and dead-letter reports under ``records_dir``."""

    def __init__(self, records_dir: str | Path) -> None:
        self.records_dir = Path(records_dir)
        self.transitions_path = self.records_dir / TRANSITIONS_LOG_NAME
        self.metrics_path = self.records_dir / METRICS_NAME
        self.dead_letter_dir = self.records_dir / DEAD_LETTER_DIR_NAME
        self.dead_letter_queue_path = self.dead_letter_dir / "queue.jsonl"
        self.cancel_requests_dir = self.records_dir / CANCEL_REQUESTS_DIR_NAME
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "JobRecorder":
        return cls(config.job_records_dir)

    def _record_path(self, job_id: str) -> Path:
        safe_job_id = job_id.replace("/", "_").replace("\\", "_")
        return self.records_dir / f"{safe_job_id}.json"

    def _append_jsonl(self, path: Path, payload: dict[str, Any]) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def record_transition(
        self,
        job_id: str,
        status: str,
        *,
        node_id: str | None = None,
        attempt: int | None = None,
        detail: str | None = None,
    ) -> dict[str, Any]:
        event = {
            "timestamp": _now(),
            "job_id": job_id,
            "scope": "node" if node_id else "job",
            "node_id": node_id,
            "status": status,
            "attempt": attempt,
        }
        if detail:
            event["detail"] = detail
        self._append_jsonl(self.transitions_path, event)
        if node_id is None:
            logger.info("Job %s -> %s", job_id, status)
        else:
            logger.debug("Job %s node %s -> %s", job_id, node_id, status)
        return event

    def read_transitions(self, job_id: str | None = None) -> list[dict[str, Any]]:
        if not self.transitions_path.exists():
            return []
        events = []
        for line in self.transitions_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            event = json.loads(line)
            if job_id is None or event.get("job_id") == job_id:
                events.append(event)
        return events

    def write_job_record(self, manifest: JobManifest) -> Path:
        path = self._record_path(manifest.job_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(manifest.model_dump(mode="json"), indent=2), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Job record for {manifest.job_id} could not be written: {exc}") from exc
        self._update_metrics(manifest)
        return path

    def read_job_record(self, job_id: str) -> dict[str, Any] | None:
        path = self._record_path(job_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _update_metrics(self, manifest: JobManifest) -> None:
        with self._lock:
            if self.metrics_path.exists():
                try:
                    metrics = json.loads(self.metrics_path.read_text(encoding="utf-8"))
                except json.JSONDecodeError:
                    metrics = {}
            else:
                metrics = {}

            by_status = metrics.setdefault("by_status", {})
            by_status[manifest.status.value] = int(by_status.get(manifest.status.value, 0)) + 1
            metrics["nodes_processed"] = int(metrics.get("nodes_processed", 0)) + manifest.node_count
            metrics["nodes_failed"] = int(metrics.get("nodes_failed", 0)) + manifest.failed_node_count

            failures = metrics.setdefault("node_failures_by_kind", {})
            for node in manifest.nodes:
                if node.error:
                    kind = node.error.get("kind", "unknown")
                    failures[kind] = int(failures.get(kind, 0)) + 1

            metrics["updated_at"] = _now()
            self.metrics_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")

    def record_dead_letter(
        self,
        *,
        job_id: str,
        stage: str,
        kind: str,
        message: str,
        exception: BaseException | None = None,
        attempt: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        stack_trace = None
        if exception is not None:
            stack_trace = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
        error_fingerprint = hashlib.sha256(f"{kind}:{message}:{stage}".encode("utf-8")).hexdigest()
        occurred_at = _now()

        report = {
            "occurred_at": occurred_at,
            "job_id": job_id,
            "attempt": attempt,
            "error": {
                "stage": stage,
                "type": type(exception).__name__ if exception is not None else None,
                "kind": kind,
                "message": message,
                "fingerprint": error_fingerprint,
                "stack_trace": stack_trace,
            },
            "extra": extra or {},
        }

        self.dead_letter_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.dead_letter_dir / self._record_path(job_id).name
        report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
        self._append_jsonl(
            self.dead_letter_queue_path,
            {
                "occurred_at": occurred_at,
                "job_id": job_id,
                "report_path": str(report_path),
                "error_fingerprint": error_fingerprint,
            },
        )
        logger.warning("Dead-lettered job %s at stage %s: %s: %s", job_id, stage, kind, message)
        return {
            "report_path": str(report_path),
            "queue_path": str(self.dead_letter_queue_path),
            "error_fingerprint": error_fingerprint,
        }

    def request_cancel(self, job_id: str) -> Path:
        self.cancel_requests_dir.mkdir(parents=True, exist_ok=True)
        marker = self.cancel_requests_dir / self._record_path(job_id).name
        marker.write_text(json.dumps({"job_id": job_id, "requested_at": _now()}), encoding="utf-8")
        logger.info("Cancellation recorded for job %s", job_id)
        return marker

    def is_cancel_requested(self, job_id: str) -> bool:
        return (self.cancel_requests_dir / self._record_path(job_id).name).exists()

    def clear_cancel(self, job_id: str) -> bool:
        marker = self.cancel_requests_dir / self._record_path(job_id).name
        if not marker.exists():
            return False
        marker.unlink(missing_ok=True)
        logger.info("Cancellation marker cleared for job %s", job_id)
        return True
