from __future__ import annotations

from fastapi import FastAPI, HTTPException

from discovery_worker.artifact_store import FilesystemArtifactStore
from discovery_worker.config import WorkerConfig, load_worker_config
from discovery_worker.errors import StorageError
from discovery_worker.models import IntakeEntry, JobStatus, TERMINAL_JOB_STATUSES
from discovery_worker.observability import JobRecorder
from discovery_worker.work_queue import FileWorkQueue

TERMINAL_STATUS_VALUES = {status.value for status in TERMINAL_JOB_STATUSES}


def create_app(config: WorkerConfig | None = None, *, store=None, queue=None, recorder=None) -> FastAPI:
    config = config or load_worker_config()
    app = FastAPI(title="Discovery Extraction Worker API")
    app.state.config = config
    app.state.store = store or FilesystemArtifactStore.from_config(config)
    app.state.queue = queue or FileWorkQueue.from_config(config)
    app.state.recorder = recorder or JobRecorder.from_config(config)

    def _latest_status(job_id: str) -> str | None:
        job_events = [
            event for event in app.state.recorder.read_transitions(job_id) if event.get("scope") == "job"
        ]
        return job_events[-1]["status"] if job_events else None

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.post("/jobs", status_code=202)
    def submit_job(entry: IntakeEntry):
        try:
            source_exists = app.state.store.exists(entry.source_location)
        except StorageError as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        if not source_exists:
            raise HTTPException(status_code=400, detail=f"Source '{entry.source_location}' was not found.")

        message_id = app.state.queue.enqueue(entry)
        app.state.recorder.record_transition(entry.job_id, JobStatus.QUEUED.value, detail="submitted")
        return {"job_id": entry.job_id, "message_id": message_id, "status": JobStatus.QUEUED.value}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        record = app.state.recorder.read_job_record(job_id)
        if record is not None:
            return record
        status = _latest_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Unknown job '{job_id}'.")
        return {"job_id": job_id, "status": status}

    @app.post("/jobs/{job_id}/cancel", status_code=202)
    def cancel_job(job_id: str):
        record = app.state.recorder.read_job_record(job_id)
        status = record.get("status") if record is not None else _latest_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Unknown job '{job_id}'.")
        if status in TERMINAL_STATUS_VALUES and record is not None:
            raise HTTPException(status_code=409, detail=f"Job '{job_id}' already finished as {status}.")
        app.state.recorder.request_cancel(job_id)
        return {"job_id": job_id, "cancel_requested": True}

    return app


app = create_app()
