"""In-memory job lifecycle registry."""

import threading
import uuid
from typing import Any


jobs: dict[str, dict[str, Any]] = {}
_lock = threading.Lock()


def create_job(metadata: dict[str, Any] | None = None, job_id: str | None = None) -> str:
    """Register a new processing job, return job_id."""
    assigned_job_id = job_id or str(uuid.uuid4())
    job_record: dict[str, Any] = {
        "status": "processing",
        "stage": "init",
    }
    if metadata:
        job_record.update(metadata)
    with _lock:
        jobs[assigned_job_id] = job_record
    return assigned_job_id


def get_job(job_id: str) -> dict[str, Any] | None:
    """Return a copy of the job record or None if not found."""
    with _lock:
        job_record = jobs.get(job_id)
        return dict(job_record) if job_record is not None else None


def complete_job(job_id: str, result: dict[str, Any]) -> None:
    """Mark job as completed with its summary payload."""
    with _lock:
        job_record = jobs.get(job_id, {})
        job_record["status"] = "completed"
        job_record["stage"] = "complete"
        job_record["result"] = result
        job_record.pop("error", None)
        jobs[job_id] = job_record


def fail_job(job_id: str, error: str) -> None:
    """Mark job as failed with error message."""
    with _lock:
        job_record = jobs.get(job_id, {})
        job_record["status"] = "failed"
        job_record["stage"] = "error"
        job_record["error"] = error
        jobs[job_id] = job_record


def set_job_stage(job_id: str, stage: str) -> None:
    """Record the current pipeline stage while the job is still processing."""
    with _lock:
        job_record = jobs.get(job_id)
        if job_record is None:
            return
        if job_record.get("status") == "processing":
            job_record["stage"] = stage
