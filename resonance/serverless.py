"""
Serverless entry point: one invocation renders one job synchronously.

    handler({"input": {"job_id": "..."}})
    -> {"success": True, "video_url": "file:///...", "stats": {"duration": 12.3, "frame_count": 300}}

Runs the same `process_job` as the polling worker; the job is claimed first
so a concurrently running poller cannot pick it up as well.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .config_schema import ENV_CONFIG_PATH, WorkerConfig, load_worker_config
from .jobs import JobStatus
from .orchestrator import process_job
from .store import JobStore, StoreError
from .worker import default_worker_id

LOG = logging.getLogger("resonance.serverless")


def _response(
    success: bool,
    *,
    started: float,
    frame_count: int = 0,
    video_url: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": success,
        "stats": {"duration": round(time.perf_counter() - started, 3), "frame_count": frame_count},
    }
    if video_url:
        payload["video_url"] = video_url
    if error:
        payload["error"] = error
    return payload


def _job_id_from(event: Mapping[str, Any]) -> Optional[str]:
    body = event.get("input", event) if isinstance(event, Mapping) else {}
    if not isinstance(body, Mapping):
        return None
    job_id = body.get("job_id") or body.get("jobId")
    return str(job_id) if job_id else None


def handler(
    event: Mapping[str, Any],
    *,
    config: Optional[WorkerConfig] = None,
    store: Optional[JobStore] = None,
) -> Dict[str, Any]:
    started = time.perf_counter()
    job_id = _job_id_from(event)
    if not job_id:
        return _response(False, started=started, error="job_id is required")

    if config is None:
        config_path = os.environ.get(ENV_CONFIG_PATH)
        config = load_worker_config(Path(config_path) if config_path else None)
    store = store or JobStore.from_config(config.store)

    eligible = set(config.runtime.eligible()) | {JobStatus.QUEUED}
    worker_id = config.runtime.worker_id or default_worker_id()
    try:
        job = store.claim_job(job_id, eligible, worker_id)
        if job is None:
            status = store.status_of(job_id)
            detail = status.value if status else "not found"
            return _response(False, started=started, error=f"job {job_id} is not claimable ({detail})")
    except StoreError as exc:
        LOG.error("Serverless claim of %s failed: %s", job_id, exc)
        return _response(False, started=started, error=exc.reason())

    LOG.info("Serverless invocation processing job %s", job_id)
    result = process_job(job, config, store=store)
    return _response(
        result.success,
        started=started,
        frame_count=result.frame_count,
        video_url=result.video_url if result.success else None,
        error=result.error or (None if result.success else f"job ended {result.status.value}"),
    )


__all__ = ["handler"]
