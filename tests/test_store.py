from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import threading

import pytest
import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from resonance.config_schema import StoreConfig
from resonance.jobs import JobStatus
from resonance.store import CANCEL_REASON, SQLITE_BUSY_TIMEOUT, JobStore, StoreError

QUEUED = (JobStatus.QUEUED,)


def _queued(store: JobStore, job_id: str, audio_url: str | None = "track.wav") -> str:
    return store.insert_job(audio_url=audio_url, job_id=job_id, status=JobStatus.QUEUED)


def test_insert_and_read_back(store: JobStore) -> None:
    job_id = store.insert_job(
        audio_url="https://cdn.example.com/a.mp3",
        style_parameters={"shader": "fractal-zoom", "intensity": 0.7},
        project_id="project-1",
        duration_seconds=12.0,
        target_fps=24,
        target_resolution="720p",
    )
    record = store.get(job_id)
    assert record["status"] == "draft"
    assert record["attempts"] == 0
    assert record["style_parameters"] == {"shader": "fractal-zoom", "intensity": 0.7}

    job = store.get_job(job_id)
    assert job.status is JobStatus.DRAFT
    assert job.target_fps == 24
    assert job.duration_seconds == pytest.approx(12.0)
    assert store.status_of("missing") is None
    assert store.get_job("missing") is None


def test_claim_requires_eligible_status_and_audio(store: JobStore) -> None:
    store.insert_job(audio_url="track.wav", job_id="draft")
    _queued(store, "no-audio", audio_url="")
    _queued(store, "ready")

    job = store.claim_next(QUEUED, "worker-a")
    assert job is not None and job.id == "ready"
    assert job.status is JobStatus.ANALYZING
    record = store.get("ready")
    assert record["worker_id"] == "worker-a"
    assert record["attempts"] == 1

    assert store.claim_next(QUEUED, "worker-a") is None
    assert store.status_of("no-audio") is JobStatus.QUEUED
    assert store.status_of("draft") is JobStatus.DRAFT

    # Draft records become claimable when the worker is configured for them.
    assert store.claim_next((JobStatus.DRAFT,), "worker-a").id == "draft"


def test_claim_is_exclusive_across_threads(store: JobStore) -> None:
    _queued(store, "contended")
    barrier = threading.Barrier(6)

    def attempt(worker: int):
        barrier.wait()
        return store.claim_job("contended", QUEUED, f"worker-{worker}")

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(attempt, range(6)))

    winners = [job for job in results if job is not None]
    assert len(winners) == 1
    assert store.get("contended")["attempts"] == 1


def test_claim_next_hands_out_each_job_once(store: JobStore) -> None:
    for index in range(3):
        _queued(store, f"job-{index}")

    def drain(worker: int) -> list[str]:
        claimed = []
        while True:
            job = store.claim_next(QUEUED, f"worker-{worker}")
            if job is None:
                return claimed
            claimed.append(job.id)

    with ThreadPoolExecutor(max_workers=4) as pool:
        claimed = [job_id for batch in pool.map(drain, range(4)) for job_id in batch]

    assert sorted(claimed) == ["job-0", "job-1", "job-2"]


def test_transition_is_conditional_and_validated(store: JobStore) -> None:
    _queued(store, "job")
    assert not store.transition("job", (JobStatus.ANALYZING,), JobStatus.GENERATING)
    assert store.status_of("job") is JobStatus.QUEUED

    with pytest.raises(ValueError):
        store.transition("job", (JobStatus.QUEUED,), JobStatus.COMPLETED)
    with pytest.raises(ValueError):
        store.transition("job", (JobStatus.COMPLETED,), JobStatus.QUEUED)


def test_submit_rules(store: JobStore) -> None:
    draft = store.insert_job(audio_url="track.wav")
    silent = store.insert_job(audio_url=None)

    assert store.submit(draft)
    assert store.status_of(draft) is JobStatus.QUEUED
    assert not store.submit(draft)
    assert not store.submit(silent)
    assert store.status_of(silent) is JobStatus.DRAFT
    with pytest.raises(KeyError):
        store.submit("unknown")


def test_full_lifecycle_to_completed(store: JobStore) -> None:
    _queued(store, "job")
    store.claim_job("job", QUEUED, "worker-a")
    assert not store.update_progress("job", 10)
    assert store.transition("job", (JobStatus.ANALYZING,), JobStatus.GENERATING)
    assert store.update_progress("job", 150)
    assert store.get("job")["progress"] == 100

    assert store.complete("job", video_url="file:///renders/job/video.mp4", frame_count=300)
    record = store.get("job")
    assert record["status"] == "completed"
    assert record["video_url"] == "file:///renders/job/video.mp4"
    assert record["frame_count"] == 300
    assert record["completed_at"] is not None
    assert record["error"] is None

    # Terminal: nothing moves it any more.
    assert not store.fail("job", "InternalError: late")
    assert not store.request_cancel("job")
    assert not store.submit("job")


def test_complete_requires_generating(store: JobStore) -> None:
    _queued(store, "job")
    store.request_cancel("job")
    assert not store.complete("job", video_url="file:///x.mp4", frame_count=1)
    record = store.get("job")
    assert record["status"] == "canceled"
    assert record["video_url"] is None


def test_fail_then_resubmit_clears_error(store: JobStore) -> None:
    _queued(store, "job")
    store.claim_job("job", QUEUED, "worker-a")
    assert store.fail("job", "DecodeError: bad header")
    record = store.get("job")
    assert record["status"] == "failed"
    assert record["error"] == "DecodeError: bad header"
    assert record["video_url"] is None

    assert store.submit("job")
    job = store.claim_job("job", QUEUED, "worker-b")
    assert job is not None
    record = store.get("job")
    assert record["error"] is None
    assert record["attempts"] == 2


def test_cancel_variants(store: JobStore) -> None:
    _queued(store, "a")
    _queued(store, "b")
    store.claim_job("b", QUEUED, "worker-a")

    assert store.request_cancel("a")
    assert store.status_of("a") is JobStatus.CANCELED
    assert store.request_cancel("b", reset_to_draft=True)
    record = store.get("b")
    assert record["status"] == "draft"
    assert record["error"] == CANCEL_REASON

    # Canceled jobs can be submitted again.
    assert store.submit("a")
    assert store.mark_canceled("a")
    assert not store.mark_canceled("a")


def test_release_orphans_only_touches_own_in_progress_jobs(store: JobStore) -> None:
    for job_id in ("mine-1", "mine-2", "theirs", "waiting"):
        _queued(store, job_id)
    store.claim_job("mine-1", QUEUED, "worker-a")
    store.claim_job("mine-2", QUEUED, "worker-a")
    store.transition("mine-2", (JobStatus.ANALYZING,), JobStatus.GENERATING)
    store.claim_job("theirs", QUEUED, "worker-b")

    assert store.release_orphans("worker-a") == 2
    for job_id in ("mine-1", "mine-2"):
        record = store.get(job_id)
        assert record["status"] == "failed"
        assert record["error"].startswith("InternalError:")
    assert store.status_of("theirs") is JobStatus.ANALYZING
    assert store.status_of("waiting") is JobStatus.QUEUED
    assert store.release_orphans("worker-a") == 0


def test_list_jobs_filters_by_status(store: JobStore) -> None:
    store.insert_job(audio_url="a.wav", job_id="draft")
    _queued(store, "queued")
    assert [r["id"] for r in store.list_jobs([JobStatus.QUEUED])] == ["queued"]
    assert {r["id"] for r in store.list_jobs()} == {"draft", "queued"}


def _operational_error() -> sa_exc.OperationalError:
    return sa_exc.OperationalError("UPDATE render_jobs", {}, Exception("server closed the connection"))


def test_retry_backs_off_then_succeeds(db_url: str) -> None:
    delays: list[float] = []
    store = JobStore(sa.create_engine(db_url), retry_base_delay=0.5, retry_max_delay=0.8, sleep=delays.append)
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise _operational_error()
        return "ok"

    assert store._retry("flaky", flaky) == "ok"
    assert delays == [0.5, 0.8]


def test_retry_exhaustion_raises_store_error(db_url: str) -> None:
    store = JobStore(sa.create_engine(db_url), retry_attempts=3, sleep=lambda _: None)
    calls = {"n": 0}

    def always_down() -> None:
        calls["n"] += 1
        raise _operational_error()

    with pytest.raises(StoreError) as excinfo:
        store._retry("always_down", always_down)
    assert calls["n"] == 3
    assert excinfo.value.reason().startswith("StoreError: always_down failed after 3 attempts")


def test_non_transient_errors_are_not_retried(store: JobStore) -> None:
    _queued(store, "dup")
    with pytest.raises(StoreError):
        _queued(store, "dup")


def test_from_config_requires_url() -> None:
    with pytest.raises(StoreError):
        JobStore.from_config(StoreConfig(url=None))
    with pytest.raises(StoreError):
        JobStore.from_config(StoreConfig(url="not a url"))


def test_from_config_sets_sqlite_busy_timeout(tmp_path: Path) -> None:
    store = JobStore.from_config(StoreConfig(url=f"sqlite:///{tmp_path / 'jobs.db'}"))
    try:
        with store.engine.connect() as conn:
            busy_ms = conn.execute(sa.text("PRAGMA busy_timeout")).scalar()
    finally:
        store.dispose()
    assert busy_ms == int(SQLITE_BUSY_TIMEOUT * 1000)
