"""
Persisted job store backed by SQLAlchemy Core.

Every status change is a conditional UPDATE (`WHERE id = ? AND status IN
(...)`), so two workers racing for the same record cannot both win and a
late writer never overwrites a state it did not expect. Connection-level
failures are retried with exponential backoff before surfacing as
`StoreError`.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from .config_schema import StoreConfig
from .errors import PipelineError
from .jobs import IN_FLIGHT, Job, JobStatus

LOG = logging.getLogger("resonance.store")

T = TypeVar("T")

ORPHAN_REASON = "worker restarted while processing"
CANCEL_REASON = "Canceled by user"
SQLITE_BUSY_TIMEOUT = 30.0

RETRYABLE_ERRORS = (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)


class StoreError(PipelineError):
    """The persisted store could not be reached or rejected an operation."""

    category = "StoreError"


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True, default=str))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_table(metadata: sa.MetaData, name: str = "render_jobs") -> sa.Table:
    return sa.Table(
        name,
        metadata,
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("audio_url", sa.Text, nullable=True),
        sa.Column("style_parameters", sa.JSON, nullable=True),
        sa.Column("duration_seconds", sa.Float, nullable=True),
        sa.Column("target_fps", sa.Integer, nullable=True),
        sa.Column("target_resolution", sa.String(32), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, default=JobStatus.DRAFT.value, index=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("video_url", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("progress", sa.Integer, nullable=False, default=0),
        sa.Column("frame_count", sa.Integer, nullable=True),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, default=0),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=_now),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=_now),
    )


def _values(statuses: Iterable[JobStatus]) -> List[str]:
    return sorted({JobStatus.parse(status).value for status in statuses})


class JobStore:
    def __init__(
        self,
        engine: Engine,
        *,
        table: str = "render_jobs",
        retry_attempts: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.metadata = sa.MetaData()
        self.table = build_table(self.metadata, table)
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: StoreConfig, **kwargs: Any) -> "JobStore":
        if not config.url:
            raise StoreError("store.url is not configured")
        try:
            url = sa.make_url(config.url)
            connect_args: Dict[str, Any] = {}
            if url.get_backend_name() == "sqlite":
                # Concurrent claimers wait on the database lock instead of failing at once.
                connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
            engine = sa.create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        except (sa_exc.ArgumentError, ImportError) as exc:
            raise StoreError(f"invalid store url: {exc}") from exc
        return cls(
            engine,
            table=config.table,
            retry_attempts=config.retry_attempts,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            **kwargs,
        )

    def create_schema(self) -> None:
        self._retry("create_schema", lambda: self.metadata.create_all(self.engine))

    def dispose(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------ #
    # Retry
    # ------------------------------------------------------------------ #

    def _retry(self, operation: str, fn: Callable[[], T]) -> T:
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn()
            except RETRYABLE_ERRORS as exc:
                if attempt == self.retry_attempts:
                    raise StoreError(f"{operation} failed after {attempt} attempts: {exc}") from exc
                LOG.warning(
                    "Store %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    operation,
                    attempt,
                    self.retry_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
                delay = min(delay * 2 if delay else self.retry_base_delay, self.retry_max_delay)
            except sa_exc.SQLAlchemyError as exc:
                raise StoreError(f"{operation} failed: {exc}") from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _execute(self, operation: str, statement: Any) -> int:
        def run() -> int:
            with self.engine.begin() as conn:
                return conn.execute(statement).rowcount

        return self._retry(operation, run)

    def _fetch(self, operation: str, statement: Any) -> List[Dict[str, Any]]:
        def run() -> List[Dict[str, Any]]:
            with self.engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(statement)]

        return self._retry(operation, run)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch("get", sa.select(self.table).where(self.table.c.id == str(job_id)))
        return rows[0] if rows else None

    def get_job(self, job_id: str) -> Optional[Job]:
        record = self.get(job_id)
        return Job.from_record(record) if record else None

    def status_of(self, job_id: str) -> Optional[JobStatus]:
        rows = self._fetch(
            "status_of",
            sa.select(self.table.c.status).where(self.table.c.id == str(job_id)),
        )
        return JobStatus.parse(rows[0]["status"]) if rows else None

    def list_jobs(
        self, statuses: Optional[Iterable[JobStatus]] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        stmt = sa.select(self.table).order_by(self.table.c.created_at).limit(limit)
        if statuses is not None:
            stmt = stmt.where(self.table.c.status.in_(_values(statuses)))
        return self._fetch("list_jobs", stmt)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def insert_job(
        self,
        *,
        audio_url: Optional[str],
        style_parameters: Optional[Mapping[str, Any]] = None,
        job_id: Optional[str] = None,
        project_id: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        target_fps: Optional[int] = None,
        target_resolution: Optional[str] = None,
        status: JobStatus = JobStatus.DRAFT,
    ) -> str:
        job_id = str(job_id or uuid.uuid4())
        now = _now()
        stmt = sa.insert(self.table).values(
            id=job_id,
            project_id=project_id,
            audio_url=audio_url,
            style_parameters=dict(style_parameters or {}),
            duration_seconds=duration_seconds,
            target_fps=target_fps,
            target_resolution=target_resolution,
            status=JobStatus.parse(status).value,
            progress=0,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        self._execute("insert_job", stmt)
        return job_id

    def transition(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        **fields: Any,
    ) -> bool:
        """Move `job_id` to `target` only if its current status is in `expected`."""
        expected = [JobStatus.parse(status) for status in expected]
        for status in expected:
            if not status.can_transition(target):
                raise ValueError(f"Illegal transition {status.value} -> {target.value}.")
        stmt = (
            sa.update(self.table)
            .where(self.table.c.id == str(job_id))
            .where(self.table.c.status.in_(_values(expected)))
            .values(status=target.value, updated_at=_now(), **fields)
        )
        changed = self._execute("transition", stmt) == 1
        if changed:
            _log("job.transition", job_id=str(job_id), status=target.value)
        return changed

    def claim_job(
        self,
        job_id: str,
        eligible: Iterable[JobStatus],
        worker_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Atomically move an eligible record with audio to Analyzing; None if someone else won."""
        eligible = [JobStatus.parse(status) for status in eligible]
        stmt = (
            sa.update(self.table)
            .where(self.table.c.id == str(job_id))
            .where(self.table.c.status.in_(_values(eligible)))
            .where(self.table.c.audio_url.is_not(None))
            .where(self.table.c.audio_url != "")
            .values(
                status=JobStatus.ANALYZING.value,
                worker_id=worker_id,
                attempts=self.table.c.attempts + 1,
                progress=0,
                error=None,
                video_url=None,
                completed_at=None,
                updated_at=_now(),
            )
        )
        if self._execute("claim_job", stmt) != 1:
            return None
        job = self.get_job(job_id)
        if job is not None:
            _log("job.claimed", job_id=job.id, worker_id=worker_id)
        return job

    def claim_next(
        self,
        eligible: Iterable[JobStatus],
        worker_id: Optional[str] = None,
        *,
        batch: int = 10,
    ) -> Optional[Job]:
        """Claim the oldest eligible record; losers of a race move on to the next candidate."""
        eligible = [JobStatus.parse(status) for status in eligible]
        stmt = (
            sa.select(self.table.c.id)
            .where(self.table.c.status.in_(_values(eligible)))
            .where(self.table.c.audio_url.is_not(None))
            .where(self.table.c.audio_url != "")
            .order_by(self.table.c.created_at, self.table.c.id)
            .limit(batch)
        )
        for row in self._fetch("claim_next", stmt):
            job = self.claim_job(row["id"], eligible, worker_id)
            if job is not None:
                return job
        return None

    def submit(self, job_id: str) -> bool:
        """User (re-)submission: Draft, Failed or Canceled -> Queued when audio is present."""
        record = self.get(job_id)
        if record is None:
            raise KeyError(f"Unknown job '{job_id}'.")
        if not record.get("audio_url"):
            return False
        return self.transition(
            job_id,
            (JobStatus.DRAFT, JobStatus.FAILED, JobStatus.CANCELED),
            JobStatus.QUEUED,
            error=None,
            video_url=None,
            completed_at=None,
            progress=0,
        )

    def request_cancel(self, job_id: str, *, reset_to_draft: bool = False) -> bool:
        """User cancellation of an in-flight job; the owning worker notices on its next poll."""
        if reset_to_draft:
            return self.transition(job_id, IN_FLIGHT, JobStatus.DRAFT, error=CANCEL_REASON)
        return self.transition(job_id, IN_FLIGHT, JobStatus.CANCELED)

    def mark_canceled(self, job_id: str) -> bool:
        return self.transition(
            job_id, IN_FLIGHT, JobStatus.CANCELED, video_url=None, completed_at=None
        )

    def complete(
        self,
        job_id: str,
        *,
        video_url: str,
        frame_count: int,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        return self.transition(
            job_id,
            (JobStatus.GENERATING,),
            JobStatus.COMPLETED,
            video_url=video_url,
            frame_count=int(frame_count),
            completed_at=completed_at or _now(),
            progress=100,
            error=None,
        )

    def fail(self, job_id: str, reason: str) -> bool:
        return self.transition(
            job_id,
            IN_FLIGHT,
            JobStatus.FAILED,
            error=reason,
            video_url=None,
            completed_at=None,
        )

    def update_progress(self, job_id: str, progress: int) -> bool:
        stmt = (
            sa.update(self.table)
            .where(self.table.c.id == str(job_id))
            .where(self.table.c.status == JobStatus.GENERATING.value)
            .values(progress=max(0, min(100, int(progress))), updated_at=_now())
        )
        return self._execute("update_progress", stmt) == 1

    def release_orphans(self, worker_id: str) -> int:
        """Fail records a previous run of `worker_id` left mid-pipeline."""
        stmt = (
            sa.update(self.table)
            .where(self.table.c.worker_id == worker_id)
            .where(
                self.table.c.status.in_(_values((JobStatus.ANALYZING, JobStatus.GENERATING)))
            )
            .values(
                status=JobStatus.FAILED.value,
                error=f"InternalError: {ORPHAN_REASON}",
                video_url=None,
                updated_at=_now(),
            )
        )
        released = self._execute("release_orphans", stmt)
        if released:
            _log("job.orphans_released", worker_id=worker_id, count=released)
        return released


__all__ = ["CANCEL_REASON", "JobStore", "StoreError", "build_table"]
