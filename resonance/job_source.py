"""
Job intake: hands the worker at most one claimed job per poll.

Two transports share the same contract. `DatabaseJobSource` scans the store
for eligible records; `PushJobSource` receives job ids from an external
queue. Both claim through `JobStore.claim_job`, so a record is only ever
returned to one worker.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
import queue
import threading
from typing import Iterable, Optional, Tuple

from .jobs import Job, JobStatus
from .store import JobStore, StoreError

LOG = logging.getLogger("resonance.job_source")


class JobSource(ABC):
    def __init__(
        self,
        store: JobStore,
        *,
        eligible: Iterable[JobStatus] = (JobStatus.QUEUED,),
        worker_id: Optional[str] = None,
        poll_interval: float = 5.0,
        max_backoff: float = 60.0,
    ) -> None:
        self.store = store
        self.eligible: Tuple[JobStatus, ...] = tuple(JobStatus.parse(s) for s in eligible)
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self.max_backoff = max_backoff
        self.consecutive_failures = 0

    @abstractmethod
    def poll(self) -> Optional[Job]:
        """Claim and return one eligible job, or None. May raise StoreError."""

    def backoff_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.poll_interval
        return min(self.poll_interval * (2 ** self.consecutive_failures), self.max_backoff)

    def next_job(self, stop_event: threading.Event) -> Optional[Job]:
        """Block until a job is claimed or `stop_event` is set (then return None)."""
        while not stop_event.is_set():
            try:
                job = self.poll()
            except StoreError as exc:
                self.consecutive_failures += 1
                delay = self.backoff_delay()
                LOG.error(
                    "Job poll failed (%d in a row): %s; retrying in %.1fs",
                    self.consecutive_failures,
                    exc,
                    delay,
                )
                stop_event.wait(delay)
                continue
            self.consecutive_failures = 0
            if job is not None:
                return job
            stop_event.wait(self.poll_interval)
        return None


class DatabaseJobSource(JobSource):
    def poll(self) -> Optional[Job]:
        return self.store.claim_next(self.eligible, self.worker_id)


class PushJobSource(JobSource):
    """Claims job ids delivered by an external queue (webhook, message bus)."""

    def __init__(self, store: JobStore, **kwargs) -> None:
        super().__init__(store, **kwargs)
        self._pending: "queue.Queue[str]" = queue.Queue()

    def push(self, job_id: str) -> None:
        self._pending.put(str(job_id))

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    def poll(self) -> Optional[Job]:
        while True:
            try:
                job_id = self._pending.get_nowait()
            except queue.Empty:
                return None
            try:
                job = self.store.claim_job(job_id, self.eligible, self.worker_id)
            except StoreError:
                # Keep the id so the next poll retries it.
                self._pending.put(job_id)
                raise
            if job is not None:
                return job
            LOG.info("Pushed job %s is not claimable; skipping", job_id)


__all__ = ["DatabaseJobSource", "JobSource", "PushJobSource"]
