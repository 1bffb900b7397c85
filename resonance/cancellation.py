"""Cooperative cancellation for in-flight jobs."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .jobs import JobStatus
from .store import JobStore, StoreError

LOG = logging.getLogger("resonance.cancellation")

# Statuses a user can move an in-flight record to; seeing one means stop.
CANCEL_STATUSES = frozenset({JobStatus.CANCELED, JobStatus.DRAFT})


class JobCanceled(Exception):
    """Raised at a checkpoint once the job's token has been canceled."""

    category = "JobCanceled"

    def __init__(self, reason: str = "canceled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "canceled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_canceled(self) -> None:
        if self._event.is_set():
            raise JobCanceled(self._reason or "canceled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class CancellationWatcher(threading.Thread):
    """
    Polls the store for a user-initiated status change and cancels the token.

    Used as a context manager around one job's processing; store hiccups are
    logged and retried on the next tick.
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        token: CancellationToken,
        *,
        interval: float = 1.0,
    ) -> None:
        super().__init__(name=f"cancel-watch-{job_id}", daemon=True)
        self.store = store
        self.job_id = job_id
        self.token = token
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            if self.token.canceled:
                return
            try:
                status = self.store.status_of(self.job_id)
            except StoreError as exc:
                LOG.warning("Cancellation check for %s failed: %s", self.job_id, exc)
                continue
            if status is None:
                self.token.cancel("job record deleted")
                return
            if status in CANCEL_STATUSES:
                LOG.info("Job %s moved to %s; canceling", self.job_id, status.value)
                self.token.cancel(f"status changed to {status.value}")
                return

    def stop(self) -> None:
        self._stop_event.set()

    def __enter__(self) -> "CancellationWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
        self.join(timeout=max(self.interval * 2, 1.0))


__all__ = ["CANCEL_STATUSES", "CancellationToken", "CancellationWatcher", "JobCanceled"]
