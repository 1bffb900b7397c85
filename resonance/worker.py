"""
Long-running polling worker.

The control thread claims jobs from a JobSource whenever a pipeline slot is
free and hands them to an executor; each slot runs `process_job` end to end.
With the process executor every child builds its own store client in the
pool initializer and its own GL context per job, so nothing GPU- or
connection-related crosses the process boundary except the claimed `Job`
value and the configuration.
"""

from __future__ import annotations

from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from concurrent.futures.process import BrokenProcessPool
import logging
from multiprocessing import get_context
import socket
import threading
from typing import Dict, List, Optional

from .config_schema import WorkerConfig
from .job_source import DatabaseJobSource, JobSource
from .jobs import Job, JobStatus, RenderResult
from .orchestrator import process_job
from .store import JobStore, StoreError

LOG = logging.getLogger("resonance.worker")
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Per-child store client, set by `init_worker_process` in spawned pool processes only.
_PROCESS_STORE: JobStore | None = None


def init_worker_process(config: WorkerConfig, log_level: int = logging.INFO) -> None:
    """ProcessPoolExecutor initializer: logging plus one store client per child."""
    global _PROCESS_STORE
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    _PROCESS_STORE = JobStore.from_config(config.store)


def run_claimed_job(config: WorkerConfig, job: Job) -> RenderResult:
    """Process-pool entry point; must stay a picklable top-level function."""
    if _PROCESS_STORE is None:
        raise RuntimeError("run_claimed_job requires init_worker_process to run first.")
    return process_job(job, config, store=_PROCESS_STORE)


def default_worker_id() -> str:
    """Restart-stable id, so a restarted worker can release its own orphaned jobs."""
    return socket.gethostname()


class Worker:
    def __init__(
        self,
        config: WorkerConfig,
        *,
        store: Optional[JobStore] = None,
        source: Optional[JobSource] = None,
        log_level: int = logging.INFO,
    ) -> None:
        self.config = config
        self.worker_id = config.runtime.worker_id or default_worker_id()
        self.store = store or JobStore.from_config(config.store)
        self.source = source or DatabaseJobSource(
            self.store,
            eligible=config.runtime.eligible(),
            worker_id=self.worker_id,
            poll_interval=config.runtime.poll_interval,
        )
        self.slots = config.runtime.workers
        self.log_level = log_level
        self.results: List[RenderResult] = []
        self._poll_failures = 0

    # ------------------------------------------------------------------ #
    # Executor
    # ------------------------------------------------------------------ #

    def _make_executor(self) -> Executor:
        if self.config.runtime.executor == "thread":
            return ThreadPoolExecutor(max_workers=self.slots, thread_name_prefix="resonance-job")
        # Spawn keeps GL contexts and DB connections out of the children.
        return ProcessPoolExecutor(
            max_workers=self.slots,
            mp_context=get_context("spawn"),
            initializer=init_worker_process,
            initargs=(self.config, self.log_level),
        )

    def _submit(self, executor: Executor, job: Job) -> Future:
        if isinstance(executor, ThreadPoolExecutor):
            return executor.submit(process_job, job, self.config, store=self.store)
        return executor.submit(run_claimed_job, self.config, job)

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def release_orphans(self) -> int:
        try:
            return self.store.release_orphans(self.worker_id)
        except StoreError as exc:
            LOG.error("Could not release orphaned jobs for %s: %s", self.worker_id, exc)
            return 0

    def _poll(self) -> Optional[Job]:
        try:
            job = self.source.poll()
        except StoreError as exc:
            self._poll_failures += 1
            LOG.error("Job poll failed (%d in a row): %s", self._poll_failures, exc)
            return None
        self._poll_failures = 0
        return job

    def _idle_delay(self) -> float:
        base = self.config.runtime.poll_interval
        if self._poll_failures:
            return min(base * (2 ** self._poll_failures), 60.0)
        return base

    def _reap(self, futures: Dict[Future, Job], done) -> bool:
        """Collect finished futures; returns False when the pool broke."""
        healthy = True
        for future in done:
            job = futures.pop(future)
            try:
                result = future.result()
            except BrokenProcessPool:
                healthy = False
                self._fail_lost_job(job, "worker process exited unexpectedly")
                continue
            except Exception as exc:
                LOG.exception("Job %s raised outside the pipeline", job.id)
                self._fail_lost_job(job, f"{type(exc).__name__}: {exc}")
                continue
            self.results.append(result)
            LOG.info(
                "Job %s finished | status=%s frames=%d elapsed=%.2fs",
                result.job_id,
                result.status.value,
                result.frame_count,
                result.elapsed_seconds,
            )
        return healthy

    def _fail_lost_job(self, job: Job, detail: str) -> None:
        reason = f"InternalError: {detail}"
        try:
            self.store.fail(job.id, reason)
        except StoreError as exc:
            LOG.error("Could not persist failure of %s: %s", job.id, exc)
        self.results.append(RenderResult(job_id=job.id, status=JobStatus.FAILED, error=reason))

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        *,
        until_idle: bool = False,
    ) -> List[RenderResult]:
        """
        Poll and process jobs until `stop_event` is set.

        With `until_idle`, return once no job could be claimed and every
        running job has finished. In-flight jobs are always drained before
        returning.
        """
        stop_event = stop_event or threading.Event()
        released = self.release_orphans()
        LOG.info(
            "Worker %s starting | slots=%d executor=%s eligible=%s released_orphans=%d",
            self.worker_id,
            self.slots,
            self.config.runtime.executor,
            [s.value for s in self.source.eligible],
            released,
        )

        futures: Dict[Future, Job] = {}
        executor = self._make_executor()
        try:
            while not stop_event.is_set():
                claimed = None
                if len(futures) < self.slots:
                    claimed = self._poll()
                    if claimed is not None:
                        futures[self._submit(executor, claimed)] = claimed
                        continue

                if not futures:
                    if until_idle and claimed is None and not self._poll_failures:
                        break
                    stop_event.wait(self._idle_delay())
                    continue

                timeout = self._idle_delay() if len(futures) < self.slots else None
                done, _ = wait(list(futures), timeout=timeout, return_when=FIRST_COMPLETED)
                if not self._reap(futures, done):
                    LOG.warning("Process pool broke; recreating executor")
                    for future in list(futures):
                        self._reap(futures, [future])
                    executor.shutdown(wait=False, cancel_futures=True)
                    executor = self._make_executor()

            if futures:
                LOG.info("Draining %d running job(s) before exit", len(futures))
                done, _ = wait(list(futures))
                self._reap(futures, done)
        finally:
            executor.shutdown(wait=True)
        LOG.info("Worker %s stopped after %d job(s)", self.worker_id, len(self.results))
        return self.results

    def run_until_idle(self) -> List[RenderResult]:
        return self.run(until_idle=True)


__all__ = ["Worker", "default_worker_id", "run_claimed_job"]
