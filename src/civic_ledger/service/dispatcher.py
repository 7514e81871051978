"""Side-effect dispatch for the write pipeline.

A repository write produces one job holding its side effects in the fixed
order audit append -> ledger submission. The caller only pays for putting
the job on a queue; workers run the steps with retry/backoff and isolate
failures so that no step can surface an error to the writer.

Jobs are sharded by entity key onto per-worker bounded queues, so all jobs
for one entity run in submission order.

Usage:
    dispatcher = SideEffectDispatcher(workers=2, queue_size=1000)
    dispatcher.start()

    dispatcher.dispatch(
        "citizen_request#7 create",
        [SideEffect("audit", append_entry), SideEffect("ledger", anchor)],
        shard_key="citizen_request:7",
    )

    dispatcher.drain(timeout=5.0)
    dispatcher.shutdown()
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .logging import bound_context, get_context
from .retry import RetryConfig, run_with_retry

logger = logging.getLogger(__name__)

DEFAULT_THREAD_PREFIX = "civic-side-effects-"


@dataclass
class SideEffect:
    """One step of a job."""

    name: str
    fn: Callable[[], Any]
    retry: RetryConfig | None = None


@dataclass
class SideEffectJob:
    """Ordered side effects belonging to a single logical write."""

    label: str
    steps: list[SideEffect]
    context: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)


@dataclass
class JobOutcome:
    """What happened to each step of a job."""

    label: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class Dispatcher(Protocol):
    """Interface the repositories dispatch through."""

    def dispatch(
        self, label: str, steps: list[SideEffect], shard_key: str | None = None
    ) -> bool: ...

    def drain(self, timeout: float | None = None) -> bool: ...

    def stats(self) -> dict[str, Any]: ...


def run_job(
    job: SideEffectJob,
    retry_config: RetryConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> JobOutcome:
    """Run every step of a job in order.

    A step that still fails after its retries is logged and skipped; the
    following steps still run.
    """
    outcome = JobOutcome(label=job.label)
    for step in job.steps:
        step_label = f"{job.label} [{step.name}]"
        try:
            run_with_retry(
                step.fn,
                step.retry or retry_config,
                label=step_label,
                sleep=sleep,
            )
        except Exception as e:
            logger.error(f"Side effect {step_label} failed permanently: {e}", exc_info=True)
            outcome.failed.append(step.name)
        else:
            outcome.succeeded.append(step.name)
    return outcome


class _Counters:
    """Shared bookkeeping for dispatcher statistics."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.dispatched = 0
        self.completed = 0
        self.failed_steps = 0
        self.dropped = 0

    def record(self, outcome: JobOutcome) -> None:
        with self.lock:
            self.completed += 1
            self.failed_steps += len(outcome.failed)


class InlineDispatcher:
    """Runs side effects synchronously in the calling thread.

    Used by tests and command-line tools where deterministic ordering
    matters more than caller latency. Failure isolation is identical to
    the threaded dispatcher.
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._counters = _Counters()
        self.outcomes: list[JobOutcome] = []

    def dispatch(
        self, label: str, steps: list[SideEffect], shard_key: str | None = None
    ) -> bool:
        job = SideEffectJob(label=label, steps=steps)
        with self._counters.lock:
            self._counters.dispatched += 1
        outcome = run_job(job, self._retry_config, self._sleep)
        self._counters.record(outcome)
        self.outcomes.append(outcome)
        return True

    def drain(self, timeout: float | None = None) -> bool:
        return True

    def stats(self) -> dict[str, Any]:
        c = self._counters
        return {
            "mode": "inline",
            "dispatched": c.dispatched,
            "completed": c.completed,
            "failed_steps": c.failed_steps,
            "dropped": c.dropped,
            "pending": 0,
        }


class SideEffectDispatcher:
    """Bounded, sharded, threaded side-effect dispatcher."""

    def __init__(
        self,
        workers: int = 2,
        queue_size: int = 1000,
        enqueue_timeout: float = 0.05,
        retry_config: RetryConfig | None = None,
        thread_name_prefix: str = DEFAULT_THREAD_PREFIX,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            workers: Number of worker threads (and shards)
            queue_size: Capacity of each worker's queue
            enqueue_timeout: Longest a caller waits for queue space (seconds)
            retry_config: Default retry policy for steps
            thread_name_prefix: Prefix for worker thread names
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self._retry_config = retry_config or RetryConfig()
        self._enqueue_timeout = enqueue_timeout
        self._thread_name_prefix = thread_name_prefix
        self._queues: list[queue.Queue[SideEffectJob | None]] = [
            queue.Queue(maxsize=queue_size) for _ in range(workers)
        ]
        self._threads: list[threading.Thread] = []
        self._counters = _Counters()
        self._pending = 0
        self._idle = threading.Condition()
        self._start_lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker threads (idempotent)."""
        with self._start_lock:
            if self._running:
                return
            logger.info(f"Starting side-effect dispatcher with {len(self._queues)} workers")
            self._threads = [
                threading.Thread(
                    target=self._worker,
                    args=(q,),
                    name=f"{self._thread_name_prefix}{index}",
                    daemon=True,
                )
                for index, q in enumerate(self._queues)
            ]
            for thread in self._threads:
                thread.start()
            self._running = True

    def _shard(self, shard_key: str | None) -> queue.Queue[SideEffectJob | None]:
        if shard_key is None or len(self._queues) == 1:
            return min(self._queues, key=lambda q: q.qsize())
        return self._queues[zlib.crc32(shard_key.encode("utf-8")) % len(self._queues)]

    def dispatch(
        self, label: str, steps: list[SideEffect], shard_key: str | None = None
    ) -> bool:
        """Enqueue a job. Never blocks longer than ``enqueue_timeout``.

        Returns:
            True if queued, False if the job was dropped because the queue
            stayed full
        """
        if not self._running:
            self.start()

        job = SideEffectJob(label=label, steps=steps, context=get_context())
        with self._idle:
            self._pending += 1

        try:
            self._shard(shard_key).put(job, timeout=self._enqueue_timeout)
        except queue.Full:
            self._job_finished()
            with self._counters.lock:
                self._counters.dropped += 1
            logger.error(
                f"Side-effect queue full, dropped job {label} "
                f"(steps: {', '.join(s.name for s in steps)})"
            )
            return False

        with self._counters.lock:
            self._counters.dispatched += 1
        return True

    def _worker(self, jobs: queue.Queue[SideEffectJob | None]) -> None:
        while True:
            job = jobs.get()
            if job is None:
                jobs.task_done()
                return
            try:
                with bound_context(**{**job.context, "job": job.label}):
                    outcome = run_job(job, self._retry_config)
                self._counters.record(outcome)
            except Exception:
                # run_job isolates steps; this only guards the worker loop
                logger.exception(f"Worker crashed while running {job.label}")
            finally:
                jobs.task_done()
                self._job_finished()

    def _job_finished(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued job has run.

        Returns:
            True if the queues drained, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending > 0:
                if deadline is None:
                    self._idle.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def shutdown(self, wait: bool = True, timeout: float | None = 30.0) -> None:
        """Stop the workers.

        Args:
            wait: Let queued jobs finish before stopping
            timeout: Upper bound on waiting for the queues to drain
        """
        if not self._running:
            return
        logger.info("Shutting down side-effect dispatcher...")
        if wait:
            if not self.drain(timeout):
                logger.warning(f"Dispatcher shutdown with {self._pending} job(s) still pending")
        for q in self._queues:
            try:
                q.put_nowait(None)
            except queue.Full:
                logger.warning("Worker queue full at shutdown; worker left to exit with process")
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        self._running = False
        logger.info("Side-effect dispatcher shutdown complete")

    def stats(self) -> dict[str, Any]:
        c = self._counters
        return {
            "mode": "threaded",
            "workers": len(self._queues),
            "running": self._running,
            "dispatched": c.dispatched,
            "completed": c.completed,
            "failed_steps": c.failed_steps,
            "dropped": c.dropped,
            "pending": self._pending,
        }


__all__ = [
    "Dispatcher",
    "InlineDispatcher",
    "JobOutcome",
    "SideEffect",
    "SideEffectDispatcher",
    "SideEffectJob",
    "run_job",
]
