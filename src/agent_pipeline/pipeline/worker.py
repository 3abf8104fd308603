"""Worker loop that claims runnable jobs and dispatches them to an executor."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from agent_pipeline.pipeline.checkpoints import CheckpointGate
from agent_pipeline.pipeline.errors import ExecutorFailure, JobCancelled, StoreUnavailable
from agent_pipeline.pipeline.executor import (
    Completed,
    ExecutionContext,
    ExecutionOutcome,
    Failed,
    Paused,
    TaskExecutor,
)
from agent_pipeline.pipeline.models import CheckpointType, FailureClass, JobView, WorkerStats
from agent_pipeline.pipeline.repository import JobRepository
from agent_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    paused: int = 0
    cancelled: int = 0
    idle_polls: int = 0
    store_errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.paused += other.paused
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls
        self.store_errors += other.store_errors


class WorkerLoop:
    """Polls the job store and runs claimed jobs.

    ``run_once``/``run_loop`` process jobs on the calling thread. ``start``
    runs the same poll in a background thread and dispatches claimed jobs to
    a pool bounded by ``max_concurrent_jobs``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: TaskExecutor,
        worker_id: str,
        gate: CheckpointGate | None = None,
        poll_interval_seconds: float = 5.0,
        max_concurrent_jobs: int = 3,
        retry_base_seconds: float = 30,
        retry_max_seconds: float = 900,
        store_backoff_seconds: float = 5.0,
        store_backoff_max_seconds: float = 60.0,
        drain_timeout_seconds: float = 30.0,
        checkpoint_ttl_seconds: float | None = None,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.gate = gate or CheckpointGate(repository)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_jobs = max_concurrent_jobs
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.store_backoff_seconds = store_backoff_seconds
        self.store_backoff_max_seconds = store_backoff_max_seconds
        self.drain_timeout_seconds = drain_timeout_seconds
        self.checkpoint_ttl_seconds = checkpoint_ttl_seconds
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._futures: set[Future[WorkerRunSummary]] = set()
        self._in_flight: dict[str, None] = {}
        self._jobs_claimed = 0
        self._last_poll_at: datetime | None = None

    # -- synchronous mode -----------------------------------------------------

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most one job on the calling thread."""

        summary = WorkerRunSummary()
        if self._stop_event.is_set():
            summary.idle_polls = 1
            return summary

        job = self._poll()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._dispatch(job=job, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run jobs until the queue is idle or ``max_jobs`` is reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        backoff = self.store_backoff_seconds
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                try:
                    summary = self.run_once()
                except StoreUnavailable as error:
                    aggregate.store_errors += 1
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    backoff = self._store_backoff(error=error, backoff=backoff)
                    continue

                backoff = self.store_backoff_seconds
                aggregate.add(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._wait(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    # -- background mode ------------------------------------------------------

    def start(self) -> bool:
        """Start the background loop; False when it is already running."""

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop_event.clear()
            self._wake_event.clear()
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_concurrent_jobs,
                thread_name_prefix=f"agent-job-{self.worker_id}",
            )
            self._thread = threading.Thread(
                target=self._run,
                name=f"agent-worker-{self.worker_id}",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "Worker %s started (max_concurrent_jobs=%d, poll_interval=%.1fs)",
            self.worker_id,
            self.max_concurrent_jobs,
            self.poll_interval_seconds,
        )
        return True

    def stop(self, timeout: float | None = None) -> bool:
        """Stop claiming and drain in-flight jobs; False when not running."""

        with self._lock:
            thread = self._thread
        if thread is None:
            return False
        self._request_stop(reason="stop requested")
        thread.join(timeout if timeout is not None else self.drain_timeout_seconds + 5)
        if thread.is_alive():
            logger.warning("Worker %s did not stop within the drain timeout", self.worker_id)
            return False
        with self._lock:
            self._thread = None
        logger.info("Worker %s stopped", self.worker_id)
        return True

    def serve(self) -> None:
        """Run in the background until SIGINT/SIGTERM, then drain."""

        with self._signal_handlers():
            self.start()
            while not self._stop_event.wait(timeout=1.0):
                pass
        self.stop()

    def wake(self) -> None:
        """Skip the rest of the current idle wait."""

        self._wake_event.set()

    @property
    def is_running(self) -> bool:
        with self._lock:
            thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def stats(self) -> WorkerStats:
        with self._lock:
            in_flight = tuple(self._in_flight)
            jobs_claimed = self._jobs_claimed
            last_poll_at = self._last_poll_at
        return WorkerStats(
            running=self.is_running,
            worker_id=self.worker_id,
            jobs_claimed=jobs_claimed,
            last_poll_at=last_poll_at,
            in_flight_job_ids=in_flight,
        )

    def compute_retry_delay(self, *, attempts: int) -> float:
        """Deterministic exponential backoff after ``attempts`` failures."""

        return float(min(self.retry_max_seconds, self.retry_base_seconds * (2**attempts)))

    def _run(self) -> None:
        backoff = self.store_backoff_seconds
        try:
            while not self._stop_event.is_set():
                if self._free_slots() == 0:
                    self._wait(self.poll_interval_seconds)
                    continue
                try:
                    job = self._poll()
                except StoreUnavailable as error:
                    backoff = self._store_backoff(error=error, backoff=backoff)
                    continue
                except Exception:  # noqa: BLE001
                    logger.exception("Unexpected error while polling for jobs")
                    self._wait(self.poll_interval_seconds)
                    continue
                backoff = self.store_backoff_seconds
                if job is None:
                    self._wait(self.poll_interval_seconds)
                    continue
                self._submit(job)
        finally:
            self._drain()

    def _submit(self, job: JobView) -> None:
        pool = self._pool
        if pool is None:  # pragma: no cover - pool exists while the loop runs
            raise RuntimeError("Worker pool is not initialized.")
        future = pool.submit(self._dispatch_safely, job)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, future: Future[WorkerRunSummary]) -> None:
        with self._lock:
            self._futures.discard(future)
        self._wake_event.set()

    def _dispatch_safely(self, job: JobView) -> WorkerRunSummary:
        summary = WorkerRunSummary(processed=1)
        try:
            self._dispatch(job=job, summary=summary)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while finishing job %s", job.job_id)
        return summary

    def _drain(self) -> None:
        with self._lock:
            pending = set(self._futures)
            pool = self._pool
        if pending:
            logger.info("Draining %d in-flight job(s)", len(pending))
            _, not_done = wait_futures(pending, timeout=self.drain_timeout_seconds)
            if not_done:
                with self._lock:
                    left = tuple(self._in_flight)
                logger.warning(
                    "Drain timeout reached; jobs left RUNNING for reconciliation: %s",
                    ", ".join(left),
                )
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            self._pool = None

    def _free_slots(self) -> int:
        with self._lock:
            return self.max_concurrent_jobs - len(self._futures)

    # -- shared ---------------------------------------------------------------

    def _poll(self) -> JobView | None:
        with self._lock:
            self._last_poll_at = utc_now()
        if self.checkpoint_ttl_seconds is not None:
            self.gate.expire_stale_checkpoints()
        job = self.repository.claim_next_job(worker_id=self.worker_id)
        if job is not None:
            with self._lock:
                self._jobs_claimed += 1
            logger.info(
                "Claimed job %s (type=%s, priority=%d, attempts=%d/%d)",
                job.job_id,
                job.job_type,
                job.priority,
                job.attempts,
                job.max_attempts,
            )
        return job

    def _dispatch(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        with self._lock:
            self._in_flight[job.job_id] = None
        try:
            outcome = self._execute(job)
            self._apply_outcome(job=job, outcome=outcome, summary=summary)
        except StoreUnavailable as error:
            summary.store_errors += 1
            logger.error(  # noqa: TRY400
                "Job store unavailable while finishing job %s; it stays RUNNING "
                "until reconciled: %s",
                job.job_id,
                error,
            )
        finally:
            with self._lock:
                self._in_flight.pop(job.job_id, None)

    def _execute(self, job: JobView) -> ExecutionOutcome | None:
        """Run the executor; None means it stopped at a cancel safe point."""

        context = ExecutionContext(
            job=job,
            repository=self.repository,
            checkpoints=self.repository.list_checkpoints(job_id=job.job_id),
        )
        try:
            return self.executor.execute(context)
        except JobCancelled:
            return None
        except ExecutorFailure as error:
            return Failed(reason=error.message, retryable=error.retryable)
        except StoreUnavailable:
            raise
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor raised for job %s", job.job_id)
            return Failed(reason=f"{type(error).__name__}: {error}", retryable=True)

    def _apply_outcome(
        self,
        *,
        job: JobView,
        outcome: ExecutionOutcome | None,
        summary: WorkerRunSummary,
    ) -> None:
        if outcome is None or self.repository.is_cancel_requested(job_id=job.job_id):
            if not self._finalize_cancel(job=job, summary=summary) and outcome is None:
                self._handle_failure(
                    job=job,
                    outcome=Failed(
                        reason="Executor raised JobCancelled without a cancel request.",
                        retryable=False,
                    ),
                    summary=summary,
                )
            return

        if isinstance(outcome, Completed):
            if self.repository.complete_job(job_id=job.job_id, result=outcome.result):
                summary.succeeded = 1
                logger.info("Job %s completed", job.job_id)
            else:
                self._finalize_cancel(job=job, summary=summary)
            return

        if isinstance(outcome, Paused):
            self._pause(job=job, outcome=outcome, summary=summary)
            return

        if isinstance(outcome, Failed):
            self._handle_failure(job=job, outcome=outcome, summary=summary)
            return

        self._handle_failure(
            job=job,
            outcome=Failed(
                reason=f"Executor returned unsupported outcome {type(outcome).__name__}.",
                retryable=False,
            ),
            summary=summary,
        )

    def _pause(self, *, job: JobView, outcome: Paused, summary: WorkerRunSummary) -> None:
        requests = tuple(
            request
            for request in outcome.checkpoints
            if request.checkpoint_type == CheckpointType.APPROVAL_REQUIRED
        )
        for request in outcome.checkpoints:
            if request.checkpoint_type == CheckpointType.INFO:
                self.repository.record_checkpoint(job_id=job.job_id, request=request)
        if not requests:
            self._handle_failure(
                job=job,
                outcome=Failed(
                    reason="Executor paused without an approval checkpoint.",
                    retryable=False,
                ),
                summary=summary,
            )
            return

        first, deferred = requests[0], requests[1:]
        expires_at = None
        if self.checkpoint_ttl_seconds is not None:
            expires_at = utc_now() + timedelta(seconds=self.checkpoint_ttl_seconds)
        checkpoint = self.repository.pause_job(
            job_id=job.job_id,
            request=first,
            expires_at=expires_at,
        )
        if checkpoint is None:
            self._finalize_cancel(job=job, summary=summary)
            return

        for request in deferred:
            self.repository.add_job_log(
                job_id=job.job_id,
                action="checkpoint_deferred",
                message=f"Checkpoint '{request.stage}' deferred until '{first.stage}' is decided.",
                details={"stage": request.stage},
            )
        summary.paused = 1
        logger.info(
            "Job %s awaiting checkpoint %s (%s)",
            job.job_id,
            checkpoint.checkpoint_id,
            checkpoint.stage,
        )

    def _handle_failure(self, *, job: JobView, outcome: Failed, summary: WorkerRunSummary) -> None:
        failure_class = outcome.failure_class
        if failure_class is None:
            failure_class = (
                FailureClass.EXECUTOR_FAILURE
                if outcome.retryable
                else FailureClass.EXECUTOR_NON_RETRYABLE
            )
        attempts_after = job.attempts + 1
        if (
            failure_class == FailureClass.EXECUTOR_FAILURE
            and outcome.retryable
            and attempts_after < job.max_attempts
        ):
            delay_seconds = self.compute_retry_delay(attempts=attempts_after)
            if self.repository.schedule_retry(
                job_id=job.job_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                reason=outcome.reason,
            ):
                summary.retried = 1
                logger.warning(
                    "Job %s attempt %d/%d failed, retry in %.0fs: %s",
                    job.job_id,
                    attempts_after,
                    job.max_attempts,
                    delay_seconds,
                    outcome.reason,
                )
            else:
                self._finalize_cancel(job=job, summary=summary)
            return

        if self.repository.fail_job(
            job_id=job.job_id,
            failure_class=failure_class,
            reason=outcome.reason,
        ):
            summary.failed = 1
            logger.warning(
                "Job %s failed (%s): %s",
                job.job_id,
                failure_class.value,
                outcome.reason,
            )
        else:
            self._finalize_cancel(job=job, summary=summary)

    def _finalize_cancel(self, *, job: JobView, summary: WorkerRunSummary) -> bool:
        if not self.repository.finalize_cancel(job_id=job.job_id):
            return False
        summary.cancelled = 1
        logger.info("Job %s cancelled", job.job_id)
        return True

    def _store_backoff(self, *, error: StoreUnavailable, backoff: float) -> float:
        logger.warning("Job store unavailable, retrying in %.1fs: %s", backoff, error)
        self._wait(backoff)
        return min(self.store_backoff_max_seconds, max(backoff, 0.1) * 2)

    def _wait(self, seconds: float) -> None:
        if seconds > 0:
            self._wake_event.wait(timeout=seconds)
        self._wake_event.clear()

    def _request_stop(self, *, reason: str) -> None:
        if not self._stop_event.is_set():
            logger.info("Worker %s stopping: %s", self.worker_id, reason)
        self._stop_event.set()
        self._wake_event.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(reason=f"signal {name}")

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
