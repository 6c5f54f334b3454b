import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import repository
from .config import EngineConfig
from .db import connect_db
from .errors import ExecutorNotFoundError
from .models import Job, PENDING, RUNNING, COMPLETED, FAILED
from .registry import ExecutorRegistry, JobExecutor
from .retry import backoff_delay, outcome_after_failure
from .utils import iso_seconds_from, utcnow

logger = logging.getLogger(__name__)

# Per-job outcomes reported by workers
CLAIM_LOST = "skipped"
DONE = "completed"
REQUEUED = "requeued"
DEAD = "failed"
TIMED_OUT = "timed_out"

STALE_REASON = "Job was left RUNNING past the staleness timeout (worker likely crashed)"
LIMIT_REASON = "retry_count {count} already reached max_retries {limit}"


@dataclass
class CycleResult:
    recovered: int = 0
    fetched: int = 0
    claimed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class ExecutionTimeout(Exception):
    def __init__(self, message: str, thread: Optional[threading.Thread] = None):
        super().__init__(message)
        self.thread = thread


def run_with_timeout(executor: JobExecutor, payload: str, timeout: Optional[float]) -> None:
    """Run ``executor.execute(payload)``, raising if it fails or outlives ``timeout``.

    A timed out executor keeps running in its daemon thread; there is no way
    to interrupt it, only to stop waiting for it. The thread is handed back on
    the ``ExecutionTimeout`` so the caller can tell when it is really gone.
    """
    if not timeout:
        executor.execute(payload)
        return

    outcome = {}

    def target():
        try:
            executor.execute(payload)
        except Exception as e:  # re-raised in the calling thread
            outcome["error"] = e

    t = threading.Thread(target=target, name="job-exec", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise ExecutionTimeout(f"execution timed out after {timeout}s", thread=t)
    if "error" in outcome:
        raise outcome["error"]


class Dispatcher:
    """Runs due jobs against their executors, one cycle at a time.

    A job whose executor timed out stays RUNNING until the executor thread
    actually exits; only then is the failed attempt written and the job made
    claimable again.
    """

    def __init__(self, db_path: str, registry: ExecutorRegistry, config: EngineConfig):
        self.db_path = db_path
        self.registry = registry
        self.config = config
        self._abandoned: Dict[int, threading.Thread] = {}
        self._lock = threading.Lock()

    # ---------- cycle ----------
    def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        result = CycleResult()
        conn = connect_db(self.db_path)
        try:
            result.recovered = self.recover_stale(conn, now=now)
            batch = self.fetch_batch(conn, now=now)
        finally:
            conn.close()

        result.fetched = len(batch)
        if not batch:
            return result

        logger.debug("Dispatching %d job(s)", len(batch))
        workers = min(self.config.worker_count, len(batch))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jobengine-worker") as pool:
            # submitted oldest first; completion order is not guaranteed
            futures = [pool.submit(self.process, job) for job in batch]
            outcomes = [f.result() for f in futures]

        for outcome in outcomes:
            if outcome == CLAIM_LOST:
                result.skipped += 1
                continue
            result.claimed += 1
            if outcome == DONE:
                result.completed += 1
            elif outcome == REQUEUED:
                result.requeued += 1
            elif outcome == TIMED_OUT:
                result.timed_out += 1
            else:
                result.failed += 1

        logger.info(
            "Dispatch cycle: fetched=%d completed=%d requeued=%d failed=%d timed_out=%d skipped=%d",
            result.fetched, result.completed, result.requeued, result.failed,
            result.timed_out, result.skipped,
        )
        return result

    def fetch_batch(self, conn, now: Optional[datetime] = None) -> List[Job]:
        pending = repository.list_pending(conn, now=now)
        retryable = repository.list_failed_eligible_for_retry(conn, self.config.max_retries)
        return sorted(pending + retryable, key=lambda j: (j.created_at, j.id))

    # ---------- crash recovery ----------
    def recover_stale(self, conn, now: Optional[datetime] = None) -> int:
        """Turn RUNNING jobs nobody has touched for too long into failed attempts."""
        now = now or utcnow()
        cutoff = now - timedelta(milliseconds=self.config.running_staleness_timeout_ms)
        recovered = 0
        for job in repository.list_stale_running(conn, cutoff):
            if self.is_abandoned(job.id):
                # still executing here, just past its timeout
                continue
            new_count, retryable = outcome_after_failure(job.retry_count, self.config.max_retries)
            if not repository.fail_stale_job(
                conn, job, new_count, terminal=not retryable, reason=STALE_REASON, now=now,
            ):
                continue
            recovered += 1
            if retryable:
                logger.warning(
                    "Recovered orphaned job id=%s type=%s (attempt %d/%d)",
                    job.id, job.job_type, new_count, self.config.max_retries,
                )
            else:
                logger.error(
                    "Orphaned job id=%s type=%s exhausted its retries", job.id, job.job_type,
                )
        return recovered

    # ---------- one job ----------
    def process(self, job: Job) -> str:
        """Claim, execute and finalize a single job. Returns the outcome tag."""
        if self.is_abandoned(job.id):
            return CLAIM_LOST

        conn = connect_db(self.db_path)
        try:
            if not repository.claim_job(conn, job):
                logger.debug("Job %s was claimed elsewhere; skipping", job.id)
                return CLAIM_LOST

            if job.retry_count >= self.config.max_retries:
                # max_retries was lowered after this job was queued
                reason = LIMIT_REASON.format(count=job.retry_count, limit=self.config.max_retries)
                self._finish(conn, job, FAILED, job.retry_count, last_error=reason, terminal=True)
                logger.error("Job failed permanently: id=%s, type=%s: %s", job.id, job.job_type, reason)
                return DEAD

            try:
                executor = self.registry.resolve(job.job_type)
            except ExecutorNotFoundError as e:
                logger.error(
                    "No executor for job id=%s type=%s; marking FAILED without retry "
                    "(check executor registration)", job.id, job.job_type,
                )
                self._finish(
                    conn, job, FAILED, job.retry_count, last_error=str(e), terminal=True,
                )
                return DEAD

            try:
                run_with_timeout(executor, job.payload, self.config.job_timeout_seconds or None)
            except ExecutionTimeout as e:
                self._abandon(job, e)
                return TIMED_OUT
            except Exception as e:
                logger.debug("Job %s raised", job.id, exc_info=True)
                return self._record_failure(conn, job, f"{type(e).__name__}: {e}")

            self._finish(conn, job, COMPLETED, job.retry_count)
            logger.info("Job completed: id=%s, type=%s", job.id, job.job_type)
            return DONE
        finally:
            conn.close()

    # ---------- timed out executions ----------
    def is_abandoned(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._abandoned

    def join_abandoned(self, timeout: Optional[float] = None) -> bool:
        """Wait for timed out executions to settle. True if none is left."""
        with self._lock:
            watchers = list(self._abandoned.values())
        for w in watchers:
            w.join(timeout)
        with self._lock:
            return not self._abandoned

    def _abandon(self, job: Job, timeout: ExecutionTimeout) -> None:
        error = f"ExecutionTimeout: {timeout}"
        logger.warning(
            "Job id=%s type=%s %s; it stays RUNNING until the executor returns",
            job.id, job.job_type, timeout,
        )

        def settle():
            timeout.thread.join()
            try:
                conn = connect_db(self.db_path)
                try:
                    self._record_failure(conn, job, error)
                finally:
                    conn.close()
            except Exception:
                logger.exception("Could not record the timeout of job %s", job.id)
            finally:
                with self._lock:
                    self._abandoned.pop(job.id, None)

        watcher = threading.Thread(target=settle, name=f"jobengine-timeout-{job.id}", daemon=True)
        with self._lock:
            self._abandoned[job.id] = watcher
        watcher.start()

    # ---------- outcomes ----------
    def _record_failure(self, conn, job: Job, error: Optional[str]) -> str:
        new_count, retryable = outcome_after_failure(job.retry_count, self.config.max_retries)
        if retryable:
            delay = backoff_delay(self.config.backoff_base_seconds, new_count)
            self._finish(
                conn, job, PENDING, new_count,
                last_error=error,
                next_run_at=iso_seconds_from(None, delay) if delay else None,
            )
            logger.warning(
                "Job failed: id=%s, type=%s, attempt %d/%d, requeued: %s",
                job.id, job.job_type, new_count, self.config.max_retries, error,
            )
            return REQUEUED

        self._finish(conn, job, FAILED, new_count, last_error=error, terminal=True)
        logger.error(
            "Job failed permanently: id=%s, type=%s, retries=%d: %s",
            job.id, job.job_type, new_count, error,
        )
        return DEAD

    def _finish(self, conn, job: Job, status: str, retry_count: int, **fields) -> bool:
        written = repository.update_status(
            conn, job.id, status, retry_count, expected_status=RUNNING, **fields
        )
        if not written:
            # stale recovery took the job over while it was still executing
            logger.warning(
                "Job %s left RUNNING before its %s result was recorded", job.id, status,
            )
        return written
