import logging
from datetime import datetime
from typing import Optional, Tuple

from . import repository
from .errors import JobNotRetryableError
from .models import Job, PENDING, FAILED

logger = logging.getLogger(__name__)


def should_retry(retry_count_after_failure: int, max_retries: int) -> bool:
    return retry_count_after_failure < max_retries


def backoff_delay(base_seconds: float, retry_count: int) -> float:
    """delay = base * 2 ** (retry_count - 1); 0 when backoff is disabled."""
    if base_seconds <= 0 or retry_count <= 0:
        return 0.0
    return float(base_seconds) * (2 ** (retry_count - 1))


def outcome_after_failure(retry_count: int, max_retries: int) -> Tuple[int, bool]:
    """Return (new_retry_count, retryable) for a job that just failed an attempt.

    The stored count is capped at ``max_retries`` but never drops below the
    current one, even if ``max_retries`` was lowered in the meantime.
    """
    new_count = retry_count + 1
    return max(retry_count, min(new_count, max_retries)), should_retry(new_count, max_retries)


def is_retry_eligible(job: Job, max_retries: int) -> bool:
    return job.status == FAILED and not job.terminal and should_retry(job.retry_count, max_retries)


def retry_job(conn, job_id: int, max_retries: int, now: Optional[datetime] = None) -> Job:
    """Put one retry-eligible FAILED job back on the queue."""
    job = repository.get_job(conn, job_id)
    if not is_retry_eligible(job, max_retries):
        raise JobNotRetryableError(
            f"Job {job_id} cannot be retried. Status: {job.status}, "
            f"retry_count: {job.retry_count}, terminal: {job.terminal}"
        )
    if not repository.update_status(
        conn, job.id, PENDING, job.retry_count, expected_status=FAILED, now=now
    ):
        raise JobNotRetryableError(f"Job {job_id} changed state while being retried.")
    logger.info("Job queued for retry: id=%s, type=%s", job.id, job.job_type)
    return repository.get_job(conn, job_id)


def requeue_failed_jobs(conn, max_retries: int, now: Optional[datetime] = None) -> int:
    """Reconciliation pass: move every retry-eligible FAILED job back to PENDING."""
    count = 0
    for job in repository.list_failed_eligible_for_retry(conn, max_retries):
        if repository.update_status(
            conn, job.id, PENDING, job.retry_count, expected_status=FAILED, now=now
        ):
            count += 1
            logger.info(
                "Job queued for retry: id=%s, type=%s, attempt=%s",
                job.id, job.job_type, job.retry_count,
            )
    if count:
        logger.info("Queued %s failed jobs for retry", count)
    return count
