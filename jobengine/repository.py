import sqlite3
from datetime import datetime
from functools import wraps
from typing import Dict, Iterable, List, Optional

from .config import validate_config_value
from .errors import JobNotFoundError, StorageError
from .models import Job, PENDING, RUNNING, COMPLETED, FAILED, STATUSES
from .utils import now_iso, to_iso

ERROR_MAX_LEN = 500


def _storage_errors(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StorageError(f"DB error in {fn.__name__}: {e}") from e
    return wrapper


# ---------- Config ----------
@_storage_errors
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


@_storage_errors
def set_config(conn, key: str, value):
    value = validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


# ---------- Jobs: insert / claim / update ----------
@_storage_errors
def insert_job(conn, job_type: str, payload: str, now: Optional[datetime] = None) -> Job:
    if not job_type or not job_type.strip():
        raise ValueError("Job type cannot be empty.")
    if not isinstance(payload, str):
        raise ValueError("Payload must be a string.")

    ts = now_iso(now)
    with conn:
        cur = conn.execute(
            """INSERT INTO jobs
               (job_type, payload, status, retry_count, created_at, updated_at)
               VALUES (?, ?, ?, 0, ?, ?)""",
            (job_type, payload, PENDING, ts, ts),
        )
    return Job(
        id=cur.lastrowid,
        job_type=job_type,
        payload=payload,
        status=PENDING,
        retry_count=0,
        created_at=ts,
        updated_at=ts,
    )


@_storage_errors
def get_job(conn, job_id: int) -> Job:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        raise JobNotFoundError(job_id)
    return Job.from_row(row)


@_storage_errors
def claim_job(conn, job: Job, now: Optional[datetime] = None) -> bool:
    """Move `job` into RUNNING only if nobody else touched it since it was fetched."""
    with conn:
        updated = conn.execute(
            """UPDATE jobs SET status=?, updated_at=?
               WHERE id=? AND status=? AND retry_count=? AND terminal=0""",
            (RUNNING, now_iso(now), job.id, job.status, job.retry_count),
        )
    return updated.rowcount == 1


@_storage_errors
def update_status(
    conn,
    job_id: int,
    new_status: str,
    retry_count: int,
    *,
    expected_status: Optional[str] = None,
    last_error: Optional[str] = None,
    next_run_at: Optional[str] = None,
    terminal: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    if new_status not in STATUSES:
        raise ValueError(f"Unknown status {new_status!r}.")
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative.")

    ts = now_iso(now)
    sql = """UPDATE jobs
             SET status=?, retry_count=?, updated_at=?, next_run_at=?, last_error=?,
                 terminal=?, executed_at=CASE WHEN ? THEN ? ELSE executed_at END
             WHERE id=?"""
    params = [
        new_status, retry_count, ts, next_run_at,
        last_error[:ERROR_MAX_LEN] if last_error else None,
        int(terminal), new_status == COMPLETED, ts, job_id,
    ]
    if expected_status is not None:
        sql += " AND status=?"
        params.append(expected_status)

    with conn:
        updated = conn.execute(sql, params)
    return updated.rowcount == 1


# ---------- Queries ----------
@_storage_errors
def list_jobs(
    conn,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Job]:
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if job_type:
        clauses.append("job_type=?")
        params.append(job_type)
    sql = "SELECT * FROM jobs"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at ASC, id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]


@_storage_errors
def list_pending(conn, now: Optional[datetime] = None) -> List[Job]:
    rows = conn.execute(
        """SELECT * FROM jobs
           WHERE status=? AND (next_run_at IS NULL OR next_run_at <= ?)
           ORDER BY created_at ASC, id ASC""",
        (PENDING, now_iso(now)),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


@_storage_errors
def list_failed_eligible_for_retry(conn, max_retries: int) -> List[Job]:
    rows = conn.execute(
        """SELECT * FROM jobs
           WHERE status=? AND terminal=0 AND retry_count < ?
           ORDER BY created_at ASC, id ASC""",
        (FAILED, max_retries),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


@_storage_errors
def list_stale_running(conn, cutoff: datetime) -> List[Job]:
    rows = conn.execute(
        """SELECT * FROM jobs
           WHERE status=? AND updated_at < ?
           ORDER BY created_at ASC, id ASC""",
        (RUNNING, to_iso(cutoff)),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


@_storage_errors
def count_by_status(conn, status: str) -> int:
    return conn.execute(
        "SELECT COUNT(1) AS c FROM jobs WHERE status=?", (status,)
    ).fetchone()["c"]


@_storage_errors
def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATUSES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    # terminal FAILED jobs, i.e. what operators need to look at
    out["dead"] = conn.execute(
        "SELECT COUNT(1) AS c FROM jobs WHERE status=? AND terminal=1", (FAILED,)
    ).fetchone()["c"]
    return out


# ---------- Retention ----------
@_storage_errors
def count_older_than(conn, cutoff: datetime, statuses: Iterable[str]) -> int:
    statuses = list(statuses)
    if not statuses:
        return 0
    marks = ",".join("?" for _ in statuses)
    return conn.execute(
        f"SELECT COUNT(1) AS c FROM jobs WHERE created_at < ? AND status IN ({marks})",
        (to_iso(cutoff), *statuses),
    ).fetchone()["c"]


@_storage_errors
def delete_older_than(conn, cutoff: datetime) -> int:
    with conn:
        res = conn.execute("DELETE FROM jobs WHERE created_at < ?", (to_iso(cutoff),))
    return res.rowcount


# ---------- Crash recovery ----------
@_storage_errors
def fail_stale_job(
    conn,
    job: Job,
    retry_count: int,
    terminal: bool,
    reason: str,
    now: Optional[datetime] = None,
) -> bool:
    """Record a crashed RUNNING attempt, unless the row moved on since it was read."""
    with conn:
        updated = conn.execute(
            """UPDATE jobs
               SET status=?, retry_count=?, terminal=?, last_error=?, updated_at=?
               WHERE id=? AND status=? AND retry_count=? AND updated_at=?""",
            (
                FAILED, retry_count, int(terminal), reason[:ERROR_MAX_LEN], now_iso(now),
                job.id, RUNNING, job.retry_count, job.updated_at,
            ),
        )
    return updated.rowcount == 1
