"""Shared fixtures for the job engine tests."""

import threading
import time

import pytest

from jobengine.config import EngineConfig
from jobengine.db import connect_db, init_db
from jobengine.errors import ExecutionError
from jobengine.registry import ExecutorRegistry


class RecordingExecutor:
    """Fails the first `failures` calls, then succeeds. Records every payload."""

    def __init__(self, failures=0, delay=0.0):
        self.failures = failures
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, payload):
        with self._lock:
            self.calls.append(payload)
            attempt = len(self.calls)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if attempt <= self.failures:
                raise ExecutionError(f"planned failure #{attempt}")
        finally:
            with self._lock:
                self.active -= 1


class AlwaysFails(RecordingExecutor):
    def __init__(self):
        super().__init__(failures=10 ** 6)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "jobs.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def config():
    return EngineConfig(max_retries=3, worker_count=2, job_timeout_seconds=5)


@pytest.fixture
def registry():
    return ExecutorRegistry()


def force(conn, job_id, **columns):
    """Write columns directly, bypassing the engine (simulates crashes / old rows)."""
    assignments = ", ".join(f"{k}=?" for k in columns)
    with conn:
        conn.execute(f"UPDATE jobs SET {assignments} WHERE id=?", (*columns.values(), job_id))
