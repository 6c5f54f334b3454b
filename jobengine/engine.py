import logging
import threading
from typing import Dict, List, Optional

from . import repository
from .config import EngineConfig, default_db_path
from .db import connect_db, init_db
from .dispatcher import CycleResult, Dispatcher
from .models import Job
from .registry import ExecutorRegistry
from .retry import requeue_failed_jobs, retry_job
from .sweeper import RetentionSweeper, SweepResult

logger = logging.getLogger(__name__)


class JobEngine:
    """Durable background job engine.

    Producers call :meth:`submit`. :meth:`start` runs the dispatcher and the
    retention sweeper on their own timer threads until :meth:`stop`.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        db_path: Optional[str] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.db_path = db_path or default_db_path()
        init_db(self.db_path)
        if config is None:
            config = self.load_config()
        self.config = config
        self.registry = registry
        self.dispatcher = Dispatcher(self.db_path, registry, config)
        self.sweeper = RetentionSweeper(self.db_path, config.retention_window_days)

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._threads: List[threading.Thread] = []

    def load_config(self) -> EngineConfig:
        conn = connect_db(self.db_path)
        try:
            return EngineConfig.from_mapping(repository.get_config(conn))
        finally:
            conn.close()

    # ---------- Producer API ----------
    def submit(self, job_type: str, payload: str) -> Job:
        """Record a new PENDING job. Identical submissions are separate jobs."""
        conn = connect_db(self.db_path)
        try:
            job = repository.insert_job(conn, job_type, payload)
        finally:
            conn.close()
        logger.info("Scheduled background job: id=%s, type=%s", job.id, job.job_type)
        self.wake()
        return job

    # ---------- Admin / observability ----------
    def get_job(self, job_id: int) -> Job:
        conn = connect_db(self.db_path)
        try:
            return repository.get_job(conn, job_id)
        finally:
            conn.close()

    def list_jobs(self, status: Optional[str] = None, job_type: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Job]:
        conn = connect_db(self.db_path)
        try:
            return repository.list_jobs(conn, status=status, job_type=job_type, limit=limit)
        finally:
            conn.close()

    def count_by_status(self, status: str) -> int:
        conn = connect_db(self.db_path)
        try:
            return repository.count_by_status(conn, status)
        finally:
            conn.close()

    def counts(self) -> Dict[str, int]:
        conn = connect_db(self.db_path)
        try:
            return repository.counts(conn)
        finally:
            conn.close()

    def retry_job(self, job_id: int) -> Job:
        conn = connect_db(self.db_path)
        try:
            job = retry_job(conn, job_id, self.config.max_retries)
        finally:
            conn.close()
        self.wake()
        return job

    def requeue_failed(self) -> int:
        conn = connect_db(self.db_path)
        try:
            count = requeue_failed_jobs(conn, self.config.max_retries)
        finally:
            conn.close()
        if count:
            self.wake()
        return count

    def run_once(self) -> CycleResult:
        return self.dispatcher.run_cycle()

    def sweep_once(self) -> SweepResult:
        return self.sweeper.sweep()

    # ---------- Background loops ----------
    def wake(self) -> None:
        """Ask the dispatcher loop to run a cycle now instead of at the next tick."""
        self._wake.set()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Engine is already running.")
        self.registry.freeze()
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._dispatch_loop, name="jobengine-dispatcher", daemon=True),
            threading.Thread(target=self._sweep_loop, name="jobengine-sweeper", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info(
            "Job engine started: db=%s, executors=%s, max_retries=%d, workers=%d",
            self.db_path, ", ".join(self.registry.job_types()) or "-",
            self.config.max_retries, self.config.worker_count,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop both loops. A cycle in progress is allowed to finish."""
        self._stop.set()
        self._wake.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("Job engine stopped.")

    def _dispatch_loop(self):
        interval = self.config.dispatch_interval_ms / 1000.0
        while not self._stop.is_set():
            self._wake.clear()
            try:
                self.dispatcher.run_cycle()
            except Exception:
                # storage errors included: the next tick tries again
                logger.exception("Error in background job dispatcher")
            self._wake.wait(interval)

    def _sweep_loop(self):
        interval = self.config.sweep_interval_ms / 1000.0
        while not self._stop.is_set():
            try:
                self.sweeper.sweep()
            except Exception:
                logger.exception("Error during scheduled job cleanup")
            self._stop.wait(interval)
