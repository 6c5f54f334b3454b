import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from . import repository
from .db import connect_db
from .models import PENDING, RUNNING
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    cutoff: str
    deleted: int
    unfinished: int


class RetentionSweeper:
    """Deletes job records older than the retention window, whatever their status."""

    def __init__(self, db_path: str, retention_window_days: int):
        self.db_path = db_path
        self.retention_window = timedelta(days=retention_window_days)

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        cutoff = (now or utcnow()) - self.retention_window
        conn = connect_db(self.db_path)
        try:
            unfinished = repository.count_older_than(conn, cutoff, (PENDING, RUNNING))
            if unfinished:
                # the dispatcher is not keeping up, or a job type lost its executor
                logger.warning(
                    "Retention sweep is purging %d job(s) that never finished (created before %s)",
                    unfinished, to_iso(cutoff),
                )
            deleted = repository.delete_older_than(conn, cutoff)
        finally:
            conn.close()

        logger.info("Cleaned up %d old background jobs (created before %s)", deleted, to_iso(cutoff))
        return SweepResult(cutoff=to_iso(cutoff), deleted=deleted, unfinished=unfinished)
