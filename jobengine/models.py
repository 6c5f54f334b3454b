import sqlite3
from dataclasses import dataclass
from typing import Optional

# Job statuses
PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

STATUSES = (PENDING, RUNNING, COMPLETED, FAILED)


@dataclass
class Job:
    id: int
    job_type: str
    payload: str
    status: str = PENDING
    retry_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    next_run_at: Optional[str] = None
    last_error: Optional[str] = None
    executed_at: Optional[str] = None
    terminal: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            payload=row["payload"],
            status=row["status"],
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            next_run_at=row["next_run_at"],
            last_error=row["last_error"],
            executed_at=row["executed_at"],
            terminal=bool(row["terminal"]),
        )

    @property
    def is_dead(self) -> bool:
        """Terminally failed: never dispatched again."""
        return self.status == FAILED and self.terminal

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "next_run_at": self.next_run_at,
            "last_error": self.last_error,
            "executed_at": self.executed_at,
            "terminal": self.terminal,
        }
