import sqlite3
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .utils import loads_json

# Job States
QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

STATUSES = (QUEUED, RUNNING, SUCCEEDED, FAILED)
TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass
class Job:
    id: int
    type: str
    payload: Any
    status: str = QUEUED
    created_at: str = ""
    scheduled_at: str = ""
    locked_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    lease_expires_at: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 3
    locked_by_agent_id: Optional[int] = None
    last_agent_id: Optional[int] = None
    result: Any = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=int(row["id"]),
            type=row["type"],
            payload=loads_json(row["payload"]),
            status=row["status"],
            created_at=row["created_at"],
            scheduled_at=row["scheduled_at"],
            locked_at=row["locked_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            heartbeat_at=row["heartbeat_at"],
            lease_expires_at=row["lease_expires_at"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            locked_by_agent_id=row["locked_by_agent_id"],
            last_agent_id=row["last_agent_id"],
            result=loads_json(row["result"]),
            last_error=row["last_error"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AgentIdentity:
    id: int
    name: str
