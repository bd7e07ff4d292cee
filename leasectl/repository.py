"""Job lifecycle engine.

Every function takes an open connection and explicit arguments; there is no
module-level state. Transitions are only ever made here:

    queued -> running -> succeeded | failed
    running -> queued   (lease expired, attempts remain)
    running -> failed   (lease expired, attempts exhausted)

All timestamps come from the keyword-only ``now`` argument (defaults to the
current UTC time), which keeps the engine testable without sleeping.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .agents import touch_agent
from .config import ALLOWED_CONFIG_KEYS, DEFAULT_CONFIG, INT_CONFIG_KEYS
from .db import store_errors, transaction
from .errors import JobConflict, NotFound, ValidationError
from .models import Job, QUEUED, RUNNING, SUCCEEDED, FAILED, STATUSES, TERMINAL_STATUSES
from .utils import (
    coerce_datetime, dumps_json, iso_in, json_values_equal, to_iso, utcnow,
)

log = logging.getLogger(__name__)

LEASE_EXPIRED_NOTE = "lease expired"
BACKOFF_BASE_SECONDS = 5
BACKOFF_CAP_SECONDS = 300


def backoff_seconds(attempt: int) -> int:
    """Delay before a reclaimed job becomes eligible again: min(300, 5 * 2^attempt).

    No jitter is applied, so jobs reclaimed in the same sweep with the same
    attempt count become eligible at the same moment.
    """
    if attempt >= 16:
        return BACKOFF_CAP_SECONDS
    return min(BACKOFF_CAP_SECONDS, BACKOFF_BASE_SECONDS * 2 ** max(attempt, 0))


def _check_lease(lease_seconds: int) -> int:
    if isinstance(lease_seconds, bool) or not isinstance(lease_seconds, int) or lease_seconds <= 0:
        raise ValidationError("lease_seconds must be a positive integer.")
    return lease_seconds


def _append_error(previous: Optional[str], note: str) -> str:
    return f"{previous}; {note}" if previous else note


def _fetch(conn: sqlite3.Connection, job_id: int) -> Optional[Job]:
    with store_errors():
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cfg = dict(DEFAULT_CONFIG)
    with store_errors():
        rows = conn.execute("SELECT key, value FROM config").fetchall()
    cfg.update({r["key"]: r["value"] for r in rows})
    return cfg


def get_setting(conn, key: str) -> Union[int, float]:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Unknown config key: {key}")
    raw = get_config(conn)[key]
    return int(raw) if key in INT_CONFIG_KEYS else float(raw)


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        number = int(value) if key in INT_CONFIG_KEYS else float(value)
    except (TypeError, ValueError):
        kind = "an integer" if key in INT_CONFIG_KEYS else "a number"
        raise ValidationError(f"{key} must be {kind}.")
    if number <= 0:
        raise ValidationError(f"{key} must be > 0.")
    if key in ("heartbeat_interval", "lease_seconds"):
        merged = get_config(conn)
        merged[key] = str(number)
        # Leases must be renewed before they lapse.
        if int(merged["heartbeat_interval"]) >= int(merged["lease_seconds"]):
            raise ValidationError("heartbeat_interval must be smaller than lease_seconds.")
    with transaction(conn):
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(number)),
        )


# ---------- Jobs: enqueue / claim / heartbeat / complete ----------
def enqueue_job(
    conn,
    job_type: str,
    payload: Any,
    scheduled_at: Optional[Union[datetime, str]] = None,
    *,
    max_attempts: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Job:
    job_type = job_type.strip() if isinstance(job_type, str) else ""
    if not job_type:
        raise ValidationError("Job type is required.")
    payload_json = dumps_json(payload, "payload")

    now = now or utcnow()
    # Never earlier than created_at.
    when = max(coerce_datetime(scheduled_at), now) if scheduled_at is not None else now

    with transaction(conn):
        if max_attempts is None:
            row = conn.execute("SELECT value FROM config WHERE key='max_attempts_default'").fetchone()
            max_attempts = int(row["value"] if row else DEFAULT_CONFIG["max_attempts_default"])
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValidationError("max_attempts must be an integer >= 1.")

        cur = conn.execute(
            """INSERT INTO jobs (type, payload, status, created_at, scheduled_at, attempt, max_attempts)
               VALUES (?, ?, ?, ?, ?, 0, ?)""",
            (job_type, payload_json, QUEUED, to_iso(now), to_iso(when), max_attempts),
        )
        job = _fetch(conn, int(cur.lastrowid))

    log.info("Enqueued job %s type=%s scheduled_at=%s", job.id, job.type, job.scheduled_at)
    return job


def claim_next(
    conn,
    agent_id: int,
    lease_seconds: int,
    *,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """Move the oldest eligible queued job to running under `agent_id`.

    Returns None when nothing is eligible. The select and the conditional
    update share one IMMEDIATE transaction, so no two callers can claim the
    same row.
    """
    _check_lease(lease_seconds)
    now = now or utcnow()
    ts = to_iso(now)

    with transaction(conn):
        if not touch_agent(conn, agent_id, now=ts):
            raise ValidationError(f"Unknown agent {agent_id}.")

        row = conn.execute(
            """SELECT id FROM jobs
               WHERE status=? AND scheduled_at <= ?
               ORDER BY scheduled_at ASC, id ASC
               LIMIT 1""",
            (QUEUED, ts),
        ).fetchone()
        if not row:
            return None

        job_id = row["id"]
        updated = conn.execute(
            """UPDATE jobs
               SET status=?, locked_by_agent_id=?, last_agent_id=?, locked_at=?,
                   started_at=COALESCE(started_at, ?), heartbeat_at=?, lease_expires_at=?,
                   attempt=attempt + 1
               WHERE id=? AND status=?""",
            (RUNNING, agent_id, agent_id, ts, ts, ts, iso_in(lease_seconds, now), job_id, QUEUED),
        )
        if updated.rowcount != 1:
            return None
        job = _fetch(conn, job_id)

    log.info("Agent %s claimed job %s (attempt %s/%s)", agent_id, job.id, job.attempt, job.max_attempts)
    return job


def heartbeat(
    conn,
    job_id: int,
    agent_id: int,
    lease_seconds: int,
    *,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """Extend the lease. None means the caller no longer owns a running job."""
    _check_lease(lease_seconds)
    now = now or utcnow()

    with transaction(conn):
        updated = conn.execute(
            """UPDATE jobs SET heartbeat_at=?, lease_expires_at=?
               WHERE id=? AND locked_by_agent_id=? AND status=?""",
            (to_iso(now), iso_in(lease_seconds, now), job_id, agent_id, RUNNING),
        )
        if updated.rowcount != 1:
            log.info("Heartbeat conflict: job %s is not running under agent %s", job_id, agent_id)
            return None
        return _fetch(conn, job_id)


def complete(
    conn,
    job_id: int,
    agent_id: int,
    status: str,
    result: Any,
    error: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Job:
    """Record the terminal outcome reported by the owning agent.

    A repeat of an already-applied report (same agent, same status, result
    and error) returns the stored job unchanged. Anything else that does not
    match a running job owned by `agent_id` raises JobConflict.
    """
    if status not in TERMINAL_STATUSES:
        raise ValidationError(f'Status must be "{SUCCEEDED}" or "{FAILED}".')
    if error is not None and not isinstance(error, str):
        raise ValidationError("Error must be a string.")
    result_json = dumps_json(result, "result")
    now = now or utcnow()

    with transaction(conn):
        updated = conn.execute(
            """UPDATE jobs
               SET status=?, finished_at=?, result=?, last_error=?,
                   heartbeat_at=NULL, lease_expires_at=NULL, locked_by_agent_id=NULL
               WHERE id=? AND locked_by_agent_id=? AND status=?""",
            (status, to_iso(now), result_json, error, job_id, agent_id, RUNNING),
        )
        job = _fetch(conn, job_id) if updated.rowcount == 1 else None

    if job is not None:
        log.info("Agent %s completed job %s as %s", agent_id, job_id, status)
        return job

    existing = find_by_id(conn, job_id)
    if (
        existing is not None
        and existing.is_terminal
        and existing.last_agent_id == agent_id
        and existing.status == status
        and existing.last_error == error
        and json_values_equal(existing.result, result)
    ):
        log.info("Replayed completion of job %s by agent %s", job_id, agent_id)
        return existing

    log.warning("Completion conflict on job %s from agent %s", job_id, agent_id)
    raise JobConflict(job_id)


# ---------- Reclamation ----------
def requeue_expired(conn, *, now: Optional[datetime] = None) -> List[int]:
    """Reclaim running jobs whose lease has passed.

    Jobs with attempts left go back to queued after a backoff; the rest fail.
    Returns the sorted ids that were requeued.
    """
    now = now or utcnow()
    ts = to_iso(now)
    requeued: List[int] = []
    failed: List[int] = []

    with transaction(conn):
        rows = conn.execute(
            """SELECT id, attempt, max_attempts, last_error FROM jobs
               WHERE status=? AND lease_expires_at < ?
               ORDER BY id""",
            (RUNNING, ts),
        ).fetchall()

        for row in rows:
            note = _append_error(row["last_error"], LEASE_EXPIRED_NOTE)
            if row["attempt"] >= row["max_attempts"]:
                conn.execute(
                    """UPDATE jobs
                       SET status=?, finished_at=?, result=?, last_error=?,
                           locked_by_agent_id=NULL, heartbeat_at=NULL, lease_expires_at=NULL
                       WHERE id=? AND status=?""",
                    (FAILED, ts, "{}", note, row["id"], RUNNING),
                )
                failed.append(row["id"])
            else:
                conn.execute(
                    """UPDATE jobs
                       SET status=?, scheduled_at=?, last_error=?,
                           locked_by_agent_id=NULL, heartbeat_at=NULL, lease_expires_at=NULL
                       WHERE id=? AND status=?""",
                    (QUEUED, iso_in(backoff_seconds(row["attempt"]), now), note, row["id"], RUNNING),
                )
                requeued.append(row["id"])

    if requeued or failed:
        log.info("Lease sweep: requeued=%s failed=%s", requeued, failed)
    return sorted(requeued)


# ---------- Queries ----------
def find_by_id(conn, job_id: int) -> Optional[Job]:
    return _fetch(conn, job_id)


def get_job(conn, job_id: int) -> Job:
    job = _fetch(conn, job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found.")
    return job


def list_jobs(conn, status: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
    if status is not None and status not in STATUSES:
        raise ValidationError(f"Unknown status: {status}")
    sql = "SELECT * FROM jobs"
    params: list = []
    if status:
        sql += " WHERE status=?"
        params.append(status)
    sql += " ORDER BY scheduled_at ASC, id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    with store_errors():
        rows = conn.execute(sql, params).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATUSES}
    with store_errors():
        rows = conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status").fetchall()
    for r in rows:
        out[r["status"]] = r["c"]
    return out
