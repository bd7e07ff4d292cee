from datetime import timedelta

import pytest

from leasectl.db import connect_db
from leasectl.errors import NotFound, StoreUnavailable, ValidationError
from leasectl.models import QUEUED, RUNNING, SUCCEEDED
from leasectl.repository import (
    claim_next, complete, counts, enqueue_job, find_by_id, get_config, get_job, heartbeat,
    list_jobs, requeue_expired, set_config,
)
from leasectl.utils import parse_iso, to_iso, utcnow


def test_enqueue_creates_queued_job(conn):
    job = enqueue_job(conn, "noop", {"ping": "pong"})

    assert job.id > 0
    assert job.status == QUEUED
    assert job.attempt == 0
    assert job.max_attempts == 3
    assert job.payload == {"ping": "pong"}
    assert job.scheduled_at == job.created_at
    assert job.locked_by_agent_id is None
    assert job.lease_expires_at is None
    assert job.heartbeat_at is None
    assert job.result is None


def test_enqueue_ids_are_monotonic(conn):
    a = enqueue_job(conn, "noop", {})
    b = enqueue_job(conn, "noop", {})
    assert b.id > a.id


@pytest.mark.parametrize("job_type", ["", "   ", None])
def test_enqueue_rejects_empty_type(conn, job_type):
    with pytest.raises(ValidationError):
        enqueue_job(conn, job_type, {})


def test_enqueue_rejects_unserialisable_payload(conn):
    with pytest.raises(ValidationError):
        enqueue_job(conn, "noop", {"bad": {1, 2}})
    assert counts(conn)[QUEUED] == 0


def test_enqueue_never_schedules_before_creation(conn):
    now = utcnow()
    job = enqueue_job(conn, "noop", {}, now - timedelta(hours=1), now=now)
    assert job.scheduled_at == to_iso(now)


def test_enqueue_keeps_future_schedule(conn):
    now = utcnow()
    later = now + timedelta(minutes=5)
    job = enqueue_job(conn, "noop", {}, to_iso(later), now=now)
    assert parse_iso(job.scheduled_at) == later


def test_enqueue_uses_configured_max_attempts(conn):
    set_config(conn, "max_attempts_default", "5")
    assert enqueue_job(conn, "noop", {}).max_attempts == 5
    assert enqueue_job(conn, "noop", {}, max_attempts=1).max_attempts == 1


def test_enqueue_rejects_bad_max_attempts(conn):
    with pytest.raises(ValidationError):
        enqueue_job(conn, "noop", {}, max_attempts=0)


def test_noop_scenario(conn, agent):
    job = enqueue_job(conn, "noop", {"ping": "pong"})

    claimed = claim_next(conn, agent.id, 30)
    assert claimed.id == job.id
    assert claimed.status == RUNNING
    assert claimed.attempt == 1
    assert claimed.locked_by_agent_id == agent.id
    assert claimed.heartbeat_at is not None
    assert parse_iso(claimed.lease_expires_at) - parse_iso(claimed.locked_at) == timedelta(seconds=30)

    done = complete(conn, job.id, agent.id, SUCCEEDED, {"ok": True})
    assert done.status == SUCCEEDED
    assert done.result == {"ok": True}
    assert done.finished_at is not None
    assert done.locked_by_agent_id is None
    assert done.lease_expires_at is None
    assert done.heartbeat_at is None

    again = complete(conn, job.id, agent.id, SUCCEEDED, {"ok": True})
    assert again.finished_at == done.finished_at
    assert again.attempt == 1


def test_claim_orders_by_schedule_then_id(conn, agent):
    now = utcnow()
    late = enqueue_job(conn, "noop", {"n": 1}, now + timedelta(seconds=10), now=now)
    first = enqueue_job(conn, "noop", {"n": 2}, now=now)
    second = enqueue_job(conn, "noop", {"n": 3}, now=now)

    later = now + timedelta(seconds=20)
    assert claim_next(conn, agent.id, 30, now=later).id == first.id
    assert claim_next(conn, agent.id, 30, now=later).id == second.id
    assert claim_next(conn, agent.id, 30, now=later).id == late.id


def test_future_job_is_not_claimable(conn, agent):
    now = utcnow()
    enqueue_job(conn, "noop", {}, now + timedelta(minutes=1), now=now)
    assert claim_next(conn, agent.id, 30, now=now) is None


def test_claim_on_empty_queue_returns_none(conn, agent):
    assert claim_next(conn, agent.id, 30) is None


def test_claim_touches_agent(conn, agent):
    claim_next(conn, agent.id, 30)
    row = conn.execute("SELECT last_seen_at FROM agents WHERE id=?", (agent.id,)).fetchone()
    assert row["last_seen_at"] is not None


def test_claim_rejects_unknown_agent(conn):
    enqueue_job(conn, "noop", {})
    with pytest.raises(ValidationError):
        claim_next(conn, 9999, 30)
    assert counts(conn)[QUEUED] == 1


@pytest.mark.parametrize("lease", [0, -5, 1.5, "30", True])
def test_claim_rejects_bad_lease(conn, agent, lease):
    with pytest.raises(ValidationError):
        claim_next(conn, agent.id, lease)


def test_heartbeat_extends_lease(conn, agent):
    enqueue_job(conn, "noop", {})
    now = utcnow()
    job = claim_next(conn, agent.id, 30, now=now)

    later = now + timedelta(seconds=20)
    beat = heartbeat(conn, job.id, agent.id, 60, now=later)
    assert beat.heartbeat_at == to_iso(later)
    assert beat.lease_expires_at == to_iso(later + timedelta(seconds=60))
    assert beat.attempt == 1


def test_heartbeat_from_other_agent_is_conflict(conn, agent, other_agent):
    enqueue_job(conn, "noop", {})
    job = claim_next(conn, agent.id, 30)
    assert heartbeat(conn, job.id, other_agent.id, 30) is None
    assert find_by_id(conn, job.id).lease_expires_at == job.lease_expires_at


def test_heartbeat_on_queued_or_finished_job_is_conflict(conn, agent):
    job = enqueue_job(conn, "noop", {})
    assert heartbeat(conn, job.id, agent.id, 30) is None

    claim_next(conn, agent.id, 30)
    complete(conn, job.id, agent.id, SUCCEEDED, {})
    assert heartbeat(conn, job.id, agent.id, 30) is None


def test_heartbeat_on_missing_job_is_conflict(conn, agent):
    assert heartbeat(conn, 12345, agent.id, 30) is None


def test_started_at_survives_retry(conn, agent, other_agent):
    enqueue_job(conn, "noop", {})
    now = utcnow()
    first = claim_next(conn, agent.id, 30, now=now)

    requeue_expired(conn, now=now + timedelta(seconds=31))
    second = claim_next(conn, other_agent.id, 30, now=now + timedelta(seconds=60))
    assert second.id == first.id
    assert second.started_at == first.started_at
    assert second.locked_at != first.locked_at
    assert second.attempt == 2


def test_find_by_id_and_get_job(conn):
    job = enqueue_job(conn, "noop", {})
    assert find_by_id(conn, job.id) == job
    assert find_by_id(conn, job.id + 1) is None
    with pytest.raises(NotFound):
        get_job(conn, job.id + 1)


def test_list_and_counts(conn, agent):
    enqueue_job(conn, "noop", {})
    enqueue_job(conn, "noop", {})
    claim_next(conn, agent.id, 30)

    assert counts(conn) == {"queued": 1, "running": 1, "succeeded": 0, "failed": 0}
    assert [j.status for j in list_jobs(conn, status=RUNNING)] == [RUNNING]
    assert len(list_jobs(conn, limit=1)) == 1
    with pytest.raises(ValidationError):
        list_jobs(conn, status="dead")


def test_to_dict_exposes_outward_fields(conn):
    data = enqueue_job(conn, "noop", {"a": [1, 2]}).to_dict()
    for key in (
        "id", "type", "payload", "status", "created_at", "scheduled_at", "locked_at",
        "started_at", "finished_at", "heartbeat_at", "lease_expires_at", "attempt",
        "max_attempts", "locked_by_agent_id", "result", "last_error",
    ):
        assert key in data
    assert data["payload"] == {"a": [1, 2]}
    assert data["created_at"].endswith("Z")


def test_reads_on_closed_store_raise_store_unavailable(db_file):
    c = connect_db(db_file)
    c.close()

    with pytest.raises(StoreUnavailable):
        find_by_id(c, 1)
    with pytest.raises(StoreUnavailable):
        get_job(c, 1)
    with pytest.raises(StoreUnavailable):
        list_jobs(c)
    with pytest.raises(StoreUnavailable):
        counts(c)
    with pytest.raises(StoreUnavailable):
        get_config(c)


def test_heartbeat_interval_must_stay_below_lease(conn):
    with pytest.raises(ValidationError):
        set_config(conn, "heartbeat_interval", "30")
    with pytest.raises(ValidationError):
        set_config(conn, "lease_seconds", "10")

    set_config(conn, "lease_seconds", "60")
    set_config(conn, "heartbeat_interval", "30")
    assert get_config(conn)["heartbeat_interval"] == "30"
