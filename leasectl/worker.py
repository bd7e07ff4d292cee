import logging
import shlex
import signal
import subprocess
import threading
import time
from typing import Any, Optional, Tuple

from .db import connect_db, database_file
from .errors import JobConflict, LeaseCtlError
from .models import Job, SUCCEEDED, FAILED
from .repository import claim_next, complete, heartbeat, requeue_expired, get_setting

log = logging.getLogger(__name__)

Outcome = Tuple[str, Any, Optional[str]]


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        log.info("Received signal %s. Stopping workers", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread
            pass


# ---------- Job handlers ----------
def run_shell(job: Job, timeout: int) -> Outcome:
    cmd = job.payload.get("command") if isinstance(job.payload, dict) else None
    if not cmd or not isinstance(cmd, str):
        return FAILED, {}, "shell job payload needs a 'command' string"

    try:
        args = shlex.split(cmd)
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return FAILED, {"exit_code": 124}, f"command timed out after {timeout}s"
    except FileNotFoundError:
        return FAILED, {"exit_code": 127}, f"command not found: {cmd}"
    except (OSError, ValueError) as e:
        return FAILED, {"exit_code": 1}, f"could not run command: {e}"

    out = {
        "exit_code": result.returncode,
        "stdout": result.stdout.strip(),
        "stderr": result.stderr.strip(),
    }
    if result.returncode == 0:
        return SUCCEEDED, out, None
    return FAILED, out, f"exit_code={result.returncode}"


def execute_job(job: Job, timeout: int = 20) -> Outcome:
    if job.type == "noop":
        return SUCCEEDED, {"message": "noop"}, None
    if job.type == "shell":
        return run_shell(job, timeout)
    return FAILED, {}, f"unsupported job type: {job.type}"


# ---------- Heartbeating ----------
class Heartbeater(threading.Thread):
    """Renews one job's lease every `interval` seconds until stopped or the lease is lost."""

    def __init__(self, db_file: Optional[str], job_id: int, agent_id: int,
                 lease_seconds: int, interval: float):
        super().__init__(name=f"heartbeat-{job_id}", daemon=True)
        self.db_file = db_file
        self.job_id = job_id
        self.agent_id = agent_id
        self.lease_seconds = lease_seconds
        self.interval = interval
        self.lost = threading.Event()
        self._halt = threading.Event()

    def stop(self):
        self._halt.set()
        self.join()

    def run(self):
        conn = connect_db(self.db_file)
        try:
            while not self._halt.wait(self.interval):
                try:
                    job = heartbeat(conn, self.job_id, self.agent_id, self.lease_seconds)
                except LeaseCtlError as e:
                    log.warning("Heartbeat for job %s failed: %s", self.job_id, e)
                    continue
                if job is None:
                    log.warning("Lost lease on job %s; stopping heartbeat", self.job_id)
                    self.lost.set()
                    return
        finally:
            conn.close()


def run_once(
    conn,
    agent_id: int,
    *,
    db_file: Optional[str] = None,
    lease_seconds: int = 30,
    heartbeat_interval: float = 10,
    timeout: int = 20,
) -> Optional[Job]:
    """Claim one job, execute it while heartbeating, then report the outcome.

    Returns the completed job, or None if nothing was claimed or the lease was
    lost before the report could be made.
    """
    job = claim_next(conn, agent_id, lease_seconds)
    if job is None:
        return None

    # The heartbeat thread opens its own connection to the same database.
    db_file = db_file or database_file(conn)
    log.info("Executing job %s (%s), attempt %s", job.id, job.type, job.attempt)
    beat = Heartbeater(db_file, job.id, agent_id, lease_seconds, heartbeat_interval)
    beat.start()
    try:
        status, result, error = execute_job(job, timeout=timeout)
    finally:
        beat.stop()

    if beat.lost.is_set():
        log.warning("Job %s was reclaimed while running; discarding outcome", job.id)
        return None

    try:
        done = complete(conn, job.id, agent_id, status, result, error)
    except JobConflict as e:
        log.warning("%s", e)
        return None
    log.info("Job %s finished: %s", done.id, done.status)
    return done


def worker_loop(name: str, agent_id: int, stop: threading.Event, db_file: Optional[str] = None):
    conn = connect_db(db_file)
    try:
        lease = get_setting(conn, "lease_seconds")
        interval = get_setting(conn, "heartbeat_interval")
        poll = get_setting(conn, "poll_interval")
        timeout = get_setting(conn, "job_timeout_seconds")
    except LeaseCtlError as e:
        log.warning("[%s] could not load config (%s); using defaults.", name, e)
        lease, interval, poll, timeout = 30, 10, 1.0, 20
    if interval >= lease:
        log.warning("[%s] heartbeat_interval %s is not below lease_seconds %s; leases may lapse.", name, interval, lease)

    while not stop.is_set():
        try:
            job = run_once(
                conn, agent_id,
                db_file=db_file, lease_seconds=lease,
                heartbeat_interval=interval, timeout=timeout,
            )
            if job is None:
                stop.wait(poll)
        except LeaseCtlError as e:
            log.error("[%s] %s", name, e)
            stop.wait(1)

    conn.close()
    log.info("[%s] Worker stopped.", name)


def sweeper_loop(stop: threading.Event, db_file: Optional[str] = None, interval: Optional[float] = None):
    """Call requeue_expired every `interval` seconds until stopped."""
    conn = connect_db(db_file)
    try:
        if interval is None:
            interval = get_setting(conn, "sweep_interval")
        while not stop.is_set():
            try:
                ids = requeue_expired(conn)
                if ids:
                    log.info("[sweeper] requeued %s", ids)
            except LeaseCtlError as e:
                log.error("[sweeper] %s", e)
            stop.wait(interval)
    finally:
        conn.close()
    log.info("[sweeper] stopped.")


def start_workers(count: int, agent_id: int, db_file: Optional[str] = None, with_sweeper: bool = False):
    """Start worker threads (and optionally a sweeper) and block until a signal stops them."""
    stop = threading.Event()
    setup_signal_handlers(stop)
    threads = []

    for i in range(count):
        t = threading.Thread(target=worker_loop, args=(f"worker-{i+1}", agent_id, stop, db_file), daemon=True)
        t.start()
        threads.append(t)
        log.info("Started %s", t.name)

    if with_sweeper:
        t = threading.Thread(target=sweeper_loop, args=(stop, db_file), name="sweeper", daemon=True)
        t.start()
        threads.append(t)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        stop.set()
        for t in threads:
            t.join()
        log.info("All workers stopped gracefully.")
