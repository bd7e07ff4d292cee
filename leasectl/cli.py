import json
import logging
import threading
from datetime import timedelta

import click

from .agents import authenticate, create_agent, disable_agent, list_agents
from .db import init_db, connect_db
from .errors import JobConflict, LeaseCtlError
from .models import STATUSES, SUCCEEDED, FAILED
from .repository import (
    enqueue_job, claim_next, heartbeat, complete, requeue_expired,
    get_job, list_jobs, counts, get_config, get_setting, set_config,
)
from .utils import parse_delay_to_seconds, utcnow
from .worker import start_workers, sweeper_loop, setup_signal_handlers


def _fail(e, code: int = 1):
    click.secho(f"Error: {e}", fg="red", err=True)
    raise SystemExit(code)


def _echo_job(job):
    click.echo(json.dumps(job.to_dict(), indent=2))


def _connect(ctx):
    return connect_db(ctx.obj["db"])


def _parse_json_option(value, name):
    try:
        return json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint=name)


@click.group(help="leasectl — leased job queue for autonomous agents")
@click.option("--db", "db_file", envvar="LEASECTL_DB", default="queue.db", show_default=True,
              help="SQLite database file")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_file, log_level):
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_file
    # Ensure DB/schema exist before any command runs
    try:
        init_db(db_file)
    except LeaseCtlError as e:
        _fail(e)


@cli.command("init", help="Create the database schema and default config")
@click.pass_context
def init_cmd(ctx):
    click.secho(f"Initialised {ctx.obj['db']}", fg="green")


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.option("--type", "job_type", required=True, help="Job type, e.g. noop or shell")
@click.option("--payload", default="{}", show_default=True, help="JSON payload")
@click.option("--max-attempts", default=None, type=int, help="Override max_attempts_default")
@click.option("--run-at", default=None, help="ISO datetime; without an offset it is taken as UTC")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.pass_context
def enqueue_cmd(ctx, job_type, payload, max_attempts, run_at, delay_str):
    if run_at and delay_str:
        raise click.UsageError("Use either --run-at or --delay, not both.")
    data = _parse_json_option(payload, "--payload")

    conn = _connect(ctx)
    try:
        scheduled = run_at
        if delay_str:
            scheduled = utcnow() + timedelta(seconds=parse_delay_to_seconds(delay_str))
        job = enqueue_job(conn, job_type, data, scheduled, max_attempts=max_attempts)
        click.secho(f"Enqueued job {job.id} ({job.type}) scheduled_at={job.scheduled_at}", fg="green")
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Agent-facing operations ----------
@cli.command("claim", help="Claim the next eligible job for an agent")
@click.option("--agent", "agent_id", required=True, type=int)
@click.option("--lease", "lease_seconds", default=None, type=int, help="Lease seconds (default: config)")
@click.pass_context
def claim_cmd(ctx, agent_id, lease_seconds):
    conn = _connect(ctx)
    try:
        lease = get_setting(conn, "lease_seconds") if lease_seconds is None else lease_seconds
        job = claim_next(conn, agent_id, lease)
        if job is None:
            click.echo("No job available.")
            return
        _echo_job(job)
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("heartbeat", help="Extend the lease on a running job")
@click.argument("job_id", type=int)
@click.option("--agent", "agent_id", required=True, type=int)
@click.option("--lease", "lease_seconds", default=None, type=int, help="Lease seconds (default: config)")
@click.pass_context
def heartbeat_cmd(ctx, job_id, agent_id, lease_seconds):
    conn = _connect(ctx)
    try:
        lease = get_setting(conn, "lease_seconds") if lease_seconds is None else lease_seconds
        job = heartbeat(conn, job_id, agent_id, lease)
        if job is None:
            _fail(JobConflict(job_id, f"Job {job_id} is not owned by agent {agent_id} or is not running."), code=2)
        click.secho(f"Lease on job {job_id} extended to {job.lease_expires_at}", fg="green")
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("complete", help="Report the terminal outcome of a job")
@click.argument("job_id", type=int)
@click.option("--agent", "agent_id", required=True, type=int)
@click.option("--status", required=True, type=click.Choice([SUCCEEDED, FAILED]))
@click.option("--result", default="{}", show_default=True, help="JSON result")
@click.option("--error", default=None)
@click.pass_context
def complete_cmd(ctx, job_id, agent_id, status, result, error):
    data = _parse_json_option(result, "--result")
    conn = _connect(ctx)
    try:
        _echo_job(complete(conn, job_id, agent_id, status, data, error))
    except JobConflict as e:
        _fail(e, code=2)
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("sweep", help="Requeue or fail jobs whose lease has expired")
@click.option("--loop", is_flag=True, help="Keep sweeping every sweep_interval seconds")
@click.pass_context
def sweep_cmd(ctx, loop):
    if loop:
        stop = threading.Event()
        setup_signal_handlers(stop)
        click.secho("Sweeping. Press Ctrl+C to stop…", fg="cyan")
        sweeper_loop(stop, ctx.obj["db"])
        return

    conn = _connect(ctx)
    try:
        ids = requeue_expired(conn)
        click.echo(json.dumps(ids))
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Jobs ----------
@cli.command("show", help="Show one job")
@click.argument("job_id", type=int)
@click.pass_context
def show_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        _echo_job(get_job(conn, job_id))
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("list")
@click.option("--status", type=click.Choice(list(STATUSES)), default=None)
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_cmd(ctx, status, limit):
    conn = _connect(ctx)
    try:
        jobs = list_jobs(conn, status=status, limit=limit)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>6} | {j.type:<10} | {j.status:<9} | attempt={j.attempt}/{j.max_attempts} "
            f"| scheduled={j.scheduled_at} | agent={j.locked_by_agent_id or '-'} | last_error={j.last_error}"
        )


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- Agents ----------
@cli.group("agent", help="Manage agent identities")
def agent_group():
    pass


@agent_group.command("create")
@click.argument("name")
@click.pass_context
def agent_create_cmd(ctx, name):
    conn = _connect(ctx)
    try:
        agent, token = create_agent(conn, name)
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()
    click.secho(f"Created agent {agent.id} ({agent.name}). Token (shown once):", fg="green")
    click.echo(token)


@agent_group.command("list")
@click.pass_context
def agent_list_cmd(ctx):
    conn = _connect(ctx)
    try:
        rows = list_agents(conn)
    finally:
        conn.close()

    if not rows:
        click.echo("No agents.")
        return
    for r in rows:
        state = "disabled" if r["disabled"] else "active"
        click.echo(f"{r['id']:>4} | {r['name']:<20} | {state:<8} | last_seen={r['last_seen_at']}")


@agent_group.command("disable")
@click.argument("agent_id", type=int)
@click.pass_context
def agent_disable_cmd(ctx, agent_id):
    conn = _connect(ctx)
    try:
        disable_agent(conn, agent_id)
        click.secho(f"Agent {agent_id} disabled.", fg="yellow")
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Run in-process agents")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--token", envvar="LEASECTL_AGENT_TOKEN", required=True, help="Agent bearer token")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--sweep/--no-sweep", default=False, help="Also run the lease sweeper")
@click.pass_context
def worker_start(ctx, token, count, sweep):
    conn = _connect(ctx)
    try:
        agent = authenticate(conn, token)
    finally:
        conn.close()
    if agent is None:
        _fail("invalid agent token")

    click.secho(f"Starting {count} worker(s) as agent {agent.id} ({agent.name}). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, agent.id, db_file=ctx.obj["db"], with_sweeper=sweep)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _connect(ctx)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except LeaseCtlError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli(obj={})
