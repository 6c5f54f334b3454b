import json
import logging

import click

from .config import default_db_path
from .db import connect_db, init_db
from .engine import JobEngine
from .errors import JobEngineError
from .executors import SmtpSender, register_builtin_executors
from .models import STATUSES
from .registry import ExecutorRegistry
from .repository import get_config, set_config
from .worker import run_worker


def _engine(ctx) -> JobEngine:
    db_path = ctx.obj["db"]
    registry = register_builtin_executors(ExecutorRegistry(), db_path, email_sender=SmtpSender.from_env())
    return JobEngine(registry, db_path=db_path)


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="jobengine: durable background job engine")
@click.option("--db", "db_path", default=None, help="SQLite database file (default: $JOBENGINE_DB or jobs.db)")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_path or default_db_path()
    # Ensure DB/schema exist before any command runs
    try:
        init_db(ctx.obj["db"])
    except JobEngineError as e:
        _fail(e)


# ---------- Submit ----------
@cli.command("submit", help="Add a new job to the queue")
@click.argument("job_type")
@click.argument("payload", required=False, default="{}")
@click.option("--payload-file", type=click.File("r"), default=None, help="Read the payload from a file")
@click.pass_context
def submit_cmd(ctx, job_type, payload, payload_file):
    if payload_file is not None:
        payload = payload_file.read()
    try:
        job = _engine(ctx).submit(job_type, payload)
    except (JobEngineError, ValueError) as e:
        _fail(e)
    click.secho(f"Submitted job {job.id} ({job.job_type})", fg="green")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(STATUSES, case_sensitive=False), default=None)
@click.option("--type", "job_type", default=None, help="Filter by job type")
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_cmd(ctx, status, job_type, limit):
    try:
        jobs = _engine(ctx).list_jobs(status=status.upper() if status else None, job_type=job_type, limit=limit)
    except JobEngineError as e:
        _fail(e)

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        dead = " (dead)" if j.is_dead else ""
        click.echo(
            f"{j.id:>8} | {j.job_type:<20} | {j.status + dead:<16} | retries={j.retry_count} "
            f"| created={j.created_at} | last_error={j.last_error}"
        )


@cli.command("show")
@click.argument("job_id", type=int)
@click.pass_context
def show_cmd(ctx, job_id):
    try:
        job = _engine(ctx).get_job(job_id)
    except JobEngineError as e:
        _fail(e)
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    try:
        click.echo(json.dumps(_engine(ctx).counts(), indent=2))
    except JobEngineError as e:
        _fail(e)


@cli.command("retry", help="Re-queue a failed job that still has retries left")
@click.argument("job_id", type=int, required=False)
@click.option("--all", "retry_all", is_flag=True, help="Re-queue every retry-eligible failed job")
@click.pass_context
def retry_cmd(ctx, job_id, retry_all):
    if (job_id is None) == (not retry_all):
        raise click.UsageError("Give either JOB_ID or --all.")
    try:
        engine = _engine(ctx)
        if retry_all:
            count = engine.requeue_failed()
            click.secho(f"Re-queued {count} failed job(s).", fg="green")
        else:
            engine.retry_job(job_id)
            click.secho(f"Re-queued job {job_id}.", fg="green")
    except JobEngineError as e:
        _fail(e)


# ---------- Engine ----------
@cli.command("dispatch", help="Run a single dispatch cycle and exit")
@click.pass_context
def dispatch_cmd(ctx):
    try:
        result = _engine(ctx).run_once()
    except JobEngineError as e:
        _fail(e)
    click.echo(json.dumps(result.as_dict(), indent=2))


@cli.command("sweep", help="Delete job records older than the retention window")
@click.pass_context
def sweep_cmd(ctx):
    try:
        result = _engine(ctx).sweep_once()
    except JobEngineError as e:
        _fail(e)
    click.secho(f"Deleted {result.deleted} job(s) created before {result.cutoff}.", fg="green")
    if result.unfinished:
        click.secho(f"{result.unfinished} of them had never finished.", fg="yellow")


@cli.group("worker", help="Run the engine")
def worker_group():
    pass


@worker_group.command("start")
@click.pass_context
def worker_start(ctx):
    try:
        engine = _engine(ctx)
    except JobEngineError as e:
        _fail(e)
    click.secho("Starting job engine. Press Ctrl+C to stop…", fg="cyan")
    run_worker(engine)
    click.secho("Job engine stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except (JobEngineError, ValueError) as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
