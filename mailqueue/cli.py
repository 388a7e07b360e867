"""
Command-line interface.

    mailqueue send-email --to a@example.com --subject Hi --title Hello --body "..."
    mailqueue worker --concurrency 4
    mailqueue scheduler --interval 60
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

import click
from pydantic import ValidationError

from mailqueue import __version__
from mailqueue.constants import JOB_KIND_EMAIL, JobStatus, MissedTickPolicy
from mailqueue.db import QueueStore, close_db, init_db
from mailqueue.errors import NotFound, StoreUnavailable
from mailqueue.observability.logging import setup_logging
from mailqueue.scheduler import main as scheduler_main
from mailqueue.types.job import EmailPayload
from mailqueue.utils import parse_duration
from mailqueue.worker import main as worker_main

T = TypeVar("T")


def _with_store(operation: Callable[[QueueStore], Awaitable[T]]) -> T:
    """Run one store operation against a freshly initialized database."""

    async def runner() -> T:
        try:
            store = QueueStore(await init_db())
            return await operation(store)
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except StoreUnavailable as e:
        raise click.ClickException(str(e)) from e


@click.group(help="mailqueue: scheduled email jobs with a durable queue and workers")
@click.version_option(__version__, prog_name="mailqueue")
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"]),
    default=None,
    help="Override LOG_FORMAT.",
)
@click.pass_context
def cli(ctx, log_level, log_format):
    # Long-running commands reapply these after their own setup
    ctx.obj = {"log_level": log_level, "log_format": log_format}
    setup_logging(log_level=log_level, log_format=log_format)


# ---------- Producers ----------
@cli.command("send-email", help="Enqueue one email job for immediate delivery.")
@click.option("--to", "to", required=True, help="Recipient address")
@click.option("--subject", required=True, help="Subject line")
@click.option("--title", default="", help="Heading placed above the body")
@click.option("--body", default="", help="Plain-text body")
@click.option("--delay", "delay_str", default=None, help="Delay before delivery, e.g. 30s, 5m, 1h30m")
@click.option("--max-attempts", type=int, default=None, help="Override the maximum attempts")
def send_email_cmd(to, subject, title, body, delay_str, max_attempts):
    try:
        payload = EmailPayload(to=to, subject=subject, title=title, body=body)
        delay = parse_duration(delay_str) if delay_str else None
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise click.ClickException(f"Invalid email: {fields}") from e
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    async def enqueue(store: QueueStore) -> UUID:
        return await store.enqueue(
            JOB_KIND_EMAIL,
            payload.to_payload(),
            delay=delay,
            max_attempts=max_attempts,
        )

    try:
        job_id = _with_store(enqueue)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    click.echo(str(job_id))


@cli.command("scheduler", help="Run the scheduler loop.")
@click.option("--interval", type=float, default=None, help="Seconds between ticks")
@click.option(
    "--missed-ticks",
    type=click.Choice([p.value for p in MissedTickPolicy]),
    default=None,
    help="What to do with ticks missed while the scheduler was down",
)
@click.pass_obj
def scheduler_cmd(obj, interval, missed_ticks):
    if interval is not None and interval <= 0:
        raise click.BadParameter("must be positive", param_hint="--interval")

    policy = MissedTickPolicy(missed_ticks) if missed_ticks else None
    try:
        asyncio.run(scheduler_main.run_async(interval=interval, missed_ticks=policy, **obj))
    except (StoreUnavailable, ValueError) as e:
        raise click.ClickException(str(e)) from e


# ---------- Consumers ----------
@cli.command("worker", help="Run the worker pool.")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Number of workers")
@click.option("--worker-id", default=None, help="Worker id prefix (default: hostname-pid)")
@click.pass_obj
def worker_cmd(obj, concurrency, worker_id):
    try:
        asyncio.run(worker_main.run_async(concurrency=concurrency, worker_id=worker_id, **obj))
    except (StoreUnavailable, ValueError) as e:
        raise click.ClickException(str(e)) from e


# ---------- Administration ----------
@cli.command("init-db", help="Create the queue tables.")
def init_db_cmd():
    async def noop(store: QueueStore) -> None:
        return None

    _with_store(noop)
    click.echo("Database initialized.")


@cli.command("stats", help="Show job counts by status.")
def stats_cmd():
    async def stats(store: QueueStore) -> dict[str, int]:
        return await store.get_stats()

    click.echo(json.dumps(_with_store(stats), indent=2))


@cli.command("list", help="List jobs, newest first.")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
def list_cmd(status, limit):
    async def list_jobs(store: QueueStore):
        return await store.list_jobs(
            status=JobStatus(status) if status else None,
            limit=limit,
        )

    jobs = _with_store(list_jobs)
    if not jobs:
        click.echo("No jobs.")
        return

    for job in jobs:
        click.echo(
            f"{job.id} | {job.kind:<8} | {job.status.value:<9} "
            f"| attempts={job.attempts}/{job.max_attempts} "
            f"| available_at={job.available_at.isoformat()} | last_error={job.last_error}"
        )


@cli.command("retry", help="Requeue a failed job.")
@click.argument("job_id", type=click.UUID)
def retry_cmd(job_id):
    async def retry(store: QueueStore):
        return await store.retry_failed(job_id)

    try:
        _with_store(retry)
    except NotFound as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Requeued {job_id}.")


def main():
    cli()


if __name__ == "__main__":
    main()
