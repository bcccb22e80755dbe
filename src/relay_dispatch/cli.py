# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for relay-dispatch.

Operator commands act directly on the store, so they work whether or not a
``serve`` process is running against the same database.

Usage:
    relay-dispatch init-db
    relay-dispatch serve [--channel module:factory] [--once]
    relay-dispatch enqueue acme-wa +51999888777 "hello" [--type media] [--max-attempts 5]
    relay-dispatch stats [--json]
    relay-dispatch jobs [--status failed] [--instance acme-wa]
    relay-dispatch requeue 42
    relay-dispatch pending
    relay-dispatch defer acme-wa +51999888777 "see you" [--reason unknown]
    relay-dispatch release acme-wa +51999888777
    relay-dispatch history [--instance acme-wa] [--limit 20]

Global options ``--config`` (INI file) and ``--db`` (SQLite path or
PostgreSQL DSN) apply to every command.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from datetime import datetime
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .channels import LoopbackChannel, load_channel
from .config import DispatchConfig, load_config
from .errors import DispatchError
from .logger import configure_logging
from .models import JobStatus, JobType, PendingReason
from .service import DispatchService

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def format_ms(value: int | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _operator_service(config: DispatchConfig) -> DispatchService:
    """Service for one-shot commands; they never deliver, so no transport is loaded."""
    return DispatchService(config, LoopbackChannel())


def _run_command(config: DispatchConfig, action) -> Any:
    """Initialize the store, run ``action(service)``, close the store.

    Dispatch and validation errors are printed and exit with status 1.
    """

    async def _run():
        service = _operator_service(config)
        await service.init()
        try:
            return await action(service)
        finally:
            await service.db.close()

    try:
        return run_async(_run())
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)
    except (DispatchError, ValueError) as e:
        print_error(str(e))
        sys.exit(1)


@click.group()
@click.version_option(package_name="relay-dispatch")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="INI configuration file.")
@click.option("--db", "db_path", help="SQLite path or PostgreSQL DSN (overrides config).")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """relay-dispatch - durable outbound message dispatcher."""
    try:
        config = load_config(config_path)
    except DispatchError as e:
        print_error(str(e))
        sys.exit(1)
    if db_path:
        config.queue.db_path = db_path
    if log_level:
        config.log_level = log_level
    configure_logging(config.log_level)
    ctx.obj = config


# ============================================================================
# Lifecycle
# ============================================================================


@main.command("init-db")
@click.pass_obj
def init_db(config: DispatchConfig) -> None:
    """Create the database schema if missing."""

    async def _noop(service: DispatchService) -> None:
        return None

    _run_command(config, _noop)
    print_success(f"Schema ready at {config.queue.db_path}")


@main.command("serve")
@click.option("--channel", "channel_ref", help="Channel factory 'module:factory' or 'loopback'.")
@click.option("--once", is_flag=True, help="Run one dispatch tick and one snapshot, then exit.")
@click.pass_obj
def serve(config: DispatchConfig, channel_ref: str | None, once: bool) -> None:
    """Run the dispatcher, monitor and maintenance loops."""
    if channel_ref:
        config.channel = channel_ref
    try:
        channel = load_channel(config.channel)
    except DispatchError as e:
        print_error(str(e))
        sys.exit(1)
    service = DispatchService(config, channel)

    async def _once() -> None:
        await service.init()
        try:
            await service.reclaim_expired()
            claimed = await service.dispatcher.tick()
            await service.monitor.publish_once()
            console.print(f"Processed {claimed or 0} jobs")
        finally:
            await service.db.close()

    async def _forever() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:  # pragma: no cover - Windows
                pass
        await service.start()
        console.print(f"[bold]relay-dispatch[/bold] serving {config.queue.db_path} via {config.channel}")
        try:
            await stop.wait()
        finally:
            await service.stop()

    run_async(_once() if once else _forever())


# ============================================================================
# Jobs
# ============================================================================


@main.command("enqueue")
@click.argument("instance_id")
@click.argument("recipient")
@click.argument("payload")
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default="text", show_default=True)
@click.option("--max-attempts", type=int, default=None, help="Attempt budget (default from config).")
@click.pass_obj
def enqueue(
    config: DispatchConfig, instance_id: str, recipient: str, payload: str, job_type: str, max_attempts: int | None
) -> None:
    """Queue a message for delivery."""

    async def _enqueue(service: DispatchService) -> int:
        return await service.enqueue(instance_id, job_type, recipient, payload, max_attempts)

    job_id = _run_command(config, _enqueue)
    print_success(f"Job {job_id} queued for {recipient}")


@main.command("jobs")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), help="Filter by status.")
@click.option("--instance", "instance_id", help="Filter by instance.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs(config: DispatchConfig, status: str | None, instance_id: str | None, limit: int, as_json: bool) -> None:
    """List jobs, newest first."""

    async def _list(service: DispatchService):
        return await service.db.list_jobs(status=status, instance_id=instance_id, limit=limit)

    job_list = _run_command(config, _list)

    if as_json:
        print_json([job.model_dump(mode="json") for job in job_list])
        return

    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Instance")
    table.add_column("Recipient")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next attempt")
    table.add_column("Last error")

    colors = {"completed": "green", "failed": "red", "processing": "yellow", "pending": "white"}
    for job in job_list:
        color = colors.get(job.status.value, "white")
        table.add_row(
            str(job.id),
            job.instance_id,
            job.recipient,
            job.type.value,
            f"[{color}]{job.status.value}[/{color}]",
            f"{job.attempts}/{job.max_attempts}",
            format_ms(job.next_attempt_at) if job.status is JobStatus.PENDING else "-",
            (job.last_error or "-")[:60],
        )

    console.print(table)


@main.command("requeue")
@click.argument("job_id", type=int)
@click.option("--max-attempts", type=int, default=None, help="Attempt budget for the new job.")
@click.pass_obj
def requeue(config: DispatchConfig, job_id: int, max_attempts: int | None) -> None:
    """Queue a fresh copy of a failed job."""

    async def _requeue(service: DispatchService) -> int:
        return await service.requeue_failed(job_id, max_attempts)

    new_id = _run_command(config, _requeue)
    print_success(f"Job {job_id} requeued as {new_id}")


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(config: DispatchConfig, as_json: bool) -> None:
    """Show queue counts and pending-buffer size."""

    async def _stats(service: DispatchService):
        return await service.snapshot()

    snapshot = _run_command(config, _stats)

    if as_json:
        print_json(snapshot.model_dump(mode="json"))
        return

    counts = snapshot.counts
    console.print(f"\n[bold]Queue {snapshot.queue_name}[/bold]\n")
    console.print(f"  Waiting:    {counts.waiting}")
    console.print(f"  Delayed:    {counts.delayed}")
    console.print(f"  Active:     {counts.active}")
    console.print(f"  Completed:  {counts.completed}")
    console.print(f"  Failed:     {counts.failed}")
    console.print(f"  Pending:    {snapshot.pending_summary.total}")
    console.print()


# ============================================================================
# Pending buffer
# ============================================================================


@main.command("pending")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def pending(config: DispatchConfig, as_json: bool) -> None:
    """Show pending-buffer entries per instance."""

    async def _summary(service: DispatchService):
        return await service.db.get_pending_summary()

    summary = _run_command(config, _summary)

    if as_json:
        print_json(summary.model_dump())
        return

    if not summary.total:
        console.print("[dim]Pending buffer is empty.[/dim]")
        return

    table = Table(title=f"Pending messages ({summary.total})")
    table.add_column("Instance", style="cyan")
    table.add_column("Entries", justify="right")
    for instance_id, count in sorted(summary.per_instance.items()):
        table.add_row(instance_id, str(count))
    console.print(table)


@main.command("defer")
@click.argument("instance_id")
@click.argument("recipient")
@click.argument("payload")
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default="text", show_default=True)
@click.option(
    "--reason",
    type=click.Choice([r.value for r in PendingReason]),
    default=PendingReason.CONTACT_INACTIVE.value,
    show_default=True,
)
@click.pass_obj
def defer(config: DispatchConfig, instance_id: str, recipient: str, payload: str, job_type: str, reason: str) -> None:
    """Hold a message until its recipient is released."""

    async def _defer(service: DispatchService):
        return await service.defer(instance_id, recipient, job_type, payload, reason)

    entry = _run_command(config, _defer)
    print_success(f"Message held for {entry.normalized_recipient} ({entry.reason.value})")


@main.command("release")
@click.argument("instance_id")
@click.argument("recipient")
@click.pass_obj
def release(config: DispatchConfig, instance_id: str, recipient: str) -> None:
    """Move held messages for a recipient back to the job queue."""

    async def _release(service: DispatchService) -> list[int]:
        return await service.release_pending(instance_id, recipient)

    job_ids = _run_command(config, _release)
    if not job_ids:
        console.print(f"[dim]Nothing pending for {recipient}.[/dim]")
        return
    print_success(f"Released {len(job_ids)} messages as jobs {', '.join(str(i) for i in job_ids)}")


# ============================================================================
# History
# ============================================================================


@main.command("history")
@click.option("--instance", "instance_id", help="Filter by instance.")
@click.option("--direction", type=click.Choice(["inbound", "outbound"]), help="Filter by direction.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def history(
    config: DispatchConfig, instance_id: str | None, direction: str | None, limit: int, as_json: bool
) -> None:
    """Show recent message history, newest first."""

    async def _history(service: DispatchService):
        return await service.db.get_history(instance_id=instance_id, direction=direction, limit=limit)

    entries = _run_command(config, _history)

    if as_json:
        print_json([entry.model_dump(mode="json") for entry in entries])
        return

    if not entries:
        console.print("[dim]No history entries.[/dim]")
        return

    table = Table(title="History")
    table.add_column("When")
    table.add_column("Instance", style="cyan")
    table.add_column("Dir")
    table.add_column("Peer")
    table.add_column("Status")
    table.add_column("Content")
    for entry in entries:
        peer = entry.to_number if entry.direction.value == "outbound" else entry.from_number
        table.add_row(
            format_ms(entry.created_at),
            entry.instance_id,
            entry.direction.value,
            peer or "-",
            entry.status.value,
            entry.content[:50],
        )
    console.print(table)


if __name__ == "__main__":
    main()
