"""
fleet-expiry command-line entry point.

Usage:
    fleet-expiry [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import signal

import click
from rich.console import Console
from rich.table import Table

from .config import ExpirySettings, load_settings_or_fail
from .exceptions import ConfigurationError, FleetExpiryError, RunInProgressError
from .logging import configure_logging
from .models import ProcessRun, RunStatus
from .service import ExpiryService, build_service

console = Console()


def _load(ctx) -> ExpirySettings:
    try:
        settings = load_settings_or_fail(ctx.obj["env_file"])
    except ConfigurationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        for problem in e.details.get("errors", []):
            console.print(f"  {problem['field']}: {problem['error']}")
        ctx.exit(2)
    level = "DEBUG" if ctx.obj["verbose"] else settings.log_level
    configure_logging(level=level, json_format=settings.log_json)
    return settings


def _print_report(run: ProcessRun) -> None:
    report = run.to_report()
    colour = {
        RunStatus.COMPLETED: "green",
        RunStatus.NOTHING_TO_DO: "green",
        RunStatus.COMPLETED_WITH_FAILURES: "yellow",
    }.get(run.status, "red")

    table = Table(title="Booking Expiration Run")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Job ID", report["job_id"])
    table.add_row("Status", f"[{colour}]{report['status']}[/{colour}]")
    table.add_row("Batches", str(report["batches"]))
    table.add_row("Processed", str(report["total_processed"]))
    table.add_row("Expired", str(report["succeeded"]))
    table.add_row("Skipped", str(report["skipped"]))
    table.add_row("Failed", str(report["failed"]))
    table.add_row("Admins notified", str(report["admins_notified"]))
    table.add_row("Duration", f"{report['duration_ms']} ms")
    console.print(table)

    for failure in report["failed_bookings"]:
        console.print(f"  [red]✗[/red] {failure['id']} ({failure['reference']}): {failure['error']}")


@click.group()
@click.version_option(package_name="fleet-expiry", message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Read settings from this .env file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, env_file: str | None, verbose: bool):
    """Booking expiration scheduler."""
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file
    ctx.obj["verbose"] = verbose


@cli.command("run-now")
@click.pass_context
def run_now(ctx):
    """Run booking expiration once, immediately."""
    settings = _load(ctx)

    async def _run() -> ProcessRun:
        service = build_service(settings)
        try:
            return await service.scheduler().run_now()
        finally:
            await service.aclose()

    try:
        run = asyncio.run(_run())
    except RunInProgressError:
        console.print("[yellow]Another expiration run is in progress[/yellow]")
        ctx.exit(1)
    except FleetExpiryError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        ctx.exit(1)

    _print_report(run)


async def _serve(service: ExpiryService) -> None:
    scheduler = service.scheduler()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await scheduler.start()
    console.print(
        f"[green]✓ Scheduler started[/green] "
        f"(cron: [cyan]{service.settings.expiration_cron}[/cyan], "
        f"timezone: {service.settings.timezone})"
    )
    try:
        await stop.wait()
    finally:
        await scheduler.shutdown(wait=False)
        await service.aclose()
        console.print("Scheduler stopped")


@cli.command()
@click.pass_context
def serve(ctx):
    """Run the cron scheduler until interrupted."""
    settings = _load(ctx)
    asyncio.run(_serve(build_service(settings)))


@cli.command()
@click.pass_context
def config(ctx):
    """Validate and show the effective configuration."""
    settings = _load(ctx)

    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in settings.masked().items():
        table.add_row(name, str(value) if value != "" else "[dim]<unset>[/dim]")
    console.print(table)
    console.print("[green]✓ Configuration is valid[/green]")


if __name__ == "__main__":
    cli()
