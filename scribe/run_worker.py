"""Command line entry point for the job worker (``scribe-worker``)."""
import asyncio
import json
import logging
import signal
from typing import Optional

import typer

from scribe.services.reclaimer import reset_stuck_jobs
from scribe.services.worker import build_worker
from scribe.settings.config import settings

cli = typer.Typer(add_completion=False, help="Scribe background job worker")
logger = logging.getLogger("scribe.worker")


@cli.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


async def _run_continuous(max_jobs: int, poll_interval: float) -> None:
    worker = build_worker()
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass
    worker.start_continuous(max_jobs, poll_interval)
    await stop.wait()
    typer.echo("Stopping worker after the current pass...")
    await worker.stop_continuous()


@cli.command()
def run(
    max_jobs: int = typer.Option(settings.WORKER_MAX_JOBS, "--max-jobs", min=1, help="Jobs claimed per pass"),
    continuous: bool = typer.Option(False, "--continuous", help="Keep polling until interrupted"),
    poll_interval: Optional[float] = typer.Option(
        None, "--poll-interval", min=0.1, help="Seconds between passes in continuous mode"
    ),
) -> None:
    """Process pending jobs once, or keep polling with --continuous."""
    if continuous:
        interval = poll_interval or settings.WORKER_POLL_INTERVAL_SECONDS
        typer.echo(f"Worker polling every {interval:.1f}s (max {max_jobs} jobs per pass). Ctrl+C to stop.")
        asyncio.run(_run_continuous(max_jobs, interval))
        return

    report = asyncio.run(build_worker().run_batch(max_jobs))
    typer.echo(json.dumps(report, indent=2, default=str))
    if any(not r.get("success") for r in report["results"]):
        raise typer.Exit(code=1)


@cli.command("reset-stuck")
def reset_stuck(
    max_time_minutes: int = typer.Option(
        settings.STUCK_JOB_THRESHOLD_MINUTES, "--max-time-minutes", min=1,
        help="Reset jobs processing for longer than this",
    ),
) -> None:
    """Return jobs stuck in processing to pending."""
    worker = build_worker()
    summary = asyncio.run(reset_stuck_jobs(worker.store, max_time_minutes))
    typer.echo(
        f"Found {summary['total_found']} stuck job(s): "
        f"{summary['reset_count']} reset, {summary['failed_resets']} failed."
    )
    if summary["failed_resets"]:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
