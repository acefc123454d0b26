"""Command line interface for cidcheck.

``cidcheck check`` probes one peer for every CID in a file;
``cidcheck resume-offset`` reads a progress log and prints the line a
follow-up run should start from.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from cidcheck import __version__
from cidcheck.config.config import ConfigManager
from cidcheck.models import ExportSelection, LogLevel
from cidcheck.output.sink import resume_offset
from cidcheck.probe.runner import run_check
from cidcheck.utils.exceptions import CidCheckError
from cidcheck.utils.logging_config import log_exception, set_correlation_id, setup_logging

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130


def _level_for(verbose: int, configured: LogLevel) -> LogLevel:
    if verbose >= 2:
        return LogLevel.DEBUG
    if verbose == 1 and configured not in (LogLevel.DEBUG, LogLevel.INFO):
        return LogLevel.INFO
    return configured


def _summary_table(summary: Any) -> Table:
    table = Table(title="CID availability")
    table.add_column("Result", style="cyan")
    table.add_column("Count", justify="right", style="green")

    table.add_row("Probed", str(summary.total))
    table.add_row("Found", str(summary.found))
    table.add_row("Not found", str(summary.not_found))
    table.add_row("Unresponded", str(summary.unresponded))
    table.add_row("Errors", str(summary.errors))
    table.add_row("Batches", str(summary.batches))
    if summary.conflicts:
        table.add_row("Conflicting replies", str(summary.conflicts))
    if summary.exports_ok or summary.exports_failed:
        table.add_row("Exported", str(summary.exports_ok))
        table.add_row("Export failures", str(summary.exports_failed))
    if summary.write_errors:
        table.add_row("Output write errors", str(summary.write_errors))
    table.add_row("Elapsed", f"{summary.elapsed:.2f}s")
    return table


async def _run_with_signals(config, peer, cid_file, offset):
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # not available on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, cancel_event.set)
    try:
        return await run_check(config, peer, cid_file, offset, cancel_event=cancel_event)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


@click.group()
@click.version_option(__version__, prog_name="cidcheck")
def cli():
    """Check which content identifiers a single peer can serve."""


@cli.command()
@click.option("--peer", "-p", required=True, help="Target multiaddr, including /p2p/<peer-id>")
@click.option(
    "--cid-file",
    "-f",
    required=True,
    type=click.Path(dir_okay=False),
    help="Newline-delimited CID list",
)
@click.option("--workers", "-w", type=int, default=None, help="Concurrent batches (default 5)")
@click.option("--offset", "-o", type=int, default=None, help="First input line to probe (1-indexed)")
@click.option(
    "--resume-from",
    type=click.Path(exists=True, dir_okay=False),
    help="Start after the completed batches of a progress log",
)
@click.option("--batch-size", type=int, default=None, help="CIDs per query")
@click.option("--batch-timeout", type=float, default=None, help="Seconds to wait for replies")
@click.option("--export", "-d", "export", is_flag=True, default=None, help="Export selected CIDs")
@click.option(
    "--export-selection",
    type=click.Choice([s.value for s in ExportSelection]),
    default=None,
    help="Which results to export",
)
@click.option("--output-dir", type=click.Path(file_okay=False), default=None, help="Directory for run output")
@click.option("--debug-log", is_flag=True, default=None, help="Write every result as JSON")
@click.option("--session-backend", default=None, help="Entry-point name or module:callable")
@click.option("--config", "-c", "config_file", type=click.Path(dir_okay=False), help="Configuration file path")
@click.option("--verbose", "-v", count=True, help="Increase verbosity (-v: info, -vv: debug)")
def check(
    peer,
    cid_file,
    workers,
    offset,
    resume_from,
    batch_size,
    batch_timeout,
    export,
    export_selection,
    output_dir,
    debug_log,
    session_backend,
    config_file,
    verbose,
):
    """Probe PEER for every CID in CID_FILE."""
    if offset is not None and resume_from:
        msg = "--offset and --resume-from are mutually exclusive"
        raise click.UsageError(msg)

    try:
        manager = ConfigManager(config_file)
        config = manager.apply_overrides(
            {
                "probe.concurrency": workers,
                "probe.batch_size": batch_size,
                "probe.batch_timeout": batch_timeout,
                "probe.session_backend": session_backend,
                "output.output_dir": output_dir,
                "output.debug_log": debug_log or None,
                "export.enabled": export or None,
                "export.selection": export_selection,
            }
        )
        config.observability.log_level = _level_for(verbose, config.observability.log_level)
        setup_logging(config.observability)
        if config.observability.log_correlation_id:
            logger.info("Run id %s", set_correlation_id())

        if resume_from:
            offset = resume_offset(resume_from)
            logger.info("Resuming from line %d", offset)

        summary = asyncio.run(_run_with_signals(config, peer, cid_file, offset or 1))
    except CidCheckError as e:
        log_exception(logger, e, "Setup failed")
        raise click.ClickException(str(e)) from None

    Console().print(_summary_table(summary))
    if summary.cancelled:
        click.echo("Run cancelled; rerun with --resume-from to continue.", err=True)
        raise SystemExit(EXIT_CANCELLED)


@cli.command("resume-offset")
@click.argument("progress", type=click.Path(exists=True, dir_okay=False))
def resume_offset_cmd(progress):
    """Print the first line not covered by PROGRESS."""
    try:
        click.echo(resume_offset(progress))
    except CidCheckError as e:
        raise click.ClickException(str(e)) from None


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
