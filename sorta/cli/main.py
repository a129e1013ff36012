"""
Command line interface for the Sorta audit trail.

Reporting commands (``audit list/show/export/stats/verify``) only read the
log. ``undo`` is the only command that changes files.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..audit.config import AuditConfig, load_audit_config
from ..audit.events import BaseEvent
from ..audit.exceptions import AuditError, RunNotFoundError
from ..audit.reader import AuditReader, EventFilter, SegmentStatus
from ..audit.retention import RetentionManager
from ..audit.stats import aggregate_stats
from ..audit.types import EventType, PathMapping, RunInfo, RunStatus
from ..audit.undo import UndoEngine, UndoPreview, UndoProgressEvent, UndoResult
from ..audit.writer import AuditWriter
from ..shared.file_utils import format_bytes, get_machine_id, setup_logging
from ..version import __version__, get_app_version

console = Console()
logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 8


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _status_style(run: RunInfo) -> str:
    if run.status == RunStatus.COMPLETED:
        return "[green]COMPLETED[/green]"
    if run.status == RunStatus.IN_PROGRESS:
        return "[yellow]IN_PROGRESS[/yellow]"
    if run.interrupted:
        return "[red]FAILED (interrupted)[/red]"
    return "[red]FAILED[/red]"


def _resolve_run_id(reader: AuditReader, run_id: str) -> str:
    """Expand a unique run id prefix to the full id."""
    runs = reader.list_runs()
    if any(r.run_id == run_id for r in runs):
        return run_id
    matches = [r.run_id for r in runs if r.run_id.startswith(run_id)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        _fail(f"run id prefix '{run_id}' is ambiguous ({len(matches)} runs)")
    raise RunNotFoundError(run_id)


def _parse_mappings(
    ctx: click.Context, param: click.Parameter, values: Tuple[str, ...]
) -> List[PathMapping]:
    try:
        return [PathMapping.parse(value) for value in values]
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Audit log directory (default: .sorta/audit)",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON config file with an 'audit' section",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__, prog_name="sorta")
@click.pass_context
def cli(
    ctx: click.Context,
    log_dir: Optional[Path],
    config_file: Optional[Path],
    verbose: bool,
) -> None:
    """Sorta - audited file organization with undo."""
    setup_logging(verbose=verbose)
    logger.debug(f"sorta {get_app_version()}")

    try:
        ctx.obj = load_audit_config(config_file, log_directory=log_dir)
    except AuditError as e:
        _fail(str(e))


@cli.group()
def audit() -> None:
    """Inspect the audit log."""


@audit.command("list")
@click.pass_obj
def list_runs(config: AuditConfig) -> None:
    """List every recorded run."""
    reader = AuditReader(config.log_directory)
    runs = reader.list_runs()

    if not runs:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        return

    table = Table(title="Audit Runs")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Type", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Started", no_wrap=True)
    table.add_column("Files", justify="right")
    table.add_column("Moved", justify="right")
    table.add_column("Errors", justify="right")

    for run in runs:
        table.add_row(
            run.run_id[:SHORT_ID_LENGTH],
            run.run_type.value,
            _status_style(run),
            _format_time(run.start_time),
            str(run.summary.total_files),
            str(run.summary.moved),
            str(run.summary.errors),
        )

    console.print(table)
    console.print(f"[dim]{len(runs)} runs in {config.log_directory}[/dim]")


def _print_run_header(run: RunInfo) -> None:
    console.print(f"[bold]Run[/bold] {run.run_id}")
    console.print(f"  Type:     {run.run_type.value}")
    console.print(f"  Status:   {_status_style(run)}")
    console.print(f"  Started:  {_format_time(run.start_time)}")
    console.print(f"  Ended:    {_format_time(run.end_time)}")
    console.print(f"  Version:  {run.app_version}")
    console.print(f"  Machine:  {run.machine_id}")
    if run.undo_target_id:
        console.print(f"  Undoes:   {run.undo_target_id}")
    s = run.summary
    console.print(
        f"  Summary:  {s.total_files} files, {s.moved} moved, {s.duplicates} duplicates, "
        f"{s.routed_review} for review, {s.skipped} skipped, {s.errors} errors"
    )


def _event_detail(event: BaseEvent) -> str:
    reason = getattr(event, "reason_code", None)
    details = getattr(event, "error_details", None)
    if details is not None:
        return f"{details.error_type}: {details.error_message}"
    message = getattr(event, "reason", None)
    if message:
        pattern = getattr(event, "pattern", None)
        return f"{message} ({pattern})" if pattern else message
    if reason is not None:
        return reason.value
    return ""


@audit.command("show")
@click.argument("run_id")
@click.option(
    "--type",
    "event_types",
    multiple=True,
    type=click.Choice([t.value for t in EventType], case_sensitive=False),
    help="Only show events of this type (repeatable)",
)
@click.pass_obj
def show_run(config: AuditConfig, run_id: str, event_types: Tuple[str, ...]) -> None:
    """Show one run and its events."""
    reader = AuditReader(config.log_directory)
    try:
        run_id = _resolve_run_id(reader, run_id)
        run = reader.get_run_by_id(run_id)
        event_filter = EventFilter(
            event_types={EventType(t.upper()) for t in event_types} or None
        )
        events = reader.filter_events(run_id, event_filter)
    except AuditError as e:
        _fail(str(e))

    _print_run_header(run)
    console.print()

    table = Table(title=f"Events ({len(events)})")
    table.add_column("Time", no_wrap=True)
    table.add_column("Event", style="cyan")
    table.add_column("Status")
    table.add_column("Source")
    table.add_column("Destination")
    table.add_column("Detail")

    for event in events:
        table.add_row(
            event.timestamp.astimezone().strftime("%H:%M:%S"),
            event.event_type,
            event.status.value,
            escape(getattr(event, "source_path", "") or ""),
            escape(getattr(event, "destination_path", "") or ""),
            escape(_event_detail(event)),
        )

    console.print(table)


@audit.command("export")
@click.argument("run_id")
@click.argument("output", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def export_run(config: AuditConfig, run_id: str, output: Optional[Path]) -> None:
    """Export a run and its events to a JSON file."""
    reader = AuditReader(config.log_directory)
    try:
        run_id = _resolve_run_id(reader, run_id)
        path = reader.export_run(run_id, output or Path(f"sorta-run-{run_id}.json"))
    except AuditError as e:
        _fail(str(e))
    except OSError as e:
        _fail(f"cannot write export: {e}")

    console.print(f"[green]✓ Exported run {run_id} to {path}[/green]")


@audit.command("stats")
@click.option("--top", "top_n", type=int, default=10, help="Number of prefixes to show (0 = all)")
@click.option(
    "--since",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Only count runs started on or after this date (UTC)",
)
@click.pass_obj
def stats(config: AuditConfig, top_n: int, since: Optional[datetime]) -> None:
    """Show totals across runs."""
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    result = aggregate_stats(AuditReader(config.log_directory), since=since, top_n=top_n)

    table = Table(title="Audit Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Organize runs", str(result.total_runs))
    table.add_row("Undo runs", str(result.total_undos))
    table.add_row("Files organized", str(result.total_organized))
    table.add_row("Files for review", str(result.total_for_review))
    table.add_row("First run", _format_time(result.first_run))
    table.add_row("Last run", _format_time(result.last_run))
    console.print(table)

    if result.by_prefix:
        prefixes = Table(title="By Prefix")
        prefixes.add_column("Prefix", style="cyan")
        prefixes.add_column("Files", justify="right")
        for prefix, count in result.by_prefix.items():
            prefixes.add_row(prefix, str(count))
        console.print(prefixes)


@audit.command("expiring")
@click.option(
    "--days",
    "warning_days",
    type=click.IntRange(min=0),
    default=7,
    help="Warn about segments pruned within this many days",
)
@click.pass_obj
def expiring(config: AuditConfig, warning_days: int) -> None:
    """List sealed segments that retention will prune soon."""
    if config.retention_days == 0:
        console.print("[yellow]Age-based retention is disabled.[/yellow]")
        return

    segments = RetentionManager(config).segments_to_warn(warning_days)
    if not segments:
        console.print(f"[green]No segments expire within {warning_days} days.[/green]")
        return

    table = Table(title=f"Segments expiring within {warning_days} days")
    table.add_column("Segment", no_wrap=True)
    table.add_column("Last event", no_wrap=True)
    table.add_column("Runs", justify="right")
    table.add_column("Size", justify="right")
    for info in segments:
        table.add_row(
            info.filename,
            _format_time(info.last_event_time or info.sealed_at),
            str(len(info.run_ids)),
            format_bytes(info.size_bytes),
        )
    console.print(table)
    console.print(
        f"[yellow]{len(segments)} segments expire; runs in them can no longer be undone "
        f"once pruned[/yellow]"
    )


@audit.command("verify")
@click.pass_obj
def verify(config: AuditConfig) -> None:
    """Check every log segment for damage."""
    results = AuditReader(config.log_directory).check_integrity()
    if not results:
        console.print("[yellow]No audit log segments found.[/yellow]")
        return

    table = Table(title="Segment Integrity")
    table.add_column("Segment", no_wrap=True)
    table.add_column("Status")
    table.add_column("Events", justify="right")
    table.add_column("Detail")

    problems = 0
    for item in results:
        if item.status in (SegmentStatus.CORRUPT, SegmentStatus.MISSING):
            problems += 1
            status = f"[red]{item.status.value}[/red]"
        elif item.status == SegmentStatus.EMPTY:
            status = f"[yellow]{item.status.value}[/yellow]"
        else:
            status = f"[green]{item.status.value}[/green]"
        detail = item.message or ""
        if item.corrupt_lines:
            detail = f"lines {', '.join(str(n) for n in item.corrupt_lines)}"
        table.add_row(item.filename, status, str(item.event_count), detail)

    console.print(table)
    if problems:
        _fail(f"{problems} damaged segments")
    console.print("[green]✓ Audit log is intact[/green]")


def _print_preview(preview: UndoPreview) -> None:
    console.print(f"[bold]Undo preview for run[/bold] {preview.target_run_id}\n")

    table = Table()
    table.add_column("Event", style="cyan")
    table.add_column("Restore to")
    table.add_column("From")
    table.add_column("Action")
    for action in preview.actions:
        if action.will_restore:
            verdict = "[green]restore[/green]"
        else:
            reason = action.reason.value if action.reason else (action.message or "error")
            verdict = f"[yellow]skip ({reason})[/yellow]"
        table.add_row(
            action.event_type.value,
            escape(action.source_path),
            escape(action.dest_path or ""),
            verdict,
        )
    console.print(table)

    console.print(
        f"\nMoves: {preview.total_moves}  Reviews: {preview.total_reviews}  "
        f"Duplicates: {preview.total_duplicates}  No-ops: {preview.total_no_ops}"
    )
    console.print(f"Would restore: {preview.will_restore}")
    console.print(f"Would skip: {preview.will_skip}")


def _print_result(result: UndoResult) -> None:
    console.print(f"\n[bold]Undo run[/bold] {result.undo_run_id} (target {result.target_run_id})")
    console.print(f"  Restored: {result.restored}")
    console.print(f"  Skipped:  {result.skipped}")
    console.print(f"  Failed:   {result.failed}")

    for skip in result.skips:
        logger.debug(f"Skipped {skip.source_path}: {skip.reason.value}")

    if result.failures:
        console.print("\n[red]Failures:[/red]")
        for failure in result.failures:
            console.print(f"  {escape(failure.source_path)}: {escape(failure.message)} ({failure.reason})")


def _log_progress(event: UndoProgressEvent) -> None:
    logger.debug(
        f"[{event.current}/{event.total}] {event.type.value} {event.source_path}"
        + (f" ({event.reason})" if event.reason else "")
    )


@cli.command()
@click.argument("run_id", required=False)
@click.option("--preview", is_flag=True, help="Show what would be restored without changing anything")
@click.option(
    "--path-mapping",
    "mappings",
    multiple=True,
    callback=_parse_mappings,
    help="Rewrite a path prefix, as original:mapped (repeatable)",
)
@click.option(
    "--search-dir",
    "search_dirs",
    multiple=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory to search by content hash for files that were moved away (repeatable)",
)
@click.pass_obj
def undo(
    config: AuditConfig,
    run_id: Optional[str],
    preview: bool,
    mappings: List[PathMapping],
    search_dirs: Tuple[Path, ...],
) -> None:
    """Undo RUN_ID, or the most recent run."""
    reader = AuditReader(config.log_directory)

    try:
        if run_id is not None:
            run_id = _resolve_run_id(reader, run_id)

        if preview:
            engine = UndoEngine(reader, machine_id=get_machine_id())
            if run_id is None:
                result_preview = engine.preview_latest(mappings, search_dirs)
            else:
                result_preview = engine.preview_undo(run_id, mappings, search_dirs)
            _print_preview(result_preview)
            return

        with AuditWriter(config) as writer:
            engine = UndoEngine(reader, writer, machine_id=get_machine_id())
            if run_id is None:
                result = engine.undo_latest(mappings, search_dirs, progress=_log_progress)
            else:
                result = engine.undo_run(run_id, mappings, search_dirs, progress=_log_progress)
    except AuditError as e:
        _fail(str(e))

    _print_result(result)
    if result.failed:
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
