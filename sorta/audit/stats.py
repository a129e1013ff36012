"""Aggregate statistics across recorded runs."""

import logging
from collections import Counter
from datetime import datetime
from pathlib import PurePath
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, Field

from .reader import AuditReader
from .types import EventStatus, EventType, RunType

logger = logging.getLogger(__name__)

BASE_DIRECTORY_NAMES = ("organized", "output")


class AuditStats(BaseModel):
    """Totals over every run in a log (or every run since a cutoff)."""

    total_organized: int = 0
    total_for_review: int = 0
    total_runs: int = 0
    total_undos: int = 0
    by_prefix: Dict[str, int] = Field(default_factory=dict)
    first_run: Optional[datetime] = None
    last_run: Optional[datetime] = None


def extract_prefix(
    destination: str, base_names: Iterable[str] = BASE_DIRECTORY_NAMES
) -> Optional[str]:
    """
    Name of the prefix folder a file was organized into.

    For ``/data/organized/Invoice/2024/a.pdf`` this is ``Invoice``: the
    component right after the last base directory. Without a base directory
    in the path it is the file's parent folder.
    """
    if not destination:
        return None

    path = PurePath(destination.replace("\\", "/"))
    parts = [p for p in path.parts[:-1] if p not in ("/", ".", "..")]
    if not parts:
        return None

    bases = set(base_names)
    for index in range(len(parts) - 1, -1, -1):
        if parts[index] in bases:
            return parts[index + 1] if index + 1 < len(parts) else None
    return parts[-1]


def limit_top(counts: Dict[str, int], n: int) -> Dict[str, int]:
    """Keep the ``n`` largest counts (ties broken by name); 0 keeps everything."""
    ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    if n > 0:
        ordered = ordered[:n]
    return dict(ordered)


def aggregate_stats(
    reader: AuditReader, since: Optional[datetime] = None, top_n: int = 0
) -> AuditStats:
    """
    Summarize every run started at or after ``since``.

    Args:
        reader: Reader over the log
        since: Ignore runs that started before this instant
        top_n: Number of prefixes to keep (0 = all)
    """
    stats = AuditStats()
    prefixes: Counter = Counter()

    for run in reader.list_runs():
        if since is not None and run.start_time < since:
            continue

        if run.run_type == RunType.UNDO:
            stats.total_undos += 1
        else:
            stats.total_runs += 1
            stats.total_organized += run.summary.moved
            stats.total_for_review += run.summary.routed_review

        if stats.first_run is None or run.start_time < stats.first_run:
            stats.first_run = run.start_time
        if stats.last_run is None or run.start_time > stats.last_run:
            stats.last_run = run.start_time

        if run.run_type == RunType.UNDO:
            continue

        for event in reader.get_run(run.run_id):
            if event.event_type == EventType.MOVE and event.status == EventStatus.SUCCESS:
                prefix = extract_prefix(event.destination_path)
                if prefix:
                    prefixes[prefix] += 1

    stats.by_prefix = limit_top(dict(prefixes), top_n)
    logger.debug(f"Aggregated stats over {stats.total_runs + stats.total_undos} runs")
    return stats
