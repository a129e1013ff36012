"""
Read-only access to the audit log.

The reader re-scans the segments on every query: sealed segments in
sequence order, then the active segment, each in file order. That order is
the append order, so events of a run that straddles a rotation come back in
the order they were written. Readers take no lock.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field

from .events import (
    BaseEvent,
    EventDecodeError,
    RunEndEvent,
    RunStartEvent,
    event_to_dict,
    events_from_dicts,
    iter_events,
)
from .exceptions import RunNotFoundError
from .rotation import ACTIVE_LOG_NAME, INDEX_NAME, SegmentIndex, all_log_files
from .types import (
    EventStatus,
    EventType,
    RunInfo,
    RunStatus,
    RunSummary,
    RunType,
)
from .writer import is_log_locked

logger = logging.getLogger(__name__)


class EventFilter(BaseModel):
    """Criteria for selecting events; unset criteria match everything."""

    event_types: Optional[Set[EventType]] = None
    status: Optional[EventStatus] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def matches(self, event: BaseEvent) -> bool:
        if self.event_types and EventType(event.event_type) not in self.event_types:
            return False
        if self.status is not None and event.status != self.status:
            return False
        if self.start_time is not None and event.timestamp < self.start_time:
            return False
        if self.end_time is not None and event.timestamp > self.end_time:
            return False
        return True


class SegmentStatus(str, Enum):
    """Integrity state of one segment."""

    OK = "OK"
    MISSING = "MISSING"
    EMPTY = "EMPTY"
    CORRUPT = "CORRUPT"


class SegmentIntegrity(BaseModel):
    filename: str
    status: SegmentStatus
    event_count: int = 0
    corrupt_lines: List[int] = Field(default_factory=list)
    message: Optional[str] = None


_TALLY_FIELDS = {
    EventType.MOVE: "moved",
    EventType.UNDO_MOVE: "moved",
    EventType.DUPLICATE_DETECTED: "duplicates",
    EventType.ROUTE_TO_REVIEW: "routed_review",
    EventType.SKIP: "skipped",
    EventType.UNDO_SKIP: "skipped",
    EventType.ERROR: "errors",
    EventType.PARSE_FAILURE: "errors",
    EventType.VALIDATION_FAILURE: "errors",
}


class _RunBuilder:
    """Accumulates one run's events while scanning the log."""

    def __init__(self, start: RunStartEvent):
        self.start = start
        self.end: Optional[RunEndEvent] = None
        self.event_count = 1
        self.counts: Dict[str, int] = {}
        self.sources: Set[str] = set()

    def add(self, event: BaseEvent) -> None:
        self.event_count += 1
        if isinstance(event, RunEndEvent):
            self.end = event
            return
        field_name = _TALLY_FIELDS.get(EventType(event.event_type))
        if field_name is not None:
            self.counts[field_name] = self.counts.get(field_name, 0) + 1
            self.sources.add(getattr(event, "source_path"))

    def build(self, live: bool) -> RunInfo:
        if self.end is not None:
            status = self.end.run_status
            summary = self.end.summary
            end_time: Optional[datetime] = self.end.timestamp
            interrupted = False
        else:
            summary = RunSummary(total_files=len(self.sources), **self.counts)
            end_time = None
            status = RunStatus.IN_PROGRESS if live else RunStatus.FAILED
            interrupted = not live

        return RunInfo(
            run_id=self.start.run_id,
            run_type=self.start.run_type,
            status=status,
            start_time=self.start.timestamp,
            end_time=end_time,
            app_version=self.start.app_version,
            machine_id=self.start.machine_id,
            undo_target_id=self.start.undo_target_id,
            summary=summary,
            interrupted=interrupted,
            event_count=self.event_count,
        )


class AuditReader:
    """Answers questions about runs and events recorded in a log directory."""

    def __init__(self, log_directory: Union[str, Path]):
        self.log_directory = Path(log_directory)

    def segment_files(self) -> List[Path]:
        """Sealed segments in sequence order, then the active segment."""
        return all_log_files(self.log_directory)

    def iter_all_events(self) -> Iterator[BaseEvent]:
        for path in self.segment_files():
            try:
                yield from iter_events(path)
            except FileNotFoundError:
                # Pruned or sealed between listing and reading
                logger.debug(f"Segment disappeared while reading: {path.name}")

    def _build_runs(self) -> List[RunInfo]:
        builders: Dict[str, _RunBuilder] = {}
        orphans: Set[str] = set()

        for event in self.iter_all_events():
            if not event.run_id:
                continue
            if isinstance(event, RunStartEvent):
                builders[event.run_id] = _RunBuilder(event)
                continue
            builder = builders.get(event.run_id)
            if builder is None:
                orphans.add(event.run_id)
                continue
            builder.add(event)

        if orphans:
            logger.debug(f"Ignoring events of {len(orphans)} runs without RUN_START")

        # Only the newest open run can belong to a writer that is still appending
        live_run_id = None
        open_runs = [b for b in builders.values() if b.end is None]
        if open_runs and is_log_locked(self.log_directory):
            live_run_id = max(open_runs, key=lambda b: b.start.timestamp).start.run_id

        runs = [b.build(live=b.start.run_id == live_run_id) for b in builders.values()]
        runs.sort(key=lambda r: r.start_time)
        return runs

    def list_runs(self) -> List[RunInfo]:
        """Every run found in the log, ordered by start time."""
        return self._build_runs()

    def get_run_by_id(self, run_id: str) -> RunInfo:
        """
        Raises:
            RunNotFoundError: If no RUN_START exists for ``run_id``
        """
        for run in self._build_runs():
            if run.run_id == run_id:
                return run
        raise RunNotFoundError(run_id)

    def get_run(self, run_id: str) -> List[BaseEvent]:
        """
        All events of a run in append order.

        Raises:
            RunNotFoundError: If the log holds no events for ``run_id``
        """
        events = [e for e in self.iter_all_events() if e.run_id == run_id]
        if not events:
            raise RunNotFoundError(run_id)
        return events

    def filter_events(self, run_id: str, event_filter: EventFilter) -> List[BaseEvent]:
        return [e for e in self.get_run(run_id) if event_filter.matches(e)]

    def filter_all_events(self, event_filter: EventFilter) -> List[BaseEvent]:
        """Matching events across every run, system events included."""
        return [e for e in self.iter_all_events() if event_filter.matches(e)]

    def get_latest_run(self) -> RunInfo:
        """
        Raises:
            RunNotFoundError: If the log holds no runs
        """
        runs = self._build_runs()
        if not runs:
            raise RunNotFoundError()
        return runs[-1]

    def count_events(self) -> int:
        return sum(1 for _ in self.iter_all_events())

    def later_runs(self, run: RunInfo) -> List[RunInfo]:
        """Runs that started after ``run``."""
        return [r for r in self._build_runs() if r.start_time > run.start_time]

    def check_integrity(self) -> List[SegmentIntegrity]:
        """
        Check every segment listed in the index or present on disk.

        A segment is MISSING when the index names it but the file is gone,
        EMPTY when it holds no events, and CORRUPT when lines fail to parse.
        """
        results: List[SegmentIntegrity] = []
        present = {p.name for p in self.segment_files()}

        for filename in self._indexed_segments():
            if filename not in present:
                results.append(
                    SegmentIntegrity(
                        filename=filename,
                        status=SegmentStatus.MISSING,
                        message="listed in the segment index but not on disk",
                    )
                )

        for path in self.segment_files():
            errors: List[EventDecodeError] = []
            try:
                count = sum(1 for _ in iter_events(path, on_error=errors.append))
            except OSError as e:
                results.append(
                    SegmentIntegrity(
                        filename=path.name, status=SegmentStatus.MISSING, message=str(e)
                    )
                )
                continue

            if errors:
                status = SegmentStatus.CORRUPT
            elif count == 0:
                status = SegmentStatus.EMPTY
            else:
                status = SegmentStatus.OK

            results.append(
                SegmentIntegrity(
                    filename=path.name,
                    status=status,
                    event_count=count,
                    corrupt_lines=[e.line_number for e in errors if e.line_number is not None],
                    message=str(errors[0]) if errors else None,
                )
            )

        return results

    def _indexed_segments(self) -> List[str]:
        index_path = self.log_directory / INDEX_NAME
        if not index_path.exists():
            return []
        try:
            with open(index_path, encoding="utf-8") as f:
                index = SegmentIndex.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read segment index: {e}")
            return []
        return [s.filename for s in index.segments if s.filename != ACTIVE_LOG_NAME]

    def export_run(self, run_id: str, output_path: Union[str, Path]) -> Path:
        """
        Write a run and its events to a standalone JSON file.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run_info = self.get_run_by_id(run_id)
        events = self.get_run(run_id)

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "runInfo": run_info.model_dump(mode="json", by_alias=True, exclude_none=True),
            "events": [event_to_dict(e) for e in events],
        }
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

        logger.info(f"Exported run {run_id} ({len(events)} events) to {output_path}")
        return output_path


def load_export(path: Union[str, Path]) -> Tuple[RunInfo, List[BaseEvent]]:
    """Read a file written by export_run."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return RunInfo.model_validate(data["runInfo"]), events_from_dicts(data["events"])


def is_undo_run(run: RunInfo) -> bool:
    return run.run_type == RunType.UNDO
