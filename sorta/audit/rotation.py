"""
Log segment naming, rotation and the segment index.

The active segment is always ``sorta-audit.jsonl``. Rotation seals it by
renaming it to ``sorta-audit-<seq>-<YYYYMMDD-HHMMSS>.jsonl``; the zero-padded
sequence number gives sealed segments a stable chronological order even when
two rotations happen within the same second. ``sorta-audit-index.json``
describes the sealed segments and is rewritten atomically after every seal or
prune. Segment discovery never depends on the index, so a lost or damaged
index only costs the extra metadata.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import Field, ValidationError

from ..shared.file_utils import fsync_directory
from .events import RunStartEvent, iter_events, utc_now
from .types import AuditModel

logger = logging.getLogger(__name__)

ACTIVE_LOG_NAME = "sorta-audit.jsonl"
INDEX_NAME = "sorta-audit-index.json"
LOCK_NAME = "sorta-audit.lock"

SEQUENCE_WIDTH = 6
SEGMENT_PATTERN = re.compile(r"^sorta-audit-(\d+)-(\d{8}-\d{6})\.jsonl$")

ROTATION_PERIODS = ("", "daily", "weekly")


class SegmentInfo(AuditModel):
    """Description of one sealed segment."""

    filename: str
    sequence: int
    sealed_at: datetime
    size_bytes: int = 0
    event_count: int = 0
    first_event_time: Optional[datetime] = None
    last_event_time: Optional[datetime] = None
    run_ids: List[str] = Field(default_factory=list)
    run_start_times: List[datetime] = Field(default_factory=list)


class SegmentIndex(AuditModel):
    """Contents of ``sorta-audit-index.json``."""

    active_log: str = ACTIVE_LOG_NAME
    last_updated: datetime = Field(default_factory=utc_now)
    segments: List[SegmentInfo] = Field(default_factory=list)


def parse_segment_sequence(filename: str) -> Optional[int]:
    """Sequence number of a sealed segment name, or None for any other name."""
    match = SEGMENT_PATTERN.match(filename)
    if match is None:
        return None
    return int(match.group(1))


def segment_filename(sequence: int, sealed_at: datetime) -> str:
    stamp = sealed_at.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"sorta-audit-{sequence:0{SEQUENCE_WIDTH}d}-{stamp}.jsonl"


def summarize_segment(path: Path, sequence: int = 0) -> SegmentInfo:
    """
    Scan a segment and describe its contents.

    Raises:
        OSError: If the segment cannot be read
    """
    run_ids: List[str] = []
    run_start_times: List[datetime] = []
    first: Optional[datetime] = None
    last: Optional[datetime] = None
    count = 0

    for event in iter_events(path):
        count += 1
        if first is None:
            first = event.timestamp
        last = event.timestamp
        if event.run_id and event.run_id not in run_ids:
            run_ids.append(event.run_id)
        if isinstance(event, RunStartEvent):
            run_start_times.append(event.timestamp)

    st = path.stat()
    return SegmentInfo(
        filename=path.name,
        sequence=sequence,
        sealed_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        size_bytes=st.st_size,
        event_count=count,
        first_event_time=first,
        last_event_time=last,
        run_ids=run_ids,
        run_start_times=run_start_times,
    )


def discover_segments(log_directory: Path) -> List[Path]:
    """Sealed segments ordered by sequence number."""
    if not log_directory.is_dir():
        return []

    found = []
    for entry in log_directory.iterdir():
        sequence = parse_segment_sequence(entry.name)
        if sequence is not None and entry.is_file():
            found.append((sequence, entry))

    return [path for _, path in sorted(found)]


def all_log_files(log_directory: Path) -> List[Path]:
    """Sealed segments in order followed by the active segment, if it exists."""
    files = discover_segments(log_directory)
    active = log_directory / ACTIVE_LOG_NAME
    if active.is_file():
        files.append(active)
    return files


class RotationManager:
    """Decides when the active segment must be sealed, seals it, and keeps the index."""

    def __init__(
        self,
        log_directory: Path,
        rotation_size_bytes: int,
        rotation_period: str = "",
    ):
        if rotation_period not in ROTATION_PERIODS:
            raise ValueError(f"unknown rotation period: {rotation_period!r}")
        self.log_directory = Path(log_directory)
        self.rotation_size_bytes = rotation_size_bytes
        self.rotation_period = rotation_period

    @property
    def active_path(self) -> Path:
        return self.log_directory / ACTIVE_LOG_NAME

    @property
    def index_path(self) -> Path:
        return self.log_directory / INDEX_NAME

    def needs_rotation(self, now: Optional[datetime] = None) -> Optional[str]:
        """
        Check whether the active segment must be sealed before the next append.

        Returns:
            "size" or "period" when rotation is due, otherwise None
        """
        try:
            st = self.active_path.stat()
        except FileNotFoundError:
            return None

        if st.st_size == 0:
            return None

        if self.rotation_size_bytes > 0 and st.st_size >= self.rotation_size_bytes:
            return "size"

        if self.rotation_period:
            now = now or utc_now()
            last_write = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
            if self._period_elapsed(last_write, now.astimezone(timezone.utc)):
                return "period"

        return None

    def _period_elapsed(self, last_write: datetime, now: datetime) -> bool:
        if self.rotation_period == "daily":
            return last_write.date() < now.date()
        if self.rotation_period == "weekly":
            return last_write.isocalendar()[:2] != now.isocalendar()[:2]
        return False

    def next_sequence(self) -> int:
        segments = discover_segments(self.log_directory)
        if not segments:
            return 1
        return (parse_segment_sequence(segments[-1].name) or 0) + 1

    def next_segment_name(self, now: Optional[datetime] = None) -> str:
        return segment_filename(self.next_sequence(), now or utc_now())

    def seal(self, sealed_name: str) -> Path:
        """
        Rename the active segment to ``sealed_name`` and record it in the index.

        The caller must have closed its handle on the active segment.

        Raises:
            OSError: If the rename fails
        """
        sealed_path = self.log_directory / sealed_name
        if sealed_path.exists():
            raise FileExistsError(f"segment already exists: {sealed_path}")

        os.rename(self.active_path, sealed_path)
        fsync_directory(self.log_directory)
        logger.info(f"Sealed audit segment {sealed_name}")

        try:
            info = summarize_segment(sealed_path, parse_segment_sequence(sealed_name) or 0)
            self.add_to_index(info)
        except OSError as e:
            logger.warning(f"Failed to update segment index after sealing {sealed_name}: {e}")

        return sealed_path

    def load_index(self) -> SegmentIndex:
        """Load the index; a missing or unreadable index is rebuilt from the segments."""
        try:
            with open(self.index_path, encoding="utf-8") as f:
                return SegmentIndex.model_validate(json.load(f))
        except FileNotFoundError:
            pass
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Segment index is unreadable, rebuilding: {e}")
        return self.rebuild_index()

    def rebuild_index(self) -> SegmentIndex:
        segments = []
        for path in discover_segments(self.log_directory):
            try:
                segments.append(
                    summarize_segment(path, parse_segment_sequence(path.name) or 0)
                )
            except OSError as e:
                logger.warning(f"Cannot read segment {path.name}: {e}")
        return SegmentIndex(segments=segments)

    def save_index(self, index: SegmentIndex) -> None:
        """
        Write the index atomically (temp file, fsync, rename).

        Raises:
            OSError: If the index cannot be written
        """
        temp_file = self.index_path.with_suffix(".tmp")
        data = index.model_dump(mode="json", by_alias=True)
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(self.index_path)
        fsync_directory(self.log_directory)

    def add_to_index(self, info: SegmentInfo) -> None:
        index = self.load_index()
        segments = [s for s in index.segments if s.filename != info.filename]
        segments.append(info)
        segments.sort(key=lambda s: s.sequence)
        self.save_index(SegmentIndex(segments=segments))

    def remove_from_index(self, filenames: Iterable[str]) -> None:
        removed = set(filenames)
        index = self.load_index()
        remaining = [s for s in index.segments if s.filename not in removed]
        self.save_index(SegmentIndex(segments=remaining))
