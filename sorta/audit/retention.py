"""
Retention pruning of sealed log segments.

A sealed segment is removed when it is older than ``retention_days`` or
holds only runs outside the ``retention_runs`` most recent ones. Neither rule
may remove a segment holding a run that started less than
``min_retention_days`` ago, and the active segment is never touched.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Set, Tuple

from pydantic import BaseModel, Field

from ..shared.file_utils import format_bytes
from .config import AuditConfig
from .events import RetentionPruneEvent, RunStartEvent, iter_events, utc_now
from .rotation import (
    RotationManager,
    SegmentInfo,
    all_log_files,
    discover_segments,
    parse_segment_sequence,
    summarize_segment,
)

logger = logging.getLogger(__name__)


class SystemEventSink(Protocol):
    def write_system_event(self, event: RetentionPruneEvent) -> None: ...


class PruneResult(BaseModel):
    """Outcome of one retention pass."""

    pruned_segments: List[str] = Field(default_factory=list)
    pruned_run_ids: List[str] = Field(default_factory=list)
    skipped_segments: List[str] = Field(default_factory=list)
    bytes_freed: int = 0


class RetentionManager:
    """Applies the retention policy of an AuditConfig to a log directory."""

    def __init__(self, config: AuditConfig):
        self.config = config
        self.log_directory = config.log_directory
        self.rotation = RotationManager(
            config.log_directory, config.rotation_size_bytes, config.rotation_period
        )

    def _run_start_times(self) -> Dict[str, datetime]:
        starts: Dict[str, datetime] = {}
        for path in all_log_files(self.log_directory):
            try:
                for event in iter_events(path):
                    if isinstance(event, RunStartEvent):
                        starts[event.run_id] = event.timestamp
            except OSError as e:
                logger.warning(f"Cannot read {path.name} during retention check: {e}")
        return starts

    def _segment_infos(self) -> List[SegmentInfo]:
        infos = []
        for path in discover_segments(self.log_directory):
            try:
                infos.append(summarize_segment(path, parse_segment_sequence(path.name) or 0))
            except OSError as e:
                logger.warning(f"Cannot read segment {path.name}: {e}")
        return infos

    def check_retention(
        self, now: Optional[datetime] = None
    ) -> Tuple[List[SegmentInfo], List[SegmentInfo]]:
        """
        Decide which sealed segments are due for pruning.

        Returns:
            (segments to prune, segments protected by the minimum retention floor)
        """
        if self.config.retention_days == 0 and self.config.retention_runs == 0:
            return [], []

        infos = self._segment_infos()
        if not infos:
            return [], []

        now = now or utc_now()
        floor = timedelta(days=self.config.min_retention_days)
        starts = self._run_start_times()

        def newest_run_start(info: SegmentInfo) -> Optional[datetime]:
            times = [starts[r] for r in info.run_ids if r in starts]
            times.extend(info.run_start_times)
            return max(times) if times else None

        def within_floor(info: SegmentInfo) -> bool:
            newest = newest_run_start(info)
            if newest is None:
                newest = info.last_event_time or info.sealed_at
            return now - newest < floor

        candidates: Dict[str, SegmentInfo] = {}
        protected: Dict[str, SegmentInfo] = {}

        if self.config.retention_days > 0:
            max_age = timedelta(days=self.config.retention_days)
            for info in infos:
                age_ref = info.last_event_time or info.sealed_at
                if now - age_ref > max_age:
                    if within_floor(info):
                        protected[info.filename] = info
                    else:
                        candidates[info.filename] = info

        if self.config.retention_runs > 0 and len(starts) > self.config.retention_runs:
            ordered = sorted(starts.items(), key=lambda item: item[1])
            excess = len(ordered) - self.config.retention_runs
            expired: Set[str] = {
                run_id for run_id, started in ordered[:excess] if now - started >= floor
            }
            for info in infos:
                if not info.run_ids:
                    continue
                if all(r in expired for r in info.run_ids):
                    if within_floor(info):
                        protected[info.filename] = info
                    else:
                        candidates[info.filename] = info
                elif any(r in expired for r in info.run_ids) and within_floor(info):
                    protected[info.filename] = info

        to_prune = sorted(candidates.values(), key=lambda s: s.sequence)
        skipped = sorted(
            (s for name, s in protected.items() if name not in candidates),
            key=lambda s: s.sequence,
        )
        return to_prune, skipped

    def segments_to_warn(
        self, warning_days: int, now: Optional[datetime] = None
    ) -> List[SegmentInfo]:
        """
        Sealed segments that will pass ``retention_days`` within ``warning_days``.

        Lets callers warn before an undo window closes. Segments already past
        the limit are included. Empty when age-based retention is off.

        Raises:
            ValueError: If warning_days is negative
        """
        if warning_days < 0:
            raise ValueError(f"warning_days must be >= 0, got {warning_days}")
        if self.config.retention_days == 0:
            return []

        now = now or utc_now()
        threshold = timedelta(days=self.config.retention_days - warning_days)
        return [
            info
            for info in self._segment_infos()
            if now - (info.last_event_time or info.sealed_at) > threshold
        ]

    def prune(
        self, sink: Optional[SystemEventSink] = None, now: Optional[datetime] = None
    ) -> PruneResult:
        """
        Remove expired sealed segments.

        Each removal is preceded by a RETENTION_PRUNE event written through
        ``sink`` (normally the AuditWriter), so the log records what was
        removed. The segment index is updated afterwards.

        Raises:
            DurabilityError: If the RETENTION_PRUNE event cannot be written
        """
        to_prune, skipped = self.check_retention(now)
        result = PruneResult(skipped_segments=[s.filename for s in skipped])

        for info in skipped:
            logger.debug(f"Keeping {info.filename}: holds runs inside the minimum retention window")

        for info in to_prune:
            if sink is not None:
                sink.write_system_event(
                    RetentionPruneEvent(
                        pruned_segment=info.filename, pruned_run_ids=list(info.run_ids)
                    )
                )
            path = self.log_directory / info.filename
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove expired segment {info.filename}: {e}")
                continue

            logger.info(
                f"Pruned audit segment {info.filename} "
                f"({len(info.run_ids)} runs, {format_bytes(info.size_bytes)})"
            )
            result.pruned_segments.append(info.filename)
            result.pruned_run_ids.extend(info.run_ids)
            result.bytes_freed += info.size_bytes

        if result.pruned_segments:
            try:
                self.rotation.remove_from_index(result.pruned_segments)
            except OSError as e:
                logger.warning(f"Failed to update segment index after pruning: {e}")

        return result
