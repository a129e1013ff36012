"""
Undo engine.

Reverses a recorded run by replaying its events backwards. Each reversible
event is checked before anything moves:

1. no later non-undo run touched the same paths,
2. the file can be located at its (remapped) destination, or by content
   hash in the search directories,
3. its content still matches the identity recorded before the move,
4. nothing occupies the original path.

Any failed check turns into a per-file skip with a reason code. Restores
are themselves audited in a new UNDO run, with the UNDO_MOVE event written
before the file is moved back. Preview applies the same checks without
touching the filesystem or the log.
"""

import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field

from ..shared.file_utils import get_machine_id
from ..version import get_app_version
from .events import BaseEvent
from .exceptions import (
    DurabilityError,
    IdentityReadError,
    InvalidUndoTargetError,
    RestoreError,
)
from .identity import IdentityResolver
from .reader import AuditReader
from .types import (
    NO_OP_EVENT_TYPES,
    REVERSIBLE_EVENT_TYPES,
    EventType,
    FileIdentity,
    IdentityMatch,
    PathMapping,
    ReasonCode,
    RunInfo,
    RunStatus,
    RunSummary,
    RunType,
    apply_path_mappings,
)
from .writer import ActiveRun, AuditWriter

logger = logging.getLogger(__name__)


class UndoProgressType(str, Enum):
    RESTORE = "restore"
    SKIP = "skip"
    VERIFY = "verify"
    ERROR = "error"


class UndoProgressEvent(BaseModel):
    """One observation reported to a progress callback while undoing."""

    type: UndoProgressType
    source_path: str
    dest_path: Optional[str] = None
    current: int
    total: int
    verify_status: Optional[str] = None
    reason: Optional[str] = None


ProgressCallback = Callable[[UndoProgressEvent], None]


class FailureDetails(BaseModel):
    source_path: str
    dest_path: Optional[str] = None
    message: str
    reason: str


class UndoSkip(BaseModel):
    source_path: str
    dest_path: Optional[str] = None
    reason: ReasonCode


class UndoResult(BaseModel):
    """Aggregate outcome of an undo."""

    undo_run_id: str
    target_run_id: str
    total_events: int = 0
    restored: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[FailureDetails] = Field(default_factory=list)
    skips: List[UndoSkip] = Field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        if self.failed > 0 and self.restored == 0:
            return RunStatus.FAILED
        return RunStatus.COMPLETED


class UndoPreviewAction(BaseModel):
    event_type: EventType
    source_path: str
    dest_path: Optional[str] = None
    will_restore: bool
    reason: Optional[ReasonCode] = None
    message: Optional[str] = None


class UndoPreview(BaseModel):
    """What undoing a run would do, computed without side effects."""

    target_run_id: str
    actions: List[UndoPreviewAction] = Field(default_factory=list)
    total_moves: int = 0
    total_reviews: int = 0
    total_duplicates: int = 0
    total_no_ops: int = 0
    will_restore: int = 0
    will_skip: int = 0


class _Decision:
    """Result of checking one historical event against the current filesystem."""

    def __init__(self, event: BaseEvent, source: str, dest: Optional[str]):
        self.event = event
        self.source = source
        self.dest = dest
        self.located: Optional[Path] = None
        self.identity: Optional[FileIdentity] = getattr(event, "file_identity", None)
        self.reason: Optional[ReasonCode] = None
        self.verify_status: Optional[str] = None
        self.error: Optional[str] = None
        self.conflicting_run_id: Optional[str] = None

    @property
    def restorable(self) -> bool:
        return self.reason is None and self.error is None and self.located is not None

    def skip(self, reason: ReasonCode) -> "_Decision":
        self.reason = reason
        return self


class UndoEngine:
    """
    Reverses recorded runs.

    Args:
        reader: Reader over the log holding the target run
        writer: Open writer for the undo run's own events; only needed to undo,
            not to preview
        resolver: Identity resolver (SHA-256 by default)
        app_version: Version recorded on the undo run, the running build by default
        machine_id: Machine recorded on the undo run
    """

    def __init__(
        self,
        reader: AuditReader,
        writer: Optional[AuditWriter] = None,
        resolver: Optional[IdentityResolver] = None,
        app_version: Optional[str] = None,
        machine_id: Optional[str] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.resolver = resolver or IdentityResolver()
        self.app_version = app_version or get_app_version()
        self.machine_id = machine_id or get_machine_id()

    # Target resolution

    def _resolve_target(self, run_id: Optional[str]) -> RunInfo:
        run = self.reader.get_latest_run() if run_id is None else self.reader.get_run_by_id(run_id)
        if run.run_type == RunType.UNDO:
            raise InvalidUndoTargetError(f"run {run.run_id} is an undo run and cannot be undone")
        return run

    def _candidate_events(self, run: RunInfo) -> List[BaseEvent]:
        events = self.reader.get_run(run.run_id)
        wanted = REVERSIBLE_EVENT_TYPES | NO_OP_EVENT_TYPES
        candidates = [e for e in events if EventType(e.event_type) in wanted]
        candidates.reverse()
        return candidates

    def _conflict_map(self, target: RunInfo) -> Dict[str, str]:
        """Map each path touched by a later organize run to that run's id."""
        conflicts: Dict[str, str] = {}
        for run in self.reader.later_runs(target):
            if run.run_type == RunType.UNDO:
                continue
            for event in self.reader.get_run(run.run_id):
                if EventType(event.event_type) not in REVERSIBLE_EVENT_TYPES:
                    continue
                for path in event.touched_paths():
                    conflicts.setdefault(path, run.run_id)
        return conflicts

    # Per-event checks

    def _locate(
        self,
        dest: str,
        identity: Optional[FileIdentity],
        search_directories: Sequence[Union[str, Path]],
    ) -> Optional[Path]:
        """
        The file to restore: ``dest`` itself, or the single file in the
        search directories with the recorded content.

        Several matching files are ambiguous and yield None, so an unrelated
        copy with the same bytes is never taken.
        """
        expected = Path(dest)
        if expected.is_file():
            return expected

        if identity is None or not search_directories:
            return None

        matches = self.resolver.find_by_hash(
            identity.content_hash, search_directories, size=identity.size
        )
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} files match the content of {dest}, not relocating"
            )
            return None
        return matches[0] if matches else None

    def _decide(
        self,
        event: BaseEvent,
        mappings: Sequence[PathMapping],
        conflicts: Dict[str, str],
        search_directories: Sequence[Union[str, Path]],
    ) -> _Decision:
        raw_source = getattr(event, "source_path")
        raw_dest = getattr(event, "destination_path", None)
        decision = _Decision(
            event,
            apply_path_mappings(raw_source, mappings),
            apply_path_mappings(raw_dest, mappings) if raw_dest else None,
        )

        if EventType(event.event_type) in NO_OP_EVENT_TYPES:
            return decision.skip(ReasonCode.NO_OP_EVENT)

        for path in (decision.dest, decision.source, raw_dest, raw_source):
            if path and path in conflicts:
                decision.conflicting_run_id = conflicts[path]
                return decision.skip(ReasonCode.CONFLICT_WITH_LATER_RUN)

        if decision.dest is None:
            return decision.skip(ReasonCode.DESTINATION_MISSING)
        decision.located = self._locate(decision.dest, decision.identity, search_directories)
        if decision.located is None:
            return decision.skip(ReasonCode.DESTINATION_MISSING)

        if decision.identity is not None:
            try:
                match = self.resolver.verify_identity(decision.located, decision.identity)
            except IdentityReadError as e:
                decision.error = str(e)
                decision.verify_status = "error"
                return decision
            decision.verify_status = match.value.lower()
            if match is IdentityMatch.NOT_FOUND:
                return decision.skip(ReasonCode.DESTINATION_MISSING)
            if match is not IdentityMatch.MATCH:
                return decision.skip(ReasonCode.IDENTITY_MISMATCH)
        else:
            decision.verify_status = "unverified"

        if Path(decision.source).exists():
            return decision.skip(ReasonCode.SOURCE_ALREADY_EXISTS)

        return decision

    # Preview

    def preview_undo(
        self,
        run_id: str,
        mappings: Sequence[PathMapping] = (),
        search_directories: Sequence[Union[str, Path]] = (),
    ) -> UndoPreview:
        """Decide what undoing ``run_id`` would do, without side effects."""
        return self._preview(self._resolve_target(run_id), mappings, search_directories)

    def preview_latest(
        self,
        mappings: Sequence[PathMapping] = (),
        search_directories: Sequence[Union[str, Path]] = (),
    ) -> UndoPreview:
        return self._preview(self._resolve_target(None), mappings, search_directories)

    def _preview(
        self,
        target: RunInfo,
        mappings: Sequence[PathMapping],
        search_directories: Sequence[Union[str, Path]],
    ) -> UndoPreview:
        preview = UndoPreview(target_run_id=target.run_id)
        conflicts = self._conflict_map(target)

        for event in self._candidate_events(target):
            event_type = EventType(event.event_type)
            if event_type == EventType.MOVE:
                preview.total_moves += 1
            elif event_type == EventType.ROUTE_TO_REVIEW:
                preview.total_reviews += 1
            elif event_type == EventType.DUPLICATE_DETECTED:
                preview.total_duplicates += 1
            else:
                preview.total_no_ops += 1

            decision = self._decide(event, mappings, conflicts, search_directories)
            preview.actions.append(
                UndoPreviewAction(
                    event_type=event_type,
                    source_path=decision.source,
                    dest_path=str(decision.located) if decision.located else decision.dest,
                    will_restore=decision.restorable,
                    reason=decision.reason,
                    message=decision.error,
                )
            )
            if decision.restorable:
                preview.will_restore += 1
            else:
                preview.will_skip += 1

        return preview

    # Undo

    def undo_latest(
        self,
        mappings: Sequence[PathMapping] = (),
        search_directories: Sequence[Union[str, Path]] = (),
        progress: Optional[ProgressCallback] = None,
    ) -> UndoResult:
        """Undo the most recent run."""
        return self._undo(self._resolve_target(None), mappings, search_directories, progress)

    def undo_run(
        self,
        run_id: str,
        mappings: Sequence[PathMapping] = (),
        search_directories: Sequence[Union[str, Path]] = (),
        progress: Optional[ProgressCallback] = None,
    ) -> UndoResult:
        """
        Undo ``run_id``.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidUndoTargetError: If the run is itself an undo run
            DurabilityError: If the undo run's audit trail cannot be written
        """
        return self._undo(self._resolve_target(run_id), mappings, search_directories, progress)

    def _undo(
        self,
        target: RunInfo,
        mappings: Sequence[PathMapping],
        search_directories: Sequence[Union[str, Path]],
        progress: Optional[ProgressCallback],
    ) -> UndoResult:
        if self.writer is None:
            raise ValueError("an AuditWriter is required to undo a run")

        events = self._candidate_events(target)
        conflicts = self._conflict_map(target)
        run = self.writer.start_undo_run(self.app_version, self.machine_id, target.run_id)
        result = UndoResult(
            undo_run_id=run.run_id, target_run_id=target.run_id, total_events=len(events)
        )
        logger.info(f"Undoing run {target.run_id} ({len(events)} events)")

        def notify(kind: UndoProgressType, decision: _Decision, current: int, **kwargs) -> None:
            if progress is not None:
                progress(
                    UndoProgressEvent(
                        type=kind,
                        source_path=decision.source,
                        dest_path=str(decision.located) if decision.located else decision.dest,
                        current=current,
                        total=len(events),
                        **kwargs,
                    )
                )

        try:
            for current, event in enumerate(events, start=1):
                decision = self._decide(event, mappings, conflicts, search_directories)
                if decision.verify_status is not None:
                    notify(
                        UndoProgressType.VERIFY,
                        decision,
                        current,
                        verify_status=decision.verify_status,
                    )

                if decision.error is not None:
                    self._record_failure(run, result, decision, decision.error, "IDENTITY_READ_ERROR")
                    notify(UndoProgressType.ERROR, decision, current, reason=decision.error)
                elif decision.reason is not None or decision.located is None:
                    reason = decision.reason or ReasonCode.DESTINATION_MISSING
                    self._record_skip(run, result, decision, reason)
                    notify(UndoProgressType.SKIP, decision, current, reason=reason.value)
                else:
                    try:
                        self._restore(run, decision, decision.located)
                    except RestoreError as e:
                        self._record_failure(run, result, decision, str(e), "RESTORE_FAILED")
                        notify(UndoProgressType.ERROR, decision, current, reason=str(e))
                    else:
                        result.restored += 1
                        notify(UndoProgressType.RESTORE, decision, current)
        except DurabilityError:
            logger.error(f"Audit log write failed, stopping undo of {target.run_id}")
            try:
                self.writer.end_run(run, RunStatus.FAILED, self._summary(result))
            except DurabilityError as end_error:
                logger.error(f"Could not record end of undo run {run.run_id}: {end_error}")
            raise

        self.writer.end_run(run, result.status, self._summary(result))
        logger.info(
            f"Undo of {target.run_id} finished: {result.restored} restored, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _summary(self, result: UndoResult) -> RunSummary:
        return RunSummary(
            total_files=result.total_events,
            moved=result.restored,
            skipped=result.skipped,
            errors=result.failed,
        )

    def _record_skip(
        self, run: ActiveRun, result: UndoResult, decision: _Decision, reason: ReasonCode
    ) -> None:
        self.writer.record_undo_skip(
            run, decision.dest or decision.source, reason, destination=decision.source
        )
        result.skipped += 1
        result.skips.append(
            UndoSkip(source_path=decision.source, dest_path=decision.dest, reason=reason)
        )
        logger.debug(f"Skipped {decision.source}: {reason.value}")

    def _record_failure(
        self,
        run: ActiveRun,
        result: UndoResult,
        decision: _Decision,
        message: str,
        reason: str,
    ) -> None:
        current = str(decision.located) if decision.located else decision.dest
        self.writer.record_error(
            run,
            current or decision.source,
            reason,
            message,
            "restore",
            destination=decision.source,
        )
        result.failed += 1
        result.failures.append(
            FailureDetails(
                source_path=decision.source, dest_path=current, message=message, reason=reason
            )
        )
        logger.warning(f"Failed to restore {decision.source}: {message}")

    def _restore(self, run: ActiveRun, decision: _Decision, located: Path) -> None:
        """
        Record the UNDO_MOVE, then move the file back.

        Raises:
            DurabilityError: If the UNDO_MOVE cannot be recorded (nothing moved)
            RestoreError: If the move itself fails
        """
        source = Path(decision.source)

        self.writer.record_undo_move(run, located, source, decision.identity)
        if decision.dest and str(located) != decision.dest:
            logger.info(f"Restoring {source} from relocated copy {located}")

        if source.exists():
            raise RestoreError(source, located, "original path became occupied")
        try:
            source.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(located), str(source))
        except OSError as e:
            raise RestoreError(source, located, str(e)) from e
        logger.debug(f"Restored {located} -> {source}")

