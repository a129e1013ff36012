"""
Durable append-only audit log writer.

Every ``record_*`` call appends one JSON line, flushes it and fsyncs the
file before returning. Callers must not touch the filesystem for that file
until the call has returned; if it raises DurabilityError the run is marked
failed and every further record on it is refused.
"""

import fcntl
import logging
import math
import os
import signal
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Optional, Set, Union

from .config import AuditConfig
from .events import (
    BaseEvent,
    DuplicateDetectedEvent,
    ErrorEvent,
    LogInitializedEvent,
    MoveEvent,
    ParseFailureEvent,
    RouteToReviewEvent,
    RotationEvent,
    RunEndEvent,
    RunStartEvent,
    SkipEvent,
    UndoMoveEvent,
    UndoSkipEvent,
    ValidationFailureEvent,
    encode_event,
)
from .exceptions import DurabilityError, LogLockedError, RunStateError
from .retention import PruneResult, RetentionManager
from .rotation import ACTIVE_LOG_NAME, LOCK_NAME, RotationManager
from .types import (
    ErrorDetails,
    EventStatus,
    FileIdentity,
    ReasonCode,
    RunStatus,
    RunSummary,
    RunType,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class ActiveRun:
    """Handle for a run started by an AuditWriter; carries the run's tallies."""

    run_id: str
    run_type: RunType
    app_version: str
    machine_id: str
    started_at: datetime
    undo_target_id: Optional[str] = None

    moved: int = 0
    skipped: int = 0
    routed_review: int = 0
    duplicates: int = 0
    errors: int = 0
    files: Set[str] = field(default_factory=set)

    failed: bool = False
    failure: Optional[DurabilityError] = None
    ended: bool = False

    def tally(self) -> RunSummary:
        return RunSummary(
            total_files=len(self.files),
            moved=self.moved,
            skipped=self.skipped,
            routed_review=self.routed_review,
            duplicates=self.duplicates,
            errors=self.errors,
        )


def is_log_locked(log_directory: Path) -> bool:
    """True if some process currently holds the writer lock on ``log_directory``."""
    lock_path = Path(log_directory) / LOCK_NAME
    try:
        fd = os.open(lock_path, os.O_RDONLY)
    except OSError:
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
    except BlockingIOError:
        return True
    except OSError:
        return False
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


class AuditWriter:
    """
    Appends audit events to the active segment of a log directory.

    Holds an exclusive lock on the directory while open, so only one writer
    appends at a time. Use as a context manager or call open()/close().
    """

    def __init__(self, config: AuditConfig):
        self.config = config
        self.log_directory = Path(config.log_directory)
        self.rotation = RotationManager(
            self.log_directory, config.rotation_size_bytes, config.rotation_period
        )
        self.last_prune: Optional[PruneResult] = None
        self._file: Optional[IO[bytes]] = None
        self._lock_fd: Optional[IO[str]] = None

    def __enter__(self) -> "AuditWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def log_path(self) -> Path:
        return self.log_directory / ACTIVE_LOG_NAME

    @property
    def lock_path(self) -> Path:
        return self.log_directory / LOCK_NAME

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> "AuditWriter":
        """
        Lock the log directory and open the active segment for appending.

        Raises:
            LogLockedError: If another writer holds the lock past the timeout
            DurabilityError: If the directory or active segment cannot be prepared
        """
        if self.is_open:
            return self

        try:
            self.log_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DurabilityError(
                f"cannot create audit log directory {self.log_directory}: {e}"
            ) from e

        self.acquire_lock(self.config.lock_timeout)
        try:
            is_new_log = not self.log_path.exists()
            if not is_new_log:
                self._repair_torn_line()
            self._open_active()
            if is_new_log:
                self._append(LogInitializedEvent(log_path=str(self.log_path)))
                logger.info(f"Initialized audit log at {self.log_path}")

            self.last_prune = RetentionManager(self.config).prune(sink=self)
        except Exception:
            self.close()
            raise

        return self

    def close(self) -> None:
        """Close the active segment and release the lock."""
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                logger.error(f"Error closing audit log: {e}")
            self._file = None
        self.release_lock()

    def acquire_lock(self, timeout: float) -> None:
        """
        Acquire the exclusive writer lock.

        Args:
            timeout: Seconds to wait; 0 fails immediately if the lock is held

        Raises:
            LogLockedError: If the lock cannot be acquired within timeout
        """

        def timeout_handler(signum: int, frame: Any) -> None:
            raise TimeoutError(f"Could not acquire audit log lock within {timeout}s")

        self._lock_fd = open(self.lock_path, "a+")
        try:
            fcntl.flock(self._lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            if timeout <= 0:
                self._close_lock_fd()
                raise LogLockedError(
                    f"audit log {self.log_directory} is locked by another writer"
                )
            logger.warning(f"Waiting for audit log lock (timeout: {timeout}s)")
            old_handler = signal.signal(signal.SIGALRM, timeout_handler)
            signal.alarm(max(1, math.ceil(timeout)))
            try:
                fcntl.flock(self._lock_fd.fileno(), fcntl.LOCK_EX)
            except TimeoutError as e:
                self._close_lock_fd()
                raise LogLockedError(
                    f"audit log {self.log_directory} is locked by another writer"
                ) from e
            finally:
                signal.alarm(0)
                signal.signal(signal.SIGALRM, old_handler)

        self._lock_fd.seek(0)
        self._lock_fd.truncate()
        self._lock_fd.write(f"{os.getpid()}\n")
        self._lock_fd.flush()
        logger.debug("Acquired audit log lock")

    def release_lock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd.fileno(), fcntl.LOCK_UN)
            logger.debug("Released audit log lock")
        except OSError as e:
            logger.error(f"Error releasing audit log lock: {e}")
        self._close_lock_fd()

    def _close_lock_fd(self) -> None:
        if self._lock_fd is not None:
            self._lock_fd.close()
            self._lock_fd = None

    def _repair_torn_line(self) -> None:
        """Terminate a partial last line left behind by a crash mid-append."""
        try:
            with open(self.log_path, "rb+") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return
                f.seek(-1, os.SEEK_END)
                if f.read(1) == b"\n":
                    return
                f.seek(0, os.SEEK_END)
                f.write(b"\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise DurabilityError(f"cannot repair audit log {self.log_path}: {e}") from e
        logger.warning(f"Terminated a partially written event in {self.log_path.name}")

    def _open_active(self) -> None:
        try:
            self._file = open(self.log_path, "ab")
        except OSError as e:
            raise DurabilityError(f"cannot open audit log {self.log_path}: {e}") from e

    def _append(self, event: BaseEvent) -> None:
        """Write, flush and fsync one event."""
        if self._file is None:
            raise DurabilityError("audit writer is not open", run_id=event.run_id or None)

        line = (encode_event(event) + "\n").encode("utf-8")
        try:
            self._file.write(line)
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            raise DurabilityError(
                f"failed to append {event.event_type} event: {e}",
                run_id=event.run_id or None,
            ) from e

    def _rotate_if_needed(self, run_id: str) -> None:
        reason = self.rotation.needs_rotation()
        if reason is None:
            return

        sealed_name = self.rotation.next_segment_name()
        self._append(
            RotationEvent(
                run_id=run_id,
                previous_file=ACTIVE_LOG_NAME,
                new_file=sealed_name,
                metadata={"reason": reason},
            )
        )
        try:
            if self._file is not None:
                self._file.close()
                self._file = None
            self.rotation.seal(sealed_name)
        except OSError as e:
            raise DurabilityError(f"failed to rotate audit log: {e}", run_id=run_id or None) from e
        finally:
            if self._file is None:
                self._open_active()

    def _write(self, event: BaseEvent) -> None:
        self._rotate_if_needed(event.run_id)
        self._append(event)

    def write_system_event(self, event: BaseEvent) -> None:
        """Append an event that belongs to no run (e.g. RETENTION_PRUNE)."""
        self._write(event)

    def _check_run(self, run: ActiveRun) -> None:
        if run.ended:
            raise RunStateError(f"run {run.run_id} has already ended")
        if run.failed:
            raise DurabilityError(
                f"run {run.run_id} stopped after an audit write failure: {run.failure}",
                run_id=run.run_id,
            )

    def _record(self, run: ActiveRun, event: BaseEvent) -> None:
        self._check_run(run)
        try:
            self._write(event)
        except DurabilityError as e:
            run.failed = True
            run.failure = e
            logger.error(f"Audit write failed for run {run.run_id}: {e}")
            raise

    def start_run(self, app_version: str, machine_id: str) -> ActiveRun:
        """
        Begin an ORGANIZE run.

        The RUN_START event is durable when this returns; no organizing
        action may happen before that.
        """
        return self._start(app_version, machine_id, RunType.ORGANIZE, None)

    def start_undo_run(
        self, app_version: str, machine_id: str, target_run_id: str
    ) -> ActiveRun:
        """Begin an UNDO run reversing ``target_run_id``."""
        return self._start(app_version, machine_id, RunType.UNDO, target_run_id)

    def _start(
        self,
        app_version: str,
        machine_id: str,
        run_type: RunType,
        undo_target_id: Optional[str],
    ) -> ActiveRun:
        event = RunStartEvent(
            run_id=str(uuid.uuid4()),
            app_version=app_version,
            machine_id=machine_id,
            run_type=run_type,
            undo_target_id=undo_target_id,
        )
        self._write(event)
        logger.info(f"Started {run_type.value.lower()} run {event.run_id}")
        return ActiveRun(
            run_id=event.run_id,
            run_type=run_type,
            app_version=app_version,
            machine_id=machine_id,
            started_at=event.timestamp,
            undo_target_id=undo_target_id,
        )

    def record_move(
        self,
        run: ActiveRun,
        source: PathLike,
        destination: PathLike,
        identity: FileIdentity,
    ) -> None:
        self._record(
            run,
            MoveEvent(
                run_id=run.run_id,
                source_path=str(source),
                destination_path=str(destination),
                file_identity=identity,
            ),
        )
        run.files.add(str(source))
        run.moved += 1

    def record_duplicate(
        self,
        run: ActiveRun,
        source: PathLike,
        predicted_destination: PathLike,
        actual_destination: PathLike,
        reason_code: ReasonCode = ReasonCode.DUPLICATE_RENAMED,
        identity: Optional[FileIdentity] = None,
    ) -> None:
        """Record a move to ``actual_destination`` because ``predicted_destination`` was taken."""
        self._record(
            run,
            DuplicateDetectedEvent(
                run_id=run.run_id,
                source_path=str(source),
                destination_path=str(actual_destination),
                intended_destination=str(predicted_destination),
                reason_code=reason_code,
                file_identity=identity,
            ),
        )
        run.files.add(str(source))
        run.duplicates += 1

    def record_route_to_review(
        self,
        run: ActiveRun,
        source: PathLike,
        destination: PathLike,
        reason_code: ReasonCode,
        identity: Optional[FileIdentity] = None,
    ) -> None:
        self._record(
            run,
            RouteToReviewEvent(
                run_id=run.run_id,
                source_path=str(source),
                destination_path=str(destination),
                reason_code=reason_code,
                file_identity=identity,
            ),
        )
        run.files.add(str(source))
        run.routed_review += 1

    def record_skip(
        self, run: ActiveRun, source: PathLike, reason_code: ReasonCode
    ) -> None:
        self._record(
            run,
            SkipEvent(run_id=run.run_id, source_path=str(source), reason_code=reason_code),
        )
        run.files.add(str(source))
        run.skipped += 1

    def record_error(
        self,
        run: ActiveRun,
        source: PathLike,
        error_type: str,
        message: str,
        operation: str,
        destination: Optional[PathLike] = None,
    ) -> None:
        self._record(
            run,
            ErrorEvent(
                run_id=run.run_id,
                source_path=str(source),
                destination_path=str(destination) if destination is not None else None,
                error_details=ErrorDetails(
                    error_type=error_type, error_message=message, operation=operation
                ),
            ),
        )
        run.files.add(str(source))
        run.errors += 1

    def record_parse_failure(
        self, run: ActiveRun, source: PathLike, pattern: str, reason: str
    ) -> None:
        """Record that no date could be parsed from ``source`` using ``pattern``."""
        self._record(
            run,
            ParseFailureEvent(
                run_id=run.run_id, source_path=str(source), pattern=pattern, reason=reason
            ),
        )
        run.files.add(str(source))
        run.errors += 1

    def record_validation_failure(
        self, run: ActiveRun, source: PathLike, reason: str
    ) -> None:
        self._record(
            run,
            ValidationFailureEvent(run_id=run.run_id, source_path=str(source), reason=reason),
        )
        run.files.add(str(source))
        run.errors += 1

    def record_undo_move(
        self,
        run: ActiveRun,
        current_path: PathLike,
        restored_path: PathLike,
        identity: Optional[FileIdentity] = None,
    ) -> None:
        """Record that the file at ``current_path`` is about to be moved back to ``restored_path``."""
        self._record(
            run,
            UndoMoveEvent(
                run_id=run.run_id,
                source_path=str(current_path),
                destination_path=str(restored_path),
                file_identity=identity,
            ),
        )
        run.files.add(str(current_path))
        run.moved += 1

    def record_undo_skip(
        self,
        run: ActiveRun,
        source: PathLike,
        reason_code: ReasonCode,
        destination: Optional[PathLike] = None,
    ) -> None:
        self._record(
            run,
            UndoSkipEvent(
                run_id=run.run_id,
                source_path=str(source),
                destination_path=str(destination) if destination is not None else None,
                reason_code=reason_code,
            ),
        )
        run.files.add(str(source))
        run.skipped += 1

    def end_run(
        self,
        run: ActiveRun,
        status: RunStatus,
        summary: Optional[RunSummary] = None,
    ) -> None:
        """
        Append RUN_END. A run can be ended exactly once.

        A run that hit a durability failure always ends FAILED.

        Raises:
            RunStateError: If the run was already ended
            DurabilityError: If RUN_END cannot be written
        """
        if run.ended:
            raise RunStateError(f"run {run.run_id} has already ended")

        status = RunStatus(status)
        if run.failed and status != RunStatus.FAILED:
            logger.warning(
                f"Run {run.run_id} had an audit write failure, ending as FAILED"
            )
            status = RunStatus.FAILED

        event = RunEndEvent(
            run_id=run.run_id,
            status=EventStatus.SUCCESS if status == RunStatus.COMPLETED else EventStatus.FAILURE,
            run_status=status,
            summary=summary if summary is not None else run.tally(),
        )
        self._write(event)
        run.ended = True
        logger.info(f"Ended run {run.run_id} with status {status.value}")
