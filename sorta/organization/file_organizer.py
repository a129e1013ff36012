"""
File organizer executing a planned set of moves under the audit log.

Deciding where each file goes is the caller's job; the organizer carries a
plan out one file at a time. For every file it captures the content
identity, records the event durably, and only then moves the file. A
durability failure stops the run on the spot: no file is moved without a
matching event in the log.
"""

import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..audit.exceptions import DurabilityError, IdentityError
from ..audit.identity import IdentityResolver
from ..audit.types import ReasonCode, RunStatus, RunSummary
from ..audit.writer import ActiveRun, AuditWriter

logger = logging.getLogger(__name__)

DUPLICATE_SUFFIX = "_duplicate"


class ActionKind(str, Enum):
    """What to do with one file."""

    MOVE = "move"
    REVIEW = "review"
    SKIP = "skip"


class PlannedAction(BaseModel):
    """One file and its planned fate."""

    model_config = ConfigDict(frozen=True)

    source: Path
    destination: Optional[Path] = None
    kind: ActionKind = ActionKind.MOVE
    reason_code: Optional[ReasonCode] = None


class OrganizationResult(BaseModel):
    """Result of an organization run."""

    run_id: Optional[str] = None
    total_files: int = 0
    organized: int = 0
    duplicates: int = 0
    routed_review: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)

    def summary(self) -> RunSummary:
        return RunSummary(
            total_files=self.total_files,
            moved=self.organized,
            skipped=self.skipped,
            routed_review=self.routed_review,
            duplicates=self.duplicates,
            errors=self.failed,
        )


def duplicate_destination(destination: Path) -> Path:
    """
    First free name for ``destination``.

    ``report.pdf`` becomes ``report_duplicate.pdf``, then
    ``report_duplicate_2.pdf``, ``report_duplicate_3.pdf`` and so on.
    """
    if not destination.exists():
        return destination

    stem, suffix = destination.stem, destination.suffix
    candidate = destination.with_name(f"{stem}{DUPLICATE_SUFFIX}{suffix}")
    counter = 2
    while candidate.exists():
        candidate = destination.with_name(f"{stem}{DUPLICATE_SUFFIX}_{counter}{suffix}")
        counter += 1
    return candidate


class FileOrganizer:
    """Carry out a plan of file actions with audit-before-act ordering."""

    def __init__(
        self,
        writer: AuditWriter,
        app_version: str,
        machine_id: str,
        resolver: Optional[IdentityResolver] = None,
    ):
        """
        Initialize file organizer.

        Args:
            writer: Open audit writer
            app_version: Version recorded on the run
            machine_id: Machine recorded on the run
            resolver: Identity resolver for source fingerprints
        """
        self.writer = writer
        self.app_version = app_version
        self.machine_id = machine_id
        self.resolver = resolver or IdentityResolver()

    def organize(self, plan: Sequence[PlannedAction]) -> OrganizationResult:
        """
        Execute ``plan`` as one audited run.

        Per-file problems (unreadable source, failed move) are recorded as
        ERROR events and processing continues. A DurabilityError stops the
        run, which is ended FAILED best-effort, and the result is marked
        ``aborted``.

        Any other exception ends the run FAILED and propagates.

        Raises:
            ValueError: If a MOVE or REVIEW action has no destination; nothing
                is recorded or moved
            DurabilityError: If the run cannot even be started
        """
        for action in plan:
            if action.kind != ActionKind.SKIP and action.destination is None:
                raise ValueError(
                    f"{action.kind.value} action for {action.source} has no destination"
                )

        run = self.writer.start_run(self.app_version, self.machine_id)
        result = OrganizationResult(run_id=run.run_id)
        logger.info(f"Organizing {len(plan)} files in run {run.run_id}")

        try:
            for action in plan:
                result.total_files += 1
                self._process(run, action, result)
        except DurabilityError as e:
            result.aborted = True
            result.error = str(e)
            logger.error(f"Stopping run {run.run_id}: {e}")
            try:
                self.writer.end_run(run, RunStatus.FAILED, result.summary())
            except DurabilityError as end_error:
                logger.error(f"Could not record end of run {run.run_id}: {end_error}")
            return result
        except Exception:
            logger.exception(f"Unexpected error in run {run.run_id}, ending it FAILED")
            self.writer.end_run(run, RunStatus.FAILED, result.summary())
            raise

        self.writer.end_run(run, RunStatus.COMPLETED, result.summary())
        logger.info(
            f"Run {run.run_id} complete: {result.organized} organized, "
            f"{result.duplicates} duplicates, {result.routed_review} for review, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _process(
        self, run: ActiveRun, action: PlannedAction, result: OrganizationResult
    ) -> None:
        source = action.source

        if action.kind == ActionKind.SKIP:
            self.writer.record_skip(run, source, action.reason_code or ReasonCode.NO_MATCH)
            result.skipped += 1
            return

        intended = action.destination
        if intended is None:
            raise ValueError(f"{action.kind.value} action for {source} has no destination")

        try:
            identity = self.resolver.capture_identity(source)
        except IdentityError as e:
            self.writer.record_error(run, source, type(e).__name__, str(e), "capture_identity")
            result.failed += 1
            result.errors.append(f"{source}: {e}")
            return

        destination = duplicate_destination(intended)

        if action.kind == ActionKind.REVIEW:
            self.writer.record_route_to_review(
                run,
                source,
                destination,
                action.reason_code or ReasonCode.UNCLASSIFIED,
                identity,
            )
        elif destination != intended:
            self.writer.record_duplicate(
                run, source, intended, destination, ReasonCode.DUPLICATE_RENAMED, identity
            )
        else:
            self.writer.record_move(run, source, destination, identity)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))
        except OSError as e:
            logger.error(f"Failed to move {source} -> {destination}: {e}")
            self.writer.record_error(
                run, source, type(e).__name__, str(e), "move", destination=destination
            )
            result.failed += 1
            result.errors.append(f"{source}: {e}")
            return

        if action.kind == ActionKind.REVIEW:
            result.routed_review += 1
        elif destination != intended:
            result.duplicates += 1
        else:
            result.organized += 1
        logger.debug(f"Moved {source} -> {destination}")
