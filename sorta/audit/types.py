"""
Type definitions for the audit subsystem.

Models serialize with camelCase keys (``runId``, ``fileIdentity``) so the
JSON Lines log stays readable by other tools; Python code uses snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Kind of audit event."""

    RUN_START = "RUN_START"
    RUN_END = "RUN_END"
    MOVE = "MOVE"
    DUPLICATE_DETECTED = "DUPLICATE_DETECTED"
    ROUTE_TO_REVIEW = "ROUTE_TO_REVIEW"
    SKIP = "SKIP"
    ERROR = "ERROR"
    PARSE_FAILURE = "PARSE_FAILURE"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    UNDO_MOVE = "UNDO_MOVE"
    UNDO_SKIP = "UNDO_SKIP"
    ROTATION = "ROTATION"
    RETENTION_PRUNE = "RETENTION_PRUNE"
    LOG_INITIALIZED = "LOG_INITIALIZED"


class EventStatus(str, Enum):
    """Outcome of the action an event describes."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


class RunType(str, Enum):
    """Kind of run."""

    ORGANIZE = "ORGANIZE"
    UNDO = "UNDO"


class RunStatus(str, Enum):
    """Lifecycle state of a run."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReasonCode(str, Enum):
    """Categorical cause attached to skips, reviews, duplicates and undo skips."""

    NO_MATCH = "NO_MATCH"
    INVALID_DATE = "INVALID_DATE"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    UNCLASSIFIED = "UNCLASSIFIED"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_RENAMED = "DUPLICATE_RENAMED"

    # Undo
    NO_OP_EVENT = "NO_OP_EVENT"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    DESTINATION_MISSING = "DESTINATION_MISSING"
    SOURCE_ALREADY_EXISTS = "SOURCE_ALREADY_EXISTS"
    CONFLICT_WITH_LATER_RUN = "CONFLICT_WITH_LATER_RUN"


class IdentityMatch(str, Enum):
    """Result of comparing a file on disk against a recorded identity."""

    MATCH = "MATCH"
    SIZE_MISMATCH = "SIZE_MISMATCH"
    HASH_MISMATCH = "HASH_MISMATCH"
    NOT_FOUND = "NOT_FOUND"


# Event types that move a file and can be reversed by undo
REVERSIBLE_EVENT_TYPES = frozenset(
    {EventType.MOVE, EventType.DUPLICATE_DETECTED, EventType.ROUTE_TO_REVIEW}
)

# Event types that describe a file but changed nothing on disk
NO_OP_EVENT_TYPES = frozenset(
    {
        EventType.SKIP,
        EventType.ERROR,
        EventType.PARSE_FAILURE,
        EventType.VALIDATION_FAILURE,
    }
)

# Events written with an empty run id
SYSTEM_EVENT_TYPES = frozenset(
    {EventType.ROTATION, EventType.RETENTION_PRUNE, EventType.LOG_INITIALIZED}
)


class AuditModel(BaseModel):
    """Base for every persisted or exported audit structure."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class FileIdentity(AuditModel):
    """Content identity of a file at one instant."""

    content_hash: str
    size: int = Field(ge=0)


class ErrorDetails(AuditModel):
    """What went wrong for an ERROR event."""

    error_type: str
    error_message: str
    operation: str


class RunSummary(AuditModel):
    """Per-run file counts."""

    total_files: int = 0
    moved: int = 0
    skipped: int = 0
    routed_review: int = 0
    duplicates: int = 0
    errors: int = 0


class RunInfo(AuditModel):
    """Header and summary of one run as reconstructed from the log."""

    run_id: str
    run_type: RunType = RunType.ORGANIZE
    status: RunStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    app_version: str = ""
    machine_id: str = ""
    undo_target_id: Optional[str] = None
    summary: RunSummary = Field(default_factory=RunSummary)
    interrupted: bool = False
    event_count: int = 0


class PathMapping(AuditModel):
    """Literal prefix substitution applied to historical paths."""

    original_prefix: str
    mapped_prefix: str

    @classmethod
    def parse(cls, text: str) -> "PathMapping":
        """
        Parse the ``original:mapped`` command line form.

        Raises:
            ValueError: If either side is empty or the separator is missing
        """
        original, sep, mapped = text.partition(":")
        if not sep or not original or not mapped:
            raise ValueError(
                f"invalid path mapping {text!r}, expected 'original:mapped'"
            )
        return cls(original_prefix=original, mapped_prefix=mapped)

    def apply(self, path: str) -> Optional[str]:
        """Return the remapped path, or None if this mapping does not apply."""
        if path.startswith(self.original_prefix):
            return self.mapped_prefix + path[len(self.original_prefix) :]
        return None


def apply_path_mappings(path: str, mappings: Sequence[PathMapping]) -> str:
    """Apply the first matching mapping in order; unmatched paths pass through."""
    for mapping in mappings:
        mapped = mapping.apply(path)
        if mapped is not None:
            return mapped
    return path


def parse_path_mappings(values: Sequence[str]) -> List[PathMapping]:
    return [PathMapping.parse(value) for value in values]
