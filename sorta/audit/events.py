"""
Audit event variants and the JSON Lines codec.

Every line of a log segment is one event. The ``eventType`` field selects
the variant, and each variant declares exactly the fields it needs, so a
MOVE without a file identity or an ERROR without error details is rejected
when the line is parsed.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Annotated,
    Callable,
    Dict,
    Iterator,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import Field, TypeAdapter, ValidationError

from .types import (
    AuditModel,
    ErrorDetails,
    EventStatus,
    EventType,
    FileIdentity,
    ReasonCode,
    RunStatus,
    RunSummary,
    RunType,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(AuditModel):
    """Fields shared by every event."""

    timestamp: datetime = Field(default_factory=utc_now)
    run_id: str = ""
    status: EventStatus = EventStatus.SUCCESS
    metadata: Optional[Dict[str, str]] = None

    def touched_paths(self) -> Tuple[str, ...]:
        """Source/destination paths this event refers to (empty for run and system events)."""
        paths = []
        for name in ("source_path", "destination_path", "intended_destination"):
            value = getattr(self, name, None)
            if value:
                paths.append(value)
        return tuple(paths)


class RunStartEvent(BaseEvent):
    event_type: Literal["RUN_START"] = "RUN_START"
    app_version: str
    machine_id: str
    run_type: RunType = RunType.ORGANIZE
    undo_target_id: Optional[str] = None


class RunEndEvent(BaseEvent):
    event_type: Literal["RUN_END"] = "RUN_END"
    run_status: RunStatus
    summary: RunSummary


class MoveEvent(BaseEvent):
    event_type: Literal["MOVE"] = "MOVE"
    source_path: str
    destination_path: str
    file_identity: FileIdentity


class DuplicateDetectedEvent(BaseEvent):
    """A file moved under a renamed destination because the intended one was taken."""

    event_type: Literal["DUPLICATE_DETECTED"] = "DUPLICATE_DETECTED"
    source_path: str
    destination_path: str
    intended_destination: str
    reason_code: ReasonCode = ReasonCode.DUPLICATE_RENAMED
    file_identity: Optional[FileIdentity] = None


class RouteToReviewEvent(BaseEvent):
    event_type: Literal["ROUTE_TO_REVIEW"] = "ROUTE_TO_REVIEW"
    source_path: str
    destination_path: str
    reason_code: ReasonCode
    file_identity: Optional[FileIdentity] = None


class SkipEvent(BaseEvent):
    event_type: Literal["SKIP"] = "SKIP"
    status: EventStatus = EventStatus.SKIPPED
    source_path: str
    reason_code: ReasonCode


class ErrorEvent(BaseEvent):
    event_type: Literal["ERROR"] = "ERROR"
    status: EventStatus = EventStatus.FAILURE
    source_path: str
    error_details: ErrorDetails
    destination_path: Optional[str] = None


class ParseFailureEvent(BaseEvent):
    """No date could be read from a file name with ``pattern``."""

    event_type: Literal["PARSE_FAILURE"] = "PARSE_FAILURE"
    status: EventStatus = EventStatus.FAILURE
    source_path: str
    pattern: str
    reason: str
    reason_code: ReasonCode = ReasonCode.PARSE_ERROR


class ValidationFailureEvent(BaseEvent):
    event_type: Literal["VALIDATION_FAILURE"] = "VALIDATION_FAILURE"
    status: EventStatus = EventStatus.FAILURE
    source_path: str
    reason: str
    reason_code: ReasonCode = ReasonCode.VALIDATION_ERROR


class UndoMoveEvent(BaseEvent):
    """A file restored by undo: moved from ``source_path`` back to ``destination_path``."""

    event_type: Literal["UNDO_MOVE"] = "UNDO_MOVE"
    source_path: str
    destination_path: str
    file_identity: Optional[FileIdentity] = None


class UndoSkipEvent(BaseEvent):
    event_type: Literal["UNDO_SKIP"] = "UNDO_SKIP"
    status: EventStatus = EventStatus.SKIPPED
    source_path: str
    reason_code: ReasonCode
    destination_path: Optional[str] = None


class RotationEvent(BaseEvent):
    event_type: Literal["ROTATION"] = "ROTATION"
    previous_file: str
    new_file: str


class RetentionPruneEvent(BaseEvent):
    event_type: Literal["RETENTION_PRUNE"] = "RETENTION_PRUNE"
    pruned_segment: str
    pruned_run_ids: List[str] = Field(default_factory=list)


class LogInitializedEvent(BaseEvent):
    event_type: Literal["LOG_INITIALIZED"] = "LOG_INITIALIZED"
    log_path: str


AuditEvent = Annotated[
    Union[
        RunStartEvent,
        RunEndEvent,
        MoveEvent,
        DuplicateDetectedEvent,
        RouteToReviewEvent,
        SkipEvent,
        ErrorEvent,
        ParseFailureEvent,
        ValidationFailureEvent,
        UndoMoveEvent,
        UndoSkipEvent,
        RotationEvent,
        RetentionPruneEvent,
        LogInitializedEvent,
    ],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(AuditEvent)
_event_list_adapter: TypeAdapter = TypeAdapter(List[AuditEvent])


class EventDecodeError(ValueError):
    """A log line is not a valid audit event."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


def encode_event(event: BaseEvent) -> str:
    """Serialize an event to one JSON line (without the trailing newline)."""
    return event.model_dump_json(by_alias=True, exclude_none=True)


def event_to_dict(event: BaseEvent) -> dict:
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def decode_event(line: Union[str, bytes], line_number: Optional[int] = None) -> BaseEvent:
    """
    Parse one JSON line into its event variant.

    Raises:
        EventDecodeError: If the line is not JSON, has an unknown event type,
            or lacks a field its variant requires
    """
    try:
        return _event_adapter.validate_json(line)
    except ValidationError as e:
        where = f"line {line_number}: " if line_number is not None else ""
        raise EventDecodeError(
            f"{where}invalid audit event ({e.error_count()} errors): {e.errors()[0]['msg']}",
            line_number=line_number,
        ) from e


def events_from_dicts(data: list) -> List[BaseEvent]:
    """Validate a list of already-decoded JSON objects (e.g. from an export file)."""
    return _event_list_adapter.validate_python(data)


def iter_events(
    path: Path,
    on_error: Optional[Callable[[EventDecodeError], None]] = None,
) -> Iterator[BaseEvent]:
    """
    Yield the events of one log segment in file order.

    Malformed lines are logged and skipped. A final line without a trailing
    newline is an append still in flight (or torn by a crash) and is ignored.

    Args:
        path: Segment file
        on_error: Called with each decode error, for integrity reporting

    Raises:
        OSError: If the file cannot be opened
    """
    with open(path, "rb") as f:
        for line_number, raw in enumerate(f, start=1):
            if not raw.endswith(b"\n"):
                logger.debug(f"{path.name}: ignoring unterminated line {line_number}")
                break
            if not raw.strip():
                continue
            try:
                yield decode_event(raw, line_number=line_number)
            except EventDecodeError as e:
                logger.warning(f"{path.name}: skipping malformed event: {e}")
                if on_error is not None:
                    on_error(e)
