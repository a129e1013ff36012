"""
Audit trail and undo for Sorta.

Every file action is recorded in an append-only JSON Lines log before it
happens; recorded runs can be listed, inspected, exported and reversed.
"""

from .config import AuditConfig, load_audit_config
from .events import (
    AuditEvent,
    BaseEvent,
    DuplicateDetectedEvent,
    ErrorEvent,
    MoveEvent,
    ParseFailureEvent,
    RouteToReviewEvent,
    RunEndEvent,
    RunStartEvent,
    SkipEvent,
    UndoMoveEvent,
    UndoSkipEvent,
    ValidationFailureEvent,
    decode_event,
    encode_event,
)
from .exceptions import (
    AuditError,
    ConfigurationError,
    DurabilityError,
    IdentityError,
    IdentityMismatchError,
    IdentityNotFoundError,
    IdentityReadError,
    InvalidUndoTargetError,
    LogLockedError,
    RestoreError,
    RunNotFoundError,
    RunStateError,
)
from .identity import IdentityResolver
from .reader import AuditReader, EventFilter, load_export
from .retention import PruneResult, RetentionManager
from .rotation import RotationManager
from .stats import AuditStats, aggregate_stats
from .types import (
    EventStatus,
    EventType,
    FileIdentity,
    PathMapping,
    ReasonCode,
    RunInfo,
    RunStatus,
    RunSummary,
    RunType,
)
from .undo import UndoEngine, UndoPreview, UndoProgressEvent, UndoResult
from .writer import ActiveRun, AuditWriter

__all__ = [
    "ActiveRun",
    "AuditConfig",
    "AuditError",
    "AuditEvent",
    "AuditReader",
    "AuditStats",
    "AuditWriter",
    "BaseEvent",
    "ConfigurationError",
    "DuplicateDetectedEvent",
    "DurabilityError",
    "ErrorEvent",
    "EventFilter",
    "EventStatus",
    "EventType",
    "FileIdentity",
    "IdentityError",
    "IdentityMismatchError",
    "IdentityNotFoundError",
    "IdentityReadError",
    "IdentityResolver",
    "InvalidUndoTargetError",
    "LogLockedError",
    "MoveEvent",
    "ParseFailureEvent",
    "PathMapping",
    "PruneResult",
    "ReasonCode",
    "RestoreError",
    "RetentionManager",
    "RotationManager",
    "RouteToReviewEvent",
    "RunEndEvent",
    "RunInfo",
    "RunNotFoundError",
    "RunStartEvent",
    "RunStateError",
    "RunStatus",
    "RunSummary",
    "RunType",
    "SkipEvent",
    "UndoEngine",
    "UndoMoveEvent",
    "UndoPreview",
    "UndoProgressEvent",
    "UndoResult",
    "UndoSkipEvent",
    "ValidationFailureEvent",
    "aggregate_stats",
    "decode_event",
    "encode_event",
    "load_audit_config",
    "load_export",
]
