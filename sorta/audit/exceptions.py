"""
Error taxonomy for the audit subsystem.

Organizing treats DurabilityError as fatal and stops; undo turns identity
and filesystem problems into per-file skips/failures and only stops on
DurabilityError.
"""

from pathlib import Path
from typing import Optional, Union


class AuditError(Exception):
    """Base class for every error raised by the audit subsystem."""


class DurabilityError(AuditError):
    """An event could not be durably appended to the audit log."""

    def __init__(self, message: str, run_id: Optional[str] = None):
        super().__init__(message)
        self.run_id = run_id


class LogLockedError(DurabilityError):
    """Another writer holds exclusive append access to the log directory."""


class RunNotFoundError(AuditError):
    """Unknown run id, or no runs recorded yet."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        if run_id is None:
            super().__init__("no runs found")
        else:
            super().__init__(f"run not found: {run_id}")


class RunStateError(AuditError):
    """A run handle was used after it was ended."""


class InvalidUndoTargetError(AuditError):
    """The requested run cannot be undone (e.g. it is itself an undo run)."""


class ConfigurationError(AuditError):
    """Invalid audit configuration (rotation/retention values, paths)."""


class IdentityError(AuditError):
    """File identity could not be captured."""

    def __init__(self, path: Union[str, Path], message: str):
        super().__init__(f"{path}: {message}")
        self.path = Path(path)


class IdentityNotFoundError(IdentityError):
    """Nothing (or a directory) exists at the path."""


class IdentityReadError(IdentityError):
    """The file exists but could not be read."""


class IdentityMismatchError(AuditError):
    """Content at a path no longer matches the recorded identity."""

    def __init__(self, path: Union[str, Path], reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class RestoreError(AuditError):
    """A filesystem operation failed while restoring a file during undo."""

    def __init__(self, source: Union[str, Path], dest: Union[str, Path], message: str):
        super().__init__(f"failed to restore {dest} -> {source}: {message}")
        self.source = Path(source)
        self.dest = Path(dest)
