"""
Organization module.

Executes planned file moves with every action recorded in the audit log
before it happens.
"""

from .file_organizer import (
    ActionKind,
    FileOrganizer,
    OrganizationResult,
    PlannedAction,
    duplicate_destination,
)

__all__ = [
    "ActionKind",
    "FileOrganizer",
    "OrganizationResult",
    "PlannedAction",
    "duplicate_destination",
]
