"""
Shared utilities for Sorta.
"""

from .file_utils import (
    compute_checksum,
    format_bytes,
    fsync_directory,
    get_machine_id,
    setup_logging,
)

__all__ = [
    "compute_checksum",
    "format_bytes",
    "fsync_directory",
    "get_machine_id",
    "setup_logging",
]
