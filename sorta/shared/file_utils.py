"""
File utilities for Sorta.

Checksums, human-readable sizes, machine identification and logging setup
shared by the audit subsystem, the organizer and the CLI.
"""

import hashlib
import logging
import os
import socket
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


def compute_checksum(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Compute cryptographic checksum of a file.

    Reads the file in chunks so large files never have to fit in memory.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm (sha256, md5, etc.)

    Returns:
        Hexadecimal checksum string

    Raises:
        OSError: If the file cannot be opened or read
    """
    hash_obj = hashlib.new(algorithm)

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hash_obj.update(chunk)

    return hash_obj.hexdigest()


def format_bytes(size_bytes: int) -> str:
    """
    Format bytes in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "2.50 GB")
    """
    if size_bytes == 0:
        return "0 B"

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    unit_index = 0
    size = float(size_bytes)

    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1

    return f"{size:.2f} {units[unit_index]}"


def get_machine_id() -> str:
    """Return a stable identifier for this machine (its hostname)."""
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


def fsync_directory(directory: Path) -> None:
    """Flush a directory entry table so renames and creations survive a crash."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError as e:
        logger.debug(f"Cannot open {directory} for fsync: {e}")
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"Directory fsync not supported for {directory}: {e}")
    finally:
        os.close(fd)


def setup_logging(
    verbose: bool = False, quiet: bool = False, console: Optional[Console] = None
) -> None:
    """
    Configure logging for the application with a rich handler.

    Args:
        verbose: If True, set logging level to DEBUG
        quiet: If True, set logging level to WARNING
        console: Console the handler writes to (stderr by default)
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            RichHandler(
                rich_tracebacks=True,
                console=console or Console(stderr=True),
                show_path=verbose,
            )
        ],
        force=True,
    )
