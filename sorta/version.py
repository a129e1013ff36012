"""
Version information for Sorta.

Every run stores the application version in its RUN_START event. When
running from a git checkout the recorded version also names the commit, and
marks uncommitted changes, so a run can be traced to the exact code that
moved the files.
"""

import subprocess
from pathlib import Path
from typing import Optional

__version__ = "1.0.0"


def _git(*args: str) -> Optional[str]:
    """Output of a git command run in the package's checkout, or None."""
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            check=True,
            timeout=2,
            cwd=Path(__file__).resolve().parent,
        )
    except (
        subprocess.CalledProcessError,
        subprocess.TimeoutExpired,
        FileNotFoundError,
    ):
        return None
    return result.stdout.strip()


def get_git_commit() -> Optional[str]:
    """Seven character commit hash, or None outside a git checkout."""
    return _git("rev-parse", "--short=7", "HEAD") or None


def has_local_changes() -> bool:
    """True if tracked files differ from the checked out commit."""
    return bool(_git("status", "--porcelain", "--untracked-files=no"))


def get_app_version() -> str:
    """
    Version recorded on runs.

    Returns:
        ``1.0.0`` for an installed release, ``1.0.0+gabc1234`` from a clean
        checkout, ``1.0.0+gabc1234.dirty`` with uncommitted changes
    """
    commit = get_git_commit()
    if commit is None:
        return __version__
    local = f"g{commit}"
    if has_local_changes():
        local += ".dirty"
    return f"{__version__}+{local}"
