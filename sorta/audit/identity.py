"""
Content identity of files.

An identity is a SHA-256 digest plus the byte size, captured on a source file
right before it is moved and re-checked during undo to detect files that
were modified or replaced after the move.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..shared.file_utils import compute_checksum
from .exceptions import (
    IdentityMismatchError,
    IdentityNotFoundError,
    IdentityReadError,
)
from .types import FileIdentity, IdentityMatch

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "sha256"


class IdentityResolver:
    """Captures and verifies file identities."""

    def __init__(self, algorithm: str = HASH_ALGORITHM):
        self.algorithm = algorithm

    def capture_identity(self, path: Union[str, Path]) -> FileIdentity:
        """
        Fingerprint the file currently at ``path``.

        Raises:
            IdentityNotFoundError: Nothing exists at the path, or it is a directory
            IdentityReadError: The file exists but could not be read
        """
        path = Path(path)
        try:
            st = path.stat()
        except FileNotFoundError as e:
            raise IdentityNotFoundError(path, "file not found") from e
        except OSError as e:
            raise IdentityReadError(path, str(e)) from e

        if path.is_dir():
            raise IdentityNotFoundError(path, "path is a directory")

        try:
            content_hash = compute_checksum(path, self.algorithm)
        except FileNotFoundError as e:
            raise IdentityNotFoundError(path, "file not found") from e
        except OSError as e:
            raise IdentityReadError(path, str(e)) from e

        return FileIdentity(content_hash=content_hash, size=st.st_size)

    def verify_identity(
        self, path: Union[str, Path], expected: FileIdentity
    ) -> IdentityMatch:
        """
        Compare the file at ``path`` with a recorded identity.

        The size is compared first so a mismatch is found without hashing.
        Read errors other than a missing file propagate as IdentityReadError.
        """
        path = Path(path)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return IdentityMatch.NOT_FOUND
        except OSError as e:
            raise IdentityReadError(path, str(e)) from e

        if path.is_dir():
            return IdentityMatch.NOT_FOUND
        if size != expected.size:
            return IdentityMatch.SIZE_MISMATCH

        try:
            current = self.capture_identity(path)
        except IdentityNotFoundError:
            return IdentityMatch.NOT_FOUND

        if current.content_hash != expected.content_hash:
            return IdentityMatch.HASH_MISMATCH
        return IdentityMatch.MATCH

    def require_match(self, path: Union[str, Path], expected: FileIdentity) -> None:
        """
        Raise unless the file at ``path`` matches ``expected``.

        Raises:
            IdentityMismatchError: On any outcome other than MATCH
        """
        result = self.verify_identity(path, expected)
        if result is not IdentityMatch.MATCH:
            raise IdentityMismatchError(path, result.value)

    def find_by_hash(
        self,
        content_hash: str,
        search_dirs: Iterable[Union[str, Path]],
        size: Optional[int] = None,
    ) -> List[Path]:
        """
        Find files whose content hash equals ``content_hash``.

        Args:
            content_hash: Digest to look for
            search_dirs: Directories walked recursively
            size: If given, files of any other size are not hashed

        Returns:
            Matching paths in walk order. Unreadable entries are skipped.
        """
        matches: List[Path] = []
        for search_dir in search_dirs:
            root_dir = Path(search_dir)
            if not root_dir.is_dir():
                logger.debug(f"Search directory does not exist: {root_dir}")
                continue

            for dirpath, _dirnames, filenames in os.walk(root_dir):
                for filename in sorted(filenames):
                    candidate = Path(dirpath) / filename
                    try:
                        if size is not None and candidate.stat().st_size != size:
                            continue
                        if compute_checksum(candidate, self.algorithm) == content_hash:
                            matches.append(candidate)
                    except OSError as e:
                        logger.debug(f"Skipping unreadable file {candidate}: {e}")

        return matches
