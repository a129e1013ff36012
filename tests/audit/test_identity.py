"""
Tests for file identity capture and verification.
"""

import hashlib
from pathlib import Path
from unittest.mock import patch

import pytest

from sorta.audit.exceptions import (
    IdentityMismatchError,
    IdentityNotFoundError,
    IdentityReadError,
)
from sorta.audit.identity import IdentityResolver
from sorta.audit.types import FileIdentity, IdentityMatch


@pytest.fixture
def resolver() -> IdentityResolver:
    return IdentityResolver()


@pytest.fixture
def sample(tmp_path: Path) -> Path:
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"jpeg bytes")
    return path


class TestCaptureIdentity:
    def test_hash_and_size(self, resolver: IdentityResolver, sample: Path) -> None:
        identity = resolver.capture_identity(sample)
        assert identity.content_hash == hashlib.sha256(b"jpeg bytes").hexdigest()
        assert identity.size == len(b"jpeg bytes")

    def test_same_content_same_identity(
        self, resolver: IdentityResolver, sample: Path, tmp_path: Path
    ) -> None:
        copy = tmp_path / "copy.jpg"
        copy.write_bytes(sample.read_bytes())
        assert resolver.capture_identity(copy) == resolver.capture_identity(sample)

    def test_missing(self, resolver: IdentityResolver, tmp_path: Path) -> None:
        with pytest.raises(IdentityNotFoundError):
            resolver.capture_identity(tmp_path / "missing.jpg")

    def test_directory(self, resolver: IdentityResolver, tmp_path: Path) -> None:
        with pytest.raises(IdentityNotFoundError):
            resolver.capture_identity(tmp_path)

    def test_unreadable(self, resolver: IdentityResolver, sample: Path) -> None:
        with patch(
            "sorta.audit.identity.compute_checksum",
            side_effect=PermissionError("denied"),
        ):
            with pytest.raises(IdentityReadError):
                resolver.capture_identity(sample)


class TestVerifyIdentity:
    """Tests for comparing files against recorded identities."""

    def test_match(self, resolver: IdentityResolver, sample: Path) -> None:
        identity = resolver.capture_identity(sample)
        assert resolver.verify_identity(sample, identity) is IdentityMatch.MATCH

    def test_size_mismatch(self, resolver: IdentityResolver, sample: Path) -> None:
        identity = resolver.capture_identity(sample)
        sample.write_bytes(b"a longer replacement")
        assert resolver.verify_identity(sample, identity) is IdentityMatch.SIZE_MISMATCH

    def test_hash_mismatch_same_size(
        self, resolver: IdentityResolver, sample: Path
    ) -> None:
        identity = resolver.capture_identity(sample)
        sample.write_bytes(b"JPEG BYTES")
        assert resolver.verify_identity(sample, identity) is IdentityMatch.HASH_MISMATCH

    def test_size_mismatch_skips_hashing(
        self, resolver: IdentityResolver, sample: Path
    ) -> None:
        expected = FileIdentity(content_hash="x", size=1)
        with patch("sorta.audit.identity.compute_checksum") as mock_hash:
            assert resolver.verify_identity(sample, expected) is IdentityMatch.SIZE_MISMATCH
            mock_hash.assert_not_called()

    def test_not_found(self, resolver: IdentityResolver, tmp_path: Path) -> None:
        expected = FileIdentity(content_hash="x", size=1)
        assert (
            resolver.verify_identity(tmp_path / "gone.jpg", expected)
            is IdentityMatch.NOT_FOUND
        )

    def test_require_match_raises(
        self, resolver: IdentityResolver, sample: Path
    ) -> None:
        identity = resolver.capture_identity(sample)
        sample.write_bytes(b"changed")
        with pytest.raises(IdentityMismatchError) as exc_info:
            resolver.require_match(sample, identity)
        assert exc_info.value.reason == "SIZE_MISMATCH"


class TestFindByHash:
    def test_finds_relocated_file(
        self, resolver: IdentityResolver, sample: Path, tmp_path: Path
    ) -> None:
        identity = resolver.capture_identity(sample)
        search = tmp_path / "search"
        (search / "nested").mkdir(parents=True)
        moved = search / "nested" / "renamed.jpg"
        moved.write_bytes(sample.read_bytes())
        (search / "other.jpg").write_bytes(b"something else")

        found = resolver.find_by_hash(identity.content_hash, [search], size=identity.size)
        assert found == [moved]

    def test_missing_search_dir(self, resolver: IdentityResolver, tmp_path: Path) -> None:
        assert resolver.find_by_hash("x", [tmp_path / "nope"]) == []
