"""
Tests for audit types and path mappings.
"""

import pytest
from pydantic import ValidationError

from sorta.audit.types import (
    NO_OP_EVENT_TYPES,
    REVERSIBLE_EVENT_TYPES,
    EventType,
    FileIdentity,
    PathMapping,
    RunSummary,
    apply_path_mappings,
    parse_path_mappings,
)


class TestPathMapping:
    """Tests for PathMapping parsing and application."""

    def test_parse(self) -> None:
        mapping = PathMapping.parse("/old:/new")
        assert mapping.original_prefix == "/old"
        assert mapping.mapped_prefix == "/new"

    @pytest.mark.parametrize("text", ["/old", ":/new", "/old:", ""])
    def test_parse_invalid(self, text: str) -> None:
        with pytest.raises(ValueError):
            PathMapping.parse(text)

    def test_apply_prefix(self) -> None:
        mapping = PathMapping(original_prefix="/old", mapped_prefix="/new")
        assert mapping.apply("/old/photos/a.jpg") == "/new/photos/a.jpg"
        assert mapping.apply("/other/a.jpg") is None

    def test_first_match_wins(self) -> None:
        mappings = parse_path_mappings(["/data:/mnt/a", "/data/photos:/mnt/b"])
        assert apply_path_mappings("/data/photos/x.jpg", mappings) == "/mnt/a/photos/x.jpg"

    def test_unmatched_passes_through(self) -> None:
        mappings = parse_path_mappings(["/data:/mnt"])
        assert apply_path_mappings("/home/x.jpg", mappings) == "/home/x.jpg"
        assert apply_path_mappings("/home/x.jpg", []) == "/home/x.jpg"


class TestModels:
    def test_identity_rejects_negative_size(self) -> None:
        with pytest.raises(ValidationError):
            FileIdentity(content_hash="x", size=-1)

    def test_models_are_frozen(self) -> None:
        summary = RunSummary(moved=1)
        with pytest.raises(ValidationError):
            summary.moved = 2

    def test_summary_serializes_camel_case(self) -> None:
        data = RunSummary(total_files=3, routed_review=1).model_dump(by_alias=True)
        assert data["totalFiles"] == 3
        assert data["routedReview"] == 1

    def test_event_type_sets_are_disjoint(self) -> None:
        assert not (REVERSIBLE_EVENT_TYPES & NO_OP_EVENT_TYPES)
        assert EventType.MOVE in REVERSIBLE_EVENT_TYPES
        assert EventType.SKIP in NO_OP_EVENT_TYPES
