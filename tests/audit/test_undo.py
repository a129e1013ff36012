"""
Tests for the undo engine.
"""

import shutil
from pathlib import Path
from typing import Dict, List, Tuple
from unittest.mock import patch

import pytest

from sorta.audit.exceptions import (
    DurabilityError,
    InvalidUndoTargetError,
    RunNotFoundError,
)
from sorta.audit.reader import AuditReader, EventFilter
from sorta.audit.types import (
    EventType,
    PathMapping,
    ReasonCode,
    RunStatus,
    RunType,
)
from sorta.audit.undo import UndoEngine, UndoProgressEvent, UndoProgressType
from sorta.audit.writer import AuditWriter
from sorta.organization import ActionKind, FileOrganizer, PlannedAction

Layout = Tuple[str, Dict[str, Path], Dict[str, Path]]


def organize(
    organizer: FileOrganizer,
    root: Path,
    contents: Dict[str, str],
    target: str = "organized/Invoice",
) -> Layout:
    """Create inbox files and move them into ``target``; returns (run_id, sources, dests)."""
    sources: Dict[str, Path] = {}
    dests: Dict[str, Path] = {}
    plan: List[PlannedAction] = []
    for name, content in contents.items():
        source = root / "inbox" / name
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_text(content)
        dest = root / target / name
        sources[name] = source
        dests[name] = dest
        plan.append(PlannedAction(source=source, destination=dest))

    result = organizer.organize(plan)
    assert not result.aborted
    return result.run_id, sources, dests


@pytest.fixture
def engine(reader: AuditReader, writer: AuditWriter) -> UndoEngine:
    return UndoEngine(reader, writer, app_version="1.0.0-test", machine_id="test-machine")


class TestUndoBasics:
    """Restoring a run whose files are untouched."""

    def test_restores_all_files(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        run_id, sources, dests = organize(
            organizer, tmp_path, {"a.pdf": "alpha", "b.pdf": "bravo"}
        )
        assert all(d.exists() for d in dests.values())

        result = engine.undo_latest()

        assert result.target_run_id == run_id
        assert result.total_events == 2
        assert result.restored == 2
        assert result.skipped == 0
        assert result.failed == 0
        assert result.status == RunStatus.COMPLETED
        assert sources["a.pdf"].read_text() == "alpha"
        assert sources["b.pdf"].read_text() == "bravo"
        assert not any(d.exists() for d in dests.values())

    def test_undo_run_is_recorded(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        reader: AuditReader,
        tmp_path: Path,
    ) -> None:
        run_id, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        result = engine.undo_run(run_id)

        info = reader.get_run_by_id(result.undo_run_id)
        assert info.run_type == RunType.UNDO
        assert info.undo_target_id == run_id
        assert info.status == RunStatus.COMPLETED
        assert info.summary.moved == 1

        undo_moves = reader.filter_events(
            result.undo_run_id, EventFilter(event_types={EventType.UNDO_MOVE})
        )
        assert len(undo_moves) == 1
        assert undo_moves[0].source_path == str(dests["a.pdf"])
        assert undo_moves[0].destination_path == str(sources["a.pdf"])
        assert undo_moves[0].file_identity is not None

    def test_restores_in_reverse_order(
        self, organizer: FileOrganizer, engine: UndoEngine, reader: AuditReader, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path, {"1.pdf": "one", "2.pdf": "two", "3.pdf": "three"})
        result = engine.undo_latest()
        moves = reader.filter_events(
            result.undo_run_id, EventFilter(event_types={EventType.UNDO_MOVE})
        )
        assert [Path(e.destination_path).name for e in moves] == ["3.pdf", "2.pdf", "1.pdf"]

    def test_duplicate_and_review_restored(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        tmp_path: Path,
    ) -> None:
        existing = tmp_path / "organized" / "a.pdf"
        existing.parent.mkdir(parents=True)
        existing.write_text("already here")
        source_dup = tmp_path / "inbox" / "a.pdf"
        source_review = tmp_path / "inbox" / "odd.bin"
        source_dup.parent.mkdir(parents=True)
        source_dup.write_text("new copy")
        source_review.write_text("???")

        organizer.organize(
            [
                PlannedAction(source=source_dup, destination=existing),
                PlannedAction(
                    source=source_review,
                    destination=tmp_path / "review" / "odd.bin",
                    kind=ActionKind.REVIEW,
                    reason_code=ReasonCode.UNCLASSIFIED,
                ),
            ]
        )
        assert (tmp_path / "organized" / "a_duplicate.pdf").exists()

        result = engine.undo_latest()
        assert result.restored == 2
        assert source_dup.read_text() == "new copy"
        assert source_review.read_text() == "???"
        assert existing.read_text() == "already here"
        assert not (tmp_path / "organized" / "a_duplicate.pdf").exists()

    def test_no_runs(self, engine: UndoEngine) -> None:
        with pytest.raises(RunNotFoundError):
            engine.undo_latest()

    def test_unknown_run(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path, {"a.pdf": "alpha"})
        with pytest.raises(RunNotFoundError):
            engine.undo_run("does-not-exist")

    def test_undo_requires_writer(
        self, organizer: FileOrganizer, reader: AuditReader, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path, {"a.pdf": "alpha"})
        with pytest.raises(ValueError):
            UndoEngine(reader).undo_latest()


class TestUndoSafety:
    """Checks that turn restores into skips."""

    def test_tampered_file_skipped(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, sources, dests = organize(
            organizer, tmp_path, {"a.pdf": "alpha", "b.pdf": "bravo"}
        )
        dests["a.pdf"].write_text("edited after organizing")

        result = engine.undo_latest()

        assert result.restored == 1
        assert result.skipped == 1
        assert result.skips[0].reason == ReasonCode.IDENTITY_MISMATCH
        assert dests["a.pdf"].read_text() == "edited after organizing"
        assert not sources["a.pdf"].exists()
        assert sources["b.pdf"].exists()

    def test_same_size_tamper_detected(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        dests["a.pdf"].write_text("ALPHA")

        result = engine.undo_latest()
        assert result.restored == 0
        assert result.skips[0].reason == ReasonCode.IDENTITY_MISMATCH
        assert not sources["a.pdf"].exists()

    def test_missing_destination(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, _, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        dests["a.pdf"].unlink()

        result = engine.undo_latest()
        assert result.skips[0].reason == ReasonCode.DESTINATION_MISSING

    def test_source_occupied(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        sources["a.pdf"].write_text("a newer file")

        result = engine.undo_latest()
        assert result.skips[0].reason == ReasonCode.SOURCE_ALREADY_EXISTS
        assert sources["a.pdf"].read_text() == "a newer file"
        assert dests["a.pdf"].read_text() == "alpha"

    def test_conflict_with_later_run(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        first_run, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        archived = tmp_path / "archive" / "a.pdf"
        organizer.organize([PlannedAction(source=dests["a.pdf"], destination=archived)])

        result = engine.undo_run(first_run)

        assert result.restored == 0
        assert result.skips[0].reason == ReasonCode.CONFLICT_WITH_LATER_RUN
        assert archived.exists()
        assert not sources["a.pdf"].exists()

    def test_later_undo_run_is_not_a_conflict(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        tmp_path: Path,
    ) -> None:
        first_run, sources, _ = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        second_run, _, _ = organize(organizer, tmp_path, {"b.pdf": "bravo"})
        engine.undo_run(second_run)

        result = engine.undo_run(first_run)
        assert result.restored == 1
        assert sources["a.pdf"].exists()

    def test_no_op_events_skipped(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        reader: AuditReader,
        tmp_path: Path,
    ) -> None:
        organizer.organize(
            [
                PlannedAction(
                    source=tmp_path / "inbox" / "notes.txt",
                    kind=ActionKind.SKIP,
                    reason_code=ReasonCode.NO_MATCH,
                ),
                PlannedAction(
                    source=tmp_path / "inbox" / "ghost.pdf",
                    destination=tmp_path / "organized" / "ghost.pdf",
                ),
            ]
        )

        result = engine.undo_latest()
        assert result.restored == 0
        assert result.skipped == 2
        assert {s.reason for s in result.skips} == {ReasonCode.NO_OP_EVENT}

        skips = reader.filter_events(
            result.undo_run_id, EventFilter(event_types={EventType.UNDO_SKIP})
        )
        assert len(skips) == 2
        assert all(e.reason_code == ReasonCode.NO_OP_EVENT for e in skips)

    def test_parse_and_validation_failures_are_no_ops(
        self, writer: AuditWriter, engine: UndoEngine
    ) -> None:
        run = writer.start_run("1.0.0-test", "test-machine")
        writer.record_parse_failure(run, "/in/scan.pdf", "YYYY-MM-DD", "invalid date format")
        writer.record_validation_failure(run, "/in/odd.pdf", "date in the future")
        writer.end_run(run, RunStatus.COMPLETED)

        preview = engine.preview_latest()
        assert preview.total_no_ops == 2
        assert preview.will_restore == 0

        result = engine.undo_latest()
        assert result.restored == 0
        assert result.failed == 0
        assert [s.reason for s in result.skips] == [ReasonCode.NO_OP_EVENT] * 2
        # Replayed newest first
        assert [s.source_path for s in result.skips] == ["/in/odd.pdf", "/in/scan.pdf"]

    def test_undo_of_undo_refused(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path, {"a.pdf": "alpha"})
        result = engine.undo_latest()

        with pytest.raises(InvalidUndoTargetError):
            engine.undo_latest()
        with pytest.raises(InvalidUndoTargetError):
            engine.undo_run(result.undo_run_id)
        with pytest.raises(InvalidUndoTargetError):
            engine.preview_undo(result.undo_run_id)


class TestRelocation:
    """Finding files that moved after the run."""

    def test_path_mapping(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        old_root = tmp_path / "old"
        new_root = tmp_path / "new"
        organize(organizer, old_root, {"a.pdf": "alpha"})
        old_root.rename(new_root)

        mapping = PathMapping(original_prefix=str(old_root), mapped_prefix=str(new_root))
        result = engine.undo_latest(mappings=[mapping])

        assert result.restored == 1
        assert (new_root / "inbox" / "a.pdf").read_text() == "alpha"
        assert not (new_root / "organized" / "Invoice" / "a.pdf").exists()
        assert not old_root.exists()

    def test_without_mapping_destination_missing(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path / "old", {"a.pdf": "alpha"})
        (tmp_path / "old").rename(tmp_path / "new")

        result = engine.undo_latest()
        assert result.skips[0].reason == ReasonCode.DESTINATION_MISSING

    def test_search_directory_by_hash(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        elsewhere = tmp_path / "elsewhere" / "deep"
        elsewhere.mkdir(parents=True)
        relocated = elsewhere / "renamed.pdf"
        shutil.move(str(dests["a.pdf"]), str(relocated))
        (elsewhere / "other.pdf").write_text("omega")

        result = engine.undo_latest(search_directories=[tmp_path / "elsewhere"])

        assert result.restored == 1
        assert sources["a.pdf"].read_text() == "alpha"
        assert not relocated.exists()

    def test_several_hash_matches_not_restored(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        search = tmp_path / "search"
        search.mkdir()
        users_copy = search / "a_users_own_copy.pdf"
        users_copy.write_text("alpha")
        moved = search / "b_moved.pdf"
        shutil.move(str(dests["a.pdf"]), str(moved))

        preview = engine.preview_latest(search_directories=[search])
        result = engine.undo_latest(search_directories=[search])

        assert preview.will_restore == 0
        assert result.restored == 0
        assert result.skips[0].reason == ReasonCode.DESTINATION_MISSING
        assert users_copy.read_text() == "alpha"
        assert moved.read_text() == "alpha"
        assert not sources["a.pdf"].exists()


class TestPreview:
    """Preview applies the checks without side effects."""

    def test_preview_counts(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, _, dests = organize(organizer, tmp_path, {"a.pdf": "alpha", "b.pdf": "bravo"})
        dests["b.pdf"].write_text("tampered")

        preview = engine.preview_latest()

        assert preview.total_moves == 2
        assert preview.will_restore == 1
        assert preview.will_skip == 1
        skipped = [a for a in preview.actions if not a.will_restore]
        assert skipped[0].reason == ReasonCode.IDENTITY_MISMATCH

    def test_preview_has_no_side_effects(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        reader: AuditReader,
        tmp_path: Path,
    ) -> None:
        run_id, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        events_before = reader.count_events()

        first = engine.preview_undo(run_id)
        second = engine.preview_undo(run_id)

        assert first == second
        assert reader.count_events() == events_before
        assert dests["a.pdf"].exists()
        assert not sources["a.pdf"].exists()

    def test_preview_without_writer(
        self, organizer: FileOrganizer, reader: AuditReader, tmp_path: Path
    ) -> None:
        organize(organizer, tmp_path, {"a.pdf": "alpha"})
        preview = UndoEngine(reader).preview_latest()
        assert preview.will_restore == 1

    def test_preview_matches_undo(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, _, dests = organize(
            organizer, tmp_path, {"a.pdf": "alpha", "b.pdf": "bravo", "c.pdf": "charlie"}
        )
        dests["c.pdf"].unlink()

        preview = engine.preview_latest()
        result = engine.undo_latest()
        assert preview.will_restore == result.restored
        assert preview.will_skip == result.skipped + result.failed


class TestProgressAndFailures:
    def test_progress_events(
        self, organizer: FileOrganizer, engine: UndoEngine, tmp_path: Path
    ) -> None:
        _, _, dests = organize(organizer, tmp_path, {"a.pdf": "alpha", "b.pdf": "bravo"})
        dests["a.pdf"].unlink()
        seen: List[UndoProgressEvent] = []

        engine.undo_latest(progress=seen.append)

        kinds = [e.type for e in seen]
        assert UndoProgressType.VERIFY in kinds
        assert UndoProgressType.RESTORE in kinds
        assert UndoProgressType.SKIP in kinds
        assert all(e.total == 2 for e in seen)
        verify = next(e for e in seen if e.type == UndoProgressType.VERIFY)
        assert verify.verify_status == "match"
        skip = next(e for e in seen if e.type == UndoProgressType.SKIP)
        assert skip.reason == "DESTINATION_MISSING"

    def test_restore_failure_recorded(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        reader: AuditReader,
        tmp_path: Path,
    ) -> None:
        _, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})
        inbox = sources["a.pdf"].parent
        inbox.rmdir()
        inbox.write_text("a file where the inbox directory was")

        result = engine.undo_latest()

        assert result.failed == 1
        assert result.restored == 0
        assert result.status == RunStatus.FAILED
        assert result.failures[0].reason == "RESTORE_FAILED"
        assert dests["a.pdf"].exists()

        info = reader.get_run_by_id(result.undo_run_id)
        assert info.status == RunStatus.FAILED
        errors = reader.filter_events(
            result.undo_run_id, EventFilter(event_types={EventType.ERROR})
        )
        assert len(errors) == 1

    def test_durability_failure_aborts_undo(
        self,
        organizer: FileOrganizer,
        engine: UndoEngine,
        writer: AuditWriter,
        reader: AuditReader,
        tmp_path: Path,
    ) -> None:
        run_id, sources, dests = organize(organizer, tmp_path, {"a.pdf": "alpha"})

        with patch.object(
            writer, "record_undo_move", side_effect=DurabilityError("disk full")
        ):
            with pytest.raises(DurabilityError):
                engine.undo_latest()

        # Nothing moved without its UNDO_MOVE on disk
        assert dests["a.pdf"].exists()
        assert not sources["a.pdf"].exists()

        undo_runs = [r for r in reader.list_runs() if r.run_type == RunType.UNDO]
        assert len(undo_runs) == 1
        assert undo_runs[0].undo_target_id == run_id
        assert undo_runs[0].status == RunStatus.FAILED
