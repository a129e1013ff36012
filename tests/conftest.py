"""
Pytest configuration and fixtures for sorta tests.
"""

import os
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest

from sorta.audit.config import AuditConfig
from sorta.audit.reader import AuditReader
from sorta.audit.writer import AuditWriter
from sorta.organization import FileOrganizer


@pytest.fixture(autouse=True)
def clean_audit_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SORTA_AUDIT_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("SORTA_AUDIT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "audit"


@pytest.fixture
def audit_config(log_dir: Path) -> AuditConfig:
    return AuditConfig(log_directory=log_dir, lock_timeout=0)


@pytest.fixture
def writer(audit_config: AuditConfig) -> Generator[AuditWriter, None, None]:
    with AuditWriter(audit_config) as w:
        yield w


@pytest.fixture
def reader(log_dir: Path) -> AuditReader:
    return AuditReader(log_dir)


@pytest.fixture
def organizer(writer: AuditWriter) -> FileOrganizer:
    return FileOrganizer(writer, app_version="1.0.0-test", machine_id="test-machine")


@pytest.fixture
def make_files(tmp_path: Path) -> Callable[[Dict[str, str]], Dict[str, Path]]:
    """Create files under tmp_path from a relative name -> content mapping."""

    def _make(contents: Dict[str, str]) -> Dict[str, Path]:
        paths = {}
        for name, content in contents.items():
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            paths[name] = path
        return paths

    return _make
