"""
Shared pytest fixtures and configuration for isobatch tests.

This module provides:
- Per-test isolation of settings, the default controller and structlog
- A short poll interval so process tests finish quickly
- Controllers that print task output into a buffer instead of stdout

Fixtures are auto-discovered by pytest; use them as function arguments.
"""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import structlog

from isobatch.core.logging import clear_context
from isobatch.core.settings import IsoBatchSettings, get_settings, reset_settings
from isobatch.execution.controller import Controller, reset_controller


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolate_isobatch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Fresh settings and default controller for every test."""
    monkeypatch.setenv("ISOBATCH_OUTPUT_DIR", str(tmp_path / "sinks"))
    monkeypatch.setenv("ISOBATCH_POLL_INTERVAL", "0.05")
    monkeypatch.setenv("ISOBATCH_HEARTBEAT_INTERVAL", "0")
    reset_settings()
    reset_controller()
    yield
    reset_controller()
    reset_settings()
    clear_context()
    structlog.reset_defaults()


# =============================================================================
# Controllers
# =============================================================================


@pytest.fixture
def settings() -> IsoBatchSettings:
    return get_settings()


@pytest.fixture
def sink_dir(settings: IsoBatchSettings) -> Path:
    return Path(settings.output_dir)


@pytest.fixture
def output() -> io.StringIO:
    """Buffer receiving the framed task output."""
    return io.StringIO()


@pytest.fixture
def log() -> MagicMock:
    """Recording logging sink."""
    return MagicMock()


@pytest.fixture
def controller(settings: IsoBatchSettings, output: io.StringIO, log: MagicMock):
    ctl = Controller(settings, log=log, stream=output)
    yield ctl
    ctl.reset()


@pytest.fixture
def marker(tmp_path: Path) -> Path:
    """Path a task writes to prove it ran to completion."""
    return tmp_path / "marker.txt"


@pytest.fixture
def events(log: MagicMock):
    """``events("info")`` -> list of (event, fields) recorded on ``log``."""

    def _events(method: str = "info") -> list[tuple[str, dict]]:
        return [(c.args[0], c.kwargs) for c in getattr(log, method).call_args_list if c.args]

    return _events
