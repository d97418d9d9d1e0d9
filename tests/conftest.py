"""Pytest configuration and fixtures for shadowtree tests."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from shadowtree.config import Config
from tests.helpers import FakeStream


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with shadow trees under tmp_path and short delays."""
    return Config(
        shadow_root=tmp_path / "shadows",
        debounce_ms=20,
        resize_delay_ms=0,
        history_limit=64,
        sync_timeout_s=5,
    )


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def fake_stream() -> FakeStream:
    return FakeStream()
