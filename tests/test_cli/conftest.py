"""Fixtures for engine tests."""

from __future__ import annotations

import pytest

from cli.config import EngineConfig
from tests.test_cli.fakes import FakeRemote


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(debounce_seconds=0.05, batch_size=2)
