"""
Shared pytest fixtures for worker-spark tests.

This module provides:
- Environment isolation for ``WORKER_SPARK_*`` settings
- An in-memory catalog and database that stand in for PostgreSQL
- A ConfigState whose settings the test controls
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from tests._support.fakes import FakeCatalog, FakeDatabase, MutableSettings
from worker_spark.config import ConfigState


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Drop inherited WORKER_SPARK_* variables and any stray .env file."""
    for key in list(os.environ):
        if key.upper().startswith("WORKER_SPARK_") and key.upper() != "WORKER_SPARK_TEST_DSN":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog({("public", "spark_fn"): "f"})


@pytest.fixture
def settings_source() -> MutableSettings:
    return MutableSettings()


@pytest.fixture
def config_state(settings_source: MutableSettings) -> ConfigState:
    return ConfigState(settings_factory=settings_source)


@pytest.fixture
def database(catalog: FakeCatalog) -> FakeDatabase:
    return FakeDatabase(catalog)
