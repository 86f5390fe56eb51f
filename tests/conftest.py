"""
Shared pytest fixtures and configuration for jobspine tests.

This module provides:
- Auto-marking of tests by location (unit / integration)
- Settings and logging-context cleanup for test isolation

Scheduling fixtures (database, clock, store, executor, scheduler) live
in ``tests/scheduling/conftest.py``.
"""

from collections.abc import Generator
from pathlib import Path

import pytest

from jobspine.core.logging import clear_context
from jobspine.core.settings import clear_settings_cache


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
def isolated_settings() -> Generator[None, None, None]:
    """Drop cached settings and bound log context around every test."""
    clear_settings_cache()
    clear_context()
    yield
    clear_settings_cache()
    clear_context()
