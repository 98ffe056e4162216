"""Shared pytest hooks and fixtures."""
from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CPCTL_* variables from the developer shell out of every test."""
    for key in [name for name in os.environ if name.startswith("CPCTL_")]:
        monkeypatch.delenv(key, raising=False)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    slow = pytest.mark.skip(reason="slow under mutation testing")
    for item in items:
        if item.get_closest_marker("mutation_timeout") is not None:
            item.add_marker(slow)
