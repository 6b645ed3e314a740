"""
Shared pytest fixtures for datespine tests.

This module provides:
- Date helpers and the canonical two-security fixture (S1: Aug 5+6, S2: Aug 5)
- In-memory fact and entitlement sources
- A controllable monotonic clock for cache-expiry tests
- Settings / runtime factories isolated to a temporary data directory
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date

import pytest

from datespine.builder import SecurityDateIndexBuilder
from datespine.core.errors import EntitlementSourceError
from datespine.core.settings import DateSpineSettings
from datespine.entitlements import StaticEntitlementSource
from datespine.generation import Generation
from datespine.service import create_runtime
from datespine.sources import InMemoryFactSource

AUG5 = date(2025, 8, 5)
AUG6 = date(2025, 8, 6)
AUG7 = date(2025, 8, 7)


# =============================================================================
# Helpers
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakySource:
    """Entitlement source whose availability is toggled by tests."""

    name = "flaky_entitlements"

    def __init__(self, mapping: dict[str, Iterable[str]] | None = None):
        self.mapping = {k: frozenset(v) for k, v in (mapping or {}).items()}
        self.available = True
        self.calls = 0

    def lookup(self, user_id: str) -> frozenset[str]:
        self.calls += 1
        if not self.available:
            raise EntitlementSourceError("source down")
        return self.mapping.get(user_id, frozenset())


class FailingFactSource:
    """Fact source that yields some rows, then raises."""

    name = "failing_fact_source"

    def __init__(self, rows: Iterable[tuple[str, date]] = (), error: Exception | None = None):
        self.rows = list(rows)
        self.error = error or ConnectionError("connection reset by peer")

    def scan(self):
        yield from self.rows
        raise self.error


def build_generation(rows: Iterable[tuple[str, date]], version: int = 1, previous: Generation | None = None) -> Generation:
    builder = SecurityDateIndexBuilder(InMemoryFactSource(rows), min_security_ratio=0)
    return builder.build(previous=previous, version=version).generation


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def scenario_rows() -> list[tuple[str, date]]:
    return [("S1", AUG5), ("S1", AUG6), ("S2", AUG5)]


@pytest.fixture
def scenario_generation(scenario_rows) -> Generation:
    return build_generation(scenario_rows)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flaky_source() -> FlakySource:
    return FlakySource({"alice": {"S1"}, "bob": {"S2"}, "carol": {"S1", "S2", "S9"}})


@pytest.fixture
def settings(tmp_path) -> DateSpineSettings:
    return DateSpineSettings(
        data_dir=tmp_path,
        scheduler_enabled=False,
        rebuild_on_startup=True,
        entitlement_max_retries=0,
        entitlement_timeout_seconds=1.0,
    )


@pytest.fixture
def runtime(settings, scenario_rows):
    return create_runtime(
        settings,
        fact_source=InMemoryFactSource(scenario_rows),
        entitlement_source=StaticEntitlementSource(
            {"alice": {"S1"}, "bob": {"S2"}, "carol": {"S1", "S2", "S9"}, "dave": set()}
        ),
    )


@pytest.fixture
def make_generation():
    """Factory: ``make_generation(rows, version=1, previous=None)``."""
    return build_generation


@pytest.fixture
def failing_fact_source():
    """Factory: ``failing_fact_source(rows, error=None)``."""
    return FailingFactSource


@pytest.fixture
def api_settings(tmp_path):
    from datespine.api.settings import DateSpineAPISettings

    return DateSpineAPISettings(
        data_dir=tmp_path,
        scheduler_enabled=False,
        rebuild_on_startup=True,
        entitlement_max_retries=0,
        entitlement_timeout_seconds=1.0,
    )


@pytest.fixture
def api_runtime(api_settings, scenario_rows, flaky_source):
    return create_runtime(
        api_settings,
        fact_source=InMemoryFactSource(scenario_rows),
        entitlement_source=flaky_source,
    )


@pytest.fixture
def client(api_settings, api_runtime):
    """TestClient with the lifespan run (startup rebuild publishes generation 1)."""
    from fastapi.testclient import TestClient

    from datespine.api import create_app

    with TestClient(create_app(settings=api_settings, runtime=api_runtime)) as c:
        yield c
