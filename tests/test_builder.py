"""Tests for the security date index builder."""

from datetime import date

import pytest

from datespine.builder import SecurityDateIndexBuilder
from datespine.core.errors import ImplausibleRebuild, RebuildFailed, SourceError, SourceOrderingError
from datespine.registry import RegistrySnapshot
from datespine.sources import InMemoryFactSource

AUG4, AUG5, AUG6, AUG7 = (date(2025, 8, d) for d in (4, 5, 6, 7))


def build(rows, *, previous=None, version=1, ordered=True, **kwargs):
    kwargs.setdefault("min_security_ratio", 0)
    builder = SecurityDateIndexBuilder(InMemoryFactSource(rows, ordered=ordered), **kwargs)
    return builder.build(previous=previous, version=version)


class TestBuild:
    def test_scenario_bitmaps(self, scenario_rows):
        result = build(scenario_rows)
        gen = result.generation
        assert gen.registry.dates == (AUG5, AUG6)
        assert list(gen.bitmap("S1").ordinals()) == [0, 1]
        assert list(gen.bitmap("S2").ordinals()) == [0]
        assert gen.bitmap("S9") is None

    def test_stats(self, scenario_rows):
        stats = build(scenario_rows).stats
        assert (stats.rows, stats.securities, stats.dates, stats.new_dates) == (3, 2, 2, 2)
        assert stats.to_dict()["duration_seconds"] >= 0

    def test_interleaved_new_dates_get_chronological_ordinals(self):
        # S1 introduces Aug 7 before S2 introduces Aug 5
        rows = [("S1", AUG7), ("S2", AUG5), ("S2", AUG6)]
        gen = build(rows).generation
        assert gen.registry.dates == (AUG5, AUG6, AUG7)
        assert list(gen.bitmap("S1").ordinals()) == [2]
        assert list(gen.bitmap("S2").ordinals()) == [0, 1]

    def test_every_bitmap_covers_registry(self, scenario_rows):
        gen = build(scenario_rows + [("S3", AUG7)]).generation
        assert all(bm.capacity >= gen.registry.size() for bm in gen.bitmaps.values())

    def test_idempotent(self, scenario_rows):
        assert build(scenario_rows).generation.fingerprint() == build(scenario_rows).generation.fingerprint()


class TestIncrementalRegistry:
    def test_existing_ordinals_are_stable(self, scenario_rows):
        first = build(scenario_rows).generation
        second = build(scenario_rows + [("S1", AUG7)], previous=first, version=2).generation
        assert second.registry.dates[:2] == first.registry.dates
        assert second.registry.ordinal_of(AUG7) == 2
        assert list(second.bitmap("S1").ordinals()) == [0, 1, 2]

    def test_previous_generation_untouched(self, scenario_rows):
        first = build(scenario_rows).generation
        fingerprint = first.fingerprint()
        build(scenario_rows + [("S3", AUG7)], previous=first, version=2)
        assert first.fingerprint() == fingerprint
        assert first.registry.size() == 2

    def test_dates_dropped_from_source_keep_their_ordinal(self, scenario_rows):
        first = build(scenario_rows).generation
        second = build([("S1", AUG6)], previous=first, version=2).generation
        assert second.registry.dates == (AUG5, AUG6)
        assert list(second.bitmap("S1").ordinals()) == [1]

    def test_base_registry_extends_when_newer(self):
        base = RegistrySnapshot([AUG4, AUG5])
        builder = SecurityDateIndexBuilder(InMemoryFactSource([("S1", AUG5)]))
        gen = builder.build(previous=None, version=1, base_registry=base).generation
        assert gen.registry.dates == (AUG4, AUG5)
        assert list(gen.bitmap("S1").ordinals()) == [1]

    def test_diverging_base_registry_rejected(self, scenario_rows):
        first = build(scenario_rows).generation
        builder = SecurityDateIndexBuilder(InMemoryFactSource(scenario_rows), min_security_ratio=0)
        with pytest.raises(RebuildFailed, match="diverges"):
            builder.build(previous=first, version=2, base_registry=RegistrySnapshot([AUG4, AUG5, AUG6]))

    def test_backfilled_date_rejected(self, scenario_rows):
        first = build(scenario_rows).generation
        with pytest.raises(SourceOrderingError, match="backfilled"):
            build(scenario_rows + [("S3", AUG4)], previous=first, version=2)


class RecordingFactSource:
    """Unordered rows; records whether the scan generator was closed."""

    name = "recording"

    def __init__(self, rows):
        self.rows = rows
        self.closed = False
        self.exhausted = False

    def scan(self):
        try:
            yield from self.rows
            self.exhausted = True
        finally:
            self.closed = True


class TestOrderingValidation:
    def test_security_reappearing(self):
        rows = [("S1", AUG5), ("S2", AUG5), ("S1", AUG6)]
        with pytest.raises(SourceOrderingError, match="re-appeared"):
            build(rows, ordered=False)

    def test_dates_going_backwards(self):
        rows = [("S1", AUG6), ("S1", AUG5)]
        with pytest.raises(SourceOrderingError, match="backwards"):
            build(rows, ordered=False)

    def test_scan_closed_when_ordering_breaks(self):
        source = RecordingFactSource([("S1", AUG5), ("S2", AUG5), ("S1", AUG6), ("S3", AUG7)])
        with pytest.raises(SourceOrderingError):
            SecurityDateIndexBuilder(source, min_security_ratio=0).build(previous=None, version=1)
        assert source.closed
        assert not source.exhausted

    def test_scan_closed_after_full_read(self, scenario_rows):
        source = RecordingFactSource(scenario_rows)
        SecurityDateIndexBuilder(source, min_security_ratio=0).build(previous=None, version=1)
        assert source.closed and source.exhausted


class TestFailurePolicy:
    def test_scan_error_becomes_rebuild_failed(self, scenario_rows, failing_fact_source):
        builder = SecurityDateIndexBuilder(failing_fact_source(scenario_rows))
        with pytest.raises(RebuildFailed) as exc_info:
            builder.build(previous=None, version=1)
        assert exc_info.value.context.metadata["rows"] == 3
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_source_error_wrapped(self, failing_fact_source):
        builder = SecurityDateIndexBuilder(failing_fact_source(error=SourceError("table missing")))
        with pytest.raises(RebuildFailed, match="table missing"):
            builder.build(previous=None, version=1)

    def test_empty_scan_is_implausible(self):
        with pytest.raises(ImplausibleRebuild):
            build([])

    def test_drastic_drop_is_implausible(self, make_generation):
        previous = make_generation([(f"S{i}", AUG5) for i in range(10)])
        with pytest.raises(ImplausibleRebuild) as exc_info:
            build([("S1", AUG5), ("S2", AUG5)], previous=previous, version=2, min_security_ratio=0.5)
        assert exc_info.value.observed == 2
        assert exc_info.value.previous == 10

    def test_moderate_drop_is_accepted(self, make_generation):
        previous = make_generation([(f"S{i}", AUG5) for i in range(10)])
        result = build([(f"S{i}", AUG5) for i in range(6)], previous=previous, version=2, min_security_ratio=0.5)
        assert result.generation.security_count == 6

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            SecurityDateIndexBuilder(InMemoryFactSource(), min_security_ratio=2)

    def test_persisted_baseline_guards_first_rebuild(self):
        builder = SecurityDateIndexBuilder(InMemoryFactSource([("S1", AUG5), ("S2", AUG5)]), min_security_ratio=0.5)
        with pytest.raises(ImplausibleRebuild, match="persisted baseline") as exc_info:
            builder.build(previous=None, version=1, baseline_securities=10)
        assert exc_info.value.previous == 10

    def test_previous_generation_wins_over_persisted_baseline(self, make_generation):
        previous = make_generation([("S1", AUG5), ("S2", AUG5)])
        builder = SecurityDateIndexBuilder(InMemoryFactSource([("S1", AUG5), ("S2", AUG5)]), min_security_ratio=0.5)
        result = builder.build(previous=previous, version=2, baseline_securities=10)
        assert result.generation.security_count == 2

    def test_no_baseline_skips_ratio_check(self):
        builder = SecurityDateIndexBuilder(InMemoryFactSource([("S1", AUG5)]), min_security_ratio=0.5)
        assert builder.build(previous=None, version=1).generation.security_count == 1
