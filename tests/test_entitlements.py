"""Tests for entitlement sources and the EntitlementResolver cache."""

import json
import threading
import time

import httpx
import pytest
from sqlalchemy import create_engine, text

from datespine.core.errors import EntitlementSourceError, EntitlementUnavailable
from datespine.entitlements import (
    EntitlementResolver,
    HttpEntitlementSource,
    SqlEntitlementSource,
    StaticEntitlementSource,
)


def resolver_for(source, clock, **kwargs):
    kwargs.setdefault("ttl_seconds", 60)
    kwargs.setdefault("stale_ceiling_seconds", 600)
    return EntitlementResolver(source, clock=clock, **kwargs)


# ── Sources ──────────────────────────────────────────────────────────


class TestStaticEntitlementSource:
    def test_lookup(self):
        src = StaticEntitlementSource({"alice": ["S1", "S2"]})
        assert src.lookup("alice") == frozenset({"S1", "S2"})
        assert src.lookup("nobody") == frozenset()

    def test_from_file(self, tmp_path):
        path = tmp_path / "entitlements.json"
        path.write_text(json.dumps({"alice": ["S1"]}))
        assert StaticEntitlementSource.from_file(path).lookup("alice") == frozenset({"S1"})

    def test_from_file_rejects_non_object(self, tmp_path):
        path = tmp_path / "entitlements.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            StaticEntitlementSource.from_file(path)


class TestSqlEntitlementSource:
    @pytest.fixture
    def engine(self):
        engine = create_engine("sqlite://")
        with engine.begin() as conn:
            conn.execute(
                text("CREATE TABLE map_client_fund (user_id TEXT, parent_security_key TEXT, show_positions INTEGER)")
            )
            conn.execute(
                text("INSERT INTO map_client_fund VALUES (:u, :s, :f)"),
                [
                    {"u": "alice", "s": "S1", "f": 1},
                    {"u": "alice", "s": "S2", "f": 0},
                    {"u": "alice", "s": "S3", "f": 1},
                    {"u": "bob", "s": "S2", "f": 1},
                ],
            )
        return engine

    def test_only_visible_securities(self, engine):
        src = SqlEntitlementSource(engine)
        assert src.lookup("alice") == frozenset({"S1", "S3"})
        assert src.lookup("carol") == frozenset()

    def test_query_failure(self, engine):
        src = SqlEntitlementSource(engine, table="missing_table")
        with pytest.raises(EntitlementSourceError):
            src.lookup("alice")


class TestHttpEntitlementSource:
    def make(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://ent")
        return HttpEntitlementSource("http://ent", client=client)

    def test_lookup(self):
        seen = []

        def handler(request):
            seen.append(request.url.raw_path)
            return httpx.Response(200, json={"securities": ["S1", "S2"]})

        assert self.make(handler).lookup("DOMAIN\\alice") == frozenset({"S1", "S2"})
        assert seen == [b"/users/DOMAIN%5Calice/securities"]

    def test_unknown_user_is_empty(self):
        assert self.make(lambda r: httpx.Response(404)).lookup("ghost") == frozenset()

    def test_server_error_is_retryable(self):
        with pytest.raises(EntitlementSourceError) as exc_info:
            self.make(lambda r: httpx.Response(503)).lookup("alice")
        assert exc_info.value.retryable is True
        assert exc_info.value.context.metadata["http_status"] == 503

    def test_client_error_not_retryable(self):
        with pytest.raises(EntitlementSourceError) as exc_info:
            self.make(lambda r: httpx.Response(403)).lookup("alice")
        assert exc_info.value.retryable is False

    def test_malformed_body(self):
        with pytest.raises(EntitlementSourceError) as exc_info:
            self.make(lambda r: httpx.Response(200, json={"nope": []})).lookup("alice")
        assert exc_info.value.retryable is False

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(EntitlementSourceError):
            self.make(handler).lookup("alice")


# ── Resolver ─────────────────────────────────────────────────────────


class TestResolverFreshness:
    def test_miss_then_hit(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        first = resolver.resolve("alice")
        assert first.securities == frozenset({"S1"})
        assert first.from_cache is False
        clock.advance(30)
        second = resolver.resolve("alice")
        assert second.from_cache is True
        assert second.age_seconds == 30
        assert flaky_source.calls == 1

    def test_ttl_expiry_refetches(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        clock.advance(61)
        flaky_source.mapping["alice"] = frozenset({"S1", "S2"})
        assert resolver.resolve("alice").securities == frozenset({"S1", "S2"})
        assert flaky_source.calls == 2

    def test_unknown_user_is_empty_not_error(self, flaky_source, clock):
        assert resolver_for(flaky_source, clock).resolve("nobody").securities == frozenset()

    def test_ceiling_below_ttl_rejected(self, flaky_source):
        with pytest.raises(ValueError):
            EntitlementResolver(flaky_source, ttl_seconds=60, stale_ceiling_seconds=30)


class TestResolverStaleness:
    def test_stale_served_within_ceiling(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        clock.advance(300)
        flaky_source.available = False
        result = resolver.resolve("alice")
        assert result.stale is True
        assert result.age_seconds == 300
        assert result.securities == frozenset({"S1"})
        assert resolver.stats()["stale_serves"] == 1

    def test_unavailable_beyond_ceiling(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        clock.advance(601)
        flaky_source.available = False
        with pytest.raises(EntitlementUnavailable) as exc_info:
            resolver.resolve("alice")
        assert exc_info.value.context.user_id == "alice"

    def test_unavailable_without_cache(self, flaky_source, clock):
        flaky_source.available = False
        with pytest.raises(EntitlementUnavailable):
            resolver_for(flaky_source, clock).resolve("alice")

    def test_stale_serve_does_not_reset_age(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        flaky_source.available = False
        clock.advance(400)
        assert resolver.resolve("alice").stale
        clock.advance(201)
        with pytest.raises(EntitlementUnavailable):
            resolver.resolve("alice")

    def test_recovery_refreshes_entry(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        clock.advance(120)
        flaky_source.available = False
        assert resolver.resolve("alice").stale
        flaky_source.available = True
        result = resolver.resolve("alice")
        assert result.stale is False
        assert result.age_seconds == 0


class TestResolverEviction:
    def test_lru_capacity(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock, max_users=2)
        resolver.resolve("alice")
        resolver.resolve("bob")
        resolver.resolve("alice")  # alice most recent
        resolver.resolve("carol")
        assert resolver.size() == 2
        flaky_source.available = False
        assert resolver.resolve("alice").securities == frozenset({"S1"})
        with pytest.raises(EntitlementUnavailable):
            resolver.resolve("bob")
        assert resolver.stats()["evictions"] == 1

    def test_purge_idle(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock, idle_eviction_seconds=3_600)
        resolver.resolve("alice")
        clock.advance(1_800)
        resolver.resolve("bob")
        clock.advance(1_801)
        assert resolver.purge_idle() == 1
        assert resolver.size() == 1


class TestResolverInvalidation:
    def test_invalidate_forces_refetch(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        flaky_source.mapping["alice"] = frozenset()
        assert resolver.invalidate("alice") is True
        assert resolver.invalidate("alice") is False
        assert resolver.resolve("alice").securities == frozenset()
        assert flaky_source.calls == 2

    def test_invalidated_entry_not_served_stale(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        resolver.invalidate("alice")
        flaky_source.available = False
        with pytest.raises(EntitlementUnavailable):
            resolver.resolve("alice")

    def test_invalidate_all(self, flaky_source, clock):
        resolver = resolver_for(flaky_source, clock)
        resolver.resolve("alice")
        resolver.resolve("bob")
        assert resolver.invalidate_all() == 2
        assert resolver.size() == 0

    def test_invalidation_during_fetch_discards_result(self, clock):
        entered = threading.Event()
        proceed = threading.Event()

        def slow_fetch(user_id):
            entered.set()
            proceed.wait(5)
            return frozenset({"OLD"})

        source = StaticEntitlementSource({"alice": {"NEW"}})
        resolver = resolver_for(source, clock, fetch=slow_fetch)
        result = {}
        t = threading.Thread(target=lambda: result.setdefault("r", resolver.resolve("alice")))
        t.start()
        entered.wait(5)
        resolver.invalidate("alice")
        proceed.set()
        t.join()

        assert result["r"].securities == frozenset({"OLD"})
        assert resolver.size() == 0


class TestResolverConcurrency:
    def test_concurrent_misses_share_one_fetch(self, clock):
        calls = []
        lock = threading.Lock()

        def fetch(user_id):
            with lock:
                calls.append(user_id)
            time.sleep(0.05)
            return frozenset({"S1"})

        resolver = resolver_for(StaticEntitlementSource(), clock, fetch=fetch)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(resolver.resolve("alice").securities)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert calls == ["alice"]
        assert results == [frozenset({"S1"})] * 8

    def test_miss_does_not_block_other_users_hit(self, clock):
        blocking = threading.Event()
        release = threading.Event()

        def fetch(user_id):
            if user_id == "slow":
                blocking.set()
                release.wait(5)
            return frozenset({user_id})

        resolver = resolver_for(StaticEntitlementSource(), clock, fetch=fetch)
        resolver.resolve("fast")
        t = threading.Thread(target=resolver.resolve, args=("slow",))
        t.start()
        blocking.wait(5)

        start = time.monotonic()
        assert resolver.resolve("fast").from_cache is True
        assert time.monotonic() - start < 1.0

        release.set()
        t.join()
