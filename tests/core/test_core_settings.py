"""Tests for datespine.core.settings."""

from datetime import time
from pathlib import Path

import pytest
from pydantic import ValidationError

from datespine.core.settings import DateSpineSettings


class TestDefaults:
    def test_defaults(self):
        s = DateSpineSettings()
        assert s.port == 12100
        assert s.risk_engine_id == 1
        assert s.entitlement_backend == "static"
        assert s.entitlement_ttl_seconds == 900
        assert s.entitlement_stale_ceiling_seconds == 14_400
        assert s.rebuild_time() == time(6, 0)

    def test_registry_path(self, tmp_path):
        s = DateSpineSettings(data_dir=tmp_path)
        assert s.registry_path == Path(tmp_path) / "registry.json"


class TestEnvOverride:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DATESPINE_ENTITLEMENT_TTL_SECONDS", "60")
        monkeypatch.setenv("DATESPINE_ENTITLEMENT_BACKEND", "http")
        s = DateSpineSettings()
        assert s.entitlement_ttl_seconds == 60
        assert s.entitlement_backend == "http"


class TestValidation:
    def test_rejects_bad_rebuild_time(self):
        with pytest.raises(ValidationError):
            DateSpineSettings(rebuild_time_utc="25:99")

    def test_ceiling_must_cover_ttl(self):
        with pytest.raises(ValidationError):
            DateSpineSettings(entitlement_ttl_seconds=600, entitlement_stale_ceiling_seconds=60)

    def test_ratio_bounds(self):
        with pytest.raises(ValidationError):
            DateSpineSettings(min_security_ratio=1.5)

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            DateSpineSettings(entitlement_backend="ldap")
