"""Tests for catalog_mirror.config_schema -- Pydantic config models."""

import pytest
from pydantic import ValidationError

from catalog_mirror.config_schema import (
    SourceConfig,
    StorageConfig,
    SyncConfig,
    UnifiedConfig,
    build_config,
)


class TestDefaults:
    def test_unified_defaults(self):
        config = UnifiedConfig()
        assert config.source.url is None
        assert config.sync.batch_size == 20
        assert config.sync.lock_ttl == 3600
        assert config.sync.auto_delete_orphans is True
        assert config.sync.import_media is False
        assert config.storage.backend == "json"
        assert config.logging.level == "INFO"

    def test_models_are_frozen(self):
        with pytest.raises(ValidationError):
            SyncConfig().batch_size = 5


class TestRanges:
    @pytest.mark.parametrize("value", [0, 101])
    def test_batch_size_bounds(self, value):
        with pytest.raises(ValidationError):
            SyncConfig(batch_size=value)

    def test_lock_ttl_minimum(self):
        with pytest.raises(ValidationError):
            SyncConfig(lock_ttl=59)

    def test_page_delay_non_negative(self):
        with pytest.raises(ValidationError):
            SyncConfig(page_delay=-1)

    def test_timeout_bounds(self):
        with pytest.raises(ValidationError):
            SourceConfig(timeout=0)

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            StorageConfig(backend="sqlite")


class TestBuildConfig:
    def test_empty(self):
        assert build_config({}) == UnifiedConfig()

    def test_sections(self):
        config = build_config(
            {
                "source": {"url": "https://catalog.example.com", "property_id": "42"},
                "sync": {"batch_size": 50, "force_update_ids": ["100", "101"]},
                "storage": {"backend": "memory"},
            }
        )
        assert config.source.property_id == "42"
        assert config.sync.batch_size == 50
        assert config.sync.force_update_ids == ["100", "101"]
        assert config.storage.backend == "memory"

    def test_unknown_sections_ignored(self, caplog):
        config = build_config({"webhooks": {"x": 1}, "sync": {"batch_size": 5}})
        assert config.sync.batch_size == 5
        assert "webhooks" in caplog.text

    def test_invalid_value_raises(self):
        with pytest.raises(ValidationError):
            build_config({"sync": {"batch_size": 1000}})
