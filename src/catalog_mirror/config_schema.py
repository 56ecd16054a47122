"""Unified configuration schema for catalog_mirror.

Defines Pydantic models for the unified config structure with dedicated
sections for the remote source, sync behaviour, storage and logging.

Usage:
    from catalog_mirror.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    batch = unified.sync.batch_size
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SourceConfig(BaseModel):
    """Remote catalog connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Catalog API base URL")
    api_token: str | None = Field(
        default=None, description="API token (also the tenant key)"
    )
    property_id: str | None = Field(
        default=None, description="Website property id"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    timeout: int = Field(
        default=60,
        ge=1,
        le=600,
        description="Read timeout in seconds for catalog requests",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync run behaviour."""

    batch_size: int = Field(
        default=20, ge=1, le=100, description="Records per page (1-100)"
    )
    page_delay: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="Seconds to wait between case pages",
    )
    lock_ttl: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Seconds after which a held sync lock is stale",
    )
    stamp_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts to write a registry stamp before giving up",
    )
    import_media: bool = Field(
        default=False, description="Attach case photos after the case stage"
    )
    auto_delete_orphans: bool = Field(
        default=True,
        description="Delete orphans at the end of a run (else report only)",
    )
    force_update_all: bool = Field(
        default=False, description="Rewrite every record regardless of hash"
    )
    force_update_ids: list[str] = Field(
        default_factory=list,
        description="External ids rewritten regardless of hash",
    )
    log_retention_days: int = Field(
        default=30, ge=1, le=365, description="Days of run log to keep"
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Where the mirror and run log live."""

    backend: Literal["memory", "json"] = Field(
        default="json", description="Store implementation"
    )
    path: str = Field(
        default=".catalog_mirror/state",
        description="State directory for the json backend and lock files",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    source: SourceConfig = Field(default_factory=SourceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Raises:
        pydantic.ValidationError: If a value is out of range.
    """
    if not raw_data:
        return UnifiedConfig()

    unknown = set(raw_data) - set(UnifiedConfig.model_fields)
    if unknown:
        logger.warning(
            "Ignoring unknown config sections: %s", ", ".join(sorted(unknown))
        )
    known = {k: v for k, v in raw_data.items() if k not in unknown}
    return UnifiedConfig(**known)
