"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ..config import Config, load_config
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
    yaml_fallbacks,
)
from ..config_schema import SyncConfig, UnifiedConfig, build_config
from ..core.async_utils import run_sync
from ..core.client import CatalogClient
from ..storage import (
    InMemoryAuditLog,
    InMemoryMirror,
    JsonFileAuditLog,
    JsonFileMirror,
)
from ..sync.lock import FileLockBackend, MemoryLockBackend, SyncLock
from ..sync.models import mask_token
from ..sync.service import SyncService

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


def build_service(
    config: Config, unified: UnifiedConfig, source: Any
) -> SyncService:
    """Wire stores, lock and source into a ``SyncService``.

    The ``memory`` backend keeps everything in process; ``json`` persists
    mirror, run log and lock files under ``config.state_dir``.
    """
    settings: SyncConfig = unified.sync.model_copy(
        update={"batch_size": config.batch_size, "lock_ttl": config.lock_ttl}
    )

    if unified.storage.backend == "memory":
        mirror = InMemoryMirror()
        audit_log = InMemoryAuditLog()
        lock = SyncLock(MemoryLockBackend())
    else:
        state_dir = Path(config.state_dir)
        mirror = JsonFileMirror(state_dir)
        audit_log = JsonFileAuditLog(state_dir)
        lock = SyncLock(FileLockBackend(state_dir / "locks"))
        logger.info("State directory: %s", state_dir)

    return SyncService(
        {config.api_token: source},
        mirror,
        audit_log,
        lock=lock,
        settings=settings,
    )


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Create CatalogClient and validate the connection
    - Build the SyncService and prune old run log entries

    Args:
        config_overrides: Optional dict with config values from CLI
            (url, token, property_id, insecure, state_dir)

    Yields:
        Dict with 'service' key containing the initialized SyncService

    Raises:
        RuntimeError: If configuration is invalid or the catalog is unreachable.
    """
    logger.info("MCP server starting...")
    _stderr_print("Catalog Mirror MCP Server starting...")

    try:
        # .env first, so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        unified = UnifiedConfig()
        fallbacks: dict[str, Any] | None = None
        sources = []
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            fallbacks = {
                k: v
                for k, v in yaml_fallbacks(unified.model_dump()).items()
                if v is not None
            }
            sources.append(f"config file: {config_files[0]}")

        overrides = config_overrides or {}
        config = load_config(
            url=overrides.get("url"),
            token=overrides.get("token"),
            property_id=overrides.get("property_id"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            state_dir=overrides.get("state_dir"),
            yaml_fallbacks=fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info(
            "Catalog URL: %s (token %s)",
            config.api_url,
            mask_token(config.api_token),
        )
        _stderr_print(f"  Catalog URL: {config.api_url}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(
            "  Ensure CATALOG_API_URL, CATALOG_API_TOKEN, CATALOG_PROPERTY_ID are set."
        )
        raise RuntimeError(
            f"Configuration error: {e}. Ensure CATALOG_API_URL, "
            "CATALOG_API_TOKEN, CATALOG_PROPERTY_ID are set."
        ) from e

    logger.info("Validating catalog connection...")
    _stderr_print("  Validating catalog connection...")
    try:
        client = CatalogClient(config)
        categories = await run_sync(client.validate_connection)
        _stderr_print(f"  Connected: {categories} categories upstream")
        service = build_service(config, unified, client)
        removed = await run_sync(service.cleanup_old_runs)
        if removed:
            logger.info("Pruned %d old sync runs", removed)
        _stderr_print("Server ready. Waiting for MCP client connection...")
    except Exception as e:
        logger.error("Failed to start: %s", e)
        _stderr_print("ERROR: Catalog connection failed.")
        _stderr_print(f"  {e}")
        _stderr_print("  Check CATALOG_API_URL, CATALOG_API_TOKEN, CATALOG_PROPERTY_ID.")
        raise RuntimeError(
            f"Catalog connection failed: {e}. Check CATALOG_API_URL, "
            "CATALOG_API_TOKEN, CATALOG_PROPERTY_ID."
        ) from e

    yield {"service": service}

    logger.info("MCP server shutting down")
    _stderr_print("Catalog Mirror MCP Server shutting down.")
