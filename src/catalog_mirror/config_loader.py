"""
Config file discovery and loading for catalog_mirror.

YAML files are found by convention, may pull in other files with
``!include``, may reference environment variables as ``${VAR}`` or
``${VAR:-default}``, and are merged so that the project file wins.

Usage:
    from catalog_mirror.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CATALOG_MIRROR_CONFIG"
PROJECT_DIR = ".catalog_mirror"

# ${VAR} or ${VAR:-default}
_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# Env var interpolation
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` / ``${VAR:-default}`` references in *value*.

    An unset or empty variable yields its default, or ``""`` without one.
    An unterminated ``${`` is left as is.
    """

    def _lookup(match: re.Match) -> str:
        current = os.environ.get(match.group(1))
        if current:
            return current
        return match.group(2) if match.group(2) is not None else ""

    return _ENV_REF.sub(_lookup, value)


def _interpolate(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, list):
        return [_interpolate(item) for item in node]
    if isinstance(node, dict):
        return {key: _interpolate(val) for key, val in node.items()}
    return node


# ---------------------------------------------------------------------------
# YAML loading with !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``SafeLoader`` that understands ``!include``.

    A subclass keeps the tag off the global ``yaml.SafeLoader``.  Each
    instance carries the chain of files being loaded so that cycles are
    reported instead of recursing forever.
    """

    include_chain: tuple[Path, ...] = ()

    def include(self, node: yaml.ScalarNode) -> Any:
        relative = Path(self.construct_scalar(node))
        here = Path(self.name).resolve()
        target = relative if relative.is_absolute() else here.parent / relative
        target = target.resolve()

        if target in self.include_chain:
            cycle = " -> ".join(str(p) for p in (*self.include_chain, target))
            raise ValueError(f"Circular include detected: {cycle}")
        if not target.exists():
            raise FileNotFoundError(
                f"Include file not found: {target} (referenced from {here})"
            )
        return load_yaml(target, _chain=(*self.include_chain, target))


ConfigLoader.add_constructor("!include", ConfigLoader.include)


def load_yaml(path: Path, *, _chain: tuple[Path, ...] | None = None) -> Any:
    """Parse one YAML file, resolving ``!include`` relative to it."""
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = _chain or (path,)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first.

    Search order:
        1. ``CATALOG_MIRROR_CONFIG`` env var (explicit single path)
        2. ``.catalog_mirror/config.yml`` in CWD
        3. ``.catalog_mirror/config.yaml`` in CWD
        4. ``~/.config/catalog_mirror/config.yml``
    """
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / PROJECT_DIR
    candidates.append(project / "config.yml")
    candidates.append(project / "config.yaml")
    candidates.append(Path.home() / ".config" / "catalog_mirror" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# catalog-mirror configuration
#
# Connection settings can also come from the environment:
#   CATALOG_API_URL, CATALOG_API_TOKEN, CATALOG_PROPERTY_ID, CATALOG_INSECURE
#
# source:
#   url: https://catalog.example.com
#   api_token: ${CATALOG_API_TOKEN}
#   property_id: "42"
#   insecure: false
#   timeout: 60
#
# sync:
#   batch_size: 20
#   page_delay: 0.1
#   lock_ttl: 3600
#   import_media: false
#   auto_delete_orphans: true
#   force_update_ids: []
#   log_retention_days: 30
#
# storage:
#   backend: json
#   path: .catalog_mirror/state
#
# logging:
#   level: INFO
#   file: null
"""


def resolve_config_path() -> Path:
    """The active config file, or the project default if none exists.

    Does not create anything; see ``ensure_config()``.
    """
    existing = discover_config_files()
    return existing[0] if existing else Path.cwd() / PROJECT_DIR / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a starter one if there is none.

    Args:
        target: Where to write the starter file. Defaults to
            ``resolve_config_path()``.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered config file and merge them.

    Files are applied from lowest to highest precedence; a higher file's
    top-level sections replace a lower file's wholesale.  Env var
    references are expanded after the merge.

    Returns an empty dict when no config files exist.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate(merged)


def yaml_fallbacks(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten the ``source``, ``sync`` and ``storage`` sections for
    ``load_config(yaml_fallbacks=...)``.

    Later sections do not override keys set by earlier ones.
    """
    flat: dict[str, Any] = {}
    for section in ("source", "sync", "storage"):
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            logger.warning("Config section '%s' is not a mapping", section)
            continue
        for key, value in values.items():
            flat.setdefault(key, value)
    return flat
