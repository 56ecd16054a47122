"""Runtime configuration for the catalog mirror server.

Reads catalog connection settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    CATALOG_API_URL: Catalog API base URL (required)
    CATALOG_API_TOKEN: API token, also the tenant key (required)
    CATALOG_PROPERTY_ID: Website property id (required)
    CATALOG_INSECURE: Skip SSL verification (optional, default: false)
    CATALOG_BATCH_SIZE: Records per page (optional, default: 20)
    CATALOG_LOCK_TTL: Seconds before a held sync lock is stale (optional, default: 3600)
    CATALOG_STATE_DIR: Directory for mirror state and lock files (optional)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".catalog_mirror/state"


@dataclass
class Config:
    api_url: str
    api_token: str
    property_id: str
    insecure: bool = False
    debug: bool = False
    batch_size: int = 20
    lock_ttl: int = 3600
    timeout: int = 60
    state_dir: str = DEFAULT_STATE_DIR


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid or credentials are empty.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid catalog URL '{config.api_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid catalog URL '{config.api_url}': URL must include a hostname"
        )

    config.api_url = config.api_url.removesuffix("/")

    if not config.api_token.strip():
        raise ValueError(
            "Catalog API token cannot be empty. Set CATALOG_API_TOKEN environment variable."
        )

    if not str(config.property_id).strip():
        raise ValueError(
            "Website property id cannot be empty. Set CATALOG_PROPERTY_ID environment variable."
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _int_setting(
    env_key: str, fb: dict, fb_key: str, default: int, low: int, high: int
) -> int:
    """Resolve an integer setting: env > YAML > default, range-checked."""
    raw = os.getenv(env_key)
    if raw is None:
        return int(fb.get(fb_key, default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    url: str | None = None,
    token: str | None = None,
    property_id: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    state_dir: str | None = None,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override catalog URL.
        token: Override API token.
        property_id: Override website property id.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        state_dir: Override state directory.
        yaml_fallbacks: Flattened values from the YAML ``source``, ``sync``
            and ``storage`` sections.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (URL, token, property id) is missing
            after checking all sources, or a numeric value is out of range.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error ---

    api_url = url or os.getenv("CATALOG_API_URL") or fb.get("url")
    if not api_url:
        raise ValueError(
            "Catalog URL not found. Set CATALOG_API_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    api_token = token or os.getenv("CATALOG_API_TOKEN") or fb.get("api_token")
    if not api_token:
        raise ValueError(
            "Catalog API token not found. Set CATALOG_API_TOKEN environment variable, "
            "pass --token CLI argument, or add 'api_token' to config.yml."
        )

    prop = property_id or os.getenv("CATALOG_PROPERTY_ID") or fb.get("property_id")
    if not prop:
        raise ValueError(
            "Website property id not found. Set CATALOG_PROPERTY_ID environment "
            "variable, pass --property-id CLI argument, or add 'property_id' to config.yml."
        )

    # --- Boolean fields: CLI > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("CATALOG_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("CATALOG_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    batch_size = _int_setting("CATALOG_BATCH_SIZE", fb, "batch_size", 20, 1, 100)
    lock_ttl = _int_setting("CATALOG_LOCK_TTL", fb, "lock_ttl", 3600, 60, 86400)

    final_state_dir = (
        state_dir
        or os.getenv("CATALOG_STATE_DIR")
        or fb.get("path")
        or DEFAULT_STATE_DIR
    )

    config = Config(
        api_url=api_url.strip(),
        api_token=api_token.strip(),
        property_id=str(prop).strip(),
        insecure=final_insecure,
        debug=final_debug,
        batch_size=batch_size,
        lock_ttl=lock_ttl,
        timeout=int(fb.get("timeout", 60)),
        state_dir=final_state_dir,
    )

    validate_config(config)

    return config
