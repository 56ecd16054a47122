"""Tests for catalog_mirror.config -- env-var config loading and validation.

NOT to be confused with test_config_loader.py (hierarchical YAML config)
or test_config_schema.py (Pydantic models). This tests the standalone
server bootstrap path: validate_config() and load_config().
"""

import logging

import pytest

from catalog_mirror.config import (
    DEFAULT_STATE_DIR,
    Config,
    load_config,
    validate_config,
)

ENV_KEYS = (
    "CATALOG_API_URL",
    "CATALOG_API_TOKEN",
    "CATALOG_PROPERTY_ID",
    "CATALOG_INSECURE",
    "CATALOG_DEBUG",
    "CATALOG_BATCH_SIZE",
    "CATALOG_LOCK_TTL",
    "CATALOG_STATE_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    """Tests for validate_config() -- URL format and credential checks."""

    def _config(self, **kwargs):
        values = dict(
            api_url="https://catalog.example.com",
            api_token="tok",
            property_id="42",
        )
        values.update(kwargs)
        return Config(**values)

    def test_valid_config(self):
        validate_config(self._config())

    def test_http_url_valid(self):
        validate_config(self._config(api_url="http://localhost:8080"))

    @pytest.mark.parametrize("url", ["catalog.example.com", "ftp://example.com"])
    def test_invalid_scheme(self, url):
        with pytest.raises(
            ValueError, match="must start with http:// or https://"
        ):
            validate_config(self._config(api_url=url))

    def test_missing_hostname(self):
        with pytest.raises(ValueError, match="URL must include a hostname"):
            validate_config(self._config(api_url="https://"))

    def test_trailing_slash_stripped(self):
        config = self._config(api_url="https://catalog.example.com/")
        validate_config(config)
        assert config.api_url == "https://catalog.example.com"

    def test_empty_token(self):
        with pytest.raises(ValueError, match="token cannot be empty"):
            validate_config(self._config(api_token="  "))

    def test_empty_property_id(self):
        with pytest.raises(ValueError, match="property id cannot be empty"):
            validate_config(self._config(property_id=" "))

    def test_insecure_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="catalog_mirror.config"):
            validate_config(self._config(insecure=True))
        assert "SSL verification disabled" in caplog.text


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    """Tests for load_config() -- precedence CLI > env > YAML > default."""

    def _env(self, monkeypatch):
        monkeypatch.setenv("CATALOG_API_URL", "https://env.example.com")
        monkeypatch.setenv("CATALOG_API_TOKEN", "env-token")
        monkeypatch.setenv("CATALOG_PROPERTY_ID", "7")

    def test_from_env(self, monkeypatch):
        self._env(monkeypatch)
        config = load_config()
        assert config.api_url == "https://env.example.com"
        assert config.api_token == "env-token"
        assert config.property_id == "7"
        assert config.batch_size == 20
        assert config.lock_ttl == 3600
        assert config.state_dir == DEFAULT_STATE_DIR

    def test_cli_overrides_env(self, monkeypatch):
        self._env(monkeypatch)
        config = load_config(
            url="https://cli.example.com", token="cli-token", property_id="9"
        )
        assert config.api_url == "https://cli.example.com"
        assert config.api_token == "cli-token"
        assert config.property_id == "9"

    def test_yaml_fallbacks(self):
        config = load_config(
            yaml_fallbacks={
                "url": "https://yaml.example.com",
                "api_token": "yaml-token",
                "property_id": 11,
                "batch_size": 50,
                "lock_ttl": 600,
                "timeout": 30,
                "path": "/var/lib/mirror",
            }
        )
        assert config.api_url == "https://yaml.example.com"
        assert config.property_id == "11"
        assert config.batch_size == 50
        assert config.lock_ttl == 600
        assert config.timeout == 30
        assert config.state_dir == "/var/lib/mirror"

    def test_env_beats_yaml(self, monkeypatch):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_BATCH_SIZE", "5")
        config = load_config(
            yaml_fallbacks={"url": "https://yaml.example.com", "batch_size": 50}
        )
        assert config.api_url == "https://env.example.com"
        assert config.batch_size == 5

    @pytest.mark.parametrize(
        "missing, message",
        [
            ("CATALOG_API_URL", "Catalog URL not found"),
            ("CATALOG_API_TOKEN", "Catalog API token not found"),
            ("CATALOG_PROPERTY_ID", "Website property id not found"),
        ],
    )
    def test_missing_required(self, monkeypatch, missing, message):
        self._env(monkeypatch)
        monkeypatch.delenv(missing)
        with pytest.raises(ValueError, match=message):
            load_config()

    @pytest.mark.parametrize("value", ["0", "101", "abc"])
    def test_batch_size_out_of_range(self, monkeypatch, value):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_BATCH_SIZE", value)
        with pytest.raises(ValueError, match="CATALOG_BATCH_SIZE"):
            load_config()

    def test_lock_ttl_out_of_range(self, monkeypatch):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_LOCK_TTL", "30")
        with pytest.raises(ValueError, match="CATALOG_LOCK_TTL"):
            load_config()

    @pytest.mark.parametrize(
        "value, expected",
        [("true", True), ("1", True), ("yes", True), ("false", False), ("0", False)],
    )
    def test_insecure_from_env(self, monkeypatch, value, expected):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_INSECURE", value)
        assert load_config().insecure is expected

    def test_insecure_cli_flag_wins(self, monkeypatch):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_INSECURE", "false")
        assert load_config(insecure=True).insecure is True

    def test_env_insecure_beats_yaml(self, monkeypatch):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_INSECURE", "false")
        assert load_config(yaml_fallbacks={"insecure": True}).insecure is False

    def test_debug_from_yaml(self, monkeypatch):
        self._env(monkeypatch)
        assert load_config(yaml_fallbacks={"debug": True}).debug is True

    def test_state_dir_precedence(self, monkeypatch):
        self._env(monkeypatch)
        monkeypatch.setenv("CATALOG_STATE_DIR", "/env/state")
        assert load_config().state_dir == "/env/state"
        assert load_config(state_dir="/cli/state").state_dir == "/cli/state"

    def test_values_stripped(self, monkeypatch):
        monkeypatch.setenv("CATALOG_API_URL", "  https://env.example.com/  ")
        monkeypatch.setenv("CATALOG_API_TOKEN", " tok ")
        monkeypatch.setenv("CATALOG_PROPERTY_ID", " 7 ")
        config = load_config()
        assert config.api_url == "https://env.example.com"
        assert config.api_token == "tok"
        assert config.property_id == "7"
