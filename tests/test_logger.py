"""Tests for logger.py -- setup_logging() and JsonFormatter.

Covers:
- CLI mode logging (stderr handler, optional file handler)
- MCP mode logging (file handler only, never stdout)
- Debug level override
- Environment variable LOG_LEVEL / LOG_FILE handling
- JSON formatter output
- Third-party logger silencing

Strategy: Mock logging.basicConfig to verify setup_logging passes correct args,
since pytest's log capture plugin interferes with actual basicConfig calls.
"""

import json
import logging
import sys
from unittest.mock import patch

from catalog_mirror.logger import JsonFormatter, setup_logging


# ---------------------------------------------------------------------------
# setup_logging tests
# ---------------------------------------------------------------------------


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_cli_mode_logs_to_stderr(self, mock_basic):
        """CLI mode passes StreamHandler(stderr) to basicConfig."""
        setup_logging(mode="cli")

        mock_basic.assert_called_once()
        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)
        assert handlers[0].stream is sys.stderr

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_cli_mode_with_file(self, mock_basic, tmp_path):
        """CLI mode adds a file handler when log_file is given."""
        log_file = tmp_path / "cli.log"
        setup_logging(mode="cli", log_file=str(log_file))

        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 2
        assert isinstance(handlers[1], logging.FileHandler)
        assert handlers[1].baseFilename == str(log_file)
        for handler in handlers:
            handler.close()

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_mcp_mode_logs_to_file(self, mock_basic, tmp_path):
        """MCP mode passes only a file handler to basicConfig."""
        log_file = str(tmp_path / "test-mcp.log")
        setup_logging(mode="mcp", log_file=log_file)

        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)
        assert handlers[0].baseFilename == log_file
        handlers[0].close()

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_mcp_mode_env_log_file(self, mock_basic, tmp_path, monkeypatch):
        """LOG_FILE env var is used when no log_file is passed."""
        log_file = str(tmp_path / "env.log")
        monkeypatch.setenv("LOG_FILE", log_file)
        setup_logging(mode="mcp")

        handler = mock_basic.call_args[1]["handlers"][0]
        assert handler.baseFilename == log_file
        handler.close()

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_mcp_default_level_is_warning(self, mock_basic, tmp_path, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging(mode="mcp", log_file=str(tmp_path / "x.log"))

        kwargs = mock_basic.call_args[1]
        assert kwargs["level"] == logging.WARNING
        kwargs["handlers"][0].close()

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_debug_overrides_level(self, mock_basic):
        """debug=True passes DEBUG level to basicConfig."""
        setup_logging(mode="cli", debug=True)

        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_env_log_level_honored(self, mock_basic, monkeypatch):
        """LOG_LEVEL env var is reflected in basicConfig level."""
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.ERROR

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_invalid_env_level_falls_back(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "CHATTY")
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_json_format(self, mock_basic):
        setup_logging(mode="cli", debug_format="json")

        handler = mock_basic.call_args[1]["handlers"][0]
        assert isinstance(handler.formatter, JsonFormatter)

    @patch("catalog_mirror.logger.logging.basicConfig")
    def test_third_party_silenced(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        logging.getLogger("urllib3").setLevel(logging.NOTSET)
        setup_logging(mode="cli")

        assert logging.getLogger("urllib3").level == logging.WARNING


# ---------------------------------------------------------------------------
# JsonFormatter tests
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def _record(self, msg, exc_info=None):
        return logging.LogRecord(
            name="catalog_mirror.sync",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg=msg,
            args=("sync_abc",),
            exc_info=exc_info,
        )

    def test_fields(self):
        output = JsonFormatter().format(self._record("run %s started"))
        data = json.loads(output)
        assert data["level"] == "INFO"
        assert data["logger"] == "catalog_mirror.sync"
        assert data["msg"] == "run sync_abc started"
        assert "ts" in data
        assert "exc" not in data

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._record("run %s failed", exc_info=sys.exc_info())
        data = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in data["exc"]
