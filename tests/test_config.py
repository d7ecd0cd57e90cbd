"""Tests for calsync configuration loading and validation.

Covers:
- load_config from a file path or a directory holding calsync.toml
- defaults for missing sections
- ${VAR} and ${VAR:-fallback} substitution; every unset variable is reported
- invalid values raise ConfigError
- config_from_env
- webhook address construction
- OAuthClientConfig.require
"""

from __future__ import annotations

from pathlib import Path

import pytest

from calsync.config import (
    DEFAULT_FULL_SYNC_WINDOW_DAYS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    CalsyncConfig,
    ConfigError,
    OAuthClientConfig,
    config_from_env,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[google]
client_id = "google-id"
client_secret = "${GOOGLE_SECRET_FOR_TEST}"

[office365]
client_id = "ms-id"
client_secret = "ms-secret"

[webhooks]
base_url = "https://app.example.com/"

[http]
timeout_seconds = 12.5

[sync]
full_sync_window_days = 14

[logging]
level = "debug"
format = "json"
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "calsync.toml") -> Path:
    (tmp_path / filename).write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_SECRET_FOR_TEST", "resolved-secret")
        config = load_config(_write_toml(tmp_path, FULL_TOML))

        assert config.google.client_id == "google-id"
        assert config.google.client_secret == "resolved-secret"
        assert config.office365.is_configured
        assert config.webhook_base_url == "https://app.example.com/"
        assert config.http_timeout_seconds == 12.5
        assert config.full_sync_window_days == 14
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    def test_file_path_accepted(self, tmp_path):
        _write_toml(tmp_path, "[google]\nclient_id = 'x'\n", filename="custom.toml")
        config = load_config(tmp_path / "custom.toml")
        assert config.google.client_id == "x"
        assert not config.google.is_configured

    def test_defaults_for_empty_file(self, tmp_path):
        config = load_config(_write_toml(tmp_path, ""))
        assert config.http_timeout_seconds == DEFAULT_HTTP_TIMEOUT_SECONDS
        assert config.full_sync_window_days == DEFAULT_FULL_SYNC_WINDOW_DAYS
        assert config.webhook_base_url is None
        assert config.logging.format == "text"


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


class TestConfigErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[google\n"))

    def test_unresolved_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GOOGLE_SECRET_FOR_TEST", raising=False)
        with pytest.raises(ConfigError, match="GOOGLE_SECRET_FOR_TEST"):
            load_config(_write_toml(tmp_path, FULL_TOML))

    @pytest.mark.parametrize(
        "data",
        [
            {"http": {"timeout_seconds": 0}},
            {"http": {"timeout_seconds": "soon"}},
            {"sync": {"full_sync_window_days": 0}},
            {"sync": {"full_sync_window_days": True}},
            {"logging": {"format": "xml"}},
            {"google": "not-a-table"},
            {"webhooks": {"base_url": 42}},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            parse_config(data)


# ---------------------------------------------------------------------------
# Environment substitution
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self):
        env = {"ID": "abc", "HOST": "hooks.example.com"}
        data = {"google": {"client_id": "${ID}"}, "urls": ["https://${HOST}/x"], "port": 8080}
        assert resolve_env_vars(data, env) == {
            "google": {"client_id": "abc"},
            "urls": ["https://hooks.example.com/x"],
            "port": 8080,
        }

    def test_fallback(self):
        assert resolve_env_vars("${LEVEL:-DEBUG}", {}) == "DEBUG"
        assert resolve_env_vars("${LEVEL:-DEBUG}", {"LEVEL": "INFO"}) == "INFO"
        assert resolve_env_vars("${EMPTY:-}", {}) == ""

    def test_reports_every_missing_name_once(self):
        data = {"a": "${FIRST}", "b": ["${SECOND}", "${FIRST}"]}
        with pytest.raises(ConfigError, match="not set: FIRST, SECOND$"):
            resolve_env_vars(data, {})


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class TestConfigFromEnv:
    def test_reads_variables(self):
        config = config_from_env(
            {
                "GOOGLE_CLIENT_ID": "gid",
                "GOOGLE_CLIENT_SECRET": "gsecret",
                "MS_GRAPH_CLIENT_ID": "mid",
                "MS_GRAPH_CLIENT_SECRET": "msecret",
                "WEBHOOK_BASE_URL": "https://hooks.example.com",
                "CALSYNC_HTTP_TIMEOUT": "5",
                "CALSYNC_LOG_LEVEL": "warning",
                "CALSYNC_LOG_FORMAT": "json",
            }
        )
        assert config.google.require("google") == ("gid", "gsecret")
        assert config.office365.require("office365") == ("mid", "msecret")
        assert config.http_timeout_seconds == 5.0
        assert config.logging.level == "WARNING"

    def test_empty_environment(self):
        config = config_from_env({})
        assert not config.google.is_configured
        assert config.webhook_base_url is None

    def test_values_are_literal(self):
        config = config_from_env({"GOOGLE_CLIENT_ID": "${NOT_EXPANDED}"})
        assert config.google.client_id == "${NOT_EXPANDED}"


# ---------------------------------------------------------------------------
# Helpers on the dataclasses
# ---------------------------------------------------------------------------


class TestConfigHelpers:
    def test_webhook_address(self):
        config = CalsyncConfig(webhook_base_url="https://app.example.com/")
        assert (
            config.webhook_address("google", "0xabc")
            == "https://app.example.com/server/webhooks/calendar/google/0xabc"
        )

    def test_webhook_address_requires_base_url(self):
        with pytest.raises(ConfigError):
            CalsyncConfig().webhook_address("google", "0xabc")

    def test_require_raises_when_unconfigured(self):
        with pytest.raises(ConfigError, match="office365"):
            OAuthClientConfig(client_id="only-id").require("office365")
