"""calsync configuration loading and validation.

Reads ``calsync.toml`` (or process environment variables) and returns a
validated ``CalsyncConfig`` dataclass consumed by the integration factory and
the adapters.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ${NAME} or ${NAME:-fallback}
_ENV_VAR_PATTERN = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")
_VALID_LOG_FORMATS = {"text", "json"}

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_FULL_SYNC_WINDOW_DAYS = 30
WEBHOOK_PATH_TEMPLATE = "/server/webhooks/calendar/{provider}/{account_address}"


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class OAuthClientConfig:
    """OAuth application credentials for one provider."""

    client_id: str | None = None
    client_secret: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def require(self, provider: str) -> tuple[str, str]:
        if not self.client_id or not self.client_secret:
            raise ConfigError(f"{provider} OAuth client_id and client_secret must be configured")
        return self.client_id, self.client_secret


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class CalsyncConfig:
    """Top-level configuration."""

    google: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    office365: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    webhook_base_url: str | None = None
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def webhook_address(self, provider: str, account_address: str) -> str:
        """Inbound webhook URL for *account_address* on *provider*."""
        if not self.webhook_base_url:
            raise ConfigError("webhooks.base_url must be configured to register webhooks")
        path = WEBHOOK_PATH_TEMPLATE.format(provider=provider, account_address=account_address)
        return f"{self.webhook_base_url.rstrip('/')}{path}"


def resolve_env_vars(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Substitute ``${VAR}`` and ``${VAR:-fallback}`` inside every string of *value*.

    Raises ConfigError naming every variable that is unset and has no fallback.
    """
    env = os.environ if environ is None else environ
    missing: list[str] = []

    def substitute(match: re.Match) -> str:
        name, fallback = match.group("name"), match.group("fallback")
        if name in env:
            return env[name]
        if fallback is not None:
            return fallback
        missing.append(name)
        return match.group(0)

    def walk(node: Any) -> Any:
        if isinstance(node, str):
            return _ENV_VAR_PATTERN.sub(substitute, node)
        if isinstance(node, dict):
            return {key: walk(item) for key, item in node.items()}
        if isinstance(node, list):
            return [walk(item) for item in node]
        return node

    resolved = walk(value)
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        raise ConfigError(f"Environment variable(s) referenced in config are not set: {names}")
    return resolved


def _optional_str(section: dict[str, Any], key: str, prefix: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{prefix}.{key} must be a string")
    normalized = value.strip()
    return normalized or None


def _parse_oauth_section(data: dict[str, Any], name: str) -> OAuthClientConfig:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return OAuthClientConfig(
        client_id=_optional_str(section, "client_id", name),
        client_secret=_optional_str(section, "client_secret", name),
    )


def _parse_timeout(value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"http.timeout_seconds must be a number, got {value!r}") from exc
    if timeout <= 0:
        raise ConfigError("http.timeout_seconds must be positive")
    return timeout


def _parse_window_days(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | str):
        raise ConfigError(f"sync.full_sync_window_days must be an integer, got {value!r}")
    try:
        days = int(value)
    except ValueError as exc:
        raise ConfigError(f"sync.full_sync_window_days must be an integer, got {value!r}") from exc
    if days < 1:
        raise ConfigError("sync.full_sync_window_days must be at least 1")
    return days


def _parse_logging(section: Any) -> LoggingConfig:
    if section is None:
        return LoggingConfig()
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a table")
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"logging.format must be one of {sorted(_VALID_LOG_FORMATS)}")
    return LoggingConfig(level=level, format=fmt)


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded config mapping."""
    data = resolve_env_vars(data)

    webhooks = data.get("webhooks", {})
    if not isinstance(webhooks, dict):
        raise ConfigError("[webhooks] must be a table")
    http_section = data.get("http", {})
    sync_section = data.get("sync", {})
    if not isinstance(http_section, dict) or not isinstance(sync_section, dict):
        raise ConfigError("[http] and [sync] must be tables")

    return CalsyncConfig(
        google=_parse_oauth_section(data, "google"),
        office365=_parse_oauth_section(data, "office365"),
        webhook_base_url=_optional_str(webhooks, "base_url", "webhooks"),
        http_timeout_seconds=_parse_timeout(
            http_section.get("timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS)
        ),
        full_sync_window_days=_parse_window_days(
            sync_section.get("full_sync_window_days", DEFAULT_FULL_SYNC_WINDOW_DAYS)
        ),
        logging=_parse_logging(data.get("logging")),
    )


def load_config(path: Path) -> CalsyncConfig:
    """Load ``calsync.toml`` from *path* (the file, or the directory holding it)."""
    toml_path = path / "calsync.toml" if path.is_dir() else path
    try:
        with toml_path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {toml_path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    return parse_config(data)


def config_from_env(environ: dict[str, str] | None = None) -> CalsyncConfig:
    """Build a config purely from environment variables."""
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {
        "google": {
            "client_id": env.get("GOOGLE_CLIENT_ID"),
            "client_secret": env.get("GOOGLE_CLIENT_SECRET"),
        },
        "office365": {
            "client_id": env.get("MS_GRAPH_CLIENT_ID"),
            "client_secret": env.get("MS_GRAPH_CLIENT_SECRET"),
        },
        "webhooks": {"base_url": env.get("WEBHOOK_BASE_URL")},
        "http": {"timeout_seconds": env.get("CALSYNC_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS)},
        "logging": {
            "level": env.get("CALSYNC_LOG_LEVEL", "INFO"),
            "format": env.get("CALSYNC_LOG_FORMAT", "text"),
        },
    }
    # Environment values are literal; skip ${VAR} resolution on them.
    return CalsyncConfig(
        google=_parse_oauth_section(data, "google"),
        office365=_parse_oauth_section(data, "office365"),
        webhook_base_url=_optional_str(data["webhooks"], "base_url", "webhooks"),
        http_timeout_seconds=_parse_timeout(data["http"]["timeout_seconds"]),
        logging=_parse_logging(data["logging"]),
    )
