"""Portal configuration loading and validation.

Reads portal.toml, resolves ``${VAR}`` references from the environment, and
returns a validated PortalConfig dataclass.  When no file exists the defaults
are used, with OAuth application credentials taken from the environment.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "portal.toml"
DEFAULT_PORT = 8080

# One MiB: attachments strictly below this size are stored inline at sync time.
DEFAULT_ATTACHMENT_MAX_INLINE_BYTES = 1024 * 1024

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when portal configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [portal.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Reconciliation tuning from [portal.sync] section."""

    calendar_window_days: int = 90
    calendar_lookback_days: int = 0
    message_limit: int = 50
    message_query: str = ""
    attachment_max_inline_bytes: int = DEFAULT_ATTACHMENT_MAX_INLINE_BYTES


@dataclass
class ProviderAppConfig:
    """OAuth application credentials for one identity provider."""

    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    redirect_uri: str = ""
    tenant: str = "common"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class PortalConfig:
    """Parsed and validated portal configuration."""

    name: str = "private-zone"
    port: int = DEFAULT_PORT
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: ProviderAppConfig = field(default_factory=ProviderAppConfig)
    microsoft: ProviderAppConfig = field(default_factory=ProviderAppConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _positive_int(section: dict[str, Any], key: str, default: int, *, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{path}.{key} must be an integer, got {raw!r}")
    if raw < 0:
        raise ConfigError(f"{path}.{key} must be >= 0, got {raw}")
    return raw


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid portal.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=section.get("log_root"))


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    path = "portal.sync"
    window = _positive_int(section, "calendar_window_days", 90, path=path)
    if window == 0:
        raise ConfigError("portal.sync.calendar_window_days must be greater than zero")
    limit = _positive_int(section, "message_limit", 50, path=path)
    if not 1 <= limit <= 500:
        raise ConfigError(f"portal.sync.message_limit must be between 1 and 500, got {limit}")
    query = section.get("message_query", "")
    if not isinstance(query, str):
        raise ConfigError("portal.sync.message_query must be a string")
    return SyncConfig(
        calendar_window_days=window,
        calendar_lookback_days=_positive_int(section, "calendar_lookback_days", 0, path=path),
        message_limit=limit,
        message_query=query,
        attachment_max_inline_bytes=_positive_int(
            section,
            "attachment_max_inline_bytes",
            DEFAULT_ATTACHMENT_MAX_INLINE_BYTES,
            path=path,
        ),
    )


def _parse_provider_app(
    section: dict[str, Any], *, env_prefix: str, default_tenant: str = "common"
) -> ProviderAppConfig:
    """Build provider credentials, falling back to ``<PREFIX>_CLIENT_ID`` style env vars."""

    def _pick(key: str, default: str = "") -> str:
        value = section.get(key)
        if value is None:
            value = os.environ.get(f"{env_prefix}_{key.upper()}", default)
        if not isinstance(value, str):
            raise ConfigError(f"{env_prefix.lower()}.{key} must be a string")
        return value.strip()

    return ProviderAppConfig(
        client_id=_pick("client_id"),
        client_secret=_pick("client_secret"),
        redirect_uri=_pick("redirect_uri"),
        tenant=_pick("tenant", default_tenant) or default_tenant,
    )


def parse_config(data: dict[str, Any]) -> PortalConfig:
    """Validate an already-decoded TOML document into a PortalConfig."""
    data = resolve_env_vars(data)

    portal_section = data.get("portal", {})
    if not isinstance(portal_section, dict):
        raise ConfigError("[portal] must be a table")

    name = str(portal_section.get("name", "private-zone")).strip()
    if not name:
        raise ConfigError("portal.name must be a non-empty string")

    port = portal_section.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"portal.port must be a valid TCP port, got {port!r}")

    return PortalConfig(
        name=name,
        port=port,
        logging=_parse_logging(portal_section.get("logging", {})),
        sync=_parse_sync(portal_section.get("sync", {})),
        google=_parse_provider_app(portal_section.get("google", {}), env_prefix="GOOGLE"),
        microsoft=_parse_provider_app(
            portal_section.get("microsoft", {}), env_prefix="MICROSOFT"
        ),
    )


def load_config(path: Path | None = None) -> PortalConfig:
    """Load and validate portal configuration.

    Parameters
    ----------
    path:
        Path to a ``portal.toml`` file.  Defaults to ``$PORTAL_CONFIG`` or
        ``./portal.toml``.  When the default file does not exist the built-in
        defaults are returned; an explicitly given path must exist.

    Returns
    -------
    PortalConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid fields.
    """
    explicit = path is not None
    if path is None:
        env_path = os.environ.get("PORTAL_CONFIG")
        explicit = bool(env_path)
        path = Path(env_path) if env_path else Path.cwd() / DEFAULT_CONFIG_FILENAME

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return parse_config({})

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
