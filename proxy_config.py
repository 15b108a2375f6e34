"""
proxy_config.py — configuration loading for the MCP proxy.

The config file is JSON or YAML (YAML is a superset, so both go through
yaml.safe_load). Two top-level keys:

  mcpProxy    — front-facing server: baseURL, addr, name, version, type,
                and proxy-wide options (oauth2, userFilter, logEnabled)
  mcpServers  — backend servers keyed by name; their options inherit the
                proxy-wide oauth2 / userFilter / logEnabled / authTokens
                when unset
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("mcp-proxy.config")

DEFAULT_TOKEN_EXPIRATION_MINUTES = 60


class ConfigError(Exception):
    """Raised when the proxy configuration is missing or malformed."""


class ServerType(Enum):
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"


class UserFilterMode(Enum):
    ALLOW = "allow"
    BLOCK = "block"


# ---------------------------------------------------------------------------
# Option blocks
# ---------------------------------------------------------------------------

@dataclass
class UserFilterConfig:
    mode: UserFilterMode | None = None
    list: list[str] = field(default_factory=list)

    def is_user_allowed(self, username: str) -> bool:
        """Allow mode: user must be listed. Block mode: user must not be."""
        if not username:
            return True
        listed = username in self.list
        if self.mode is UserFilterMode.ALLOW:
            return listed
        if self.mode is UserFilterMode.BLOCK:
            return not listed
        return True


@dataclass
class OAuth2Config:
    enabled: bool = False
    users: dict[str, str] = field(default_factory=dict)
    persistence_dir: str = ""
    allowed_ips: list[str] = field(default_factory=list)
    token_expiration_minutes: int = DEFAULT_TOKEN_EXPIRATION_MINUTES
    template_dir: str = ""

    @property
    def oauth_template_dir(self) -> Path:
        """Directory holding authorize.html / success.html overrides."""
        if self.template_dir:
            return Path(self.template_dir) / "oauth"
        return Path("templates") / "oauth"


@dataclass
class Options:
    log_enabled: bool | None = None
    oauth2: OAuth2Config | None = None
    user_filter: UserFilterConfig | None = None
    # Static bearer tokens for the backend route; used when OAuth is off.
    auth_tokens: list[str] | None = None


@dataclass
class BackendConfig:
    name: str
    url: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    options: Options = field(default_factory=Options)


@dataclass
class ProxyConfig:
    base_url: str
    addr: str = ":9090"
    name: str = "mcp-proxy"
    version: str = "1.0.0"
    type: ServerType = ServerType.SSE
    options: Options = field(default_factory=Options)
    servers: dict[str, BackendConfig] = field(default_factory=dict)

    @property
    def oauth2(self) -> OAuth2Config | None:
        """OAuth only fronts the streaming HTTP transport."""
        oauth2 = self.options.oauth2
        if oauth2 is None or not oauth2.enabled:
            return None
        if self.type is not ServerType.STREAMABLE_HTTP:
            return None
        return oauth2

    def listen_address(self) -> tuple[str, int]:
        host, _, port = self.addr.rpartition(":")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError:
            raise ConfigError(f"Invalid addr '{self.addr}': expected host:port")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_user_filter(raw: Any) -> UserFilterConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("userFilter must be an object")
    mode_str = raw.get("mode") or None
    try:
        mode = UserFilterMode(mode_str) if mode_str else None
    except ValueError:
        raise ConfigError(
            f"Invalid userFilter mode '{mode_str}'. "
            f"Valid options: {', '.join(m.value for m in UserFilterMode)}"
        )
    return UserFilterConfig(mode=mode, list=[str(u) for u in raw.get("list") or []])


def _parse_oauth2(raw: Any) -> OAuth2Config | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("oauth2 must be an object")
    users = raw.get("users") or {}
    if not isinstance(users, dict):
        raise ConfigError("oauth2.users must map username to password")
    minutes = raw.get("tokenExpirationMinutes") or 0
    if not isinstance(minutes, int) or minutes <= 0:
        minutes = DEFAULT_TOKEN_EXPIRATION_MINUTES
    return OAuth2Config(
        enabled=bool(raw.get("enabled", False)),
        users={str(k): str(v) for k, v in users.items()},
        persistence_dir=raw.get("persistenceDir") or "",
        allowed_ips=[str(ip) for ip in raw.get("allowedIPs") or []],
        token_expiration_minutes=minutes,
        template_dir=raw.get("templateDir") or "",
    )


def _parse_options(raw: Any) -> Options:
    if raw is None:
        return Options()
    if not isinstance(raw, dict):
        raise ConfigError("options must be an object")
    log_enabled = raw.get("logEnabled")
    auth_tokens = raw.get("authTokens")
    if auth_tokens is not None and not isinstance(auth_tokens, list):
        raise ConfigError("authTokens must be a list of strings")
    return Options(
        log_enabled=bool(log_enabled) if log_enabled is not None else None,
        oauth2=_parse_oauth2(raw.get("oauth2")),
        user_filter=_parse_user_filter(raw.get("userFilter")),
        auth_tokens=[str(t) for t in auth_tokens] if auth_tokens is not None else None,
    )


def _parse_backend(name: str, raw: Any, defaults: Options) -> BackendConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid server '{name}': expected an object")
    if not raw.get("url") and not raw.get("command"):
        raise ConfigError(f"Invalid server '{name}': 'url' or 'command' is required")

    options = _parse_options(raw.get("options"))
    if options.oauth2 is None:
        options.oauth2 = defaults.oauth2
    if options.user_filter is None:
        options.user_filter = defaults.user_filter
    if options.log_enabled is None:
        options.log_enabled = defaults.log_enabled
    if options.auth_tokens is None:
        options.auth_tokens = defaults.auth_tokens

    timeout = raw.get("timeout")
    return BackendConfig(
        name=name,
        url=raw.get("url") or "",
        command=raw.get("command") or "",
        args=[str(a) for a in raw.get("args") or []],
        env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
        headers={str(k): str(v) for k, v in (raw.get("headers") or {}).items()},
        timeout=float(timeout) if timeout else None,
        options=options,
    )


def parse_config(raw: Any) -> ProxyConfig:
    """Build a ProxyConfig from the decoded config document."""
    if not isinstance(raw, dict):
        raise ConfigError("Config must be an object")
    proxy = raw.get("mcpProxy")
    if not isinstance(proxy, dict):
        raise ConfigError("mcpProxy is required")

    type_str = proxy.get("type") or ServerType.SSE.value
    try:
        server_type = ServerType(type_str)
    except ValueError:
        raise ConfigError(
            f"Invalid mcpProxy type '{type_str}'. "
            f"Valid options: {', '.join(t.value for t in ServerType)}"
        )

    options = _parse_options(proxy.get("options"))
    base_url = os.environ.get("MCP_PROXY_BASE_URL") or proxy.get("baseURL") or ""
    if not base_url:
        raise ConfigError("mcpProxy.baseURL is required")

    servers = {
        name: _parse_backend(name, cfg, options)
        for name, cfg in (raw.get("mcpServers") or {}).items()
    }
    return ProxyConfig(
        base_url=base_url.rstrip("/"),
        addr=proxy.get("addr") or ":9090",
        name=proxy.get("name") or "mcp-proxy",
        version=str(proxy.get("version") or "1.0.0"),
        type=server_type,
        options=options,
        servers=servers,
    )


def load_config(config_path: Path | str) -> ProxyConfig:
    """Load and validate the proxy config file."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config not found: {config_path}")
    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}")
    config = parse_config(raw)
    logger.info("Loaded config from %s: %d backend(s), type=%s",
                config_path, len(config.servers), config.type.value)
    return config
