"""
oauth_store.py — durable JSON snapshot of OAuth clients and access tokens.

The whole state is rewritten after every mutation:

  {
    "clients":      {client_id: {...}},
    "accessTokens": {token: {...}},
    "savedAt":      "2025-01-01T00:00:00+00:00"
  }

Older deployments wrote a bare {client_id: {...}} map with no tokens; that
format is still read. Authorization codes are never persisted.
"""

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("mcp-proxy.store")

PERSISTENCE_FILENAME = "oauth_clients.json"
DEFAULT_PERSISTENCE_DIR = Path.home() / ".mcpproxy"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class OAuthClient:
    client_id: str
    client_secret: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code"])
    client_name: str = ""
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uris": self.redirect_uris,
            "grant_types": self.grant_types,
            "client_id_issued_at": _format_time(self.created_at),
            "client_name": self.client_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthClient":
        return cls(
            client_id=data["client_id"],
            client_secret=data.get("client_secret") or "",
            redirect_uris=list(data.get("redirect_uris") or []),
            grant_types=list(data.get("grant_types") or ["authorization_code"]),
            client_name=data.get("client_name") or "",
            created_at=_parse_time(data.get("client_id_issued_at")),
        )


@dataclass
class AccessToken:
    token: str
    refresh_token: str
    client_id: str
    expires_at: float
    scope: str = ""
    resource: str = ""
    username: str = ""

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "scope": self.scope,
            "resource": self.resource,
            "username": self.username,
            "expires_at": _format_time(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessToken":
        """Read snake_case keys, or the CamelCase keys of older snapshots."""
        def get(key: str, alias: str) -> Any:
            return data[key] if key in data else data.get(alias)

        token = get("token", "Token")
        refresh_token = get("refresh_token", "RefreshToken")
        client_id = get("client_id", "ClientID")
        if not token or not refresh_token or not client_id:
            raise KeyError("token, refresh_token and client_id are required")
        return cls(
            token=token,
            refresh_token=refresh_token,
            client_id=client_id,
            expires_at=_parse_time(get("expires_at", "ExpiresAt")),
            scope=get("scope", "Scope") or "",
            resource=get("resource", "Resource") or "",
            username=get("username", "Username") or "",
        )


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

_FRACTION_RE = re.compile(r"\.(\d+)")


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _six_digit_fraction(match: re.Match) -> str:
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits.
    return "." + (match.group(1) + "000000")[:6]


def _parse_time(value: Any) -> float:
    """Accept epoch seconds or an ISO 8601 / RFC 3339 timestamp."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = _FRACTION_RE.sub(_six_digit_fraction, str(value), count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ---------------------------------------------------------------------------
# OAuthStore
# ---------------------------------------------------------------------------

def _resolve_path(persistence_dir: str | Path | None) -> Path:
    directory = Path(persistence_dir) if persistence_dir else DEFAULT_PERSISTENCE_DIR
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Could not create persistence directory %s: %s; "
                       "falling back to working directory", directory, e)
        return Path(PERSISTENCE_FILENAME)
    return directory / PERSISTENCE_FILENAME


class OAuthStore:
    """Whole-file JSON persistence for registered clients and live tokens."""

    def __init__(self, persistence_dir: str | Path | None = None):
        self.path = _resolve_path(persistence_dir)

    def load(self) -> tuple[dict[str, OAuthClient], dict[str, AccessToken]]:
        """Read the snapshot, dropping tokens that have already expired.

        Unreadable or malformed files are logged and yield empty state.
        """
        if not self.path.exists():
            return {}, {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.error("Failed to read persistence file %s: %s", self.path, e)
            return {}, {}

        if not isinstance(data, dict):
            logger.error("Malformed persistence file %s: expected an object", self.path)
            return {}, {}

        if isinstance(data.get("clients"), dict):
            clients = self._load_entries(data["clients"], OAuthClient.from_dict, "client")
            raw_tokens = data.get("accessTokens")
            stored = self._load_entries(
                raw_tokens if isinstance(raw_tokens, dict) else {},
                AccessToken.from_dict, "access token",
            )
            now = time.time()
            tokens = {tok: t for tok, t in stored.items() if not t.is_expired(now)}
            logger.info("Loaded %d clients, %d active access tokens "
                        "(%d expired dropped)", len(clients), len(tokens),
                        len(stored) - len(tokens))
            return clients, tokens

        clients = self._load_entries(data, OAuthClient.from_dict, "client")
        logger.info("Loaded %d persisted clients (legacy format)", len(clients))
        return clients, {}

    def _load_entries(self, raw: dict[str, Any], parse, kind: str) -> dict[str, Any]:
        """Parse each entry on its own; a bad one is logged and skipped."""
        entries = {}
        for key, value in raw.items():
            try:
                entries[key] = parse(value)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed %s entry in %s: %s", kind, self.path, e)
        return entries

    def save(self, clients: dict[str, OAuthClient],
             tokens: dict[str, AccessToken]) -> bool:
        """Atomically rewrite the snapshot with owner-only permissions.

        Returns False (after logging) when the write fails.
        """
        snapshot = {
            "clients": {cid: c.to_dict() for cid, c in clients.items()},
            "accessTokens": {tok: t.to_dict() for tok, t in tokens.items()},
            "savedAt": _format_time(time.time()),
        }
        directory = self.path.parent
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{PERSISTENCE_FILENAME}.", suffix=".tmp",
            )
            with os.fdopen(fd, "w") as f:
                os.fchmod(f.fileno(), 0o600)
                json.dump(snapshot, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            logger.error("Failed to save persistence file %s: %s", self.path, e)
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            return False

        logger.info("Saved %d clients, %d access tokens", len(clients), len(tokens))
        return True
