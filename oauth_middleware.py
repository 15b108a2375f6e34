"""
oauth_middleware.py — ASGI front door for the OAuth Authorization Server.

Intercepts the OAuth endpoints before they reach the proxied backends:

  /.well-known/oauth-authorization-server[/<server>]  — RFC 8414 metadata
  /.well-known/oauth-protected-resource/<server>      — RFC 9728 metadata
  /oauth/register                                     — RFC 7591 registration
  /oauth/authorize                                    — GET login form, POST login
  /oauth/token                                        — code / refresh exchange

Every other path (except OPEN_PATHS) needs a valid Bearer token. The
token's username is put in scope["state"] under USERNAME_STATE_KEY for the
per-backend user filter downstream.
"""

import json
import logging
import urllib.parse

from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Receive, Scope, Send

from client_ip import get_client_ip
from oauth_server import OAuthError, OAuthServer, _audit

logger = logging.getLogger("mcp-proxy.oauth")

USERNAME_STATE_KEY = "username"
CLIENT_ID_STATE_KEY = "oauth_client_id"

AS_METADATA_PATH = "/.well-known/oauth-authorization-server"
RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"
REGISTER_PATH = "/oauth/register"
AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"


# ---------------------------------------------------------------------------
# ASGI helpers
# ---------------------------------------------------------------------------

async def _read_body(receive: Receive) -> bytes:
    body = b""
    while True:
        message = await receive()
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break
    return body


async def _send_json(send: Send, status: int, data: dict, extra_headers: list | None = None) -> None:
    body = json.dumps(data).encode()
    headers = [
        [b"content-type", b"application/json"],
        [b"content-length", str(len(body)).encode()],
        [b"cache-control", b"no-store"],
    ]
    if extra_headers:
        headers.extend(extra_headers)
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


async def _send_html(send: Send, status: int, html: str) -> None:
    body = html.encode()
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            [b"content-type", b"text/html; charset=utf-8"],
            [b"content-length", str(len(body)).encode()],
            [b"cache-control", b"no-store"],
        ],
    })
    await send({"type": "http.response.body", "body": body})


async def _send_error(send: Send, error: OAuthError, extra_headers: list | None = None) -> None:
    await _send_json(send, error.status_code, error.to_dict(), extra_headers)


def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded body."""
    return _parse_qs(body.decode("utf-8", errors="replace"))


def _parse_json(body: bytes) -> dict:
    try:
        data = json.loads(body)
    except ValueError:
        raise OAuthError("invalid_request", "Invalid JSON request")
    if not isinstance(data, dict):
        raise OAuthError("invalid_request", "Invalid JSON request")
    return data


def _header(scope: Scope, name: bytes) -> str:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return ""


def _subpath(path: str, prefix: str) -> str:
    """First path segment after prefix: /prefix/<name>/... -> name."""
    rest = path[len(prefix):].strip("/")
    return rest.split("/", 1)[0] if rest else ""


# ---------------------------------------------------------------------------
# OAuthMiddleware
# ---------------------------------------------------------------------------

class OAuthMiddleware:
    """ASGI middleware serving the OAuth endpoints and enforcing Bearer auth."""

    OPEN_PATHS = {"/health", "/paths"}

    def __init__(self, app: ASGIApp, oauth_server: OAuthServer):
        self.app = app
        self.oauth = oauth_server

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "GET")

        try:
            if path == AS_METADATA_PATH or path.startswith(AS_METADATA_PATH + "/"):
                self._require_method(method, "GET")
                server_name = _subpath(path, AS_METADATA_PATH)
                await _send_json(send, 200, self.oauth.server_metadata(server_name))
                return

            if path == RESOURCE_METADATA_PATH or path.startswith(RESOURCE_METADATA_PATH + "/"):
                self._require_method(method, "GET")
                server_name = _subpath(path, RESOURCE_METADATA_PATH)
                await _send_json(send, 200, self.oauth.protected_resource_metadata(server_name))
                return

            if path == REGISTER_PATH:
                self._require_method(method, "POST")
                await self._handle_register(scope, receive, send)
                return

            if path == AUTHORIZE_PATH:
                self._require_method(method, "GET", "POST")
                if method == "GET":
                    params = _parse_qs(scope.get("query_string", b"").decode("latin-1"))
                    await _send_html(send, 200, self.oauth.begin_authorization(params))
                else:
                    form = _parse_form(await _read_body(receive))
                    _, html = await run_in_threadpool(self.oauth.login, form)
                    await _send_html(send, 200, html)
                return

            if path == TOKEN_PATH:
                self._require_method(method, "POST")
                await self._handle_token(scope, receive, send)
                return
        except OAuthError as e:
            await _send_error(send, e)
            return

        if path in self.OPEN_PATHS:
            await self.app(scope, receive, send)
            return

        await self._authenticate(scope, receive, send)

    # --- Internal helpers ---

    @staticmethod
    def _require_method(method: str, *allowed: str) -> None:
        if method not in allowed:
            raise OAuthError("method_not_allowed", status_code=405)

    def _www_authenticate(self, path: str) -> list:
        server_name = path.strip("/").split("/", 1)[0]
        rm_url = f"{self.oauth.base_url}{RESOURCE_METADATA_PATH}"
        if server_name:
            rm_url += "/" + urllib.parse.quote(server_name)
        return [[b"www-authenticate", f'Bearer resource_metadata="{rm_url}"'.encode()]]

    async def _authenticate(self, scope: Scope, receive: Receive, send: Send) -> None:
        path = scope.get("path", "")
        auth = _header(scope, b"authorization")
        if not auth.lower().startswith("bearer "):
            await _send_error(send, OAuthError("invalid_token", "Bearer token required", 401),
                              self._www_authenticate(path))
            return

        token = self.oauth.validate_token(auth[7:].strip())
        if token is None:
            _audit("token_rejected", path=path, ip=get_client_ip(scope))
            await _send_error(send, OAuthError("invalid_token", "Invalid or expired token", 401),
                              self._www_authenticate(path))
            return

        state = scope.setdefault("state", {})
        state[USERNAME_STATE_KEY] = token.username
        state[CLIENT_ID_STATE_KEY] = token.client_id
        await self.app(scope, receive, send)

    # --- Endpoint handlers ---

    async def _handle_register(self, scope: Scope, receive: Receive, send: Send) -> None:
        """RFC 7591 — Dynamic Client Registration."""
        client_ip = get_client_ip(scope)
        # IP gate before the body is even parsed.
        self.oauth.check_registration_ip(client_ip)
        data = _parse_json(await _read_body(receive))
        client = await run_in_threadpool(
            self.oauth.register_client,
            redirect_uris=data.get("redirect_uris"),
            grant_types=data.get("grant_types"),
            client_name=data.get("client_name", ""),
            client_ip=client_ip,
        )
        await _send_json(send, 201, {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "redirect_uris": client.redirect_uris,
            "grant_types": client.grant_types,
            "client_id_issued_at": int(client.created_at),
        })

    async def _handle_token(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Exchange an authorization code or refresh token; JSON or form body."""
        body = await _read_body(receive)
        if "application/json" in _header(scope, b"content-type"):
            params = _parse_json(body)
        else:
            params = _parse_form(body)
        # Token issuance persists a snapshot; keep the file write off the event loop.
        response = await run_in_threadpool(self.oauth.exchange_token, params)
        await _send_json(send, 200, response)
