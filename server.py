#!/usr/bin/env python3
"""
MCP Proxy — several backend MCP servers behind one HTTP endpoint.

Each URL backend from the config is mounted at /<name>/ and requests are
forwarded to it, with the response streamed back. When the front-facing
transport is streamable-http and oauth2 is enabled, the app sits behind the
OAuth 2.1 Authorization Server in oauth_middleware.py; the authenticated
username then drives the per-backend userFilter. Without OAuth, a backend
with authTokens only accepts requests bearing one of those static tokens.
"""

import argparse
import hmac
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import ASGIApp

from oauth_middleware import USERNAME_STATE_KEY, OAuthMiddleware
from oauth_server import OAuthServer
from proxy_config import BackendConfig, ConfigError, ProxyConfig, load_config

logger = logging.getLogger("mcp-proxy")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]
DEFAULT_BACKEND_TIMEOUT = 300.0

# Hop-by-hop headers (RFC 9110 §7.6.1) plus ones the proxy recomputes.
_STRIPPED_REQUEST_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade", "host", "content-length",
}
_STRIPPED_RESPONSE_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade", "content-length",
}


# ---------------------------------------------------------------------------
# Backend forwarding
# ---------------------------------------------------------------------------

class BackendProxy:
    """Forward /<name>/<rest> to <backend url>/<rest>, enforcing userFilter."""

    def __init__(self, backend: BackendConfig, client: httpx.AsyncClient,
                 strip_authorization: bool = False):
        self.backend = backend
        self.client = client
        self.strip_authorization = strip_authorization

    def _target_url(self, request: Request) -> str:
        url = self.backend.url.rstrip("/")
        rest = request.path_params.get("path", "")
        if rest:
            url += "/" + rest
        if request.url.query:
            url += "?" + request.url.query
        return url

    def _request_headers(self, request: Request) -> dict[str, str]:
        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in _STRIPPED_REQUEST_HEADERS
        }
        if self.strip_authorization:
            # The proxy's own bearer token is not the backend's credential.
            headers.pop("authorization", None)
        headers.update(self.backend.headers)
        return headers

    def _has_valid_auth_token(self, request: Request) -> bool:
        """Static authTokens check; the OAuth middleware replaces it when enabled."""
        tokens = self.backend.options.auth_tokens
        if self.strip_authorization or not tokens:
            return True
        auth = request.headers.get("authorization", "")
        if auth.startswith("Bearer "):
            auth = auth[7:]
        presented = auth.strip().encode()
        if not presented:
            return False
        # Compare against every entry so timing does not depend on the match position.
        matched = False
        for token in tokens:
            matched |= hmac.compare_digest(token.encode(), presented)
        return matched

    async def handle(self, request: Request) -> Response:
        name = self.backend.name
        if not self._has_valid_auth_token(request):
            logger.info("<%s> Rejected request without a valid auth token", name)
            return JSONResponse(
                {"error": "invalid_token", "error_description": "Unauthorized"},
                status_code=401,
            )

        username = getattr(request.state, USERNAME_STATE_KEY, "")
        user_filter = self.backend.options.user_filter
        if user_filter is not None and not user_filter.is_user_allowed(username):
            logger.info("<%s> User %s denied by userFilter", name, username)
            return JSONResponse(
                {"error": "access_denied", "error_description": "User not allowed for this server"},
                status_code=403,
            )

        if self.backend.options.log_enabled:
            logger.info("<%s> Request [%s] %s", name, request.method, request.url.path)

        upstream_request = self.client.build_request(
            request.method,
            self._target_url(request),
            headers=self._request_headers(request),
            content=await request.body(),
            timeout=self.backend.timeout or DEFAULT_BACKEND_TIMEOUT,
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("<%s> Backend request failed: %s", name, e)
            return JSONResponse(
                {"error": "bad_gateway", "error_description": "Backend unavailable"},
                status_code=502,
            )

        headers = {
            k: v for k, v in upstream.headers.items()
            if k.lower() not in _STRIPPED_RESPONSE_HEADERS
        }
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )


# ---------------------------------------------------------------------------
# App assembly
# ---------------------------------------------------------------------------

def build_app(
    config: ProxyConfig,
    oauth_server: OAuthServer | None = None,
    client: httpx.AsyncClient | None = None,
) -> ASGIApp:
    """Assemble the proxy: backend routes, /health, /paths, optional OAuth."""
    client = client or httpx.AsyncClient()
    routes: list[Route] = []
    paths: dict[str, str] = {
        "/health": "Health check endpoint",
        "/paths": "List of available API paths",
    }

    for name, backend in config.servers.items():
        if not backend.url:
            logger.warning("<%s> Command backends are not served over HTTP; skipping", name)
            continue
        proxy = BackendProxy(backend, client, strip_authorization=oauth_server is not None)
        routes.append(Route(f"/{name}", proxy.handle, methods=PROXY_METHODS))
        routes.append(Route(f"/{name}/{{path:path}}", proxy.handle, methods=PROXY_METHODS))
        paths[f"/{name}/"] = f"Proxy endpoint for {name} MCP service"
        logger.info("<%s> Mounted at /%s/ -> %s", name, name, backend.url)

    async def health(request: Request) -> Response:
        return PlainTextResponse("OK")

    async def list_paths(request: Request) -> Response:
        return JSONResponse(paths)

    routes.append(Route("/health", health, methods=["GET"]))
    routes.append(Route("/paths", list_paths, methods=["GET"]))

    @asynccontextmanager
    async def lifespan(app: Starlette):
        try:
            yield
        finally:
            logger.info("Shutting down, closing backend connections...")
            await client.aclose()
            if oauth_server is not None:
                oauth_server.close()

    app: ASGIApp = Starlette(routes=routes, lifespan=lifespan)
    if oauth_server is not None:
        app = OAuthMiddleware(app, oauth_server)
        logger.info("OAuth 2.1 authorization enabled (issuer %s)", oauth_server.base_url)
    return app


def _configure_audit_log(path: Path) -> None:
    """Audit logger: JSON lines next to the OAuth persistence file."""
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
    except OSError as e:
        logger.warning("Could not open audit log %s: %s", path, e)
        return
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("mcp-proxy-audit")
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="MCP proxy server")
    parser.add_argument("--config", default=os.environ.get("MCP_PROXY_CONFIG", "config.yaml"),
                        help="path to the JSON or YAML config file")
    parser.add_argument("--host", help="override the host part of mcpProxy.addr")
    parser.add_argument("--port", type=int, help="override the port part of mcpProxy.addr")
    parser.add_argument("--log-level", default="info",
                        choices=["debug", "info", "warning", "error"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        host, port = config.listen_address()
    except ConfigError as e:
        raise SystemExit(f"Failed to load config: {e}")

    oauth_server = None
    if config.oauth2 is not None:
        oauth_server = OAuthServer(config.base_url, config.oauth2)
        _configure_audit_log(oauth_server.store.path.parent / "audit.log")
    elif config.options.oauth2 is not None and config.options.oauth2.enabled:
        logger.warning("oauth2 is only available with the streamable-http transport; "
                       "serving without OAuth")

    app = build_app(config, oauth_server)

    host = args.host or host
    port = args.port or port
    logger.info("%s %s: starting HTTP server on %s:%d",
                config.name, config.version, host, port)
    uvicorn_config = uvicorn.Config(
        app, host=host, port=port, log_level=args.log_level,
        proxy_headers=True, forwarded_allow_ips="*",
    )
    uvicorn.Server(uvicorn_config).run()


if __name__ == "__main__":
    main()
