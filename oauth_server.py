"""
oauth_server.py — OAuth 2.1 Authorization Server for the MCP proxy.

Username/password login against the configured user directory. Access
tokens are opaque random strings held server-side, with single-use
refresh tokens rotated on every refresh.

Flow:
  /oauth/register   — RFC 7591 dynamic client registration (redirect URI
                      allowlist, optional client IP allowlist)
  /oauth/authorize  — GET renders the login page, POST checks credentials
                      and issues a 10-minute single-use code bound to the
                      PKCE challenge
  /oauth/token      — authorization_code and refresh_token grants

Clients and access tokens survive restarts through OAuthStore; codes are
in-memory only. OAuthServer is transport-agnostic: handlers in
oauth_middleware.py translate HTTP to these calls and OAuthError back to
{error, error_description} bodies.
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from client_ip import is_ip_allowed
from oauth_store import AccessToken, OAuthClient, OAuthStore
from oauth_templates import TemplateRenderer, create_renderer
from proxy_config import DEFAULT_TOKEN_EXPIRATION_MINUTES, OAuth2Config

logger = logging.getLogger("mcp-proxy.oauth")
audit_logger = logging.getLogger("mcp-proxy-audit")

AUTH_CODE_TTL = 600  # 10 minutes
CLIENT_ID_LENGTH = 32
CLIENT_SECRET_LENGTH = 48
AUTH_CODE_LENGTH = 32
TOKEN_LENGTH = 48

ALLOWED_REDIRECT_URIS = (
    "https://claude.ai/api/mcp/auth_callback",
    "https://claude.com/api/mcp/auth_callback",
)
DEFAULT_CLIENT_NAME = "Claude"
DEFAULT_RESOURCE_NAME = "MCP Proxy"
SUPPORTED_SCOPES = ["mcp"]
LOGIN_FAILED_MESSAGE = "Invalid username or password. Please try again."


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _random_string(length: int) -> str:
    return secrets.token_urlsafe(length)[:length]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """An OAuth protocol error, rendered as {error, error_description}."""

    STATUS_CODES = {
        "invalid_request": 400,
        "invalid_client": 401,
        "invalid_grant": 400,
        "unsupported_grant_type": 400,
        "invalid_redirect_uri": 400,
        "access_denied": 403,
        "server_error": 500,
    }

    def __init__(self, error: str, description: str = "", status_code: int | None = None):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
        self.status_code = status_code or self.STATUS_CODES.get(error, 400)

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    expires_at: float
    scope: str = ""
    code_challenge: str = ""
    resource: str = ""
    username: str = ""


@dataclass
class TokenRequest:
    grant_type: str = ""
    code: str = ""
    redirect_uri: str = ""
    client_id: str = ""
    code_verifier: str = ""
    refresh_token: str = ""
    resource: str = ""

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "TokenRequest":
        def get(key: str) -> str:
            value = params.get(key)
            return value if isinstance(value, str) else ""
        return cls(**{name: get(name) for name in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------

def pkce_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _verify_pkce(verifier: str, challenge: str) -> bool:
    return hmac.compare_digest(pkce_challenge(verifier).encode(), challenge.encode())


def resource_display_name(resource: str) -> str:
    """Last non-empty path segment of the resource URI."""
    if resource:
        path = urllib.parse.urlparse(resource).path.strip("/")
        last = path.split("/")[-1] if path else ""
        if last:
            return last
    return DEFAULT_RESOURCE_NAME


def build_redirect_url(redirect_uri: str, **params: str) -> str:
    """Merge params into redirect_uri's query string, skipping empty values."""
    parsed = urllib.parse.urlsplit(redirect_uri)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query = [(k, v) for k, v in query if k not in params]
    query.extend((k, v) for k, v in params.items() if v)
    return urllib.parse.urlunsplit(parsed._replace(query=urllib.parse.urlencode(query)))


# ---------------------------------------------------------------------------
# OAuthServer
# ---------------------------------------------------------------------------

class OAuthServer:
    """Authorization Server state: clients, codes and tokens behind one lock.

    Persistence runs after the lock is released; each write is a full
    snapshot, so concurrent writers cannot corrupt the file.
    """

    def __init__(
        self,
        base_url: str,
        config: OAuth2Config | None = None,
        store: OAuthStore | None = None,
        renderer: TemplateRenderer | None = None,
        allowed_redirect_uris: tuple[str, ...] = ALLOWED_REDIRECT_URIS,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or OAuth2Config(enabled=True)
        self.store = store or OAuthStore(self.config.persistence_dir or None)
        self.renderer = renderer or create_renderer(self.config.oauth_template_dir)
        self.allowed_redirect_uris = allowed_redirect_uris

        minutes = self.config.token_expiration_minutes
        if minutes <= 0:
            minutes = DEFAULT_TOKEN_EXPIRATION_MINUTES
        elif minutes != DEFAULT_TOKEN_EXPIRATION_MINUTES:
            logger.info("Using custom token expiration: %d minutes", minutes)
        self.token_expiration = minutes * 60

        self._lock = threading.Lock()
        self._cleanup = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oauth-cleanup")
        self._closed = False
        self.clients: dict[str, OAuthClient] = {}
        self.auth_codes: dict[str, AuthorizationCode] = {}
        self.access_tokens: dict[str, AccessToken] = {}

        self.clients, self.access_tokens = self.store.load()

    def close(self) -> None:
        """Stop scheduling expiry cleanups and wait for pending ones."""
        with self._lock:
            self._closed = True
        self._cleanup.shutdown(wait=True)

    # --- Persistence ---

    def _persist(self) -> None:
        with self._lock:
            clients = dict(self.clients)
            tokens = dict(self.access_tokens)
        self.store.save(clients, tokens)

    # --- Metadata ---

    def server_metadata(self, server_name: str = "") -> dict[str, Any]:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        metadata = {
            "issuer": self.base_url,
            "authorization_endpoint": f"{self.base_url}/oauth/authorize",
            "token_endpoint": f"{self.base_url}/oauth/token",
            "registration_endpoint": f"{self.base_url}/oauth/register",
            "scopes_supported": SUPPORTED_SCOPES,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
            "code_challenge_methods_supported": ["S256"],
        }
        if server_name:
            resource = f"{self.base_url}/{server_name}"
            metadata["issuer"] = resource
            metadata["authorization_endpoint"] = (
                f"{self.base_url}/oauth/authorize?"
                + urllib.parse.urlencode({"resource": resource})
            )
        return metadata

    def protected_resource_metadata(self, server_name: str) -> dict[str, Any]:
        """RFC 9728 — OAuth Protected Resource Metadata."""
        if not server_name:
            raise OAuthError("invalid_request", "Server name required")
        resource = f"{self.base_url}/{server_name}"
        return {
            "resource": resource,
            "authorization_servers": [self.base_url],
            "scopes_supported": SUPPORTED_SCOPES,
            "bearer_methods_supported": ["header"],
            "resource_documentation": f"{resource}/mcp",
        }

    # --- Client registry ---

    def check_registration_ip(self, client_ip: str | None) -> None:
        """Enforce allowed_ips; an unresolvable address is denied."""
        if self.config.allowed_ips and not is_ip_allowed(client_ip, self.config.allowed_ips):
            _audit("register_rejected", ip=client_ip, reason="ip_not_allowed")
            logger.warning("Client registration blocked: IP %s not in allowlist", client_ip)
            raise OAuthError("access_denied", "Client registration not allowed from this IP")

    def register_client(
        self,
        redirect_uris: Any,
        grant_types: Any = None,
        client_name: Any = "",
        client_ip: str | None = None,
    ) -> OAuthClient:
        """RFC 7591 — register a client restricted to allowlisted callbacks."""
        self.check_registration_ip(client_ip)

        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise OAuthError("invalid_redirect_uri", "At least one redirect URI is required")
        for uri in redirect_uris:
            if uri not in self.allowed_redirect_uris:
                _audit("register_rejected", ip=client_ip, reason="redirect_uri_not_allowed")
                logger.warning("Client registration failed: redirect URI not allowed: %r", uri)
                raise OAuthError("invalid_redirect_uri", "Redirect URI not allowed")

        if isinstance(grant_types, list) and grant_types:
            grants = [str(g) for g in grant_types]
        else:
            grants = ["authorization_code"]

        client = OAuthClient(
            client_id=_random_string(CLIENT_ID_LENGTH),
            client_secret=_random_string(CLIENT_SECRET_LENGTH),
            redirect_uris=list(redirect_uris),
            grant_types=grants,
            client_name=client_name if isinstance(client_name, str) else "",
            created_at=time.time(),
        )
        with self._lock:
            self.clients[client.client_id] = client
        self._persist()

        _audit("client_registered", client_id=client.client_id,
               client_name=client.client_name, ip=client_ip)
        logger.info("Registered client %s (%d redirect URIs)",
                    client.client_id, len(client.redirect_uris))
        return client

    def get_client(self, client_id: str) -> OAuthClient | None:
        with self._lock:
            return self.clients.get(client_id)

    # --- Authorization flow ---

    def authorization_page(self, params: dict[str, str], error_message: str = "") -> str:
        """Render the login form for a (pre-validated) authorization request."""
        client_id = params.get("client_id", "")
        client = self.get_client(client_id)
        resource = params.get("resource", "")
        return self.renderer.render_authorize(
            client_id=client_id,
            client_name=(client.client_name if client and client.client_name
                         else DEFAULT_CLIENT_NAME),
            resource_name=resource_display_name(resource),
            redirect_uri=params.get("redirect_uri", ""),
            response_type=params.get("response_type", "code"),
            scope=params.get("scope", ""),
            state=params.get("state", ""),
            code_challenge=params.get("code_challenge", ""),
            resource=resource,
            error_message=error_message,
        )

    def begin_authorization(self, params: dict[str, str]) -> str:
        """GET /authorize: validate the request and render the login page.

        The client is deliberately not looked up here; unknown clients fail
        at the token endpoint with invalid_client, prompting re-registration.
        """
        if (not params.get("client_id") or not params.get("redirect_uri")
                or params.get("response_type") != "code"):
            raise OAuthError("invalid_request", "Missing or invalid required parameters")
        logger.info("Authorization request for client %s", params["client_id"])
        return self.authorization_page(params)

    def authenticate(self, username: str, password: str) -> bool:
        """Constant-time password check against the configured users."""
        if not self.config.users:
            raise OAuthError("server_error", "Authentication not configured")
        expected = self.config.users.get(username)
        # Unknown users still pay for a comparison.
        candidate = expected if expected is not None else secrets.token_urlsafe(16)
        matched = hmac.compare_digest(candidate.encode(), password.encode())
        return expected is not None and matched

    def login(self, form: dict[str, str]) -> tuple[bool, str]:
        """POST /authorize: returns (authenticated, html).

        On failure the html is the login form again with a generic error;
        on success it is the page redirecting back to the client with a code.
        """
        if not form.get("client_id") or not form.get("redirect_uri"):
            raise OAuthError("invalid_request", "Missing client_id or redirect_uri")

        username = form.get("username", "")
        if not self.authenticate(username, form.get("password", "")):
            _audit("login_failed", client_id=form["client_id"], username=username)
            logger.info("Authentication failed for client %s", form["client_id"])
            return False, self.authorization_page(
                {**form, "response_type": "code"}, error_message=LOGIN_FAILED_MESSAGE,
            )

        code = self.issue_authorization_code(
            client_id=form["client_id"],
            redirect_uri=form["redirect_uri"],
            scope=form.get("scope", ""),
            code_challenge=form.get("code_challenge", ""),
            resource=form.get("resource", ""),
            username=username,
        )
        redirect_url = build_redirect_url(
            form["redirect_uri"], code=code.code, state=form.get("state", ""),
        )
        return True, self.renderer.render_success(redirect_url=redirect_url, username=username)

    def issue_authorization_code(
        self,
        client_id: str,
        redirect_uri: str,
        scope: str = "",
        code_challenge: str = "",
        resource: str = "",
        username: str = "",
    ) -> AuthorizationCode:
        now = time.time()
        code = AuthorizationCode(
            code=_random_string(AUTH_CODE_LENGTH),
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=now + AUTH_CODE_TTL,
            scope=scope,
            code_challenge=code_challenge,
            resource=resource,
            username=username,
        )
        with self._lock:
            expired = [c for c, ac in self.auth_codes.items() if ac.expires_at <= now]
            for c in expired:
                del self.auth_codes[c]
            self.auth_codes[code.code] = code
        _audit("authorize_approved", client_id=client_id, username=username)
        logger.info("User %s authenticated for client %s", username, client_id)
        return code

    # --- Token service ---

    def exchange_token(self, params: dict[str, Any]) -> dict[str, Any]:
        """POST /token: dispatch on grant_type."""
        request = TokenRequest.from_params(params)
        if request.grant_type == "refresh_token":
            return self.exchange_refresh_token(request)
        if request.grant_type == "authorization_code":
            return self.exchange_authorization_code(request)
        raise OAuthError(
            "unsupported_grant_type",
            "Only authorization_code and refresh_token grant types are supported",
        )

    def _require_client(self, client_id: str) -> None:
        if self.get_client(client_id) is None:
            logger.info("Unknown client %s at token endpoint", client_id)
            raise OAuthError("invalid_client", "Client not found")

    def exchange_authorization_code(self, request: TokenRequest) -> dict[str, Any]:
        if not request.code or not request.redirect_uri or not request.client_id:
            raise OAuthError("invalid_request", "Missing required parameters")
        self._require_client(request.client_id)

        # Single use: the code is gone whatever happens next.
        with self._lock:
            auth_code = self.auth_codes.pop(request.code, None)
        if auth_code is None:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")
        if time.time() >= auth_code.expires_at:
            raise OAuthError("invalid_grant", "Authorization code expired")
        if (auth_code.client_id != request.client_id
                or auth_code.redirect_uri != request.redirect_uri):
            _audit("token_rejected", client_id=request.client_id, reason="code_mismatch")
            raise OAuthError("invalid_grant", "Authorization code does not match client")
        if request.code_verifier and auth_code.code_challenge:
            if not _verify_pkce(request.code_verifier, auth_code.code_challenge):
                _audit("token_rejected", client_id=request.client_id, reason="pkce")
                raise OAuthError("invalid_grant", "PKCE verification failed")

        token = self._issue_token(
            client_id=request.client_id,
            scope=auth_code.scope,
            resource=request.resource or auth_code.resource,
            username=auth_code.username,
        )
        _audit("token_issued", client_id=token.client_id, username=token.username,
               expires_in=self.token_expiration)
        return self._token_response(token)

    def exchange_refresh_token(self, request: TokenRequest) -> dict[str, Any]:
        if not request.refresh_token:
            raise OAuthError("invalid_request", "Missing refresh_token")
        self._require_client(request.client_id)

        with self._lock:
            old = next((t for t in self.access_tokens.values()
                        if hmac.compare_digest(t.refresh_token.encode(),
                                            request.refresh_token.encode())),
                       None)
            if old is not None and old.client_id == request.client_id:
                del self.access_tokens[old.token]
        if old is None:
            raise OAuthError("invalid_grant", "Invalid refresh token")
        if old.client_id != request.client_id:
            _audit("refresh_rejected", client_id=request.client_id, reason="client_mismatch")
            raise OAuthError("invalid_grant", "Refresh token does not belong to client")

        token = self._issue_token(
            client_id=old.client_id,
            scope=old.scope,
            resource=old.resource,
            username=old.username,
        )
        _audit("token_refreshed", client_id=token.client_id, username=token.username)
        logger.info("Refreshed tokens for client %s", token.client_id)
        return self._token_response(token)

    def _issue_token(self, client_id: str, scope: str, resource: str,
                     username: str) -> AccessToken:
        token = AccessToken(
            token=_random_string(TOKEN_LENGTH),
            refresh_token=_random_string(TOKEN_LENGTH),
            client_id=client_id,
            expires_at=time.time() + self.token_expiration,
            scope=scope,
            resource=resource,
            username=username,
        )
        with self._lock:
            self.access_tokens[token.token] = token
        self._persist()
        return token

    def _token_response(self, token: AccessToken) -> dict[str, Any]:
        body = {
            "access_token": token.token,
            "token_type": "Bearer",
            "expires_in": self.token_expiration,
            "refresh_token": token.refresh_token,
        }
        if token.scope:
            body["scope"] = token.scope
        return body

    # --- Token validator ---

    def validate_token(self, token: str) -> AccessToken | None:
        """Hot path: look up a bearer token without touching the disk.

        Expired entries are removed and persisted on the cleanup worker.
        """
        if not token:
            return None
        with self._lock:
            access_token = self.access_tokens.get(token)
        if access_token is None:
            return None
        if access_token.is_expired():
            with self._lock:
                # After close() the entry is left for the next load to drop.
                if not self._closed:
                    self._cleanup.submit(self._expire_token, token)
            return None
        return access_token

    def _expire_token(self, token: str) -> None:
        with self._lock:
            removed = self.access_tokens.pop(token, None)
        if removed is not None:
            logger.info("Expired access token for client %s removed", removed.client_id)
            self._persist()
