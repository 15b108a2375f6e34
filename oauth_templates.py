"""
oauth_templates.py — login and success pages for the authorization endpoint.

Two renderers with the same interface:

  FileTemplateRenderer      — authorize.html / success.html from a directory,
                              re-checked on every render (hot reload); a broken
                              or missing file keeps serving the last good parse
  EmbeddedTemplateRenderer  — the built-in pages below

create_renderer() picks one at startup. Every template is rendered with
autoescaping on; state, resource and client name are attacker-influenced.
"""

import logging
from pathlib import Path
from typing import Any

from jinja2 import DictLoader, Environment, FileSystemLoader, Template, TemplateError

logger = logging.getLogger("mcp-proxy.templates")

AUTHORIZE_TEMPLATE = "authorize.html"
SUCCESS_TEMPLATE = "success.html"
TEMPLATE_NAMES = (AUTHORIZE_TEMPLATE, SUCCESS_TEMPLATE)


# ---------------------------------------------------------------------------
# Built-in pages
# ---------------------------------------------------------------------------

DEFAULT_AUTHORIZE_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>MCP Proxy — Sign In</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0;
        }
        .card {
            background: #1a1a2e; border: 1px solid #2a2a4a;
            border-radius: 12px; padding: 2rem; max-width: 400px;
            width: 90%; box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5);
        }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .client { color: #ff6b9d; font-weight: 600; }
        .resource { color: #00d4ff; font-weight: 600; }
        .error {
            background: #2a1020; border: 1px solid #ff4444; color: #ff8888;
            border-radius: 8px; padding: 0.75rem; margin: 1rem 0; font-size: 0.9rem;
        }
        .field { margin: 1rem 0 0.5rem 0; }
        .field label { font-size: 0.9rem; color: #aaa; }
        .field input {
            width: 100%; padding: 0.6rem; border: 1px solid #2a2a4a;
            border-radius: 6px; background: #12122a; color: #e0e0e0;
            font-size: 1rem; margin-top: 0.4rem; box-sizing: border-box;
        }
        button {
            width: 100%; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; margin-top: 1.5rem;
            background: #00d4ff; color: #0a0a1a;
        }
        button:hover { background: #00b8e6; }
        button:disabled { background: #2a2a4a; color: #888; cursor: not-allowed; }
    </style>
    <script>
        function submitForm() {
            var btn = document.getElementById('signin-btn');
            btn.disabled = true;
            btn.textContent = 'Signing in...';
            return true;
        }
    </script>
</head>
<body>
    <div class="card">
        <h1>Sign In</h1>
        <p><span class="client">{{ client_name }}</span> is requesting access to
           <span class="resource">{{ resource_name }}</span>.</p>
        {% if error_message %}
        <div class="error">{{ error_message }}</div>
        {% endif %}
        <form method="POST" action="/oauth/authorize" onsubmit="return submitForm()">
            <input type="hidden" name="client_id" value="{{ client_id }}">
            <input type="hidden" name="redirect_uri" value="{{ redirect_uri }}">
            <input type="hidden" name="response_type" value="{{ response_type }}">
            <input type="hidden" name="scope" value="{{ scope }}">
            <input type="hidden" name="state" value="{{ state }}">
            <input type="hidden" name="code_challenge" value="{{ code_challenge }}">
            <input type="hidden" name="resource" value="{{ resource }}">
            <div class="field">
                <label for="username">Username</label>
                <input type="text" id="username" name="username" required autocomplete="username">
            </div>
            <div class="field">
                <label for="password">Password</label>
                <input type="password" id="password" name="password" required
                       autocomplete="current-password">
            </div>
            <button type="submit" id="signin-btn">Sign In</button>
        </form>
    </div>
</body>
</html>"""


DEFAULT_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>MCP Proxy — Signed In</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0;
        }
        .card {
            background: #1a1a2e; border: 1px solid #00d4ff;
            border-radius: 12px; padding: 2rem; max-width: 400px;
            width: 90%; box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5);
            text-align: center;
        }
        h1 { font-size: 1.3rem; color: #00d4ff; margin: 0 0 1rem 0; }
        .spinner {
            display: inline-block; width: 20px; height: 20px;
            border: 2px solid #2a2a4a; border-top: 2px solid #00d4ff;
            border-radius: 50%; animation: spin 0.8s linear infinite;
            vertical-align: middle; margin-right: 0.5rem;
        }
        @keyframes spin { to { transform: rotate(360deg); } }
        #manual-redirect { display: none; margin-top: 1.5rem; font-size: 0.85rem; color: #888; }
        a { color: #00d4ff; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Signed In</h1>
        <p>Welcome, {{ username }}. You have been authenticated.</p>
        <p style="margin-top:1rem; color:#888;">
            <span class="spinner"></span>
            <span id="redirect-text">Redirecting in <span id="countdown">3</span> seconds...</span>
        </p>
        <noscript>
            <p><a href="{{ redirect_url }}">Continue</a></p>
        </noscript>
        <p id="manual-redirect">
            If you are not redirected, <a href="{{ redirect_url }}" target="_self">click here to continue</a>.
        </p>
    </div>
    <script>
        var redirectUrl = {{ redirect_url|tojson }};
        var countdown = 3;
        function tick() {
            document.getElementById('countdown').textContent = countdown;
            countdown--;
            if (countdown < 0) {
                document.getElementById('redirect-text').textContent = 'Redirecting now...';
                window.location.href = redirectUrl;
            } else {
                setTimeout(tick, 1000);
            }
        }
        document.addEventListener('DOMContentLoaded', function() {
            tick();
            setTimeout(function() {
                document.getElementById('manual-redirect').style.display = 'block';
            }, 10000);
        });
    </script>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------

class TemplateRenderer:
    """Renders the authorize and success pages."""

    source = "unknown"

    def _get_template(self, name: str) -> Template:
        raise NotImplementedError

    def render(self, name: str, **context: Any) -> str:
        return self._get_template(name).render(**context)

    def render_authorize(self, **context: Any) -> str:
        return self.render(AUTHORIZE_TEMPLATE, **context)

    def render_success(self, **context: Any) -> str:
        return self.render(SUCCESS_TEMPLATE, **context)


class EmbeddedTemplateRenderer(TemplateRenderer):
    source = "embedded"

    def __init__(self) -> None:
        self.env = Environment(
            loader=DictLoader({
                AUTHORIZE_TEMPLATE: DEFAULT_AUTHORIZE_PAGE,
                SUCCESS_TEMPLATE: DEFAULT_SUCCESS_PAGE,
            }),
            autoescape=True,
        )

    def _get_template(self, name: str) -> Template:
        return self.env.get_template(name)


class FileTemplateRenderer(TemplateRenderer):
    """Templates from a directory, hot-reloaded on change.

    Jinja's auto_reload re-checks the file on each get_template(); when that
    fails (file removed, syntax error) the last good parse keeps serving.
    """

    source = "external"

    def __init__(self, template_dir: Path | str):
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=True,
            auto_reload=True,
        )
        self._last_good: dict[str, Template] = {}
        # Raises on the initial load so create_renderer() can fall back.
        for name in TEMPLATE_NAMES:
            self._last_good[name] = self.env.get_template(name)

    def _get_template(self, name: str) -> Template:
        try:
            template = self.env.get_template(name)
        except TemplateError as e:
            logger.warning("External template %s unusable (%s); serving last good copy",
                           name, e)
            return self._last_good[name]
        self._last_good[name] = template
        return template


def create_renderer(template_dir: Path | str | None) -> TemplateRenderer:
    """Use external templates when the directory has working copies of both."""
    if template_dir and Path(template_dir).is_dir():
        logger.info("Found external templates directory at '%s'", template_dir)
        try:
            renderer = FileTemplateRenderer(template_dir)
        except TemplateError as e:
            logger.warning("Failed to load external templates from '%s': %s; "
                           "falling back to built-in templates", template_dir, e)
        else:
            logger.info("Loaded external templates from '%s'", template_dir)
            return renderer
    logger.info("Using built-in templates")
    return EmbeddedTemplateRenderer()
