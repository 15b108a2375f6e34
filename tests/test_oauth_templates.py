"""Tests for oauth_templates.py."""
import os
import sys
from pathlib import Path

import pytest
from jinja2 import TemplateError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from oauth_templates import (
    AUTHORIZE_TEMPLATE,
    SUCCESS_TEMPLATE,
    EmbeddedTemplateRenderer,
    FileTemplateRenderer,
    create_renderer,
)


def _write(path: Path, text: str) -> None:
    """Write and push the mtime forward so the reload check sees a change."""
    existed = path.exists()
    old_mtime = path.stat().st_mtime if existed else 0
    path.write_text(text)
    if existed:
        os.utime(path, (old_mtime + 10, old_mtime + 10))


@pytest.fixture
def template_dir(tmp_path):
    d = tmp_path / "oauth"
    d.mkdir()
    _write(d / AUTHORIZE_TEMPLATE, "login {{ client_name }} {{ state }}")
    _write(d / SUCCESS_TEMPLATE, "done {{ username }} {{ redirect_url }}")
    return d


# ---------------------------------------------------------------------------
# Embedded templates
# ---------------------------------------------------------------------------

class TestEmbeddedTemplates:
    def test_authorize_page_fields(self):
        page = EmbeddedTemplateRenderer().render_authorize(
            client_id="cid", client_name="Claude", resource_name="github",
            redirect_uri="https://claude.ai/api/mcp/auth_callback",
            response_type="code", scope="mcp", state="st",
            code_challenge="ch", resource="https://proxy.example.com/github",
        )
        assert 'name="client_id" value="cid"' in page
        assert 'name="code_challenge" value="ch"' in page
        assert 'type="password"' in page
        assert "github" in page
        assert 'class="error"' not in page

    def test_authorize_page_error_message(self):
        page = EmbeddedTemplateRenderer().render_authorize(error_message="Nope")
        assert '<div class="error">Nope</div>' in page

    def test_authorize_page_escapes(self):
        page = EmbeddedTemplateRenderer().render_authorize(
            client_name="<b>x</b>", state='"><img src=x onerror=alert(1)>',
        )
        assert "<b>x</b>" not in page
        assert "&lt;b&gt;x&lt;/b&gt;" in page
        assert "<img src=x" not in page

    def test_success_page_redirect_in_script_is_json(self):
        url = "https://claude.ai/api/mcp/auth_callback?code=a&state=</script><script>alert(1)"
        page = EmbeddedTemplateRenderer().render_success(redirect_url=url, username="alice")
        assert "</script><script>alert(1)" not in page
        assert "var redirectUrl = " in page
        assert "Welcome, alice." in page

    def test_source(self):
        assert EmbeddedTemplateRenderer().source == "embedded"


# ---------------------------------------------------------------------------
# External templates
# ---------------------------------------------------------------------------

class TestFileTemplates:
    def test_renders_from_directory(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        assert renderer.source == "external"
        assert renderer.render_authorize(client_name="Claude", state="s") == "login Claude s"

    def test_autoescape(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        assert renderer.render_success(username="<i>", redirect_url="") == "done &lt;i&gt; "

    def test_hot_reload(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        assert renderer.render_success(username="a", redirect_url="u") == "done a u"
        _write(template_dir / SUCCESS_TEMPLATE, "changed {{ username }}")
        assert renderer.render_success(username="a", redirect_url="u") == "changed a"

    def test_broken_edit_keeps_last_good(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        renderer.render_authorize(client_name="Claude", state="s")
        _write(template_dir / AUTHORIZE_TEMPLATE, "{% if %}broken")
        assert renderer.render_authorize(client_name="Claude", state="s") == "login Claude s"

    def test_deleted_file_keeps_last_good(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        (template_dir / SUCCESS_TEMPLATE).unlink()
        assert renderer.render_success(username="a", redirect_url="u") == "done a u"

    def test_recovers_after_fix(self, template_dir):
        renderer = FileTemplateRenderer(template_dir)
        _write(template_dir / AUTHORIZE_TEMPLATE, "{% if %}broken")
        renderer.render_authorize()
        _write(template_dir / AUTHORIZE_TEMPLATE, "fixed {{ state }}")
        assert renderer.render_authorize(state="s") == "fixed s"

    def test_initial_load_failure_raises(self, template_dir):
        (template_dir / SUCCESS_TEMPLATE).unlink()
        with pytest.raises(TemplateError):
            FileTemplateRenderer(template_dir)


class TestCreateRenderer:
    def test_external_directory(self, template_dir):
        assert create_renderer(template_dir).source == "external"

    def test_missing_directory(self, tmp_path):
        assert create_renderer(tmp_path / "nope").source == "embedded"

    def test_no_directory(self):
        assert create_renderer(None).source == "embedded"

    def test_incomplete_directory(self, template_dir):
        (template_dir / AUTHORIZE_TEMPLATE).unlink()
        assert create_renderer(template_dir).source == "embedded"

    def test_syntax_error(self, template_dir):
        _write(template_dir / SUCCESS_TEMPLATE, "{% for %}")
        assert create_renderer(template_dir).source == "embedded"
