"""Tests for proxy_config.py."""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from proxy_config import (
    DEFAULT_TOKEN_EXPIRATION_MINUTES,
    ConfigError,
    OAuth2Config,
    ServerType,
    UserFilterConfig,
    UserFilterMode,
    load_config,
    parse_config,
)


def _raw(**proxy_overrides):
    proxy = {
        "baseURL": "https://proxy.example.com/",
        "addr": ":9090",
        "name": "MCP Proxy",
        "version": "1.0.0",
        "type": "streamable-http",
        "options": {
            "logEnabled": True,
            "oauth2": {
                "enabled": True,
                "users": {"alice": "wonderland"},
                "allowedIPs": ["203.0.113.7"],
            },
            "userFilter": {"mode": "block", "list": ["mallory"]},
        },
    }
    proxy.update(proxy_overrides)
    return {
        "mcpProxy": proxy,
        "mcpServers": {
            "github": {"url": "http://localhost:8001/mcp", "headers": {"X-Key": "k"}},
            "fetch": {
                "command": "uvx",
                "args": ["mcp-server-fetch"],
                "options": {"userFilter": {"mode": "allow", "list": ["alice"]}},
            },
        },
    }


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv("MCP_PROXY_BASE_URL", raising=False)


# ---------------------------------------------------------------------------
# parse_config
# ---------------------------------------------------------------------------

class TestParseConfig:
    def test_proxy_fields(self):
        config = parse_config(_raw())
        assert config.base_url == "https://proxy.example.com"
        assert config.type is ServerType.STREAMABLE_HTTP
        assert config.listen_address() == ("0.0.0.0", 9090)
        assert config.oauth2.users == {"alice": "wonderland"}
        assert config.oauth2.allowed_ips == ["203.0.113.7"]
        assert config.oauth2.token_expiration_minutes == DEFAULT_TOKEN_EXPIRATION_MINUTES

    def test_backends(self):
        config = parse_config(_raw())
        github = config.servers["github"]
        assert github.url == "http://localhost:8001/mcp"
        assert github.headers == {"X-Key": "k"}
        fetch = config.servers["fetch"]
        assert fetch.command == "uvx"
        assert fetch.args == ["mcp-server-fetch"]

    def test_backend_options_inherit(self):
        config = parse_config(_raw())
        github = config.servers["github"].options
        assert github.log_enabled is True
        assert github.oauth2 is config.options.oauth2
        assert github.user_filter.mode is UserFilterMode.BLOCK

    def test_backend_options_override(self):
        fetch = parse_config(_raw()).servers["fetch"].options
        assert fetch.user_filter.mode is UserFilterMode.ALLOW
        assert fetch.user_filter.list == ["alice"]

    def test_oauth_only_for_streamable_http(self):
        config = parse_config(_raw(type="sse"))
        assert config.oauth2 is None
        assert config.options.oauth2.enabled

    def test_oauth_disabled(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["oauth2"]["enabled"] = False
        assert parse_config(raw).oauth2 is None

    def test_defaults(self):
        config = parse_config({"mcpProxy": {"baseURL": "https://p.example.com"}})
        assert config.type is ServerType.SSE
        assert config.addr == ":9090"
        assert config.servers == {}
        assert config.oauth2 is None

    def test_token_expiration(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["oauth2"]["tokenExpirationMinutes"] = 15
        assert parse_config(raw).oauth2.token_expiration_minutes == 15

    @pytest.mark.parametrize("value", [0, -5, "ten"])
    def test_bad_token_expiration_uses_default(self, value):
        raw = _raw()
        raw["mcpProxy"]["options"]["oauth2"]["tokenExpirationMinutes"] = value
        assert parse_config(raw).oauth2.token_expiration_minutes == DEFAULT_TOKEN_EXPIRATION_MINUTES

    def test_base_url_env_override(self, monkeypatch):
        monkeypatch.setenv("MCP_PROXY_BASE_URL", "https://public.example.com/")
        assert parse_config(_raw()).base_url == "https://public.example.com"

    def test_auth_tokens_inherited(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["authTokens"] = ["proxy-wide"]
        raw["mcpServers"]["fetch"]["options"]["authTokens"] = ["fetch-only"]
        config = parse_config(raw)
        assert config.servers["github"].options.auth_tokens == ["proxy-wide"]
        assert config.servers["fetch"].options.auth_tokens == ["fetch-only"]

    def test_auth_tokens_empty_list_overrides(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["authTokens"] = ["proxy-wide"]
        raw["mcpServers"]["github"]["options"] = {"authTokens": []}
        assert parse_config(raw).servers["github"].options.auth_tokens == []

    def test_auth_tokens_unset(self):
        assert parse_config(_raw()).servers["github"].options.auth_tokens is None

    def test_listen_address_with_host(self):
        assert parse_config(_raw(addr="127.0.0.1:8080")).listen_address() == ("127.0.0.1", 8080)


class TestParseConfigErrors:
    def test_not_an_object(self):
        with pytest.raises(ConfigError):
            parse_config(["nope"])

    def test_missing_proxy_section(self):
        with pytest.raises(ConfigError, match="mcpProxy"):
            parse_config({"mcpServers": {}})

    def test_missing_base_url(self):
        with pytest.raises(ConfigError, match="baseURL"):
            parse_config({"mcpProxy": {}})

    def test_bad_type(self):
        with pytest.raises(ConfigError, match="Invalid mcpProxy type"):
            parse_config(_raw(type="websocket"))

    def test_bad_user_filter_mode(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["userFilter"]["mode"] = "maybe"
        with pytest.raises(ConfigError, match="userFilter"):
            parse_config(raw)

    def test_backend_needs_url_or_command(self):
        raw = _raw()
        raw["mcpServers"]["broken"] = {"headers": {}}
        with pytest.raises(ConfigError, match="broken"):
            parse_config(raw)

    def test_auth_tokens_must_be_list(self):
        raw = _raw()
        raw["mcpProxy"]["options"]["authTokens"] = "single-token"
        with pytest.raises(ConfigError, match="authTokens"):
            parse_config(raw)

    def test_bad_addr(self):
        with pytest.raises(ConfigError, match="addr"):
            parse_config(_raw(addr="localhost")).listen_address()


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

class TestLoadConfig:
    def test_json_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(_raw()))
        assert load_config(path).servers["github"].url == "http://localhost:8001/mcp"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "mcpProxy:\n"
            "  baseURL: https://proxy.example.com\n"
            "  type: streamable-http\n"
            "  options:\n"
            "    oauth2:\n"
            "      enabled: true\n"
            "      users:\n"
            "        alice: wonderland\n"
            "mcpServers:\n"
            "  github:\n"
            "    url: http://localhost:8001/mcp\n"
        )
        config = load_config(path)
        assert config.oauth2.users == {"alice": "wonderland"}
        assert "github" in config.servers

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("mcpProxy: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path)


# ---------------------------------------------------------------------------
# Option blocks
# ---------------------------------------------------------------------------

class TestUserFilter:
    def test_allow_mode(self):
        f = UserFilterConfig(mode=UserFilterMode.ALLOW, list=["alice"])
        assert f.is_user_allowed("alice")
        assert not f.is_user_allowed("bob")

    def test_block_mode(self):
        f = UserFilterConfig(mode=UserFilterMode.BLOCK, list=["mallory"])
        assert f.is_user_allowed("alice")
        assert not f.is_user_allowed("mallory")

    def test_no_mode_allows_everyone(self):
        assert UserFilterConfig(list=["alice"]).is_user_allowed("bob")

    def test_default_list_not_shared(self):
        first, second = UserFilterConfig(), UserFilterConfig()
        first.list.append("alice")
        assert second.list == []

    def test_anonymous_allowed(self):
        f = UserFilterConfig(mode=UserFilterMode.ALLOW, list=["alice"])
        assert f.is_user_allowed("")


class TestOAuth2Config:
    def test_default_template_dir(self):
        assert OAuth2Config().oauth_template_dir == Path("templates") / "oauth"

    def test_custom_template_dir(self):
        assert OAuth2Config(template_dir="/srv/t").oauth_template_dir == Path("/srv/t/oauth")
