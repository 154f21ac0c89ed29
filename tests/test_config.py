"""Tests for configuration loading."""

import json

import pytest

from common.config import (
    ClientSettings,
    ConfigError,
    ServerConfig,
    get_settings,
    load_server_configs,
    parse_server,
    parse_servers,
)


class TestServerConfig:
    """Tests for server entry parsing."""

    def test_parse_camel_case_entry(self):
        """Test camelCase keys map onto the config fields."""
        server = parse_server("search", {
            "url": "https://search.example.com",
            "endpoint": "/sse",
            "headers": {"X-Team": "ai"},
            "connectTimeout": 5,
            "requestTimeout": 20,
            "autoReconnect": False,
            "maxReconnectAttempts": 7,
            "reconnectInterval": 2,
            "heartbeatTimeout": 3,
        })

        assert server.name == "search"
        assert server.url == "https://search.example.com/sse"
        assert server.headers == {"X-Team": "ai"}
        assert server.connect_timeout == 5
        assert server.request_timeout == 20
        assert server.auto_reconnect is False
        assert server.max_reconnect_attempts == 7
        assert server.reconnect_interval == 2
        assert server.heartbeat_timeout == 3

    def test_heartbeat_shorthand(self):
        """Test heartbeat accepts a number of seconds or a boolean."""
        every_15 = parse_server("a", {"url": "http://a/sse", "heartbeat": 15})
        disabled = parse_server("b", {"url": "http://b/sse", "heartbeat": False})

        assert every_15.heartbeat_enabled is True
        assert every_15.heartbeat_interval == 15
        assert disabled.heartbeat_enabled is False

    def test_transport_is_case_insensitive(self):
        """Test transport names are normalised."""
        server = parse_server("a", {"url": "http://a/sse", "transport": "SSE"})

        assert server.transport == "sse"

    def test_url_defaults_to_streamable_http(self):
        """Test HTTP entries use Streamable HTTP unless told otherwise."""
        server = parse_server("a", {"url": "http://a/mcp"})

        assert server.transport == "streamable_http"
        assert server.target == "http://a/mcp"

    def test_streamable_http_spellings(self):
        """Test the usual spellings of Streamable HTTP are accepted."""
        for name in ("streamable_http", "streamable-http", "Streamable-HTTP", "http"):
            assert parse_server("a", {"url": "http://a/mcp", "transport": name}).transport == "streamable_http"

    def test_stdio_entry(self):
        """Test command entries become stdio servers."""
        server = parse_server("local", {
            "command": "npx",
            "args": ["-y", "some-server"],
            "env": {"API_KEY": "k"},
            "heartbeat": False,
        })

        assert server.transport == "stdio"
        assert server.command == "npx"
        assert server.args == ["-y", "some-server"]
        assert server.env == {"API_KEY": "k"}
        assert server.target == "npx -y some-server"
        assert server.heartbeat_enabled is False

    def test_http_transport_needs_url(self):
        """Test an HTTP transport without a url is refused."""
        with pytest.raises(ConfigError):
            parse_server("a", {"command": "srv", "transport": "sse"})

    def test_unsupported_transport_rejected(self):
        """Test unknown transports fail validation."""
        with pytest.raises(ConfigError):
            parse_server("a", {"url": "http://a", "transport": "websocket"})

    def test_missing_url_rejected(self):
        """Test an entry without url is refused."""
        with pytest.raises(ConfigError):
            parse_server("a", {"headers": {}})

    def test_bearer_token_header(self):
        """Test bearer tokens become an Authorization header."""
        server = ServerConfig(name="a", url="http://a/sse", bearer_token="secret", headers={"X-A": "1"})

        assert server.request_headers() == {"X-A": "1", "Authorization": "Bearer secret"}

    def test_tls_options(self):
        """Test TLS options parse from camelCase."""
        server = parse_server("a", {"url": "https://a/sse", "tls": {"verify": False, "caFile": "/etc/ca.pem"}})

        assert server.tls.verify is False
        assert server.tls.ca_file == "/etc/ca.pem"


class TestParseServers:
    """Tests for mcpServers maps."""

    def test_mcp_servers_document(self):
        """Test a desktop-host style document."""
        servers = parse_servers({
            "mcpServers": {
                "search": {"url": "http://localhost:8001/sse"},
                "images": {"url": "http://localhost:8002", "endpoint": "sse"},
            }
        })

        assert list(servers) == ["search", "images"]
        assert servers["images"].url == "http://localhost:8002/sse"

    def test_mixed_transports(self):
        """Test stdio and HTTP entries parse side by side."""
        servers = parse_servers({
            "local": {"command": "npx", "args": ["-y", "some-server"]},
            "remote": {"url": "http://remote/sse", "transport": "sse"},
            "modern": {"url": "http://modern", "endpoint": "/mcp"},
        })

        assert {name: s.transport for name, s in servers.items()} == {
            "local": "stdio",
            "remote": "sse",
            "modern": "streamable_http",
        }
        assert servers["modern"].url == "http://modern/mcp"

    def test_entry_without_url_or_command(self):
        """Test entries need a url or a command."""
        with pytest.raises(ConfigError):
            parse_servers({"broken": {"headers": {}}})

    def test_non_mapping_entry(self):
        """Test entries must be mappings."""
        with pytest.raises(ConfigError):
            parse_servers({"broken": "http://nowhere"})

    def test_load_from_json_file(self, tmp_path):
        """Test JSON files load through the YAML loader."""
        path = tmp_path / "servers.json"
        path.write_text(json.dumps({"mcpServers": {"search": {"url": "http://s/sse", "heartbeat": 10}}}))

        servers = load_server_configs(path)

        assert servers["search"].heartbeat_interval == 10

    def test_missing_file_is_empty(self, tmp_path):
        """Test a missing file yields no servers."""
        assert load_server_configs(tmp_path / "absent.yaml") == {}


class TestClientSettings:
    """Tests for ClientSettings."""

    def test_request_timeout_required(self, monkeypatch):
        """Test settings refuse to load without a request timeout."""
        monkeypatch.delenv("MCP_CLIENT_REQUEST_TIMEOUT", raising=False)

        with pytest.raises(ValueError):
            ClientSettings(_env_file=None)

    def test_environment_overrides(self, monkeypatch):
        """Test MCP_CLIENT_ variables are read."""
        monkeypatch.setenv("MCP_CLIENT_REQUEST_TIMEOUT", "7.5")
        monkeypatch.setenv("MCP_CLIENT_CONNECT_RETRIES", "2")

        settings = ClientSettings(_env_file=None)

        assert settings.request_timeout == 7.5
        assert settings.connect_retries == 2

    def test_from_yaml(self, tmp_path, monkeypatch):
        """Test YAML values load and overrides win."""
        monkeypatch.delenv("MCP_CLIENT_REQUEST_TIMEOUT", raising=False)
        path = tmp_path / "client.yaml"
        path.write_text("request_timeout: 3\nclient_name: orchestrator\nlog_level: DEBUG\n")

        settings = ClientSettings.from_yaml(path, log_level="WARNING")

        assert settings.request_timeout == 3
        assert settings.client_name == "orchestrator"
        assert settings.log_level == "WARNING"

    def test_get_settings_is_cached(self, tmp_path, monkeypatch):
        """Test get_settings loads once."""
        path = tmp_path / "client.yaml"
        path.write_text("request_timeout: 2\n")
        monkeypatch.setenv("MCP_CLIENT_CONFIG_PATH", str(path))
        get_settings.cache_clear()

        try:
            assert get_settings() is get_settings()
            assert get_settings().request_timeout == 2
        finally:
            get_settings.cache_clear()
