"""Configuration management for the MCP session client.

Supports YAML configuration files and environment variable overrides.
Server entries use the ``mcpServers`` layout popularised by desktop MCP
hosts, so existing host configuration files can be reused as-is.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(ValueError):
    """Invalid client or server configuration."""
    pass


class TLSConfig(BaseModel):
    """TLS options for the transport connection."""
    verify: bool = True
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


TransportType = Literal["streamable_http", "sse", "stdio"]

_TRANSPORT_ALIASES = {"http": "streamable_http", "streamable": "streamable_http", "streamablehttp": "streamable_http"}


class ServerConfig(BaseModel):
    """
    Connection settings for one MCP server.

    HTTP servers (``url``) speak Streamable HTTP unless ``transport`` is
    ``sse``. Stdio servers (``command``) are spawned as a subprocess.
    """
    name: str
    transport: TransportType = "streamable_http"
    url: Optional[str] = None

    # Stdio
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    headers: dict[str, str] = Field(default_factory=dict)
    bearer_token: Optional[str] = None
    tls: TLSConfig = Field(default_factory=TLSConfig)

    # Timeouts (seconds); request_timeout falls back to the client setting
    connect_timeout: float = Field(default=10.0, gt=0)
    request_timeout: Optional[float] = Field(default=None, gt=0)

    # Reconnect
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_interval: float = Field(default=5.0, gt=0)
    reconnect_backoff_max: float = Field(default=60.0, gt=0)

    # Heartbeat
    heartbeat_enabled: bool = True
    heartbeat_interval: float = Field(default=30.0, gt=0)
    heartbeat_timeout: float = Field(default=10.0, gt=0)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _infer_transport(cls, data: Any) -> Any:
        # A bare command entry is a stdio server
        if isinstance(data, dict) and not data.get("transport") and data.get("command") and not data.get("url"):
            data = {**data, "transport": "stdio"}
        return data

    @model_validator(mode="after")
    def _check_target(self) -> "ServerConfig":
        if self.transport == "stdio":
            if not self.command:
                raise ValueError("stdio servers need a 'command'")
        elif not self.url:
            raise ValueError(f"{self.transport} servers need a 'url'")
        return self

    @property
    def target(self) -> str:
        """What a session connects to: the URL, or the command line of a stdio server."""
        if self.transport == "stdio":
            return " ".join([self.command or "", *self.args])
        return self.url or ""

    def request_headers(self) -> dict[str, str]:
        """Static headers sent with every HTTP request to this server."""
        headers = dict(self.headers)
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers


class ClientSettings(BaseSettings):
    """Client-wide settings.

    ``request_timeout`` has no default: every deployment has to pick one.
    """
    client_name: str = Field(default="mcp-session-client")
    client_version: str = Field(default="1.0.0")

    request_timeout: float = Field(..., gt=0, description="Per-call timeout in seconds")
    connect_timeout: float = Field(default=10.0, gt=0)

    # Bounded retry for the initial connect/handshake only
    connect_retries: int = Field(default=3, ge=1)
    retry_backoff_min: float = Field(default=0.5, ge=0)
    retry_backoff_max: float = Field(default=10.0, ge=0)

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    servers_config_path: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="MCP_CLIENT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> "ClientSettings":
        """Load settings from a YAML file; the environment fills in what it omits."""
        data = load_yaml_config(path)
        data.update(overrides)
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML (or JSON) configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def _normalize_server_entry(raw: Mapping[str, Any]) -> dict[str, Any]:
    entry = dict(raw)
    entry.pop("name", None)

    endpoint = entry.pop("endpoint", None)
    if endpoint and entry.get("url"):
        entry["url"] = f"{entry['url'].rstrip('/')}/{endpoint.lstrip('/')}"

    # "heartbeat": 30 enables heartbeat with a 30s interval, "heartbeat": false disables it
    heartbeat = entry.pop("heartbeat", None)
    if isinstance(heartbeat, bool):
        entry["heartbeatEnabled"] = heartbeat
    elif isinstance(heartbeat, (int, float)):
        entry["heartbeatEnabled"] = True
        entry["heartbeatInterval"] = heartbeat

    transport = entry.get("transport")
    if isinstance(transport, str):
        transport = transport.lower().replace("-", "_")
        entry["transport"] = _TRANSPORT_ALIASES.get(transport, transport)

    return entry


def parse_server(name: str, raw: Mapping[str, Any]) -> ServerConfig:
    """
    Parse one server entry.

    Args:
        name: Server name (the key in the ``mcpServers`` map)
        raw: Entry with camelCase keys (``url`` or ``command``, ``connectTimeout``, ...)

    Raises:
        ConfigError: If the entry has neither ``url`` nor ``command``, or fails validation
    """
    if "url" not in raw and "command" not in raw:
        raise ConfigError(f"Server '{name}' must define 'url' or 'command'")

    try:
        return ServerConfig(name=name, **_normalize_server_entry(raw))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration for server '{name}': {e}") from e


def parse_servers(servers: Mapping[str, Any]) -> dict[str, ServerConfig]:
    """
    Parse a map of server entries.

    Accepts either the bare ``{name: entry}`` map or a document with a
    top-level ``mcpServers`` key.
    """
    if "mcpServers" in servers:
        servers = servers["mcpServers"] or {}

    result: dict[str, ServerConfig] = {}
    for name, raw in servers.items():
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Server '{name}' entry must be a mapping")
        result[name] = parse_server(name, raw)

    return result


def load_server_configs(path: str | Path) -> dict[str, ServerConfig]:
    """Load server entries from a YAML or JSON file."""
    return parse_servers(load_yaml_config(path))


@lru_cache
def get_settings() -> ClientSettings:
    """Get cached client settings."""
    config_path = os.environ.get("MCP_CLIENT_CONFIG_PATH", "config/client.yaml")
    return ClientSettings.from_yaml(config_path)
