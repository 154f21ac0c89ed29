"""Shared configuration, logging and data models for the MCP session client."""

from common.models import (
    CapabilityKind,
    ClientIdentity,
    ContentBlock,
    InvocationResult,
    PromptDescriptor,
    ResourceDescriptor,
    ServerIdentity,
    SessionState,
    ToolDescriptor,
)
from common.config import ClientSettings, ConfigError, ServerConfig, TLSConfig, get_settings
from common.logging import get_logger, setup_logging

__all__ = [
    "CapabilityKind",
    "ClientIdentity",
    "ContentBlock",
    "InvocationResult",
    "PromptDescriptor",
    "ResourceDescriptor",
    "ServerIdentity",
    "SessionState",
    "ToolDescriptor",
    "ClientSettings",
    "ConfigError",
    "ServerConfig",
    "TLSConfig",
    "get_settings",
    "get_logger",
    "setup_logging",
]
