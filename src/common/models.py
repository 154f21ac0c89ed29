"""Core data models for the MCP session client.

Descriptors and results are parsed straight from MCP wire payloads, so
fields carry their camelCase wire names as aliases.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle state of a session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    FAILED = "failed"


class CapabilityKind(str, Enum):
    """Kinds of server capability the client can discover."""
    TOOLS = "tools"
    PROMPTS = "prompts"
    RESOURCES = "resources"


class ClientIdentity(BaseModel):
    """Identity and requested capabilities the client announces at handshake."""
    name: str
    version: str
    capabilities: list[str] = Field(
        default_factory=lambda: [kind.value for kind in CapabilityKind]
    )


class ServerIdentity(BaseModel):
    """Identity reported by the server in its initialize result."""
    name: str
    version: str = ""

    model_config = ConfigDict(extra="ignore")


class _Descriptor(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ToolDescriptor(_Descriptor):
    """
    A tool discovered on a server.

    Immutable once created; the registry hands the same instances to
    every caller.
    """
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    annotations: Optional[dict[str, Any]] = None


class PromptArgument(_Descriptor):
    """A single argument accepted by a prompt."""
    name: str
    description: str = ""
    required: bool = False


class PromptDescriptor(_Descriptor):
    """A prompt template discovered on a server."""
    name: str
    description: str = ""
    arguments: tuple[PromptArgument, ...] = ()


class ResourceDescriptor(_Descriptor):
    """A resource discovered on a server."""
    uri: str
    name: str
    description: str = ""
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ContentBlock(BaseModel):
    """
    One block of tool output.

    Text blocks carry ``text``; image and audio blocks carry base64
    ``data`` with a ``mime_type``; embedded resources carry ``resource``.
    """
    type: str
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    resource: Optional[dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def is_text(self) -> bool:
        return self.type == "text"


class InvocationResult(BaseModel):
    """
    Result of a completed tool call.

    ``is_error`` marks a tool-level failure reported by the server over a
    successful protocol round trip. Transport and protocol failures are
    raised instead.
    """
    content: list[ContentBlock] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    structured_content: Optional[dict[str, Any]] = Field(default=None, alias="structuredContent")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def text(self) -> str:
        """Join the text blocks, rendering other blocks as placeholders."""
        parts = []
        for block in self.content:
            if block.is_text:
                parts.append(block.text or "")
            else:
                parts.append(f"[{block.type}{': ' + block.mime_type if block.mime_type else ''}]")
        return "\n".join(parts)
