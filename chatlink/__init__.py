"""
ChatLink - MCP 工具运行时

为对话助手连接 MCP 服务器，把服务器提供的工具暴露给 LLM。
"""

__version__ = "0.1.0"

from .config import (
    Config,
    HealthCheckConfig,
    MCPConfig,
    MCPServerConfig,
    ReconnectConfig,
    TransportKind,
)
from .events import (
    ConnectionStateEvent,
    Event,
    EventBroker,
    EventType,
    HealthCheckEvent,
    ServerUnavailableEvent,
    ToolCallCompleteEvent,
    ToolCallStartEvent,
    ToolsUpdatedEvent,
)
from .mcp import (
    ConnectionState,
    HealthMonitor,
    MCPError,
    MCPManager,
    ServerConnection,
    ToolRegistry,
)
from .schema import FunctionCall, ToolCall, ToolInvocationRequest, ToolInvocationResult

__all__ = [
    "__version__",
    # Config
    "Config",
    "MCPConfig",
    "MCPServerConfig",
    "ReconnectConfig",
    "HealthCheckConfig",
    "TransportKind",
    # Events
    "Event",
    "EventType",
    "EventBroker",
    "ConnectionStateEvent",
    "ServerUnavailableEvent",
    "ToolsUpdatedEvent",
    "HealthCheckEvent",
    "ToolCallStartEvent",
    "ToolCallCompleteEvent",
    # MCP
    "MCPManager",
    "MCPError",
    "ServerConnection",
    "ConnectionState",
    "ToolRegistry",
    "HealthMonitor",
    # Schema
    "FunctionCall",
    "ToolCall",
    "ToolInvocationRequest",
    "ToolInvocationResult",
]
