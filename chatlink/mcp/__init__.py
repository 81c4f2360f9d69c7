"""MCP (Model Context Protocol) 客户端运行时

连接多个 MCP 服务器 (stdio / websocket / http)，维护连接状态机与自动重连，
合并工具目录并转换为 LLM 工具声明。
"""

from .codec import PendingCall, PendingCalls, decode_message, encode_notification, encode_request
from .connection import ConnectionState, ServerConnection
from .errors import (
    ConnectionLostError,
    HealthCheckError,
    MCPConnectionError,
    MCPError,
    NotReadyError,
    ProtocolError,
    RequestTimeoutError,
    ServerRPCError,
    TransportError,
    UnknownServerError,
    UnknownToolError,
)
from .health import HealthMonitor, HealthStatus
from .manager import MCPManager
from .protocol import (
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPTool,
    MCPToolCall,
    MCPToolResult,
)
from .registry import NAME_SEPARATOR, RegistrySnapshot, ToolDescriptor, ToolRegistry
from .transport import (
    HTTPTransport,
    StdioTransport,
    Transport,
    WebSocketTransport,
    create_transport,
)

__all__ = [
    # Protocol types
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCNotification",
    "JSONRPCError",
    "MCPTool",
    "MCPToolCall",
    "MCPToolResult",
    # Codec
    "PendingCall",
    "PendingCalls",
    "encode_request",
    "encode_notification",
    "decode_message",
    # Transport
    "Transport",
    "StdioTransport",
    "WebSocketTransport",
    "HTTPTransport",
    "create_transport",
    # Errors
    "MCPError",
    "MCPConnectionError",
    "TransportError",
    "ConnectionLostError",
    "ProtocolError",
    "RequestTimeoutError",
    "ServerRPCError",
    "UnknownServerError",
    "UnknownToolError",
    "NotReadyError",
    "HealthCheckError",
    # Connection
    "ConnectionState",
    "ServerConnection",
    # Registry
    "NAME_SEPARATOR",
    "ToolDescriptor",
    "RegistrySnapshot",
    "ToolRegistry",
    # Health
    "HealthMonitor",
    "HealthStatus",
    # Manager
    "MCPManager",
]
