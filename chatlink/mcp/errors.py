"""MCP 错误类型

传输层、协议层与路由层错误的统一层次结构。
"""

from __future__ import annotations

from typing import Any, Optional

# JSON-RPC 2.0 标准错误码
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MCPError(Exception):
    """MCP 错误基类"""

    pass


class MCPConnectionError(MCPError, ConnectionError):
    """建立连接失败 (进程启动失败 / 拨号失败)"""

    pass


class TransportError(MCPError):
    """传输通道错误 (会话中途通道故障)"""

    pass


class ConnectionLostError(TransportError):
    """连接丢失，未完成的请求被取消"""

    pass


class ProtocolError(MCPError):
    """消息格式错误或无法解析"""

    pass


class RequestTimeoutError(MCPError, TimeoutError):
    """请求在截止时间内没有响应"""

    pass


class ServerRPCError(MCPError):
    """服务器返回的 JSON-RPC 错误"""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(f"服务器错误 [{code}]: {message}")
        self.code = code
        self.message = message
        self.data = data


class UnknownServerError(MCPError):
    """未配置的服务器"""

    def __init__(self, server_name: str):
        super().__init__(f"服务器 '{server_name}' 不存在")
        self.server_name = server_name


class UnknownToolError(MCPError):
    """工具不在当前目录中"""

    def __init__(self, tool_name: str, server_name: Optional[str] = None):
        if server_name:
            message = f"服务器 '{server_name}' 没有工具 '{tool_name}'"
        else:
            message = f"未知工具 '{tool_name}'"
        super().__init__(message)
        self.tool_name = tool_name
        self.server_name = server_name


class NotReadyError(MCPError):
    """连接未处于 READY 状态"""

    pass


class HealthCheckError(MCPError):
    """健康检查 (ping) 失败"""

    pass
