"""MCP 协议类型定义

基于 JSON-RPC 2.0 和 MCP 规范实现，只覆盖 initialize / tools / ping。
参考: https://modelcontextprotocol.io/specification/
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None


# =============================================================================
# MCP 协议版本
# =============================================================================

LATEST_PROTOCOL_VERSION = "2024-11-05"


# =============================================================================
# MCP 方法名
# =============================================================================

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
METHOD_PING = "ping"


# =============================================================================
# MCP 实现信息与能力
# =============================================================================


class Implementation(BaseModel):
    """客户端/服务器实现信息"""

    name: str
    version: str


class ToolsCapability(BaseModel):
    """工具能力"""

    listChanged: bool = False


class ClientCapabilities(BaseModel):
    """客户端能力"""

    tools: Dict[str, Any] = Field(default_factory=dict)
    experimental: Optional[Dict[str, Any]] = None


class ServerCapabilities(BaseModel):
    """服务器能力 (未识别的能力原样保留)"""

    model_config = ConfigDict(extra="allow")

    tools: Optional[ToolsCapability] = None
    experimental: Optional[Dict[str, Any]] = None


# =============================================================================
# MCP 初始化
# =============================================================================


class InitializeParams(BaseModel):
    """初始化请求参数"""

    protocolVersion: str = LATEST_PROTOCOL_VERSION
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    clientInfo: Implementation


class InitializeResult(BaseModel):
    """初始化响应结果"""

    protocolVersion: str
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    serverInfo: Implementation
    instructions: Optional[str] = None


# =============================================================================
# MCP 工具类型
# =============================================================================


class MCPTool(BaseModel):
    """MCP 工具定义"""

    name: str
    description: Optional[str] = None
    inputSchema: Dict[str, Any] = Field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
        }
    )
    title: Optional[str] = None


class ListToolsResult(BaseModel):
    """工具列表响应"""

    tools: List[MCPTool]
    nextCursor: Optional[str] = None


class MCPToolCall(BaseModel):
    """工具调用参数"""

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class MCPToolResult(BaseModel):
    """工具调用结果

    content 按服务器返回的原样保存，不做内容类型校验。
    """

    content: Any = Field(default_factory=list)
    isError: bool = False


class PingResult(BaseModel):
    """ping 响应 (标准 MCP 服务器返回空对象)"""

    message: Optional[str] = None
