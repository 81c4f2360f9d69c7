"""内存中的 MCP 服务器与传输，用于确定性的连接状态机测试"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

from chatlink.config import TransportKind
from chatlink.mcp.errors import MCPConnectionError, RequestTimeoutError, TransportError
from chatlink.mcp.transport import Transport

DEFAULT_TOOLS = [
    {
        "name": "read_file",
        "description": "Read contents of a file",
        "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
    },
    {
        "name": "list_directory",
        "description": "List contents of a directory",
        "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
    },
]


class FakeServer:
    """脚本化的 MCP 服务器

    - hold: 这些方法的请求不自动回复，放入 held 等待测试手动 reply()
    - open_failures: 接下来多少次 open() 失败
    - fail_open_forever: 所有 open() 都失败
    """

    def __init__(self, tools: Optional[List[Dict[str, Any]]] = None):
        self.tools = list(tools if tools is not None else DEFAULT_TOOLS)
        self.received: List[Dict[str, Any]] = []
        self.hold: Set[str] = set()
        self.held: List[Dict[str, Any]] = []
        self.open_failures = 0
        self.fail_open_forever = False
        self.opens = 0
        self.ping_result: Dict[str, Any] = {"message": "pong"}
        self.transports: List["FakeTransport"] = []

    def factory(self, config, timeout=None) -> "FakeTransport":
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def http_factory(self, config, timeout=None) -> "FakeHTTPTransport":
        transport = FakeHTTPTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> "FakeTransport":
        return self.transports[-1]

    def methods(self) -> List[str]:
        return [message.get("method") for message in self.received if "method" in message]

    def respond(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """计算回复；通知返回 None"""
        request_id = message.get("id")
        if request_id is None:
            return None

        method = message["method"]
        params = message.get("params") or {}

        if method == "initialize":
            result: Any = {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": "fake-server", "version": "1.0.0"},
            }
        elif method == "tools/list":
            result = {"tools": self.tools}
        elif method == "tools/call":
            if params["name"] == "fail":
                return {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32603, "message": "Tool execution failed", "data": "boom"},
                }
            if params["name"] == "broken":
                result = {"content": [{"type": "text", "text": "disk full"}], "isError": True}
            else:
                result = {"content": f"{params['name']}:{json.dumps(params.get('arguments', {}), sort_keys=True)}"}
        elif method == "ping":
            result = self.ping_result
        else:
            return {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}}

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def reply(self, message: Dict[str, Any], result: Any = None) -> None:
        """回复一个被挂起的请求"""
        response = self.respond(message) if result is None else {"jsonrpc": "2.0", "id": message["id"], "result": result}
        self.current.push(response)

    def _check_open(self) -> None:
        self.opens += 1
        if self.fail_open_forever:
            raise MCPConnectionError("connection refused")
        if self.open_failures > 0:
            self.open_failures -= 1
            raise MCPConnectionError("connection refused")


class FakeTransport(Transport):
    """流式传输 (相当于 stdio / websocket)"""

    kind = TransportKind.STDIO
    streaming = True

    def __init__(self, server: FakeServer):
        self.server = server
        self.sent: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._open = False
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.server._check_open()
        self._open = True

    async def close(self) -> None:
        if self._open:
            self._open = False
            self.closed = True
            self._queue.put_nowait(None)

    async def send(self, data: str) -> None:
        if not self._open:
            raise TransportError("broken pipe")
        self.sent.append(data)

        message = json.loads(data)
        self.server.received.append(message)
        if "method" not in message:
            return
        if message.get("id") is not None and message["method"] in self.server.hold:
            self.server.held.append(message)
            return

        response = self.server.respond(message)
        if response is not None:
            self.push(response)

    def push(self, message: Any) -> None:
        """服务器主动写入一条消息"""
        self._queue.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """模拟对端断开"""
        self._open = False
        self._queue.put_nowait(None)

    async def receive(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class FakeHTTPTransport(Transport):
    """请求/响应传输 (相当于 HTTP)"""

    kind = TransportKind.HTTP
    streaming = False

    def __init__(self, server: FakeServer):
        self.server = server
        self._open = False
        self.down = False
        self.slow: Set[str] = set()
        self.timeouts: List[Optional[float]] = []

    @property
    def is_connected(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.server._check_open()
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, data: str, timeout=None) -> Optional[str]:
        if not self._open:
            raise TransportError("client closed")
        if self.down:
            raise MCPConnectionError("connection refused")

        self.timeouts.append(timeout)
        message = json.loads(data)
        self.server.received.append(message)
        if message.get("method") in self.slow:
            raise RequestTimeoutError("HTTP 请求超时")

        response = self.server.respond(message)
        return json.dumps(response) if response is not None else None

    def receive(self):
        raise TransportError("HTTP 传输没有接收流")
