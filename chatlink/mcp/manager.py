"""MCP 管理器

管理多个 MCP 服务器连接，对外提供统一的工具目录与调用入口。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from ..config import MCPConfig, MCPServerConfig
from ..events import EventBroker, ToolCallCompleteEvent, ToolCallStartEvent
from ..schema import ToolCall, ToolInvocationRequest, ToolInvocationResult
from .connection import ConnectionState, ServerConnection, TransportFactory
from .errors import MCPError, NotReadyError, UnknownServerError, UnknownToolError
from .health import HealthMonitor
from .registry import ToolDescriptor, ToolKey, ToolRegistry
from .transport import create_transport

logger = logging.getLogger(__name__)


class MCPManager:
    """MCP 管理器

    使用示例:
        async with MCPManager(Config.load().mcp) as manager:
            tools = manager.get_llm_tools("openai")
            result = await manager.call_tool("fs", "read_file", {"path": "a.txt"})
    """

    def __init__(
        self,
        config: Optional[MCPConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        broker: Optional[EventBroker] = None,
        transport_factory: TransportFactory = create_transport,
    ):
        self.config = config or MCPConfig()
        self.registry = registry or ToolRegistry()
        self._broker = broker
        self._transport_factory = transport_factory
        self._connections: Dict[str, ServerConnection] = {}
        self._unavailable: Set[str] = set()
        self.health = HealthMonitor(self.config.health_check, broker)
        self._started = False

    @property
    def connections(self) -> Dict[str, ServerConnection]:
        return dict(self._connections)

    @property
    def unavailable_servers(self) -> List[str]:
        """重连耗尽、已进入 CLOSED 的服务器"""
        return sorted(self._unavailable)

    # =========================================================================
    # 生命周期
    # =========================================================================

    async def start(self, servers: Optional[List[MCPServerConfig]] = None) -> Dict[str, bool]:
        """并发连接全部服务器，单个服务器失败不影响其他服务器

        Returns:
            server_name -> 是否已就绪
        """
        if servers is None:
            servers = self.config.enabled_servers if self.config.enabled else []

        for server in servers:
            if server.name not in self._connections:
                self._add_connection(server)

        names = [server.name for server in servers]
        results = await asyncio.gather(*(self._connections[name].start() for name in names))

        if self.config.health_check.enabled:
            self.health.start()
        self._started = True

        ready = dict(zip(names, results))
        logger.info(f"MCP 管理器已启动: {sum(results)}/{len(names)} 个服务器就绪")
        return ready

    async def add_server(self, config: MCPServerConfig) -> bool:
        """添加并连接服务器，同名服务器会被替换"""
        if config.name in self._connections:
            logger.warning(f"服务器 '{config.name}' 已存在，将替换")
            await self.remove_server(config.name)

        conn = self._add_connection(config)
        return await conn.start()

    async def remove_server(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            return

        self.health.unwatch(name)
        self._unavailable.discard(name)
        await conn.stop()
        logger.info(f"已移除 MCP 服务器: {name}")

    async def reset_server(self, name: str) -> bool:
        """显式重置服务器 (包括已进入 CLOSED 的服务器)"""
        conn = self.get_connection(name)
        self._unavailable.discard(name)
        return await conn.reset()

    async def stop(self) -> None:
        """关闭全部连接 (幂等)"""
        await self.health.stop()

        connections = list(self._connections.values())
        self._connections.clear()
        if connections:
            await asyncio.gather(*(conn.stop() for conn in connections))

        if self._started:
            logger.info("MCP 管理器已停止")
        self._started = False

    def _add_connection(self, config: MCPServerConfig) -> ServerConnection:
        conn = ServerConnection(
            config,
            self.registry,
            reconnect=self.config.reconnect,
            call_timeout=self.config.call_timeout,
            protocol_version=self.config.protocol_version,
            broker=self._broker,
            on_closed=self._on_server_closed,
            transport_factory=self._transport_factory,
        )
        self._connections[config.name] = conn
        self.health.watch(conn)
        return conn

    def _on_server_closed(self, name: str, reason: str) -> None:
        self._unavailable.add(name)
        logger.error(f"MCP 服务器 '{name}' 已不可用，需要显式重置: {reason}")

    # =========================================================================
    # 查询
    # =========================================================================

    def get_connection(self, name: str) -> ServerConnection:
        conn = self._connections.get(name)
        if conn is None:
            raise UnknownServerError(name)
        return conn

    def list_tools(self) -> Dict[ToolKey, ToolDescriptor]:
        """合并后的工具目录"""
        return self.registry.list_all()

    def get_llm_tools(self, style: str = "openai") -> List[Dict[str, Any]]:
        return self.registry.to_llm_format(style)

    def get_server_status(self) -> Dict[str, Dict[str, Any]]:
        """各服务器的连接与健康状态"""
        statuses: Dict[str, Dict[str, Any]] = {}
        for name, conn in self._connections.items():
            health = self.health.get_status(name)
            statuses[name] = {
                "type": conn.config.type.value,
                "state": conn.state.value,
                "ready": conn.is_ready,
                "tools": len(self.registry.tools_for(name)),
                "server_info": conn.server_info.model_dump() if conn.server_info else None,
                "retry_attempt": conn.retry_attempt,
                "last_error": conn.last_error,
                "healthy": health.healthy if health else False,
                "latency": health.latency if health else None,
            }
        return statuses

    # =========================================================================
    # 调用
    # =========================================================================

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolInvocationResult:
        """调用指定服务器的工具

        所有 MCP 错误都以失败结果返回，不会抛出。
        """
        arguments = arguments or {}
        full_name = f"{server_name}.{tool_name}"

        if self._broker:
            self._broker.publish(
                ToolCallStartEvent(server_name=server_name, tool_name=tool_name, arguments=arguments)
            )

        start = time.monotonic()
        try:
            result = await self._dispatch(server_name, tool_name, arguments, timeout)
        except MCPError as e:
            logger.warning(f"MCP 工具 '{full_name}' 调用失败: {e}")
            result = ToolInvocationResult.failure(str(e))

        duration = time.monotonic() - start
        logger.debug(f"MCP 工具 '{full_name}' 完成 (success={result.success}, {duration:.3f}s)")

        if self._broker:
            self._broker.publish(
                ToolCallCompleteEvent(
                    server_name=server_name,
                    tool_name=tool_name,
                    success=result.success,
                    error=result.error,
                    duration=duration,
                )
            )
        return result

    async def _dispatch(
        self,
        server_name: str,
        tool_name: str,
        arguments: Dict[str, Any],
        timeout: Optional[float],
    ) -> ToolInvocationResult:
        conn = self.get_connection(server_name)
        if conn.state != ConnectionState.READY:
            raise NotReadyError(f"服务器 '{server_name}' 未就绪 ({conn.state.value})")
        if not self.registry.has_tool(server_name, tool_name):
            raise UnknownToolError(tool_name, server_name)
        return await conn.call_tool(tool_name, arguments, timeout=timeout)

    async def invoke(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        return await self.call_tool(request.server_name, request.tool_name, request.arguments)

    async def call_llm_tool(self, call: Union[ToolCall, Mapping[str, Any]]) -> ToolInvocationResult:
        """执行 LLM 发出的工具调用"""
        try:
            request = self.registry.from_llm_tool_call(call)
        except (UnknownToolError, ValueError) as e:
            logger.warning(f"无法解析 LLM 工具调用: {e}")
            return ToolInvocationResult.failure(str(e))
        return await self.invoke(request)

    async def __aenter__(self) -> "MCPManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
