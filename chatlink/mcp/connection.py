"""MCP 服务器连接

一个 ServerConnection 独占一个传输、一张等待中请求表，并运行连接状态机:

    DISCONNECTED -> CONNECTING -> INITIALIZING -> READY
    READY -> DEGRADED (传输关闭 / 健康检查失败) -> 重连 (CONNECTING ...)
    重连耗尽 -> CLOSED；任意状态 stop() -> CLOSED

传输层故障在这里就地处理并自动重连，不会抛给调用方之外的组件。
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from .. import __version__
from ..config import MCPServerConfig, ReconnectConfig
from ..events import ConnectionStateEvent, EventBroker, ServerUnavailableEvent, ToolsUpdatedEvent
from ..retry import backoff_delays
from ..schema import ToolInvocationResult, content_to_text
from .codec import (
    PendingCall,
    PendingCalls,
    decode_message,
    encode_notification,
    encode_request,
    encode_response,
    raise_for_error,
)
from .errors import (
    METHOD_NOT_FOUND,
    ConnectionLostError,
    HealthCheckError,
    MCPConnectionError,
    MCPError,
    NotReadyError,
    ProtocolError,
    RequestTimeoutError,
    ServerRPCError,
    TransportError,
)
from .protocol import (
    LATEST_PROTOCOL_VERSION,
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_PING,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    MCPToolCall,
    MCPToolResult,
    PingResult,
)
from .registry import ToolDescriptor, ToolRegistry
from .transport import Transport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[MCPServerConfig, Optional[float]], Transport]

# 服务器通知工具列表变化
NOTIFICATION_TOOLS_CHANGED = "notifications/tools/list_changed"


class ConnectionState(Enum):
    """连接状态"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


class ServerConnection:
    """单个 MCP 服务器的连接

    使用示例:
        registry = ToolRegistry()
        conn = ServerConnection(MCPServerConfig(name="fs", command="python", args=["fs_server.py"]), registry)
        await conn.start()
        result = await conn.call_tool("read_file", {"path": "a.txt"})
        await conn.stop()
    """

    def __init__(
        self,
        config: MCPServerConfig,
        registry: ToolRegistry,
        *,
        reconnect: Optional[ReconnectConfig] = None,
        call_timeout: float = 30.0,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        client_info: Optional[Implementation] = None,
        broker: Optional[EventBroker] = None,
        on_closed: Optional[Callable[[str, str], None]] = None,
        transport_factory: TransportFactory = create_transport,
    ):
        """初始化连接

        Args:
            config: 服务器配置
            registry: 工具注册表 (READY 前写入该服务器的工具)
            reconnect: 重连配置
            call_timeout: 默认请求超时 (秒)，服务器配置中的 timeout 优先
            protocol_version: initialize 时声明的协议版本
            client_info: 客户端实现信息
            broker: 事件代理
            on_closed: 重连耗尽进入 CLOSED 时的回调 (server_name, reason)
            transport_factory: 传输工厂
        """
        self.config = config
        self._registry = registry
        self._reconnect = reconnect or ReconnectConfig()
        self._call_timeout = config.timeout or call_timeout
        self._protocol_version = protocol_version
        self._client_info = client_info or Implementation(name="chatlink", version=__version__)
        self._broker = broker
        self._on_closed = on_closed
        self._transport_factory = transport_factory

        # 状态
        self._state = ConnectionState.DISCONNECTED
        self._ready_event = asyncio.Event()
        self._stopped = False
        self._transport: Optional[Transport] = None
        self._pending = PendingCalls()
        self._reader_task: Optional[asyncio.Task] = None
        self._transport_lost = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._retry_attempt = 0
        self._last_error: Optional[str] = None

        # 服务器信息
        self._server_info: Optional[Implementation] = None
        self._server_capabilities: Dict[str, Any] = {}
        self._server_protocol_version: Optional[str] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ConnectionState.READY

    @property
    def server_info(self) -> Optional[Implementation]:
        return self._server_info

    @property
    def capabilities(self) -> Dict[str, Any]:
        return self._server_capabilities

    @property
    def protocol_version(self) -> Optional[str]:
        """服务器协商的协议版本"""
        return self._server_protocol_version

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    # =========================================================================
    # 生命周期
    # =========================================================================

    async def start(self) -> bool:
        """连接服务器，失败时安排重连

        Returns:
            是否已进入 READY
        """
        if self._state != ConnectionState.DISCONNECTED or self._reconnect_task is not None:
            return self.is_ready

        self._stopped = False
        if await self._connect():
            return True

        self._schedule_reconnect()
        return False

    async def stop(self) -> None:
        """关闭连接 (幂等)，未完成的请求立即失败"""
        if self._stopped:
            return

        self._stopped = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        self._set_state(ConnectionState.CLOSED, "已停止")
        await self._teardown("连接已关闭")
        self._registry.unregister(self.name)

    async def reset(self) -> bool:
        """显式重置: 关闭后重新走完整连接流程"""
        await self.stop()

        self._stopped = False
        self._retry_attempt = 0
        self._last_error = None
        self._set_state(ConnectionState.DISCONNECTED, "重置")
        return await self.start()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """等待连接进入 READY"""
        if self.is_ready:
            return True
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    async def mark_unhealthy(self, reason: str) -> None:
        """健康检查失败，按传输关闭处理"""
        await self._degrade(f"健康检查失败: {reason}")

    # =========================================================================
    # 公开操作
    # =========================================================================

    async def list_tools(self) -> List[ToolDescriptor]:
        """重新获取工具列表并整体替换注册表中的目录"""
        self._require_ready()

        tools = await self._fetch_tools()
        self._register_tools(tools)
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolInvocationResult:
        """调用工具

        Args:
            name: 工具名称
            arguments: 工具参数
            timeout: 本次调用超时 (秒)

        Returns:
            工具执行结果；服务器返回的 JSON-RPC 错误与 isError 结果以失败结果返回

        Raises:
            NotReadyError: 连接不是 READY
            RequestTimeoutError: 超时 (连接状态不受影响)
            ConnectionLostError: 等待期间连接断开
        """
        self._require_ready()

        params = MCPToolCall(name=name, arguments=arguments or {}).model_dump()
        try:
            result = await self._request(METHOD_TOOLS_CALL, params, timeout)
        except ServerRPCError as e:
            logger.warning(f"MCP 工具 '{self.name}.{name}' 调用失败: {e}")
            return ToolInvocationResult.failure(str(e), payload=e.data)

        try:
            tool_result = MCPToolResult.model_validate(result if result is not None else {})
        except ValidationError as e:
            raise ProtocolError(f"tools/call 响应格式错误: {e}")

        if tool_result.isError:
            error_text = content_to_text(tool_result.content) or "工具执行失败"
            return ToolInvocationResult.failure(error_text, payload=tool_result.content, is_error=True)

        return ToolInvocationResult(success=True, payload=tool_result.content)

    async def ping(self, timeout: Optional[float] = None) -> float:
        """发送 ping

        Returns:
            往返延迟 (秒)

        Raises:
            HealthCheckError: 未就绪、超时、连接断开或响应异常
        """
        if not self.is_ready:
            raise HealthCheckError(f"服务器 '{self.name}' 未就绪 ({self._state.value})")

        start = time.monotonic()
        try:
            result = await self._request(METHOD_PING, {}, timeout)
        except MCPError as e:
            raise HealthCheckError(f"ping 失败: {e}") from e

        latency = time.monotonic() - start

        try:
            pong = PingResult.model_validate(result if result is not None else {})
        except ValidationError as e:
            raise HealthCheckError(f"ping 响应格式错误: {e}") from e
        if pong.message is not None and pong.message != "pong":
            raise HealthCheckError(f"ping 响应异常: {pong.message!r}")

        return latency

    # =========================================================================
    # 连接流程
    # =========================================================================

    async def _connect(self) -> bool:
        """open -> initialize -> tools/list -> 注册 -> READY"""
        self._set_state(ConnectionState.CONNECTING)

        transport = self._transport_factory(self.config, self._call_timeout)
        try:
            await transport.open()
        except MCPError as e:
            await transport.close()
            return self._connect_failed(f"打开传输失败: {e}")
        except asyncio.CancelledError:
            await transport.close()
            raise

        if self._stopped:
            await transport.close()
            return False

        self._transport = transport
        self._transport_lost = False
        if transport.streaming:
            self._reader_task = asyncio.create_task(self._read_loop(transport))

        self._set_state(ConnectionState.INITIALIZING)
        try:
            await self._initialize()
            tools = await self._fetch_tools()
        except MCPError as e:
            if self._stopped:
                return False
            await self._teardown(f"初始化失败: {e}")
            return self._connect_failed(f"初始化失败: {e}")

        if self._stopped:
            return False
        if self._transport_lost or not transport.is_connected:
            await self._teardown("初始化期间传输已关闭")
            return self._connect_failed("初始化期间传输已关闭")

        # 先替换目录再报告 READY，调用方不会看到过期或空的工具列表
        self._register_tools(tools)
        self._retry_attempt = 0
        self._last_error = None
        self._set_state(ConnectionState.READY)
        return True

    def _connect_failed(self, reason: str) -> bool:
        self._last_error = reason
        logger.warning(f"MCP 服务器 '{self.name}' 连接失败: {reason}")
        if not self._stopped:
            self._set_state(ConnectionState.DISCONNECTED, reason)
        return False

    async def _initialize(self) -> None:
        """MCP 握手"""
        params = InitializeParams(
            protocolVersion=self._protocol_version,
            clientInfo=self._client_info,
        )
        result = await self._request(METHOD_INITIALIZE, params.model_dump(exclude_none=True))

        try:
            init_result = InitializeResult.model_validate(result)
        except ValidationError as e:
            raise ProtocolError(f"initialize 响应格式错误: {e}")

        self._server_info = init_result.serverInfo
        self._server_capabilities = init_result.capabilities.model_dump(exclude_none=True)
        self._server_protocol_version = init_result.protocolVersion

        logger.info(
            f"MCP 初始化成功: {init_result.serverInfo.name} v{init_result.serverInfo.version} "
            f"(协议 {init_result.protocolVersion})"
        )

        await self._notify(METHOD_INITIALIZED)

    async def _fetch_tools(self) -> List[ToolDescriptor]:
        """获取完整工具列表 (处理分页)"""
        tools: List[ToolDescriptor] = []
        cursor: Optional[str] = None
        seen_cursors: Set[str] = set()

        while True:
            result = await self._request(METHOD_TOOLS_LIST, {"cursor": cursor} if cursor else None)
            try:
                page = ListToolsResult.model_validate(result)
            except ValidationError as e:
                raise ProtocolError(f"tools/list 响应格式错误: {e}")

            tools.extend(ToolDescriptor.from_mcp(self.name, tool) for tool in page.tools)

            cursor = page.nextCursor
            if not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)

        logger.info(f"MCP 服务器 '{self.name}' 发现 {len(tools)} 个工具")
        return tools

    def _register_tools(self, tools: List[ToolDescriptor]) -> None:
        self._registry.register(self.name, tools)
        if self._broker:
            self._broker.publish(
                ToolsUpdatedEvent(server_name=self.name, tool_names=[tool.tool_name for tool in tools])
            )

    # =========================================================================
    # 故障与重连
    # =========================================================================

    async def _on_transport_closed(self, reason: str) -> None:
        if self._state == ConnectionState.READY:
            await self._degrade(reason)
        elif self._state in (ConnectionState.CONNECTING, ConnectionState.INITIALIZING):
            # 让握手中的请求立即失败，由连接流程负责清理
            self._transport_lost = True
            self._pending.fail_all(reason)

    async def _degrade(self, reason: str) -> None:
        """READY -> DEGRADED，只发生一次"""
        if self._state != ConnectionState.READY:
            return

        self._last_error = reason
        self._set_state(ConnectionState.DEGRADED, reason)

        outstanding = len(self._pending)
        await self._teardown(reason)
        if outstanding:
            logger.warning(f"MCP 服务器 '{self.name}' 断开，{outstanding} 个未完成请求已失败")

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_retries = self._reconnect.max_retries

        for attempt, delay in enumerate(backoff_delays(self._reconnect)):
            self._retry_attempt = attempt + 1
            logger.info(
                f"MCP 服务器 '{self.name}' 将在 {delay:.2f}s 后重连 (第 {attempt + 1}/{max_retries} 次)"
            )
            await asyncio.sleep(delay)

            if self._stopped:
                return
            if await self._connect():
                logger.info(f"MCP 服务器 '{self.name}' 重连成功")
                self._reconnect_task = None
                return

        if self._stopped:
            return

        reason = f"重连 {max_retries} 次后仍失败: {self._last_error}"
        self._reconnect_task = None
        self._registry.unregister(self.name)
        self._set_state(ConnectionState.CLOSED, reason)
        logger.error(f"MCP 服务器 '{self.name}' 不可用: {reason}")

        if self._broker:
            self._broker.publish(
                ServerUnavailableEvent(server_name=self.name, attempts=max_retries, reason=reason)
            )
        if self._on_closed:
            self._on_closed(self.name, reason)

    async def _teardown(self, reason: str) -> None:
        """释放传输，结束全部等待中的请求"""
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        current = asyncio.current_task()

        self._pending.fail_all(reason)

        if reader is not None and reader is not current:
            reader.cancel()
        for task in list(self._background):
            if task is not current:
                task.cancel()

        if transport is not None:
            await transport.close()

    # =========================================================================
    # 请求收发
    # =========================================================================

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise NotReadyError(f"服务器 '{self.name}' 未就绪 ({self._state.value})")

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """发送请求并等待对应 id 的响应"""
        transport = self._transport
        if transport is None:
            raise NotReadyError(f"服务器 '{self.name}' 没有可用的传输")

        timeout = self._call_timeout if timeout is None else timeout
        call = self._pending.allocate(method)
        data = encode_request(call.id, method, params)

        try:
            if transport.streaming:
                try:
                    await transport.send(data)
                except TransportError as e:
                    self._pending.reject(call.id, ConnectionLostError(str(e)))
                    if transport is self._transport:
                        await self._on_transport_closed(str(e))
            else:
                self._spawn(self._post(transport, call, data, timeout))

            response = await asyncio.wait_for(call.future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"MCP 服务器 '{self.name}' 请求超时: {method} (id={call.id}, {call.elapsed:.2f}s)")
            raise RequestTimeoutError(f"{method} 请求超时 ({timeout}s)")
        finally:
            self._pending.discard(call.id)

        return raise_for_error(response)

    async def _post(self, transport: Transport, call: PendingCall, data: str, timeout: float) -> None:
        """HTTP: 发送即得到回复，直接完成对应请求"""
        try:
            raw = await transport.send(data, timeout=timeout)
        except RequestTimeoutError as e:
            self._pending.reject(call.id, e)
            return
        except (MCPConnectionError, TransportError) as e:
            self._pending.reject(call.id, ConnectionLostError(str(e)))
            if transport is self._transport:
                await self._on_transport_closed(str(e))
            return

        message = decode_message(raw) if raw else None
        if isinstance(message, JSONRPCResponse):
            if message.id is not None and message.id != call.id:
                logger.warning(f"HTTP 响应 id 不匹配: 期望 {call.id}, 收到 {message.id}")
            self._pending.resolve(message, request_id=call.id)
        else:
            self._pending.reject(call.id, ProtocolError(f"{call.method} 的 HTTP 响应不是 JSON-RPC 响应"))

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        transport = self._transport
        if transport is None:
            raise NotReadyError(f"服务器 '{self.name}' 没有可用的传输")
        await transport.send(encode_notification(method, params))

    async def _read_loop(self, transport: Transport) -> None:
        """读取入站消息，按 id 交给等待中的请求"""
        reason = "传输已关闭"
        try:
            async for raw in transport.receive():
                message = decode_message(raw)
                if message is None:
                    continue

                if isinstance(message, JSONRPCResponse):
                    if not self._pending.resolve(message):
                        logger.warning(f"MCP 服务器 '{self.name}' 返回未知 id 的响应: {message.id}")
                elif isinstance(message, JSONRPCRequest):
                    await self._answer_server_request(transport, message)
                else:
                    self._handle_notification(message.method)
        except (TransportError, OSError) as e:
            reason = str(e) or type(e).__name__

        if transport is self._transport:
            await self._on_transport_closed(reason)

    async def _answer_server_request(self, transport: Transport, request: JSONRPCRequest) -> None:
        """回复服务器发起的请求: 只支持 ping"""
        if request.method == METHOD_PING:
            data = encode_response(request.id, result={})
        else:
            logger.debug(f"MCP 服务器 '{self.name}' 发起了不支持的请求: {request.method}")
            data = encode_response(
                request.id,
                error=JSONRPCError(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )

        try:
            await transport.send(data)
        except TransportError as e:
            logger.debug(f"回复服务器请求失败: {e}")

    def _handle_notification(self, method: str) -> None:
        if method == NOTIFICATION_TOOLS_CHANGED and self.is_ready:
            logger.info(f"MCP 服务器 '{self.name}' 工具列表已变化，重新获取")
            self._spawn(self._refresh_tools())
        else:
            logger.debug(f"MCP 服务器 '{self.name}' 通知: {method}")

    async def _refresh_tools(self) -> None:
        try:
            await self.list_tools()
        except MCPError as e:
            logger.warning(f"MCP 服务器 '{self.name}' 刷新工具列表失败: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _set_state(self, state: ConnectionState, reason: str = "") -> None:
        old = self._state
        if old == state:
            return

        self._state = state
        if state == ConnectionState.READY:
            self._ready_event.set()
        else:
            self._ready_event.clear()

        suffix = f" ({reason})" if reason else ""
        logger.info(f"MCP 服务器 '{self.name}': {old.value} -> {state.value}{suffix}")

        if self._broker:
            self._broker.publish(
                ConnectionStateEvent(
                    server_name=self.name,
                    old_state=old.value,
                    new_state=state.value,
                    reason=reason,
                )
            )
