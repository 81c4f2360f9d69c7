"""事件系统

MCP 运行时的结构化事件：
- 连接状态变化
- 工具目录更新
- 健康检查结果
- 工具调用开始/完成

非阻塞发布，订阅方各自持有有界队列；队列满时丢弃最旧的事件。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EventType(Enum):
    """事件类型"""

    # 连接事件
    CONNECTION_STATE = "connection_state"
    SERVER_UNAVAILABLE = "server_unavailable"

    # 目录事件
    TOOLS_UPDATED = "tools_updated"

    # 健康检查
    HEALTH_CHECK = "health_check"

    # 工具调用
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_COMPLETE = "tool_call_complete"


@dataclass
class Event:
    """事件基类"""

    type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    server_name: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionStateEvent(Event):
    """连接状态变化事件"""

    type: EventType = EventType.CONNECTION_STATE
    old_state: str = ""
    new_state: str = ""
    reason: str = ""


@dataclass
class ServerUnavailableEvent(Event):
    """服务器永久不可用 (重连耗尽)"""

    type: EventType = EventType.SERVER_UNAVAILABLE
    attempts: int = 0
    reason: str = ""


@dataclass
class ToolsUpdatedEvent(Event):
    """工具目录更新事件"""

    type: EventType = EventType.TOOLS_UPDATED
    tool_names: List[str] = field(default_factory=list)


@dataclass
class HealthCheckEvent(Event):
    """健康检查事件"""

    type: EventType = EventType.HEALTH_CHECK
    healthy: bool = True
    latency: float = 0.0
    error: Optional[str] = None


@dataclass
class ToolCallStartEvent(Event):
    """工具调用开始事件"""

    type: EventType = EventType.TOOL_CALL_START
    tool_name: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallCompleteEvent(Event):
    """工具调用完成事件"""

    type: EventType = EventType.TOOL_CALL_COMPLETE
    tool_name: str = ""
    success: bool = True
    error: Optional[str] = None
    duration: float = 0.0


class EventBroker:
    """事件代理 - 非阻塞发布/订阅"""

    def __init__(self, buffer_size: int = 64):
        self._subscribers: Dict[EventType, List[asyncio.Queue]] = {}
        self._buffer_size = buffer_size
        self._lock = asyncio.Lock()

    async def subscribe(
        self,
        event_types: List[EventType],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> asyncio.Queue:
        """订阅事件类型"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_size)

        async with self._lock:
            for event_type in event_types:
                self._subscribers.setdefault(event_type, []).append(queue)

        # 如果提供了取消事件，设置自动清理
        if cancel_event:
            asyncio.create_task(self._auto_cleanup(queue, event_types, cancel_event))

        return queue

    async def _auto_cleanup(
        self,
        queue: asyncio.Queue,
        event_types: List[EventType],
        cancel_event: asyncio.Event,
    ):
        """自动清理订阅"""
        await cancel_event.wait()
        await self.unsubscribe(queue, event_types)

    async def unsubscribe(
        self,
        queue: asyncio.Queue,
        event_types: List[EventType],
    ):
        """取消订阅"""
        async with self._lock:
            for event_type in event_types:
                subscribers = self._subscribers.get(event_type, [])
                if queue in subscribers:
                    subscribers.remove(queue)

    def publish(self, event: Event):
        """发布事件（非阻塞，可在同步代码中调用）"""
        for queue in self._subscribers.get(event.type, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # 队列满，丢弃旧事件
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
