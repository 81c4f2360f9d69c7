"""MCP 服务器健康检查

定期对 READY 的连接发送 ping；连续失败达到阈值后通知连接按传输关闭处理，
由连接自己负责降级与重连。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import HealthCheckConfig
from ..events import EventBroker, HealthCheckEvent
from .connection import ConnectionState, ServerConnection
from .errors import HealthCheckError

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """单个服务器的健康状态"""

    server_name: str
    healthy: bool = False
    latency: Optional[float] = None
    last_check: Optional[datetime] = None
    error: Optional[str] = None
    consecutive_failures: int = 0


class HealthMonitor:
    """健康监控器

    使用示例:
        monitor = HealthMonitor(HealthCheckConfig(interval=30.0))
        monitor.watch(conn)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(self, config: Optional[HealthCheckConfig] = None, broker: Optional[EventBroker] = None):
        self.config = config or HealthCheckConfig()
        self._broker = broker
        self._connections: Dict[str, ServerConnection] = {}
        self._statuses: Dict[str, HealthStatus] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def watch(self, conn: ServerConnection) -> None:
        """加入监控"""
        self._connections[conn.name] = conn
        self._statuses.setdefault(conn.name, HealthStatus(server_name=conn.name))

    def unwatch(self, name: str) -> None:
        self._connections.pop(name, None)
        self._statuses.pop(name, None)

    def start(self) -> None:
        """启动后台检查循环"""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"健康检查已启动，间隔 {self.config.interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("健康检查已停止")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval)
            await self.check_all()

    async def check(self, conn: ServerConnection) -> HealthStatus:
        """检查单个连接

        非 READY 的连接不发送 ping，只记录当前状态。
        """
        status = self._statuses.setdefault(conn.name, HealthStatus(server_name=conn.name))
        status.last_check = datetime.now()

        if conn.state != ConnectionState.READY:
            status.healthy = False
            status.latency = None
            status.error = f"连接状态: {conn.state.value}"
            return status

        try:
            latency = await conn.ping(timeout=self.config.timeout)
        except HealthCheckError as e:
            status.healthy = False
            status.latency = None
            status.error = str(e)
            status.consecutive_failures += 1
            logger.warning(
                f"MCP 服务器 '{conn.name}' 健康检查失败 "
                f"({status.consecutive_failures}/{self.config.failure_threshold}): {e}"
            )

            if status.consecutive_failures >= self.config.failure_threshold:
                status.consecutive_failures = 0
                await conn.mark_unhealthy(str(e))
        else:
            status.healthy = True
            status.latency = latency
            status.error = None
            status.consecutive_failures = 0
            logger.debug(f"MCP 服务器 '{conn.name}' 健康，延迟 {latency * 1000:.1f}ms")

        if self._broker:
            self._broker.publish(
                HealthCheckEvent(
                    server_name=conn.name,
                    healthy=status.healthy,
                    latency=status.latency or 0.0,
                    error=status.error,
                )
            )
        return status

    async def check_all(self) -> Dict[str, HealthStatus]:
        """并发检查全部连接"""
        connections = list(self._connections.values())
        if connections:
            await asyncio.gather(*(self.check(conn) for conn in connections))
        return self.get_all_statuses()

    def get_status(self, name: str) -> Optional[HealthStatus]:
        return self._statuses.get(name)

    def get_all_statuses(self) -> Dict[str, HealthStatus]:
        return dict(self._statuses)

    def is_healthy(self, name: str) -> bool:
        status = self._statuses.get(name)
        return status is not None and status.healthy

    def get_summary(self) -> Dict[str, Any]:
        """健康状况汇总"""
        statuses = list(self._statuses.values())
        healthy = [s for s in statuses if s.healthy]
        latencies = [s.latency for s in healthy if s.latency is not None]
        unhealthy: List[str] = [s.server_name for s in statuses if not s.healthy]

        return {
            "total": len(statuses),
            "healthy": len(healthy),
            "unhealthy": len(unhealthy),
            "average_latency": sum(latencies) / len(latencies) if latencies else None,
            "unhealthy_servers": unhealthy,
        }
