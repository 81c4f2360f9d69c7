"""健康检查测试"""

import asyncio

import pytest

from chatlink.config import HealthCheckConfig, MCPServerConfig
from chatlink.events import EventBroker, EventType
from chatlink.mcp.connection import ConnectionState, ServerConnection
from chatlink.mcp.health import HealthMonitor
from chatlink.mcp.registry import ToolRegistry
from fake_mcp import FakeServer


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def make_connection(registry, fast_reconnect):
    def factory(name="fs", server=None):
        server = server or FakeServer()
        conn = ServerConnection(
            MCPServerConfig(name=name, command="fake-server"),
            registry,
            reconnect=fast_reconnect,
            transport_factory=server.factory,
        )
        return conn, server

    return factory


class TestCheck:
    """单次检查测试"""

    @pytest.mark.asyncio
    async def test_healthy(self, make_connection):
        """测试健康的连接"""
        broker = EventBroker()
        queue = await broker.subscribe([EventType.HEALTH_CHECK])
        conn, server = make_connection()
        await conn.start()

        monitor = HealthMonitor(HealthCheckConfig(timeout=1.0), broker)
        monitor.watch(conn)
        status = await monitor.check(conn)

        assert status.healthy
        assert status.latency is not None and status.latency >= 0
        assert status.last_check is not None
        assert status.consecutive_failures == 0
        assert monitor.is_healthy("fs")
        assert "ping" in server.methods()

        event = queue.get_nowait()
        assert event.server_name == "fs"
        assert event.healthy
        await conn.stop()

    @pytest.mark.asyncio
    async def test_not_ready_is_not_pinged(self, make_connection):
        """测试未就绪的连接不发送 ping"""
        conn, server = make_connection()
        monitor = HealthMonitor()
        monitor.watch(conn)

        status = await monitor.check(conn)
        assert not status.healthy
        assert status.error == "连接状态: disconnected"
        assert server.methods() == []

    @pytest.mark.asyncio
    async def test_failure_threshold(self, make_connection):
        """测试连续失败达到阈值后标记不健康"""
        conn, server = make_connection()
        await conn.start()
        server.hold.add("ping")

        monitor = HealthMonitor(HealthCheckConfig(timeout=0.05, failure_threshold=2))
        monitor.watch(conn)

        status = await monitor.check(conn)
        assert not status.healthy
        assert status.consecutive_failures == 1
        assert conn.state == ConnectionState.READY

        await monitor.check(conn)
        assert conn.state != ConnectionState.READY
        assert monitor.get_status("fs").consecutive_failures == 0

        assert await conn.wait_ready(2.0)
        await conn.stop()

    @pytest.mark.asyncio
    async def test_ping_timeout_reconnects(self, make_connection, registry):
        """测试 ping 超时后降级，重连后重新注册工具"""
        conn, server = make_connection()
        await conn.start()
        server.hold.add("ping")
        server.tools = [{"name": "stat"}]

        monitor = HealthMonitor(HealthCheckConfig(timeout=0.05))
        monitor.watch(conn)
        await monitor.check(conn)

        assert conn.state == ConnectionState.DEGRADED
        assert await conn.wait_ready(2.0)
        assert [t.tool_name for t in registry.tools_for("fs")] == ["stat"]
        await conn.stop()

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, make_connection):
        """测试成功后清零失败计数"""
        conn, server = make_connection()
        await conn.start()
        server.hold.add("ping")

        monitor = HealthMonitor(HealthCheckConfig(timeout=0.05, failure_threshold=3))
        monitor.watch(conn)
        await monitor.check(conn)

        server.hold.clear()
        status = await monitor.check(conn)
        assert status.healthy
        assert status.consecutive_failures == 0
        await conn.stop()


class TestMonitor:
    """监控器测试"""

    @pytest.mark.asyncio
    async def test_check_all_and_summary(self, make_connection):
        """测试并发检查与汇总"""
        good, _ = make_connection("good")
        bad, _ = make_connection("bad")
        await good.start()

        monitor = HealthMonitor()
        monitor.watch(good)
        monitor.watch(bad)

        statuses = await monitor.check_all()
        assert statuses["good"].healthy
        assert not statuses["bad"].healthy

        summary = monitor.get_summary()
        assert summary["total"] == 2
        assert summary["healthy"] == 1
        assert summary["unhealthy_servers"] == ["bad"]
        assert summary["average_latency"] is not None
        await good.stop()

    @pytest.mark.asyncio
    async def test_background_loop(self, make_connection):
        """测试后台循环"""
        conn, server = make_connection()
        await conn.start()

        monitor = HealthMonitor(HealthCheckConfig(interval=0.02, timeout=1.0))
        monitor.watch(conn)
        monitor.start()
        assert monitor.is_running

        await asyncio.sleep(0.1)
        await monitor.stop()

        assert not monitor.is_running
        assert server.methods().count("ping") >= 2
        assert monitor.is_healthy("fs")
        await conn.stop()

    def test_unwatch(self, make_connection):
        """测试移除监控"""
        monitor = HealthMonitor()
        conn, _ = make_connection()
        monitor.watch(conn)
        monitor.unwatch("fs")

        assert monitor.get_status("fs") is None
        assert monitor.get_summary()["total"] == 0
