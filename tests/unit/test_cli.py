"""CLI 命令测试"""

import io
import json

import pytest
from rich.console import Console

from chatlink import cli
from chatlink.config import HealthCheckConfig, MCPConfig, MCPServerConfig
from chatlink.mcp.manager import MCPManager
from fake_mcp import FakeServer

WEB_TOOLS = [{"name": "search", "description": "Search the web"}, {"name": "read_file"}]


@pytest.fixture
def output(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(cli, "console", Console(file=buffer, width=200))
    return buffer


@pytest.fixture
def manager(fast_reconnect):
    servers = {"fs": FakeServer(), "web": FakeServer(tools=WEB_TOOLS)}

    def factory(config, timeout=None):
        return servers[config.name].factory(config, timeout)

    config = MCPConfig(
        servers=[MCPServerConfig(name="fs", command="fake-fs"), MCPServerConfig(name="web", command="fake-web")],
        call_timeout=1.0,
        reconnect=fast_reconnect,
        health_check=HealthCheckConfig(enabled=False),
    )
    return MCPManager(config, transport_factory=factory)


class TestTools:
    """tools 命令测试"""

    @pytest.mark.asyncio
    async def test_table_shows_llm_names(self, manager, output):
        """测试表格中冲突的工具显示带前缀的名称"""
        async with manager:
            assert await cli.cmd_tools(manager, "table") == 0

        text = output.getvalue()
        assert "MCP 工具 (4)" in text
        assert "fs__read_file" in text
        assert "web__read_file" in text
        assert "list_directory" in text

    @pytest.mark.asyncio
    async def test_json_declarations(self, manager, capsys):
        """测试输出 OpenAI 工具声明"""
        async with manager:
            assert await cli.cmd_tools(manager, "json") == 0

        declarations = json.loads(capsys.readouterr().out)
        names = {decl["function"]["name"] for decl in declarations}
        assert names == {"fs__read_file", "web__read_file", "list_directory", "search"}


class TestCall:
    """call 命令测试"""

    @pytest.mark.asyncio
    async def test_call(self, manager, output):
        async with manager:
            assert await cli.cmd_call(manager, "fs", "read_file", '{"path": "a.txt"}') == 0
        assert 'read_file:{"path": "a.txt"}' in output.getvalue()

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, manager, output):
        """测试参数不是 JSON 对象"""
        async with manager:
            assert await cli.cmd_call(manager, "fs", "read_file", "[1, 2]") == 2
            assert await cli.cmd_call(manager, "fs", "read_file", "{bad") == 2

    @pytest.mark.asyncio
    async def test_unknown_server(self, manager, output):
        """测试失败结果返回非零"""
        async with manager:
            assert await cli.cmd_call(manager, "nope", "read_file", None) == 1
        assert "nope" in output.getvalue()
