"""
ChatLink CLI 入口

- tools: 列出合并后的工具目录
- call: 调用单个工具
- status: 查看服务器连接与健康状态
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import Config
from .mcp import MCPManager

console = Console()

STATE_STYLES = {
    "ready": "green",
    "degraded": "yellow",
    "connecting": "cyan",
    "initializing": "cyan",
    "disconnected": "red",
    "closed": "red",
}


def setup_logging(verbose: bool) -> None:
    """配置日志"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose)],
    )


def load_config(path: Optional[str]) -> Config:
    try:
        return Config.load(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ 配置错误: {e}[/red]")
        console.print("\n请创建配置文件 config/config.yaml，示例:")
        console.print(
            """
mcp:
  servers:
    fs:
      type: stdio
      command: python
      args: [fs_server.py]
""",
            markup=False,
        )
        sys.exit(1)


async def cmd_tools(manager: MCPManager, output_format: str) -> int:
    """列出工具"""
    if output_format == "json":
        print(json.dumps(manager.get_llm_tools("openai"), ensure_ascii=False, indent=2))
        return 0

    snapshot = manager.registry.snapshot()
    table = Table(title=f"MCP 工具 ({len(snapshot.tools)})")
    table.add_column("LLM 名称", style="cyan")
    table.add_column("服务器", style="magenta")
    table.add_column("工具")
    table.add_column("描述", overflow="fold")

    for key, descriptor in sorted(snapshot.tools.items()):
        table.add_row(snapshot.llm_name(key), descriptor.server_name, descriptor.tool_name, descriptor.description)

    console.print(table)
    return 0


async def cmd_call(manager: MCPManager, server: str, tool: str, raw_args: Optional[str]) -> int:
    """调用工具"""
    arguments: Dict[str, Any] = {}
    if raw_args:
        try:
            arguments = json.loads(raw_args)
        except json.JSONDecodeError as e:
            console.print(f"[red]❌ 参数不是合法 JSON: {e}[/red]")
            return 2
        if not isinstance(arguments, dict):
            console.print("[red]❌ 参数必须是 JSON 对象[/red]")
            return 2

    result = await manager.call_tool(server, tool, arguments)
    if result.success:
        console.print(result.text, markup=False)
        return 0

    console.print(f"[red]❌ {result.error}[/red]")
    return 1


async def cmd_status(manager: MCPManager) -> int:
    """查看状态"""
    await manager.health.check_all()

    table = Table(title="MCP 服务器")
    table.add_column("服务器", style="cyan")
    table.add_column("传输")
    table.add_column("状态")
    table.add_column("工具", justify="right")
    table.add_column("延迟", justify="right")
    table.add_column("错误", overflow="fold")

    for name, status in manager.get_server_status().items():
        style = STATE_STYLES.get(status["state"], "white")
        latency = status["latency"]
        table.add_row(
            name,
            status["type"],
            f"[{style}]{status['state']}[/{style}]",
            str(status["tools"]),
            f"{latency * 1000:.1f}ms" if latency is not None else "-",
            status["last_error"] or "",
        )

    console.print(table)
    summary = manager.health.get_summary()
    console.print(f"健康: {summary['healthy']}/{summary['total']}")
    return 0 if summary["healthy"] == summary["total"] else 1


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    # 一次性命令不需要后台健康检查
    config.mcp.health_check.enabled = False

    async with MCPManager(config.mcp) as manager:
        if args.command == "tools":
            return await cmd_tools(manager, args.format)
        if args.command == "call":
            return await cmd_call(manager, args.server, args.tool, args.args)
        return await cmd_status(manager)


def main():
    """主入口"""
    parser = argparse.ArgumentParser(
        prog="chatlink-mcp",
        description="ChatLink - MCP 工具运行时",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  chatlink-mcp tools                          # 列出全部工具
  chatlink-mcp tools --format json            # 输出 LLM 工具声明
  chatlink-mcp call fs read_file --args '{"path": "a.txt"}'
  chatlink-mcp status                         # 查看连接状态
        """,
    )
    parser.add_argument("-c", "--config", type=str, help="配置文件路径")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    parser.add_argument("--version", action="version", version=f"ChatLink v{__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    tools_parser = subparsers.add_parser("tools", help="列出工具")
    tools_parser.add_argument(
        "-f", "--format",
        choices=["table", "json"],
        default="table",
        help="输出格式 (默认: table)",
    )

    call_parser = subparsers.add_parser("call", help="调用工具")
    call_parser.add_argument("server", help="服务器名称")
    call_parser.add_argument("tool", help="工具名称")
    call_parser.add_argument("--args", type=str, help="JSON 格式的工具参数")

    subparsers.add_parser("status", help="查看服务器状态")

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
