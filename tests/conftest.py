"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))
# 测试辅助模块 (fake_mcp)
sys.path.insert(0, str(Path(__file__).parent))

from chatlink.config import HealthCheckConfig, MCPConfig, MCPServerConfig, ReconnectConfig  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FS_SERVER = FIXTURES_DIR / "fs_server.py"


@pytest.fixture
def fs_server_config():
    """stdio 文件系统示例服务器"""
    return MCPServerConfig(
        name="fs",
        command=sys.executable,
        args=[str(FS_SERVER)],
        timeout=10.0,
    )


@pytest.fixture
def fast_reconnect():
    """无抖动、毫秒级的重连配置"""
    return ReconnectConfig(max_retries=3, base_delay=0.01, max_delay=0.05, jitter=False)


@pytest.fixture
def mcp_config(fs_server_config, fast_reconnect):
    """只包含示例服务器的 MCP 配置"""
    return MCPConfig(
        servers=[fs_server_config],
        call_timeout=10.0,
        reconnect=fast_reconnect,
        health_check=HealthCheckConfig(enabled=False),
    )


@pytest.fixture
def config_file(tmp_path):
    """创建临时配置文件"""
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
mcp:
  call_timeout: 15
  health_check:
    interval: 10
    timeout: 2
    failure_threshold: 2
  reconnect:
    max_retries: 5
    base_delay: 0.5
  servers:
    fs:
      type: stdio
      command: {sys.executable}
      args: ["{FS_SERVER.as_posix()}"]
    remote:
      type: websocket
      host: localhost
      port: 8765
      path: /mcp
    api:
      type: http
      url: http://localhost:8080/mcp
      headers:
        Authorization: Bearer x
      enabled: false
""",
        encoding="utf-8",
    )
    return path
