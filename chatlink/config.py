"""配置管理"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# 与 mcp.protocol.LATEST_PROTOCOL_VERSION 保持一致
DEFAULT_PROTOCOL_VERSION = "2024-11-05"


class TransportKind(Enum):
    """传输类型"""

    STDIO = "stdio"
    WEBSOCKET = "websocket"
    HTTP = "http"


@dataclass
class ReconnectConfig:
    """重连配置"""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True


@dataclass
class HealthCheckConfig:
    """健康检查配置"""

    enabled: bool = True
    interval: float = 30.0
    timeout: float = 5.0
    failure_threshold: int = 1


@dataclass(frozen=True)
class MCPServerConfig:
    """MCP 服务器配置

    加载后不可变；重新加载时整体替换。
    """

    name: str
    type: TransportKind = TransportKind.STDIO
    # stdio
    command: str = ""
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    # websocket / http
    host: Optional[str] = None
    port: Optional[int] = None
    path: str = ""
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    # 单次调用超时 (秒)，为空时使用全局配置
    timeout: Optional[float] = None
    enabled: bool = True

    def __post_init__(self):
        if not self.name:
            raise ValueError("MCP 服务器缺少名称")

        if self.type == TransportKind.STDIO:
            if not self.command:
                raise ValueError(f"MCP 服务器 '{self.name}': stdio 传输需要 command")
        elif not self.url and not (self.host and self.port):
            raise ValueError(
                f"MCP 服务器 '{self.name}': {self.type.value} 传输需要 url 或 host + port"
            )

    @property
    def endpoint(self) -> str:
        """websocket / http 地址"""
        if self.url:
            return self.url

        if self.type == TransportKind.WEBSOCKET:
            scheme = "wss" if self.port == 443 else "ws"
        else:
            scheme = "https" if self.port == 443 else "http"

        path = self.path or ""
        if path and not path.startswith("/"):
            path = "/" + path
        return f"{scheme}://{self.host}:{self.port}{path}"

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "MCPServerConfig":
        """从配置字典创建"""
        try:
            kind = TransportKind(data.get("type", "stdio"))
        except ValueError:
            raise ValueError(f"MCP 服务器 '{name}': 不支持的传输类型 {data.get('type')!r}")

        port = data.get("port")
        timeout = data.get("timeout")

        return cls(
            name=name,
            type=kind,
            command=data.get("command", ""),
            args=[str(arg) for arg in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            host=data.get("host"),
            port=int(port) if port is not None else None,
            path=data.get("path", ""),
            url=data.get("url"),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            timeout=float(timeout) if timeout is not None else None,
            enabled=data.get("enabled", True),
        )


@dataclass
class MCPConfig:
    """MCP 配置"""

    enabled: bool = True
    servers: List[MCPServerConfig] = field(default_factory=list)
    call_timeout: float = 30.0
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)

    @property
    def enabled_servers(self) -> List[MCPServerConfig]:
        return [server for server in self.servers if server.enabled]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MCPConfig":
        """从配置字典创建"""
        # 重连配置
        reconnect_data = data.get("reconnect", {}) or {}
        reconnect = ReconnectConfig(
            max_retries=reconnect_data.get("max_retries", 3),
            base_delay=reconnect_data.get("base_delay", 1.0),
            max_delay=reconnect_data.get("max_delay", 30.0),
            jitter=reconnect_data.get("jitter", True),
        )

        # 健康检查配置
        health_data = data.get("health_check", {}) or {}
        health_check = HealthCheckConfig(
            enabled=health_data.get("enabled", True),
            interval=health_data.get("interval", 30.0),
            timeout=health_data.get("timeout", 5.0),
            failure_threshold=health_data.get("failure_threshold", 1),
        )

        # 服务器列表 (保持配置顺序)
        servers: List[MCPServerConfig] = []
        for server_name, server_data in (data.get("servers") or {}).items():
            servers.append(MCPServerConfig.from_dict(server_name, server_data or {}))

        return cls(
            enabled=data.get("enabled", True),
            servers=servers,
            call_timeout=data.get("call_timeout", 30.0),
            protocol_version=data.get("protocol_version", DEFAULT_PROTOCOL_VERSION),
            reconnect=reconnect,
            health_check=health_check,
        )


@dataclass
class Config:
    """主配置"""

    mcp: MCPConfig = field(default_factory=MCPConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """加载配置"""
        if config_path is None:
            config_path = cls._find_config_file()

        if config_path is None or not Path(config_path).exists():
            raise FileNotFoundError("配置文件未找到，请创建 config/config.yaml")

        return cls.from_yaml(config_path)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "config.yaml",
            Path.home() / ".chatlink" / "config" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Config":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("配置文件为空")

        return cls(mcp=MCPConfig.from_dict(data.get("mcp", {}) or {}))
