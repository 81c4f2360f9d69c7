"""MCP 传输层实现

支持三种传输:
- Stdio: 启动子进程，通过 stdin/stdout 逐行收发 JSON
- WebSocket: 持久连接，每条消息一个 JSON-RPC 信封
- HTTP: 每次发送一个 POST，响应体即对应的回复；没有独立的接收流
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Deque, Dict, Optional, Union

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .. import __version__
from ..config import MCPServerConfig, TransportKind
from .errors import MCPConnectionError, RequestTimeoutError, TransportError

logger = logging.getLogger(__name__)


class Transport(ABC):
    """传输层抽象基类

    streaming 为 False 的传输 (HTTP) 没有接收流，send() 直接返回对应的回复，
    并额外接受 timeout 参数作为本次请求的超时。
    """

    kind: TransportKind
    streaming: bool = True

    @abstractmethod
    async def open(self) -> None:
        """建立连接"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """断开连接 (幂等)"""
        pass

    @abstractmethod
    async def send(self, data: str) -> Optional[str]:
        """发送一条消息

        Returns:
            流式传输返回 None；HTTP 返回响应体
        """
        pass

    @abstractmethod
    def receive(self) -> AsyncIterator[str]:
        """入站消息序列，对端关闭时结束"""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """是否已连接"""
        pass

    async def __aenter__(self) -> "Transport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

# 进程终止超时
PROCESS_TERMINATION_TIMEOUT = 2.0

# 保留的 stderr 行数
STDERR_TAIL_LINES = 50


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


class StdioTransport(Transport):
    """Stdio 传输实现

    通过子进程的 stdin/stdout 与 MCP 服务器通信，stderr 仅用于诊断。
    """

    kind = TransportKind.STDIO

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        encoding: str = "utf-8",
    ):
        """初始化 Stdio 传输

        Args:
            command: 服务器命令
            args: 命令参数
            env: 环境变量 (会与默认环境变量合并)
            cwd: 工作目录
            encoding: 编码
        """
        self.command = command
        self.args = args or []
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd
        self.encoding = encoding
        self.stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def open(self) -> None:
        """启动子进程"""
        if self.is_connected:
            return

        cmd = [self.command] + self.args
        logger.debug(f"启动 MCP 服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except FileNotFoundError:
            raise MCPConnectionError(f"找不到命令: {self.command}")
        except PermissionError:
            raise MCPConnectionError(f"没有执行权限: {self.command}")
        except OSError as e:
            raise MCPConnectionError(f"启动服务器失败: {e}")

        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))
        logger.info(f"MCP 服务器已启动 (PID: {self._process.pid})")

    async def close(self) -> None:
        """关闭 stdin 并终止子进程"""
        process, self._process = self._process, None
        if process is None:
            return

        try:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()
                try:
                    await process.stdin.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass

            # 等待进程退出
            try:
                await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
            except asyncio.TimeoutError:
                # 超时则强制终止
                logger.warning("MCP 服务器未响应，强制终止")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()

            logger.info(f"MCP 服务器已退出 (返回码: {process.returncode})")

        except ProcessLookupError:
            pass
        finally:
            if self._stderr_task is not None:
                self._stderr_task.cancel()
                self._stderr_task = None

    async def send(self, data: str) -> None:
        """写入一行 JSON"""
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None:
            raise TransportError("未连接到服务器")

        logger.debug(f"发送: {data[:200]}")

        try:
            process.stdin.write((data + "\n").encode(self.encoding))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"发送消息失败: {e}")

    async def receive(self) -> AsyncIterator[str]:
        """逐行读取 stdout，进程退出时结束"""
        process = self._process
        if process is None or process.stdout is None:
            raise TransportError("未连接到服务器")

        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        buffer = ""

        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break

            buffer += decoder.decode(chunk)
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                line = line.strip()
                if line:
                    logger.debug(f"接收: {line[:200]}")
                    yield line

        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            yield buffer.strip()

        logger.info(f"MCP 服务器输出已关闭: {self.command}")

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """持续读取 stderr，避免管道写满阻塞子进程"""
        if process.stderr is None:
            return

        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                # 单行超出缓冲区上限
                continue
            if not line:
                return

            text = line.decode(self.encoding, errors="replace").rstrip()
            if text:
                self.stderr_tail.append(text)
                logger.debug(f"[{self.command} stderr] {text}")


class WebSocketTransport(Transport):
    """WebSocket 传输实现"""

    kind = TransportKind.WEBSOCKET

    def __init__(self, url: str, open_timeout: float = 10.0, max_size: Optional[int] = None):
        self.url = url
        self.open_timeout = open_timeout
        self.max_size = max_size

        self._ws = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._connected

    async def open(self) -> None:
        """拨号"""
        if self.is_connected:
            return

        logger.debug(f"连接 WebSocket: {self.url}")

        try:
            self._ws = await websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise MCPConnectionError(f"无法连接到 {self.url}: {e}")

        self._connected = True
        logger.info(f"WebSocket 已连接: {self.url}")

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self._connected = False
        if ws is None:
            return

        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"关闭 WebSocket 出错: {e}")
        logger.info(f"WebSocket 已断开: {self.url}")

    async def send(self, data: str) -> None:
        ws = self._ws
        if ws is None or not self._connected:
            raise TransportError("未连接到服务器")

        logger.debug(f"发送: {data[:200]}")

        try:
            await ws.send(data)
        except ConnectionClosed as e:
            self._connected = False
            raise TransportError(f"发送消息失败: {e}")

    async def receive(self) -> AsyncIterator[str]:
        ws = self._ws
        if ws is None:
            raise TransportError("未连接到服务器")

        try:
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                logger.debug(f"接收: {message[:200]}")
                yield message
        except ConnectionClosed as e:
            logger.info(f"WebSocket 连接已关闭: {e}")
        finally:
            self._connected = False


class HTTPTransport(Transport):
    """HTTP 传输实现

    无持久通道：send() 发送一个 POST，响应体就是对应的回复。
    """

    kind = TransportKind.HTTP
    streaming = False

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = 30.0,
    ):
        self.url = url
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"chatlink/{__version__}",
            **(headers or {}),
        }
        self.timeout = timeout

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers, timeout=self.timeout)
            logger.info(f"HTTP 传输已就绪: {self.url}")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def send(self, data: str, timeout: Optional[float] = None) -> Optional[str]:
        """POST 一条消息

        Args:
            data: JSON-RPC 消息
            timeout: 本次请求超时 (秒)，None 时使用客户端默认值
        """
        client = self._client
        if client is None:
            raise TransportError("未连接到服务器")

        logger.debug(f"POST {self.url}: {data[:200]}")

        options = {} if timeout is None else {"timeout": timeout}
        try:
            response = await client.post(self.url, content=data.encode("utf-8"), **options)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"HTTP 请求超时: {e}")
        except httpx.ConnectError as e:
            raise MCPConnectionError(f"无法连接到 {self.url}: {e}")
        except httpx.HTTPStatusError as e:
            # 错误状态码里带 JSON-RPC 响应时按正常回复处理
            if _is_jsonrpc_response(e.response.text):
                logger.debug(f"HTTP {e.response.status_code} 携带 JSON-RPC 响应: {e.response.text[:200]}")
                return e.response.text
            raise TransportError(f"HTTP {e.response.status_code}: {e.response.reason_phrase}")
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP 请求失败: {e}")

        body = response.text
        logger.debug(f"响应: {body[:200]}")
        return body if body.strip() else None

    def receive(self) -> AsyncIterator[str]:
        raise TransportError("HTTP 传输没有接收流，回复由 send() 返回")


def _is_jsonrpc_response(body: str) -> bool:
    try:
        message = json.loads(body)
    except ValueError:
        return False
    return isinstance(message, dict) and message.get("jsonrpc") == "2.0" and (
        "error" in message or "result" in message
    )


def create_transport(config: MCPServerConfig, timeout: Optional[float] = 30.0) -> Transport:
    """按配置创建传输"""
    if config.type == TransportKind.STDIO:
        return StdioTransport(
            command=config.command,
            args=list(config.args),
            env=dict(config.env),
            cwd=config.cwd,
        )
    if config.type == TransportKind.WEBSOCKET:
        return WebSocketTransport(config.endpoint)
    if config.type == TransportKind.HTTP:
        return HTTPTransport(config.endpoint, headers=dict(config.headers), timeout=timeout)

    raise ValueError(f"不支持的传输类型: {config.type}")
