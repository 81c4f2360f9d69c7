"""JSON-RPC 编解码与请求关联

- 请求/通知序列化
- 入站消息解析 (无法识别的消息记录警告后丢弃)
- 按 id 关联响应与等待中的请求
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Type, Union

from pydantic import ValidationError

from .errors import ConnectionLostError, MCPError, ServerRPCError
from .protocol import JSONRPCError, JSONRPCNotification, JSONRPCRequest, JSONRPCResponse

logger = logging.getLogger(__name__)

InboundMessage = Union[JSONRPCResponse, JSONRPCRequest, JSONRPCNotification]


def encode_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> str:
    """序列化请求"""
    request = JSONRPCRequest(id=request_id, method=method, params=params)
    return request.model_dump_json(exclude_none=True)


def encode_notification(method: str, params: Optional[Dict[str, Any]] = None) -> str:
    """序列化通知 (无 id，不等待响应)"""
    notification = JSONRPCNotification(method=method, params=params)
    return notification.model_dump_json(exclude_none=True)


def encode_response(
    request_id: Union[str, int],
    result: Optional[Any] = None,
    error: Optional[JSONRPCError] = None,
) -> str:
    """序列化响应 (回复服务器发起的请求)"""
    response = JSONRPCResponse(id=request_id, result=result, error=error)
    data = response.model_dump(exclude_none=True)
    if error is None:
        data["result"] = result if result is not None else {}
    return json.dumps(data, ensure_ascii=False)


def decode_message(raw: Union[str, bytes]) -> Optional[InboundMessage]:
    """解析一条入站消息

    Returns:
        响应、服务器请求或通知；无法解析时返回 None
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    text = raw.strip()
    if not text:
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"丢弃无法解析的消息: {e} ({text[:200]})")
        return None

    if not isinstance(data, dict):
        logger.warning(f"丢弃非对象消息: {text[:200]}")
        return None

    try:
        if "method" in data:
            if data.get("id") is not None:
                return JSONRPCRequest(**data)
            return JSONRPCNotification(**data)

        if "id" in data and ("result" in data or "error" in data):
            return JSONRPCResponse(**data)
    except ValidationError as e:
        logger.warning(f"丢弃格式错误的消息: {e.error_count()} 个校验错误 ({text[:200]})")
        return None

    logger.warning(f"丢弃无法识别的消息: {text[:200]}")
    return None


def raise_for_error(response: JSONRPCResponse) -> Any:
    """检查响应错误，返回 result"""
    if response.error is not None:
        raise ServerRPCError(
            code=response.error.code,
            message=response.error.message,
            data=response.error.data,
        )
    return response.result


@dataclass
class PendingCall:
    """等待响应的请求"""

    id: int
    method: str
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.issued_at


class PendingCalls:
    """等待中请求表

    id 单调递增且从不复用，同一时刻未完成的请求 id 必然唯一。
    """

    def __init__(self):
        self._last_id = 0
        self._calls: Dict[int, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._calls

    def __iter__(self) -> Iterator[PendingCall]:
        return iter(list(self._calls.values()))

    @property
    def last_id(self) -> int:
        return self._last_id

    def allocate(self, method: str) -> PendingCall:
        """分配新请求"""
        self._last_id += 1
        future = asyncio.get_running_loop().create_future()
        call = PendingCall(id=self._last_id, method=method, future=future)
        self._calls[call.id] = call
        return call

    def resolve(self, response: JSONRPCResponse, request_id: Optional[int] = None) -> bool:
        """将响应交给对应的请求

        Args:
            response: 响应
            request_id: 指定请求 id (HTTP 回复直接对应发送的请求)

        Returns:
            是否找到匹配的请求
        """
        if request_id is None:
            request_id = response.id
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)

        call = self._calls.pop(request_id, None)
        if call is None:
            return False

        if not call.future.done():
            call.future.set_result(response)
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        """以异常结束单个请求"""
        call = self._calls.pop(request_id, None)
        if call is None:
            return False

        if not call.future.done():
            call.future.set_exception(error)
        return True

    def discard(self, request_id: int) -> None:
        """移除请求 (超时或调用方放弃)"""
        self._calls.pop(request_id, None)

    def fail_all(
        self,
        reason: str,
        error_type: Type[MCPError] = ConnectionLostError,
    ) -> int:
        """以异常结束全部请求

        Returns:
            被取消的请求数
        """
        calls = list(self._calls.values())
        self._calls.clear()

        for call in calls:
            if not call.future.done():
                call.future.set_exception(error_type(f"{call.method} (id={call.id}) 已取消: {reason}"))
        return len(calls)
