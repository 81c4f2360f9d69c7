"""重连退避

指数退避 + 随机抖动，用于 MCP 连接断开后的自动重连。
"""

from __future__ import annotations

import random
from typing import Iterator

from .config import ReconnectConfig


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> float:
    """计算退避延迟

    Args:
        attempt: 当前尝试次数 (从 0 开始)
        base_delay: 基础延迟
        max_delay: 最大延迟
        jitter: 是否添加随机抖动

    Returns:
        延迟时间（秒）
    """
    delay = min(base_delay * (2**attempt), max_delay)

    # 添加随机抖动 (±25%)，抖动后仍不超过上限
    if jitter:
        delay = min(delay * (0.75 + random.random() * 0.5), max_delay)

    return delay


def backoff_delays(config: ReconnectConfig) -> Iterator[float]:
    """依次产生每次重连前的等待时间，共 max_retries 个"""
    for attempt in range(config.max_retries):
        yield calculate_delay(
            attempt,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )
