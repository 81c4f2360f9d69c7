"""数据模型定义

LLM 层与 MCP 运行时之间传递的工具调用请求/结果。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class FunctionCall(BaseModel):
    """函数调用"""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    """LLM 发出的工具调用"""
    id: str = ""
    type: str = "function"
    function: FunctionCall


class ToolInvocationRequest(BaseModel):
    """工具调用请求"""
    server_name: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolInvocationResult(BaseModel):
    """工具调用结果

    success 为 False 时 error 说明原因；is_error 表示服务器执行了工具
    但报告失败 (MCP isError)。
    """
    success: bool
    payload: Any = None
    error: Optional[str] = None
    is_error: bool = False

    @classmethod
    def failure(cls, error: str, payload: Any = None, is_error: bool = False) -> "ToolInvocationResult":
        return cls(success=False, error=error, payload=payload, is_error=is_error)

    @property
    def text(self) -> str:
        """提取文本内容，用于回填对话"""
        if not self.success and self.payload is None:
            return self.error or ""
        return content_to_text(self.payload)


def content_to_text(content: Any) -> str:
    """将 MCP content 转换为文本"""
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                texts.append(str(item.get("text", "")))
            elif isinstance(item, dict):
                texts.append(json.dumps(item, ensure_ascii=False))
            else:
                texts.append(str(item))
        return "\n".join(texts)

    if isinstance(content, dict):
        return json.dumps(content, ensure_ascii=False, indent=2)

    return str(content)
