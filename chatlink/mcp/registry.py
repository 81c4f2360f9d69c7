"""MCP 工具注册表

合并所有已连接服务器的工具目录，并在 MCP 工具定义与 LLM 工具声明之间转换。

每次目录变化都会重建一个不可变快照并整体替换，读者总是看到某个
服务器完整的旧目录或完整的新目录。
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..schema import ToolCall, ToolInvocationRequest
from .errors import UnknownToolError
from .protocol import MCPTool

logger = logging.getLogger(__name__)

ToolKey = Tuple[str, str]

# 名称冲突时的前缀分隔符
NAME_SEPARATOR = "__"


@dataclass(frozen=True)
class ToolDescriptor:
    """工具描述 (身份为 server_name + tool_name)"""

    server_name: str
    tool_name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ToolKey:
        return (self.server_name, self.tool_name)

    @classmethod
    def from_mcp(cls, server_name: str, tool: MCPTool) -> "ToolDescriptor":
        return cls(
            server_name=server_name,
            tool_name=tool.name,
            description=tool.description or tool.title or "",
            input_schema=dict(tool.inputSchema),
        )


@dataclass(frozen=True)
class RegistrySnapshot:
    """注册表的只读快照"""

    tools: Mapping[ToolKey, ToolDescriptor]
    llm_names: Mapping[str, ToolKey]

    def llm_name(self, key: ToolKey) -> str:
        for name, target in self.llm_names.items():
            if target == key:
                return name
        raise UnknownToolError(key[1], key[0])


def normalize_schema(schema: Mapping[str, Any]) -> Dict[str, Any]:
    """把 MCP inputSchema 转为 LLM 参数格式

    已经是 {"type": "object", "properties": {...}} 的直接复制，否则只保留
    properties 与 required。
    """
    if schema.get("type") == "object" and isinstance(schema.get("properties"), dict):
        return json.loads(json.dumps(schema))

    converted: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    if isinstance(schema.get("properties"), dict):
        converted["properties"] = json.loads(json.dumps(schema["properties"]))
    if isinstance(schema.get("required"), list):
        converted["required"] = list(schema["required"])
    return converted


def _build_snapshot(catalogs: Mapping[str, Tuple[ToolDescriptor, ...]], always_prefix: bool) -> RegistrySnapshot:
    tools: Dict[ToolKey, ToolDescriptor] = {}
    owners: Dict[str, List[str]] = {}

    for server_name, descriptors in catalogs.items():
        for descriptor in descriptors:
            tools[descriptor.key] = descriptor
            owners.setdefault(descriptor.tool_name, []).append(server_name)

    llm_names: Dict[str, ToolKey] = {}
    for key in tools:
        server_name, tool_name = key
        if always_prefix or len(owners[tool_name]) > 1:
            llm_names[f"{server_name}{NAME_SEPARATOR}{tool_name}"] = key
        else:
            llm_names[tool_name] = key

    return RegistrySnapshot(
        tools=MappingProxyType(tools),
        llm_names=MappingProxyType(llm_names),
    )


class ToolRegistry:
    """工具注册表

    Args:
        always_prefix: 是否总是用 "<server>__<tool>" 作为 LLM 工具名；
            默认只对跨服务器重名的工具加前缀
    """

    def __init__(self, always_prefix: bool = False):
        self.always_prefix = always_prefix
        self._lock = threading.Lock()
        self._catalogs: Dict[str, Tuple[ToolDescriptor, ...]] = {}
        self._snapshot = _build_snapshot({}, always_prefix)

    def register(self, server_name: str, tools: Iterable[Union[ToolDescriptor, MCPTool]]) -> List[ToolDescriptor]:
        """整体替换某个服务器的工具目录"""
        descriptors: List[ToolDescriptor] = []
        for tool in tools:
            if isinstance(tool, MCPTool):
                tool = ToolDescriptor.from_mcp(server_name, tool)
            elif tool.server_name != server_name:
                raise ValueError(f"工具 {tool.tool_name} 属于服务器 '{tool.server_name}'，不能注册到 '{server_name}'")
            descriptors.append(tool)

        with self._lock:
            catalogs = dict(self._catalogs)
            catalogs[server_name] = tuple(descriptors)
            self._snapshot = _build_snapshot(catalogs, self.always_prefix)
            self._catalogs = catalogs

        logger.info(f"已注册服务器 '{server_name}' 的 {len(descriptors)} 个工具")
        return descriptors

    def unregister(self, server_name: str) -> None:
        """移除某个服务器的工具目录"""
        with self._lock:
            if server_name not in self._catalogs:
                return
            catalogs = dict(self._catalogs)
            del catalogs[server_name]
            self._snapshot = _build_snapshot(catalogs, self.always_prefix)
            self._catalogs = catalogs

        logger.info(f"已移除服务器 '{server_name}' 的工具")

    def snapshot(self) -> RegistrySnapshot:
        """当前快照 (不可变)"""
        return self._snapshot

    def list_all(self) -> Dict[ToolKey, ToolDescriptor]:
        """合并后的工具目录副本"""
        return dict(self._snapshot.tools)

    def get(self, server_name: str, tool_name: str) -> ToolDescriptor:
        descriptor = self._snapshot.tools.get((server_name, tool_name))
        if descriptor is None:
            raise UnknownToolError(tool_name, server_name)
        return descriptor

    def has_tool(self, server_name: str, tool_name: str) -> bool:
        return (server_name, tool_name) in self._snapshot.tools

    def tools_for(self, server_name: str) -> List[ToolDescriptor]:
        return list(self._catalogs.get(server_name, ()))

    def group_by_server(self) -> Dict[str, List[ToolDescriptor]]:
        """按服务器分组"""
        grouped: Dict[str, List[ToolDescriptor]] = {}
        for descriptor in self._snapshot.tools.values():
            grouped.setdefault(descriptor.server_name, []).append(descriptor)
        return grouped

    @property
    def server_names(self) -> List[str]:
        return list(self._catalogs)

    def __len__(self) -> int:
        return len(self._snapshot.tools)

    def to_llm_format(self, style: str = "openai") -> List[Dict[str, Any]]:
        """转换为 LLM 工具声明

        Args:
            style: "openai" (function calling) 或 "anthropic" (tool use)
        """
        if style not in ("openai", "anthropic"):
            raise ValueError(f"不支持的工具声明格式: {style}")

        snapshot = self._snapshot
        declarations: List[Dict[str, Any]] = []

        for llm_name, key in snapshot.llm_names.items():
            descriptor = snapshot.tools[key]
            description = descriptor.description or f"MCP 工具: {descriptor.tool_name}"
            parameters = normalize_schema(descriptor.input_schema)

            if style == "anthropic":
                declarations.append(
                    {
                        "name": llm_name,
                        "description": description,
                        "input_schema": parameters,
                    }
                )
            else:
                declarations.append(
                    {
                        "type": "function",
                        "function": {
                            "name": llm_name,
                            "description": description,
                            "parameters": parameters,
                        },
                    }
                )

        logger.debug(f"已转换 {len(declarations)} 个工具声明 ({style})")
        return declarations

    def from_llm_tool_call(self, call: Union[ToolCall, Mapping[str, Any]]) -> ToolInvocationRequest:
        """把 LLM 发出的工具调用解析回 (服务器, 工具, 参数)

        支持 ToolCall、OpenAI 风格 {"function": {...}}、Anthropic tool_use
        {"name", "input"} 以及 {"name", "arguments"}。
        """
        name, arguments = _unpack_call(call)
        snapshot = self._snapshot

        key = snapshot.llm_names.get(name)
        if key is None and NAME_SEPARATOR in name:
            # 服务器名本身可能含分隔符，按已知的 (服务器, 工具) 逐个比对
            for server_name, tool_name in snapshot.tools:
                if name == f"{server_name}{NAME_SEPARATOR}{tool_name}":
                    key = (server_name, tool_name)
                    break

        if key is None:
            raise UnknownToolError(name)

        return ToolInvocationRequest(server_name=key[0], tool_name=key[1], arguments=arguments)


def _unpack_call(call: Union[ToolCall, Mapping[str, Any]]) -> Tuple[str, Dict[str, Any]]:
    if isinstance(call, ToolCall):
        return call.function.name, dict(call.function.arguments)

    if "function" in call:
        function = call["function"]
        name, arguments = function.get("name", ""), function.get("arguments")
    else:
        name = call.get("name", "")
        arguments = call.get("input", call.get("arguments"))

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            raise ValueError(f"工具 '{name}' 的参数不是合法 JSON: {arguments[:200]}")

    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValueError(f"工具 '{name}' 的参数必须是对象")

    return name, arguments
