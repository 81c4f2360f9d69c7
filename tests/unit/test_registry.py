"""工具注册表单元测试"""

import threading

import pytest

from chatlink.mcp.errors import UnknownToolError
from chatlink.mcp.protocol import MCPTool
from chatlink.mcp.registry import ToolDescriptor, ToolRegistry, normalize_schema
from chatlink.schema import FunctionCall, ToolCall


def make_tool(name, description="", **schema):
    return MCPTool(
        name=name,
        description=description,
        inputSchema=schema or {"type": "object", "properties": {"path": {"type": "string"}}},
    )


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register("fs", [make_tool("read_file", "Read contents of a file"), make_tool("search")])
    registry.register("web", [make_tool("search", "Search the web"), make_tool("fetch")])
    return registry


class TestRegister:
    """注册测试"""

    def test_register_and_list(self, registry):
        """测试合并目录"""
        tools = registry.list_all()
        assert set(tools) == {("fs", "read_file"), ("fs", "search"), ("web", "search"), ("web", "fetch")}
        assert len(registry) == 4

    def test_register_replaces_catalog(self, registry):
        """测试重新注册整体替换"""
        registry.register("fs", [make_tool("list_directory")])
        assert [t.tool_name for t in registry.tools_for("fs")] == ["list_directory"]
        assert not registry.has_tool("fs", "read_file")

    def test_unregister(self, registry):
        """测试移除服务器"""
        registry.unregister("fs")
        assert registry.server_names == ["web"]
        assert all(server == "web" for server, _ in registry.list_all())

    def test_unregister_unknown_is_noop(self, registry):
        """测试移除不存在的服务器"""
        registry.unregister("missing")
        assert len(registry) == 4

    def test_register_descriptor_for_other_server(self, registry):
        """测试描述的服务器不匹配"""
        descriptor = ToolDescriptor(server_name="web", tool_name="x")
        with pytest.raises(ValueError):
            registry.register("fs", [descriptor])

    def test_get(self, registry):
        """测试查找工具"""
        descriptor = registry.get("fs", "read_file")
        assert descriptor.description == "Read contents of a file"
        with pytest.raises(UnknownToolError):
            registry.get("fs", "missing")

    def test_group_by_server(self, registry):
        """测试按服务器分组"""
        grouped = registry.group_by_server()
        assert sorted(t.tool_name for t in grouped["web"]) == ["fetch", "search"]

    def test_snapshot_is_immutable(self, registry):
        """测试旧快照不受后续修改影响"""
        snapshot = registry.snapshot()
        registry.unregister("web")
        assert ("web", "fetch") in snapshot.tools
        assert ("web", "fetch") not in registry.snapshot().tools
        with pytest.raises(TypeError):
            snapshot.tools[("x", "y")] = None

    def test_concurrent_readers_see_complete_catalogs(self):
        """测试并发读取只看到完整目录"""
        registry = ToolRegistry()
        old = [make_tool(f"old_{i}") for i in range(20)]
        new = [make_tool(f"new_{i}") for i in range(20)]
        registry.register("fs", old)

        seen = []

        def reader():
            for _ in range(200):
                names = {tool for _, tool in registry.snapshot().tools}
                seen.append(names)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for thread in threads:
            thread.start()
        for i in range(50):
            registry.register("fs", new if i % 2 == 0 else old)
        for thread in threads:
            thread.join()

        old_names = {t.name for t in old}
        new_names = {t.name for t in new}
        assert all(names in (old_names, new_names) for names in seen)


class TestLLMFormat:
    """LLM 工具声明测试"""

    def test_unique_names_are_bare(self, registry):
        """测试唯一名称不加前缀，冲突名称加服务器前缀"""
        names = {decl["function"]["name"] for decl in registry.to_llm_format("openai")}
        assert names == {"read_file", "fs__search", "web__search", "fetch"}

    def test_always_prefix(self):
        """测试总是加前缀"""
        registry = ToolRegistry(always_prefix=True)
        registry.register("fs", [make_tool("read_file")])
        assert registry.to_llm_format()[0]["function"]["name"] == "fs__read_file"

    def test_openai_shape(self, registry):
        """测试 OpenAI 格式"""
        decl = next(d for d in registry.to_llm_format("openai") if d["function"]["name"] == "read_file")
        assert decl["type"] == "function"
        assert decl["function"]["description"] == "Read contents of a file"
        assert decl["function"]["parameters"]["type"] == "object"
        assert "path" in decl["function"]["parameters"]["properties"]

    def test_anthropic_shape(self, registry):
        """测试 Anthropic 格式"""
        decl = next(d for d in registry.to_llm_format("anthropic") if d["name"] == "fetch")
        assert decl["description"] == "MCP 工具: fetch"
        assert decl["input_schema"]["type"] == "object"

    def test_unsupported_style(self, registry):
        """测试不支持的格式"""
        with pytest.raises(ValueError):
            registry.to_llm_format("gemini")

    def test_normalize_schema(self):
        """测试非标准 schema 归一化"""
        schema = normalize_schema({"properties": {"q": {"type": "string"}}, "required": ["q"]})
        assert schema == {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}
        assert normalize_schema({}) == {"type": "object", "properties": {}, "required": []}


class TestFromLLMToolCall:
    """LLM 工具调用解析测试"""

    def test_tool_call_model(self, registry):
        """测试 ToolCall 模型"""
        call = ToolCall(id="call_1", function=FunctionCall(name="read_file", arguments={"path": "a.txt"}))
        request = registry.from_llm_tool_call(call)
        assert (request.server_name, request.tool_name) == ("fs", "read_file")
        assert request.arguments == {"path": "a.txt"}

    def test_openai_dict_with_json_arguments(self, registry):
        """测试 OpenAI 风格字符串参数"""
        request = registry.from_llm_tool_call(
            {"id": "c", "type": "function", "function": {"name": "web__search", "arguments": '{"q": "mcp"}'}}
        )
        assert (request.server_name, request.tool_name) == ("web", "search")
        assert request.arguments == {"q": "mcp"}

    def test_anthropic_tool_use(self, registry):
        """测试 Anthropic tool_use"""
        request = registry.from_llm_tool_call({"type": "tool_use", "name": "fetch", "input": {"url": "x"}})
        assert (request.server_name, request.tool_name) == ("web", "fetch")

    def test_prefixed_form_always_accepted(self, registry):
        """测试显式前缀形式"""
        request = registry.from_llm_tool_call({"name": "fs__read_file", "arguments": {}})
        assert (request.server_name, request.tool_name) == ("fs", "read_file")

    def test_prefixed_form_with_separator_in_server_name(self, registry):
        """测试服务器名包含分隔符时前缀形式仍能解析"""
        registry.register("my__srv", [make_tool("x__y")])

        request = registry.from_llm_tool_call({"name": "my__srv__x__y", "arguments": {}})
        assert (request.server_name, request.tool_name) == ("my__srv", "x__y")

        prefixed = ToolRegistry(always_prefix=True)
        prefixed.register("my__srv", [make_tool("x")])
        name = prefixed.to_llm_format()[0]["function"]["name"]
        request = prefixed.from_llm_tool_call({"name": name, "arguments": {}})
        assert (request.server_name, request.tool_name) == ("my__srv", "x")

    def test_round_trip(self, registry):
        """测试声明名称可以解析回原工具"""
        for decl in registry.to_llm_format("openai"):
            name = decl["function"]["name"]
            request = registry.from_llm_tool_call({"name": name, "arguments": {}})
            assert registry.snapshot().llm_name((request.server_name, request.tool_name)) == name

    def test_ambiguous_bare_name(self, registry):
        """测试冲突名称必须带前缀"""
        with pytest.raises(UnknownToolError):
            registry.from_llm_tool_call({"name": "search", "arguments": {}})

    def test_unknown_tool(self, registry):
        """测试未知工具"""
        with pytest.raises(UnknownToolError):
            registry.from_llm_tool_call({"name": "missing"})

    def test_bad_arguments(self, registry):
        """测试非法参数"""
        with pytest.raises(ValueError):
            registry.from_llm_tool_call({"function": {"name": "read_file", "arguments": "{oops"}})
        with pytest.raises(ValueError):
            registry.from_llm_tool_call({"name": "read_file", "arguments": [1, 2]})

    def test_empty_arguments(self, registry):
        """测试空参数"""
        request = registry.from_llm_tool_call({"function": {"name": "read_file", "arguments": ""}})
        assert request.arguments == {}
