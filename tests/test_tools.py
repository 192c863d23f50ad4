"""Tests for tool-name codec, backends and the tool router."""

import json

import httpx
import pytest

from orchestra.agent.skills import SkillsLoader
from orchestra.agent.tools import FunctionTool, ToolKind, ToolRef, ToolRegistry, ToolRouter
from orchestra.agent.tools.backends import (
    InMemoryWorkflowEngine,
    KnowledgeBackend,
    Plugin,
    PluginBackend,
    SkillBackend,
    Workflow,
    WorkflowBackend,
)
from orchestra.agent.tools.builtin import (
    BuiltinBackend,
    DashScopeImageModel,
    ImageJobStatus,
    ImageModel,
    VisionModel,
    image_to_url,
    poll_image_job,
)
from orchestra.agent.tools.mcp import ExternalToolBackend, McpClient, _content_text, dereference_schema
from orchestra.agent.tools.ref import decode_tool_name, encode_tool_name
from orchestra.agent.tools.router import ARGUMENTS_ERROR, ToolResult, selection_from_profile
from orchestra.config.schema import AgentProfile
from orchestra.errors import ImageJobTimeout, ToolArgumentError, ToolError, ToolNotFound
from orchestra.providers.base import ToolCall

INT_PAIR = {
    "type": "object",
    "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
    "required": ["a", "b"],
}


def _call(name: str, arguments: str = "{}") -> ToolCall:
    return ToolCall(id="call_1", index=0, name=name, arguments=arguments)


def _math_plugin() -> Plugin:
    async def add(a: int, b: int) -> int:
        return a + b

    async def boom() -> None:
        raise RuntimeError("kaput")

    registry = ToolRegistry([
        FunctionTool("add", "Add two integers", INT_PAIR, add),
        FunctionTool("boom", "Always fails", {"type": "object", "properties": {}}, boom),
    ])
    return Plugin(id="math", name="Math", registry=registry)


def _write_skill(root, name: str, body: str, description: str = "") -> None:
    skill_dir = root / name
    skill_dir.mkdir(parents=True)
    front = f"---\ndescription: {description}\n---\n" if description else ""
    (skill_dir / "SKILL.md").write_text(front + body, encoding="utf-8")


class ScriptedImageModel(ImageModel):
    def __init__(self, statuses: list[str], on_fetch=None):
        self.statuses = list(statuses)
        self.on_fetch = on_fetch
        self.fetches = 0
        self.prompts: list[tuple[str, str]] = []

    async def submit(self, prompt, negative_prompt="", parameters=None):
        self.prompts.append((prompt, negative_prompt))
        return "task-1"

    async def fetch(self, task_id):
        self.fetches += 1
        if self.on_fetch:
            await self.on_fetch()
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        images = ["https://img.test/1.png"] if status == "SUCCEEDED" else []
        return ImageJobStatus(task_id=task_id, status=status, images=images)


class EchoVision(VisionModel):
    async def describe(self, image, query):
        return f"{query} -> {image}"


# ---------------------------------------------------------------------------
# Tool name codec
# ---------------------------------------------------------------------------

class TestToolNameCodec:
    def test_builtin_exact(self):
        assert decode_tool_name("VISION") == ToolRef(ToolKind.BUILTIN, "VISION")

    def test_reserved_prefix_takes_everything_after_first_separator(self):
        assert decode_tool_name("knowledge-kb-1") == ToolRef(ToolKind.KNOWLEDGE, "kb-1")
        assert decode_tool_name("agent-travel") == ToolRef(ToolKind.AGENT, "travel")

    def test_plugin_and_external(self):
        assert decode_tool_name("search-web_plugin") == ToolRef(ToolKind.PLUGIN, "web_plugin", "search")
        assert decode_tool_name("my-tool-plugin") == ToolRef(ToolKind.PLUGIN, "plugin", "my-tool")
        assert decode_tool_name("lookup-mcp_demo") == ToolRef(ToolKind.EXTERNAL, "demo", "lookup")

    @pytest.mark.parametrize("ref", [
        ToolRef(ToolKind.BUILTIN, "IMAGE"),
        ToolRef(ToolKind.WORKFLOW, "wf_1"),
        ToolRef(ToolKind.SKILL, "weather"),
        ToolRef(ToolKind.PLUGIN, "math", "add"),
        ToolRef(ToolKind.EXTERNAL, "demo", "lookup"),
    ])
    def test_encode_decode(self, ref):
        assert decode_tool_name(encode_tool_name(ref)) == ref

    def test_plugin_id_with_separator_rejected(self):
        with pytest.raises(ValueError):
            encode_tool_name(ToolRef(ToolKind.PLUGIN, "bad-id", "tool"))

    @pytest.mark.parametrize("name", ["nosplit", "-x", "x-"])
    def test_undecodable(self, name):
        with pytest.raises(ToolNotFound):
            decode_tool_name(name)


# ---------------------------------------------------------------------------
# Router dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    @pytest.mark.asyncio
    async def test_plugin_arguments_coerced(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("add-math", '{"a": "2", "b": 3}'))
        assert result.result == 5
        assert result.arguments == {"a": "2", "b": 3}
        assert result.content == "5"

    @pytest.mark.asyncio
    async def test_malformed_arguments(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("add-math", '{"a": 1'))
        assert result.result == {"error": ARGUMENTS_ERROR}
        assert result.is_error

    @pytest.mark.asyncio
    async def test_non_object_arguments(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("add-math", "[1, 2]"))
        assert result.result == {"error": ARGUMENTS_ERROR}

    @pytest.mark.asyncio
    async def test_empty_arguments_mean_no_arguments(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("add-math", ""))
        assert "missing required a" in result.result["error"]

    @pytest.mark.asyncio
    async def test_invalid_parameters(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("add-math", '{"a": "x", "b": 1}'))
        assert "a should be integer" in result.result["error"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        assert (await router.dispatch(_call("nosplit"))).is_error
        assert (await router.dispatch(_call("sub-math"))).result == {"error": "Tool 'sub' not found"}
        assert (await router.dispatch(_call("add-other"))).result == {"error": "Plugin 'other' not found"}

    @pytest.mark.asyncio
    async def test_no_backend_for_kind(self):
        router = ToolRouter()
        result = await router.dispatch(_call("workflow-x"))
        assert "No backend" in result.result["error"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_enveloped(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        result = await router.dispatch(_call("boom-math"))
        assert result.result == {"error": "Error executing boom-math: kaput"}

    @pytest.mark.asyncio
    async def test_knowledge_empty_query(self, knowledge):
        router = ToolRouter([KnowledgeBackend(knowledge)])
        result = await router.dispatch(_call("knowledge-kb1", '{"query": "  "}'))
        assert result.result == {"error": "the query content can't be empty"}

    @pytest.mark.asyncio
    async def test_knowledge_search(self, knowledge):
        kb = await knowledge.add([("fruit.txt", "apple pie")], name="Fruit")
        router = ToolRouter([KnowledgeBackend(knowledge)])

        result = await router.dispatch(_call(f"knowledge-{kb.meta.id}", '{"query": "apple"}'))

        assert result.result[0]["content"] == "apple pie"
        assert result.result[0]["document_name"] == "Fruit/fruit.txt"
        assert json.loads(result.content)[0]["document_id"] == kb.meta.id
        assert router.describe(f"knowledge-{kb.meta.id}") == "Fruit"

    @pytest.mark.asyncio
    async def test_workflow(self):
        async def echo(arguments):
            return {"echo": arguments}

        engine = InMemoryWorkflowEngine([Workflow(id="wf1", name="Echo", handler=echo)])
        router = ToolRouter([WorkflowBackend(engine)])

        ok = await router.dispatch(_call("workflow-wf1", '{"x": 1}'))
        missing = await router.dispatch(_call("workflow-nope"))

        assert ok.result == {"echo": {"x": 1}}
        assert missing.result == {"error": "the called workflow not found"}

    @pytest.mark.asyncio
    async def test_skill_returns_instructions(self, tmp_path):
        _write_skill(tmp_path, "weather", "Use curl wttr.in", description="Weather lookups")
        backend = SkillBackend(SkillsLoader(tmp_path))
        router = ToolRouter([backend])

        tools = await backend.list_tools(["weather", "ghost"])
        result = await router.dispatch(_call("skill-weather"))
        missing = await router.dispatch(_call("skill-ghost"))

        assert [t.name for t in tools] == ["skill-weather"]
        assert tools[0].description == "Weather lookups"
        assert result.result == "### Skill: weather\n\nUse curl wttr.in"
        assert missing.is_error

    def test_tool_result_content(self):
        assert ToolResult("t", {}, "plain").content == "plain"
        assert ToolResult("t", {}, {"a": "é"}).content == '{"a": "é"}'
        assert not ToolResult("t", {}, {"ok": True}).is_error


class TestSkillsLoader:
    def test_frontmatter_and_requirements(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORCHESTRA_TEST_TOKEN", raising=False)
        _write_skill(tmp_path, "plain", "Just do it")
        gated = tmp_path / "gated"
        gated.mkdir()
        (gated / "SKILL.md").write_text(
            '---\ndescription: "Needs a token"\n'
            'metadata: {"orchestra": {"requires": {"env": ["ORCHESTRA_TEST_TOKEN"]}}}\n---\nCall the API',
            encoding="utf-8",
        )
        loader = SkillsLoader(tmp_path)

        skill = loader.load("gated")
        assert skill.description == "Needs a token"
        assert skill.body == "Call the API"
        assert skill.missing_requirements() == ["ENV: ORCHESTRA_TEST_TOKEN"]
        assert loader.load("plain").description == "plain"
        assert [s.name for s in loader.discover()] == ["plain"]
        assert [s.name for s in loader.discover(only_available=False)] == ["gated", "plain"]

        monkeypatch.setenv("ORCHESTRA_TEST_TOKEN", "t")
        assert [s.name for s in loader.discover()] == ["gated", "plain"]

    @pytest.mark.asyncio
    async def test_unavailable_skill_call_is_error(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORCHESTRA_TEST_TOKEN", raising=False)
        gated = tmp_path / "gated"
        gated.mkdir()
        (gated / "SKILL.md").write_text(
            '---\nmetadata: {"orchestra": {"requires": {"env": ["ORCHESTRA_TEST_TOKEN"]}}}\n---\nbody',
            encoding="utf-8",
        )
        router = ToolRouter([SkillBackend(SkillsLoader(tmp_path))])

        result = await router.dispatch(_call("skill-gated"))

        assert result.result == {"error": "Skill 'gated' is unavailable, missing ENV: ORCHESTRA_TEST_TOKEN"}

    def test_missing_directory(self, tmp_path):
        assert SkillsLoader(tmp_path / "none").discover() == []


class TestAssembleSchema:
    @pytest.mark.asyncio
    async def test_collects_selected_tools(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        schema = await router.assemble_schema({
            ToolKind.PLUGIN: ["add-math"],
            ToolKind.KNOWLEDGE: [],
            ToolKind.WORKFLOW: ["wf1"],
        })
        assert [t["function"]["name"] for t in schema] == ["add-math"]
        assert schema[0]["function"]["parameters"] == INT_PAIR

    @pytest.mark.asyncio
    async def test_whole_plugin_selected(self):
        router = ToolRouter([PluginBackend([_math_plugin()])])
        schema = await router.assemble_schema({ToolKind.PLUGIN: ["math"]})
        assert {t["function"]["name"] for t in schema} == {"add-math", "boom-math"}

    def test_selection_from_profile(self):
        profile = AgentProfile(tools=["math"], knowledges=["kb1"], mcp=["demo"], vision=True)
        selection = selection_from_profile(profile)
        assert selection[ToolKind.PLUGIN] == ["math"]
        assert selection[ToolKind.KNOWLEDGE] == ["kb1"]
        assert selection[ToolKind.EXTERNAL] == ["demo"]
        assert selection[ToolKind.BUILTIN] == ["VISION"]
        assert selection[ToolKind.AGENT] == []

    @pytest.mark.asyncio
    async def test_context_assembles_profile_tools(self, make_context, knowledge):
        kb = await knowledge.add([("a.txt", "apple")], description="Fruit facts")
        context, _ = make_context()
        profile = AgentProfile(knowledges=[kb.meta.id], vision=True)

        schema = await context.router.assemble_schema(selection_from_profile(profile))

        names = [t["function"]["name"] for t in schema]
        assert f"knowledge-{kb.meta.id}" in names
        assert "VISION" in names
        knowledge_tool = next(t for t in schema if t["function"]["name"].startswith("knowledge-"))
        assert knowledge_tool["function"]["description"] == "Fruit facts"


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

class TestImagePolling:
    @pytest.mark.asyncio
    async def test_returns_terminal_status(self):
        model = ScriptedImageModel(["PENDING", "RUNNING", "SUCCEEDED"])
        status = await poll_image_job(model, "task-1", poll_interval=0)
        assert status.status == "SUCCEEDED"
        assert status.images == ["https://img.test/1.png"]
        assert model.fetches == 3

    @pytest.mark.asyncio
    async def test_backoff_is_bounded(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr("orchestra.agent.tools.builtin.asyncio.sleep", fake_sleep)
        model = ScriptedImageModel(["PENDING", "RUNNING", "RUNNING", "RUNNING", "SUCCEEDED"])

        await poll_image_job(model, "task-1", poll_interval=1.0, backoff_factor=2.0, max_interval=3.0)

        assert delays == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_timeout(self):
        model = ScriptedImageModel(["RUNNING"])
        with pytest.raises(ImageJobTimeout):
            await poll_image_job(model, "task-1", poll_interval=0, timeout=0)

    @pytest.mark.asyncio
    async def test_cancelled(self):
        model = ScriptedImageModel(["RUNNING"])
        checks = iter([False, True])
        with pytest.raises(ToolError, match="cancelled"):
            await poll_image_job(model, "task-1", poll_interval=0, is_cancelled=lambda: next(checks))
        assert model.fetches == 1

    @pytest.mark.asyncio
    async def test_failed_status_is_terminal(self):
        status = await poll_image_job(ScriptedImageModel(["FAILED"]), "task-1", poll_interval=0)
        assert status.status == "FAILED"


class TestBuiltinBackend:
    @pytest.mark.asyncio
    async def test_only_configured_tools_listed(self):
        backend = BuiltinBackend(vision=EchoVision())
        tools = await backend.list_tools(["VISION", "IMAGE"])
        assert [t.name for t in tools] == ["VISION"]

    @pytest.mark.asyncio
    async def test_vision(self):
        router = ToolRouter([BuiltinBackend(vision=EchoVision())])
        result = await router.dispatch(_call("VISION", '{"image": "https://x/a.png", "query": "what"}'))
        missing = await router.dispatch(_call("VISION", '{"image": "https://x/a.png"}'))
        assert result.result == "what -> https://x/a.png"
        assert missing.is_error

    @pytest.mark.asyncio
    async def test_image_job(self):
        model = ScriptedImageModel(["RUNNING", "SUCCEEDED"])
        router = ToolRouter([BuiltinBackend(image=model, polling={"poll_interval": 0})])

        result = await router.dispatch(_call("IMAGE", '{"prompt": "a cat", "negative_prompt": "dogs"}'))

        assert result.result == {"task_id": "task-1", "status": "SUCCEEDED", "images": ["https://img.test/1.png"]}
        assert model.prompts == [("a cat", "dogs")]

    @pytest.mark.asyncio
    async def test_image_requires_prompt(self):
        router = ToolRouter([BuiltinBackend(image=ScriptedImageModel(["SUCCEEDED"]))])
        result = await router.dispatch(_call("IMAGE", '{"prompt": ""}'))
        assert result.result == {"error": "the prompt can't be empty"}

    @pytest.mark.asyncio
    async def test_router_cancel_stops_polling(self):
        backend = BuiltinBackend(polling={"poll_interval": 0})
        router = ToolRouter([backend])
        backend.image = ScriptedImageModel(["RUNNING"], on_fetch=router.cancel)

        result = await router.dispatch(_call("IMAGE", '{"prompt": "a cat"}'))

        assert result.result == {"error": "image job task-1 cancelled"}

    @pytest.mark.asyncio
    async def test_disabled_tool(self):
        router = ToolRouter([BuiltinBackend()])
        result = await router.dispatch(_call("IMAGE", '{"prompt": "a cat"}'))
        assert result.result == {"error": "Built-in tool IMAGE is not enabled"}


class TestImageToUrl:
    def test_remote_urls_pass_through(self):
        assert image_to_url("https://x/a.png") == "https://x/a.png"
        assert image_to_url("data:image/png;base64,AAA") == "data:image/png;base64,AAA"

    def test_local_file_becomes_data_uri(self, tmp_path):
        path = tmp_path / "pic.png"
        path.write_bytes(b"\x89PNG")
        assert image_to_url(str(path)) == "data:image/png;base64,iVBORw=="

    def test_missing_file(self, tmp_path):
        with pytest.raises(ToolArgumentError):
            image_to_url(str(tmp_path / "nope.png"))


class TestDashScopeImageModel:
    @pytest.mark.asyncio
    async def test_submit_and_fetch(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(200, json={"output": {"task_id": "t-9", "task_status": "PENDING"}})
            return httpx.Response(200, json={"output": {
                "task_status": "SUCCEEDED",
                "results": [{"url": "https://img.test/a.png"}, {"code": "DataInspectionFailed"}],
            }})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            model = DashScopeImageModel("wanx", "key", "https://ds.test/submit", "https://ds.test/tasks/", client=client)
            task_id = await model.submit("a cat")
            status = await model.fetch(task_id)

        assert task_id == "t-9"
        assert seen[0].headers["X-DashScope-Async"] == "enable"
        assert json.loads(seen[0].content)["input"]["prompt"] == "a cat"
        assert str(seen[1].url) == "https://ds.test/tasks/t-9"
        assert status.status == "SUCCEEDED"
        assert status.images == ["https://img.test/a.png"]

    @pytest.mark.asyncio
    async def test_submit_without_task_id(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"code": "x", "message": "bad prompt"}))
        async with httpx.AsyncClient(transport=transport) as client:
            model = DashScopeImageModel("wanx", "key", "https://ds.test/submit", "https://ds.test/tasks/", client=client)
            with pytest.raises(ToolError, match="bad prompt"):
                await model.submit("a cat")


# ---------------------------------------------------------------------------
# External (MCP) tools
# ---------------------------------------------------------------------------

def _mcp_handler(log: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)
        log.append({"method": message["method"], "session": request.headers.get("Mcp-Session-Id")})
        method = message["method"]
        if method == "initialize":
            result = {"serverInfo": {"name": "demo"}, "protocolVersion": "2024-11-05"}
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": result},
                                  headers={"Mcp-Session-Id": "sess-1"})
        if method == "notifications/initialized":
            return httpx.Response(202)
        if method == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {"tools": [{
                "name": "lookup",
                "description": "Look up an item",
                "inputSchema": {
                    "type": "object",
                    "properties": {"item": {"$ref": "#/$defs/Item"}},
                    "$defs": {"Item": {"type": "string"}},
                },
            }]}})
        if method == "tools/call":
            args = message["params"].get("arguments", {})
            if args.get("item") == "bad":
                result = {"isError": True, "content": [{"type": "text", "text": "no such item"}]}
            else:
                result = {"content": [{"type": "text", "text": f"found {args.get('item')}"}, {"type": "image"}]}
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"],
                                         "error": {"code": -32601, "message": "Method not found"}})
    return handler


class TestExternalTools:
    @pytest.mark.asyncio
    async def test_list_and_call(self):
        log: list[dict] = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(_mcp_handler(log))) as http:
            backend = ExternalToolBackend({"demo": McpClient("https://mcp.test", client=http)})
            router = ToolRouter([backend])

            schema = await router.assemble_schema({ToolKind.EXTERNAL: ["demo"]})
            ok = await router.dispatch(_call("lookup-mcp_demo", '{"item": "apple"}'))
            failed = await router.dispatch(_call("lookup-mcp_demo", '{"item": "bad"}'))
            await backend.list_tools(["demo"])

        assert schema[0]["function"]["name"] == "lookup-mcp_demo"
        assert schema[0]["function"]["parameters"]["properties"]["item"] == {"type": "string"}
        assert ok.result == "found apple\n[image content]"
        assert failed.result == {"error": "no such item"}
        assert [entry["method"] for entry in log].count("tools/list") == 1
        assert log[0]["session"] is None
        assert all(entry["session"] == "sess-1" for entry in log[1:])
        assert router.describe("lookup-mcp_demo") == "demo/lookup"

    def test_non_text_blocks_become_placeholders(self):
        result = {"content": [
            {"type": "text", "text": "see attached"},
            {"type": "image", "data": "iVBORw0KGgo=", "mimeType": "image/png"},
            {"type": "resource", "resource": {"uri": "file:///a.txt", "text": "secret"}},
            {"data": "?"},
        ]}
        text = _content_text(result)
        assert text == "see attached\n[image content]\n[resource content]\n[unknown content]"
        assert "iVBORw0KGgo" not in text

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(_mcp_handler([]))) as http:
            client = McpClient("https://mcp.test", client=http)
            with pytest.raises(ToolError, match="Method not found"):
                await client.request("resources/list")

    @pytest.mark.asyncio
    async def test_unreachable_server_skipped(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as http:
            backend = ExternalToolBackend({"down": McpClient("https://mcp.test", client=http)})
            assert await backend.list_tools(["down", "unknown"]) == []

    def test_server_id_with_separator_rejected(self):
        backend = ExternalToolBackend({"bad-id": McpClient("https://mcp.test")})
        assert backend.clients == {}

    def test_dereference_schema(self):
        schema = {
            "type": "object",
            "properties": {
                "items": {"type": "array", "items": {"$ref": "#/definitions/Item"}},
                "other": {"$ref": "#/$defs/Missing"},
            },
            "definitions": {"Item": {"type": "object", "properties": {"id": {"type": "integer"}}}},
        }
        result = dereference_schema(schema)
        assert result["properties"]["items"]["items"]["properties"]["id"] == {"type": "integer"}
        assert result["properties"]["other"] == {"$ref": "#/$defs/Missing"}
        assert "definitions" not in result
        assert "definitions" in schema
