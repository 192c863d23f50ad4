"""
外部工具服务器 (agent/tools/mcp.py)

通过 HTTP 上的 JSON-RPC 2.0 与 MCP 服务器通信：
- initialize → notifications/initialized 建立会话
- tools/list 发现工具（inputSchema 中的 $ref 会被内联）
- tools/call 调用工具

模型看到的工具名为 "<工具名>-mcp_<服务ID>"。
"""

import copy
import itertools
from typing import Any

import httpx
from loguru import logger

from orchestra.agent.tools.backends import ToolBackend
from orchestra.agent.tools.ref import TOOL_NAME_SPLIT, ToolDescriptor, ToolKind, ToolRef
from orchestra.config.schema import McpServerConfig, ToolsConfig
from orchestra.errors import ToolError, ToolNotFound

MCP_PROTOCOL_VERSION = "2024-11-05"


class McpError(ToolError):
    """MCP 服务器返回了 JSON-RPC 错误或无法访问。"""


def dereference_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """
    递归内联 JSON Schema 中的 $ref 定义（#/$defs/X 和 #/definitions/X）。

    很多模型对内联的 schema 理解得更好。无法解析的 $ref 原样保留。
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return copy.deepcopy(schema)

    def _resolve(obj: Any) -> Any:
        if isinstance(obj, dict):
            ref = obj.get("$ref")
            if isinstance(ref, str):
                for prefix in ("#/$defs/", "#/definitions/"):
                    key = ref[len(prefix):]
                    if ref.startswith(prefix) and key in defs:
                        return _resolve(copy.deepcopy(defs[key]))
                return obj
            return {k: _resolve(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item) for item in obj]
        return obj

    result = _resolve(copy.deepcopy(schema))
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


class McpClient:
    """
    单个 MCP 服务器的异步客户端。

    参数:
        url: 服务器地址
        headers: 额外请求头（如鉴权）
        timeout: 单次请求超时（秒）
        client: 可注入的 httpx.AsyncClient（测试用）
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._connected = False
        self.server_info: dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self.headers,
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=message, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=message, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise McpError(f"MCP request to {self.url} failed: {e}") from e

        sid = response.headers.get("Mcp-Session-Id")
        if sid:
            self._session_id = sid
        return response

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """发送一个 JSON-RPC 请求并返回 result。"""
        msg_id = next(self._ids)
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id, "method": method}
        if params is not None:
            message["params"] = params

        response = await self._post(message)
        try:
            data = response.json()
        except ValueError as e:
            raise McpError(f"Invalid JSON from MCP server: {e}") from e

        if data.get("id") not in (None, msg_id):
            logger.warning(f"MCP response id mismatch: sent {msg_id}, got {data.get('id')} ({method})")
        if "error" in data:
            err = data["error"] or {}
            raise McpError(f"MCP error {err.get('code', -1)}: {err.get('message', 'Unknown error')}")
        return data.get("result") or {}

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._post(message)
        except McpError as e:
            logger.debug(f"MCP notification {method} not acknowledged: {e}")

    async def connect(self) -> dict[str, Any]:
        result = await self.request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": "orchestra", "version": "0.1.0"},
        })
        self.server_info = result.get("serverInfo", {})
        await self.notify("notifications/initialized")
        self._connected = True
        logger.info(f"MCP connected to {self.server_info.get('name', self.url)}")
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        if not self._connected:
            await self.connect()
        result = await self.request("tools/list", {})
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._connected:
            await self.connect()
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.request("tools/call", params)


def _content_text(result: dict[str, Any]) -> str:
    """把 tools/call 返回的内容块拼成文本；非文本块（图片、资源等）只保留 "[<类型> content]" 占位，不带原始数据。"""
    parts = []
    for block in result.get("content") or []:
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        else:
            parts.append(f"[{block.get('type', 'unknown')} content]")
    return "\n".join(parts)


class ExternalToolBackend(ToolBackend):
    """
    外部 MCP 工具服务器后端。

    list_tools 的 ids 为服务 ID；每个服务首次使用时建立连接并缓存工具列表。
    """

    kind = ToolKind.EXTERNAL

    def __init__(self, clients: dict[str, McpClient] | None = None):
        self.clients: dict[str, McpClient] = {}
        self._tools: dict[str, list[dict[str, Any]]] = {}
        for service_id, client in (clients or {}).items():
            self.add_server(service_id, client)

    @classmethod
    def from_config(cls, config: ToolsConfig) -> "ExternalToolBackend":
        backend = cls()
        for service_id, server in config.mcp_servers.items():
            if not server.enabled or not server.url:
                continue
            backend.add_server(service_id, cls._client_for(server))
        return backend

    @staticmethod
    def _client_for(server: McpServerConfig) -> McpClient:
        return McpClient(server.url, headers=server.headers, timeout=server.timeout)

    def add_server(self, service_id: str, client: McpClient) -> None:
        if TOOL_NAME_SPLIT in service_id:
            logger.warning(f"MCP server id {service_id!r} contains {TOOL_NAME_SPLIT!r}, skipped")
            return
        self.clients[service_id] = client
        self._tools.pop(service_id, None)

    async def _server_tools(self, service_id: str) -> list[dict[str, Any]]:
        if service_id not in self._tools:
            self._tools[service_id] = await self.clients[service_id].list_tools()
        return self._tools[service_id]

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        descriptors = []
        for service_id in ids if ids is not None else list(self.clients):
            if service_id not in self.clients:
                logger.warning(f"MCP server {service_id} not configured, skipped")
                continue
            try:
                tools = await self._server_tools(service_id)
            except McpError as e:
                logger.error(f"Failed to list tools from MCP server {service_id}: {e}")
                continue
            for tool in tools:
                schema = dereference_schema(tool.get("inputSchema") or {})
                schema.setdefault("type", "object")
                schema.setdefault("properties", {})
                descriptors.append(ToolDescriptor(
                    ref=ToolRef(ToolKind.EXTERNAL, service_id, tool["name"]),
                    description=tool.get("description") or tool["name"],
                    parameters=schema,
                ))
        return descriptors

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        client = self.clients.get(ref.id)
        if client is None:
            raise ToolNotFound(f"MCP server '{ref.id}' not found")
        result = await client.call_tool(ref.tool, arguments)
        text = _content_text(result)
        if result.get("isError"):
            raise ToolError(text or f"MCP tool {ref.tool} failed")
        return text

    def display_name(self, ref: ToolRef) -> str:
        return f"{ref.id}/{ref.tool}"
