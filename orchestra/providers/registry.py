"""
模型服务商描述符注册表：所有服务商差异的唯一真相来源（Single Source of Truth）。

本模块采用"数据驱动"的设计：每家服务商的差异（默认端点、认证头、请求体整形、
流式帧解析、解析失败时的处理策略）都声明在一条 ProviderDescriptor 中，
StreamingModel 只和描述符打交道，不写任何 if-elif 分支。

添加新的服务商只需两步：
  1. 在下方 DESCRIPTORS 元组中新增一条 ProviderDescriptor
     （OpenAI 兼容的服务商直接复用 shape_openai / parse_openai）
  2. 在 config/schema.py 的 ProvidersConfig 中新增一个同名字段

DESCRIPTORS 中的顺序很重要，它决定了按模型名匹配时的优先级和回退顺序。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from orchestra.providers.base import ParsedFrame, ToolCallDelta
from orchestra.utils.helpers import now_ms

RequestShaper = Callable[[str, list[dict[str, Any]], float, list[dict[str, Any]] | None], dict[str, Any]]
FrameParser = Callable[[str], ParsedFrame]
AuthHeaders = Callable[[str], dict[str, str]]


# ---------------------------------------------------------------------------
# 认证头
# ---------------------------------------------------------------------------

def bearer_auth(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def anthropic_auth(api_key: str) -> dict[str, str]:
    return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}


def no_auth(api_key: str) -> dict[str, str]:
    return {}


# ---------------------------------------------------------------------------
# OpenAI 兼容格式（OpenAI、通义千问、DeepSeek、Moonshot、智谱、OpenRouter 等）
# ---------------------------------------------------------------------------

def shape_openai(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    tools: list[dict[str, Any]] | None,
) -> dict[str, Any]:
    """
    构造 OpenAI Chat Completions 流式请求体。

    工具列表为空时完全省略 tools 字段（部分服务商不接受空数组）。
    """
    body: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": True,
        "temperature": temperature,
    }
    if tools:
        body["tools"] = tools
    return body


def parse_openai(payload: str) -> ParsedFrame:
    """
    解析 OpenAI 格式的一帧：choices[0].delta 中的 content、reasoning_content、tool_calls。

    一帧中可能携带多个工具调用增量，全部交给累加器。
    """
    data = json.loads(payload)
    if isinstance(data.get("error"), dict):
        return ParsedFrame(error=data["error"].get("message") or json.dumps(data["error"], ensure_ascii=False))

    choices = data.get("choices") or []
    if not choices:
        return ParsedFrame()
    delta = choices[0].get("delta") or {}

    frame = ParsedFrame(
        content=delta.get("content") or "",
        reasoning=delta.get("reasoning_content") or "",
    )
    for tc in delta.get("tool_calls") or []:
        function = tc.get("function") or {}
        frame.tool_calls.append(ToolCallDelta(
            index=tc.get("index"),
            id=tc.get("id"),
            name=function.get("name"),
            arguments=function.get("arguments"),
        ))
    return frame


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------

def _anthropic_message(msg: dict[str, Any]) -> dict[str, Any]:
    """把一条 OpenAI 格式的消息转换为 Anthropic 的 content blocks。"""
    role = msg["role"]
    if role == "tool":
        return {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id", ""),
                "content": msg.get("content") or "",
            }],
        }

    if role == "assistant" and msg.get("tool_calls"):
        blocks: list[dict[str, Any]] = []
        if msg.get("content"):
            blocks.append({"type": "text", "text": msg["content"]})
        for tc in msg["tool_calls"]:
            function = tc.get("function") or {}
            try:
                args = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                args = {}
            blocks.append({
                "type": "tool_use",
                "id": tc.get("id", ""),
                "name": function.get("name", ""),
                "input": args,
            })
        return {"role": "assistant", "content": blocks}

    return {"role": role, "content": msg.get("content") or ""}


def shape_anthropic(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    tools: list[dict[str, Any]] | None,
) -> dict[str, Any]:
    """
    构造 Anthropic Messages API 流式请求体。

    差异：
    - system 消息提到顶层 system 字段
    - 工具定义使用 input_schema 而不是 parameters
    - 工具调用 / 工具结果转换为 tool_use / tool_result 内容块
    - max_tokens 为必填项
    """
    system = "\n\n".join(m.get("content") or "" for m in messages if m["role"] == "system")
    body: dict[str, Any] = {
        "model": model,
        "messages": [_anthropic_message(m) for m in messages if m["role"] != "system"],
        "stream": True,
        "temperature": temperature,
        "max_tokens": 4096,
    }
    if system:
        body["system"] = system
    if tools:
        body["tools"] = [
            {
                "name": t["function"]["name"],
                "description": t["function"].get("description", ""),
                "input_schema": t["function"].get("parameters") or {"type": "object", "properties": {}},
            }
            for t in tools
        ]
    return body


def parse_anthropic(payload: str) -> ParsedFrame:
    """
    解析 Anthropic 的一帧。

    支持的事件：
    - content_block_delta: text_delta（正文）、thinking_delta（推理）、
      input_json_delta（工具参数片段，按 index 关联）
    - content_block_start: type=tool_use 的内容块开启一个工具调用
    - tool_use: 一次性给出完整工具调用的事件形式
    - error: 服务端错误
    """
    data = json.loads(payload)
    event_type = data.get("type")

    if event_type == "content_block_delta":
        delta = data["delta"]
        delta_type = delta.get("type")
        if delta_type == "thinking_delta":
            return ParsedFrame(reasoning=delta.get("thinking") or "")
        if delta_type == "input_json_delta":
            return ParsedFrame(tool_calls=[ToolCallDelta(
                index=data.get("index"),
                arguments=delta.get("partial_json") or "",
            )])
        return ParsedFrame(content=delta.get("text") or "")

    if event_type == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return ParsedFrame(tool_calls=[ToolCallDelta(
                index=data.get("index"),
                id=block["id"],
                name=block.get("name", ""),
                arguments="",
            )])
        return ParsedFrame(content=block.get("text") or "")

    if event_type == "tool_use":
        return ParsedFrame(tool_calls=[ToolCallDelta(
            index=data.get("index"),
            id=data.get("id") or f"tool_{now_ms()}",
            name=data.get("name", ""),
            arguments=json.dumps(data.get("input") or {}, ensure_ascii=False),
        )])

    if event_type == "error":
        error = data.get("error") or {}
        return ParsedFrame(error=error.get("message") or "unknown error")

    return ParsedFrame()


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def parse_gemini(payload: str) -> ParsedFrame:
    """
    解析 Gemini 的一帧。

    原生格式为 candidates[0].content.parts（text / functionCall），
    通过 OpenAI 兼容端点访问时则回退到 OpenAI 格式。
    """
    data = json.loads(payload)
    if "candidates" not in data:
        return parse_openai(payload)

    candidates = data.get("candidates") or []
    parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
    frame = ParsedFrame()
    for i, part in enumerate(parts):
        if part.get("text"):
            if part.get("thought"):
                frame.reasoning += part["text"]
            else:
                frame.content += part["text"]
        call = part.get("functionCall")
        if call:
            frame.tool_calls.append(ToolCallDelta(
                index=i,
                id=call.get("id") or f"{call.get('name', 'function')}_{i}",
                name=call.get("name", ""),
                arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
            ))
    return frame


# ---------------------------------------------------------------------------
# 描述符
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderDescriptor:
    """
    单个模型服务商的描述符（不可变值对象）。

    【身份标识】
        name: 配置字段名（如 "dashscope"），对应 providers 配置中的 key
        keywords: 模型名关键词元组，用于根据模型名匹配服务商（全小写）
        display_name: 在 `orchestra status` 中显示的名称

    【请求】
        default_endpoint: 默认请求地址（完整 URL）
        endpoint_suffix: 用户只配置了 api_base 时追加的路径
        shape_request: (model, messages, temperature, tools) → 请求体
        auth_headers: api_key → 认证请求头
        transport: "http"（直接发 SSE 请求）或 "litellm"（经由 LiteLLM）

    【响应】
        parse_frame: 去掉 "data: " 前缀后的一帧 → ParsedFrame
        skip_malformed: 帧解析失败时是跳过（True）还是中止整个流（False）

    【其他】
        is_gateway: 是否是 API 网关（可路由任意模型，不参与按模型名匹配）
        requires_key: 是否必须配置 API Key
        litellm_prefix: 非流式调用（LiteLLM）时的模型前缀
        model_overrides: 特定模型的请求体覆盖规则
    """

    name: str
    keywords: tuple[str, ...]
    default_endpoint: str = ""
    endpoint_suffix: str = "/chat/completions"
    shape_request: RequestShaper = shape_openai
    parse_frame: FrameParser = parse_openai
    auth_headers: AuthHeaders = bearer_auth
    skip_malformed: bool = True
    transport: str = "http"
    display_name: str = ""
    is_gateway: bool = False
    requires_key: bool = True
    litellm_prefix: str = ""
    model_overrides: tuple[tuple[str, dict[str, Any]], ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.name.title()

    def resolve_endpoint(self, api_base: str | None = None) -> str:
        """
        计算最终请求地址。

        未配置 api_base 时使用默认端点；api_base 已是完整地址（以 endpoint_suffix 结尾）
        时原样使用，否则追加 endpoint_suffix。LiteLLM 传输下直接返回 api_base。
        """
        if not api_base:
            return self.default_endpoint
        if self.transport == "litellm":
            return api_base
        base = api_base.rstrip("/")
        if base.endswith(self.endpoint_suffix):
            return base
        return base + self.endpoint_suffix

    def build_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        tools: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        """整形请求体并应用模型级覆盖。"""
        body = self.shape_request(model, messages, temperature, tools or None)
        model_lower = model.lower()
        for pattern, overrides in self.model_overrides:
            if pattern in model_lower:
                body.update(overrides)
                break
        return body


# ---------------------------------------------------------------------------
# DESCRIPTORS：服务商注册表。顺序 = 优先级。
# ---------------------------------------------------------------------------

DESCRIPTORS: tuple[ProviderDescriptor, ...] = (

    # ===== 网关 =====

    # OpenRouter：可路由任意模型，只通过显式配置使用
    ProviderDescriptor(
        name="openrouter",
        keywords=("openrouter",),
        default_endpoint="https://openrouter.ai/api/v1/chat/completions",
        display_name="OpenRouter",
        is_gateway=True,
        litellm_prefix="openrouter",
    ),

    # ===== 标准服务商 =====

    ProviderDescriptor(
        name="openai",
        keywords=("gpt", "chatgpt", "o1-", "o3-", "o4-"),
        default_endpoint="https://api.openai.com/v1/chat/completions",
        display_name="OpenAI",
    ),

    # Anthropic：请求体与帧格式都和 OpenAI 不同；
    # 事件之间存在依赖（content_block_start 与后续 delta），坏帧直接中止
    ProviderDescriptor(
        name="anthropic",
        keywords=("claude", "anthropic"),
        default_endpoint="https://api.anthropic.com/v1/messages",
        endpoint_suffix="/messages",
        shape_request=shape_anthropic,
        parse_frame=parse_anthropic,
        auth_headers=anthropic_auth,
        skip_malformed=False,
        display_name="Anthropic",
        litellm_prefix="anthropic",
    ),

    ProviderDescriptor(
        name="gemini",
        keywords=("gemini",),
        default_endpoint="https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
        parse_frame=parse_gemini,
        display_name="Gemini",
        litellm_prefix="gemini",
    ),

    # 通义千问（DashScope 兼容模式）
    ProviderDescriptor(
        name="dashscope",
        keywords=("qwen", "tongyi", "dashscope"),
        default_endpoint="https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
        display_name="DashScope",
        litellm_prefix="dashscope",
    ),

    ProviderDescriptor(
        name="deepseek",
        keywords=("deepseek",),
        default_endpoint="https://api.deepseek.com/chat/completions",
        display_name="DeepSeek",
        litellm_prefix="deepseek",
    ),

    # Moonshot：Kimi K2.5 要求 temperature >= 1.0
    ProviderDescriptor(
        name="moonshot",
        keywords=("moonshot", "kimi"),
        default_endpoint="https://api.moonshot.cn/v1/chat/completions",
        display_name="Moonshot",
        litellm_prefix="moonshot",
        model_overrides=(("kimi-k2.5", {"temperature": 1.0}),),
    ),

    ProviderDescriptor(
        name="zhipu",
        keywords=("zhipu", "glm"),
        default_endpoint="https://open.bigmodel.cn/api/paas/v4/chat/completions",
        display_name="Zhipu AI",
        litellm_prefix="zai",
    ),

    # ===== 通用 =====

    # LiteLLM：模型名需带 LiteLLM 前缀（如 "groq/llama3-8b-8192"），凭证可选
    ProviderDescriptor(
        name="litellm",
        keywords=(),
        auth_headers=no_auth,
        transport="litellm",
        display_name="LiteLLM",
        requires_key=False,
    ),
)


# ---------------------------------------------------------------------------
# 查找辅助函数
# ---------------------------------------------------------------------------

def find_by_model(model: str) -> ProviderDescriptor | None:
    """
    根据模型名关键词匹配标准服务商（大小写不敏感，跳过网关）。

    参数:
        model: 模型名称（如 "deepseek-chat"、"qwen-max"）

    返回:
        第一个匹配的描述符，没有匹配时返回 None
    """
    model_lower = model.lower()
    for desc in DESCRIPTORS:
        if desc.is_gateway:
            continue
        if any(kw in model_lower for kw in desc.keywords):
            return desc
    return None


def find_by_name(name: str) -> ProviderDescriptor | None:
    """根据配置字段名查找描述符。"""
    for desc in DESCRIPTORS:
        if desc.name == name:
            return desc
    return None
