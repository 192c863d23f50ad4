"""
模型提供者基础类型模块。

本模块定义了与大语言模型交互时用到的全部数据结构和抽象接口，分两部分：

【流式部分】（StreamingModel 使用）
- Credentials        : 凭证（API Key + 已拼好的请求头）
- ToolCallDelta      : 单帧中的工具调用增量（可能只是参数的一小段）
- ParsedFrame        : 描述符把一帧原始数据解析后的统一结果
- ToolCallFragment   : 流未结束前正在拼接的工具调用
- ToolCall           : 拼接完成的工具调用
- ToolCallAccumulator: 按 index 合并增量的累加器
- StreamEvent        : 推送给订阅者的事件
- TurnResult         : 一个轮次结束后的汇总结果
- StreamTransport    : 传输层抽象（打开流 / 按请求 ID 取消）

【非流式部分】（内置 VISION 工具使用）
- LLMResponse / LLMProvider：一次性补全请求的统一响应与接口

数据流：
  StreamTransport.open_stream() → 原始行 → ProviderDescriptor.parse_frame() → ParsedFrame
      → ToolCallAccumulator / 文本累加 → StreamEvent（实时） + TurnResult（结束时）
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


# ==============================================================================
# 流式数据结构
# ==============================================================================


@dataclass
class Credentials:
    """
    一次请求使用的凭证。

    属性:
        api_key: API 密钥（LiteLLM 传输直接使用）
        headers: 认证头 + 额外请求头（HTTP 传输直接使用）
    """
    api_key: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ToolCallDelta:
    """
    单帧中的工具调用增量。

    带 id 的增量表示"开启一个新的工具调用"；不带 id 的增量只携带参数片段，
    需要拼接到同一 index（或最近开启）的工具调用上。
    """
    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class ParsedFrame:
    """一帧解析后的统一结果。所有字段都可能为空。"""
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    error: str | None = None


@dataclass
class ToolCallFragment:
    """流未结束前正在拼接的工具调用（参数缓冲区可以为空串）。"""
    id: str
    index: int
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """
    拼接完成的工具调用。

    属性:
        id: 工具调用 ID（工具结果消息通过 tool_call_id 关联它）
        index: 在本轮中的位置
        name: 组合工具名（见 agent/tools/ref.py）
        arguments: JSON 字符串形式的参数（原样保留，由路由器解析）
    """
    id: str
    index: int
    name: str
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        """转换为 OpenAI 的 tool_calls 元素格式，写入 assistant 消息。"""
        return {
            "id": self.id,
            "index": self.index,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallAccumulator:
    """
    工具调用增量累加器。

    合并规则：
    1. 带 id 的增量：在它的 index 上开启新片段（参数缓冲区初始化为给定值或空串）
    2. 不带 id 的增量：参数片段追加到同 index 的片段上；
       index 缺失或找不到时追加到最近开启的片段上
    3. finalize() 按 index 升序输出
    """

    def __init__(self) -> None:
        self._fragments: dict[int, ToolCallFragment] = {}
        self._last: ToolCallFragment | None = None

    def add(self, delta: ToolCallDelta) -> None:
        if delta.id:
            index = delta.index if delta.index is not None else len(self._fragments)
            fragment = ToolCallFragment(
                id=delta.id,
                index=index,
                name=delta.name or "",
                arguments=delta.arguments or "",
            )
            self._fragments[index] = fragment
            self._last = fragment
            return

        fragment = self._fragments.get(delta.index) if delta.index is not None else None
        fragment = fragment or self._last
        if fragment is None:
            return
        if delta.name and not fragment.name:
            fragment.name = delta.name
        if delta.arguments:
            fragment.arguments += delta.arguments

    def finalize(self) -> list[ToolCall]:
        return [
            ToolCall(id=f.id, index=f.index, name=f.name, arguments=f.arguments)
            for _, f in sorted(self._fragments.items())
        ]

    def __len__(self) -> int:
        return len(self._fragments)


@dataclass
class StreamEvent:
    """
    推送给订阅者的流事件。

    type 取值: "content" | "reasoning" | "tool_call" | "error" | "done"
    content / reasoning 事件的 text 是本帧的增量，accumulated 是截至目前的全文。
    """
    type: str
    request_id: str
    text: str = ""
    accumulated: str = ""
    tool_call: ToolCall | None = None
    error: str | None = None


@dataclass
class TurnResult:
    """一个轮次（一次流式请求）的汇总结果。"""
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    request_id: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


class StreamTransport(ABC):
    """
    流式传输抽象。

    实现类只负责"把请求体发出去，逐行吐回原始数据"，不理解任何服务商格式。
    """

    @abstractmethod
    def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        request_id: str,
        body: dict[str, Any],
    ) -> AsyncIterator[str]:
        """
        打开一个流式请求。

        参数:
            endpoint: 完整的请求地址
            credentials: 凭证
            request_id: 本次请求的 ID（取消时使用）
            body: 已按服务商格式整形的请求体

        返回:
            逐行产出原始数据的异步迭代器；失败时抛出 TransportError
        """

    @abstractmethod
    async def cancel(self, request_id: str) -> None:
        """取消指定请求。对未知或已结束的请求 ID 不做任何事。"""


# ==============================================================================
# 非流式接口
# ==============================================================================


@dataclass
class LLMResponse:
    """
    一次性补全的结果。

    属性:
        content: 文本内容
        finish_reason: 服务商给出的结束原因
        usage: token 用量统计
        reasoning_content: 推理内容（部分模型会返回）
    """
    content: str
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    reasoning_content: str | None = None


class LLMProvider(ABC):
    """
    非流式 LLM 提供者。

    属性:
        api_key: API 密钥
        api_base: API 基础 URL
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 1.0,
    ) -> LLMResponse:
        """
        发送一次性补全请求。

        参数:
            messages: OpenAI 格式的消息列表（content 可以是多模态块列表）
            model: 模型名称，为空时使用默认模型

        异常:
            TransportError: 请求失败
        """

    @abstractmethod
    def get_default_model(self) -> str:
        """该提供者的默认模型。"""
