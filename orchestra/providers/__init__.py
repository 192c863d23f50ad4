"""
模型提供者模块 - 流式适配器、服务商描述符与传输层。

导出：
- StreamingModel：统一事件模型的流式适配器
- ProviderDescriptor / DESCRIPTORS：服务商描述符注册表
- HttpStreamTransport / LiteLLMTransport：传输层实现
- LiteLLMProvider：非流式调用（视觉模型）
"""

from orchestra.providers.base import (
    Credentials,
    LLMProvider,
    LLMResponse,
    StreamEvent,
    StreamTransport,
    ToolCall,
    ToolCallAccumulator,
    ToolCallDelta,
    TurnResult,
)
from orchestra.providers.litellm_provider import LiteLLMProvider
from orchestra.providers.registry import DESCRIPTORS, ProviderDescriptor, find_by_model, find_by_name
from orchestra.providers.streaming import StreamingModel
from orchestra.providers.transport import HttpStreamTransport, LiteLLMTransport

__all__ = [
    "Credentials",
    "DESCRIPTORS",
    "HttpStreamTransport",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "LiteLLMTransport",
    "ProviderDescriptor",
    "StreamEvent",
    "StreamTransport",
    "StreamingModel",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "TurnResult",
    "find_by_model",
    "find_by_name",
]
