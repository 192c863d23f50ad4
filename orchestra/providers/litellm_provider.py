"""
LiteLLM 非流式提供者。

对话轮次全部走 StreamingModel；这里只服务"一问一答"的调用，
目前是内置 VISION 工具：把图片和问题发给视觉模型，拿回一段文本。

LiteLLM 靠模型名前缀路由到服务商，前缀来自描述符的 litellm_prefix：
  "qwen-vl-max"         → "dashscope/qwen-vl-max"
  "claude-3-5-sonnet"   → "anthropic/claude-3-5-sonnet"
  经 OpenRouter 网关时  → "openrouter/<原模型名>"
"""

from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from orchestra.errors import TransportError
from orchestra.providers.base import LLMProvider, LLMResponse
from orchestra.providers.registry import find_by_model, find_by_name


def resolve_litellm_model(model: str, provider_name: str | None = None) -> str:
    """
    为模型名加上 LiteLLM 路由前缀。

    参数:
        model: 配置中的模型名
        provider_name: 显式指定的服务商；是网关时总是加网关前缀
    """
    desc = find_by_name(provider_name) if provider_name else None
    if desc and desc.is_gateway:
        prefix = f"{desc.litellm_prefix}/"
        return model if model.startswith(prefix) else prefix + model
    if "/" in model:
        return model
    desc = desc or find_by_model(model)
    if desc and desc.litellm_prefix:
        return f"{desc.litellm_prefix}/{model}"
    return model


class LiteLLMProvider(LLMProvider):
    """基于 litellm.acompletion 的一次性补全。"""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "qwen-vl-max",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.provider_name = provider_name

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 1.0,
    ) -> LLMResponse:
        model = resolve_litellm_model(model or self.default_model, self.provider_name)
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LiteLLM call failed ({model}): {e}")
            raise TransportError(f"{model}: {e}", status_code=getattr(e, "status_code", None)) from e

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "stop",
            usage={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            } if usage else {},
            reasoning_content=getattr(choice.message, "reasoning_content", None),
        )

    def get_default_model(self) -> str:
        return self.default_model
