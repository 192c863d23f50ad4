"""
嵌入模型客户端。

通过 OpenAI 兼容的 /embeddings 接口把文本转为向量：
  POST {model, input: [text], dimension, encoding_format: "float"}
  → data[0].embedding
"""

from abc import ABC, abstractmethod

import httpx
from loguru import logger

from orchestra.config.schema import EmbeddingModelConfig, ProvidersConfig
from orchestra.errors import ConfigurationError, TransportError

# 服务商 → 默认嵌入接口地址
DEFAULT_EMBEDDING_URLS = {
    "dashscope": "https://dashscope.aliyuncs.com/compatible-mode/v1/embeddings",
    "openai": "https://api.openai.com/v1/embeddings",
}


class EmbeddingModel(ABC):
    """嵌入模型抽象接口。"""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """把一段文本转为向量。"""


class HttpEmbeddingModel(EmbeddingModel):
    """
    基于 httpx 的嵌入模型客户端。

    属性:
        model: 模型名称（如 "text-embedding-v3"）
        api_url: 完整的嵌入接口地址
        dimension: 向量维度
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        api_url: str,
        dimension: int = 1024,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_url = api_url
        self.dimension = dimension
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config: EmbeddingModelConfig, providers: ProvidersConfig) -> "HttpEmbeddingModel":
        """
        根据知识库配置创建客户端。

        api_key / api_base 为空时回退到同名服务商的配置。
        """
        provider = getattr(providers, config.provider, None)
        api_key = config.api_key or (provider.api_key if provider else "")
        api_base = config.api_base or (provider.api_base if provider else None)

        if api_base:
            api_url = api_base.rstrip("/")
            if not api_url.endswith("/embeddings"):
                api_url += "/embeddings"
        else:
            api_url = DEFAULT_EMBEDDING_URLS.get(config.provider, "")
        if not api_url:
            raise ConfigurationError(f"No embedding endpoint for provider {config.provider!r}")

        return cls(model=config.model, api_key=api_key, api_url=api_url, dimension=config.dimension)

    async def embed(self, text: str) -> list[float]:
        body = {
            "model": self.model,
            "input": [text],
            "dimension": self.dimension,
            "encoding_format": "float",
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Embedding request failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"Embedding API call failed: {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError) as e:
            logger.error(f"Unexpected embedding response from {self.api_url}: {response.text[:200]}")
            raise TransportError(f"Invalid embedding response: {e}") from e
