"""
流式传输实现。

- HttpStreamTransport: 基于 httpx 直接发起 SSE 请求，逐行返回响应体
- LiteLLMTransport: 经由 LiteLLM 的 acompletion(stream=True)，把每个分块
  重新序列化为 OpenAI 格式的一行 JSON

两者都以"请求 ID → 取消标记"实现协作式取消：调用 cancel() 后，
下一行数据到达时流就会结束。
"""

import json
from typing import Any, AsyncIterator

import httpx
import litellm
from litellm import acompletion
from loguru import logger

from orchestra.errors import TransportError
from orchestra.providers.base import Credentials, StreamTransport


class HttpStreamTransport(StreamTransport):
    """
    基于 httpx 的 SSE 传输。

    模型流本身没有整体超时（长回答可能持续数分钟），只限制连接建立时间。

    属性:
        connect_timeout: 建立连接的超时秒数
        _client: 外部注入的 httpx.AsyncClient（为空时每次请求临时创建）
    """

    def __init__(self, client: httpx.AsyncClient | None = None, connect_timeout: float = 30.0):
        self._client = client
        self.connect_timeout = connect_timeout
        self._active: set[str] = set()
        self._cancelled: set[str] = set()

    async def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        request_id: str,
        body: dict[str, Any],
    ) -> AsyncIterator[str]:
        headers = {"Content-Type": "application/json", **credentials.headers}
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self.connect_timeout),
        )
        self._active.add(request_id)
        try:
            async with client.stream("POST", endpoint, headers=headers, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"HTTP {response.status_code}: {detail[:500]}",
                        request_id=request_id,
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if request_id in self._cancelled:
                        logger.info(f"Stream {request_id} cancelled")
                        break
                    yield line
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}", request_id=request_id) from e
        finally:
            self._active.discard(request_id)
            self._cancelled.discard(request_id)
            if self._client is None:
                await client.aclose()

    async def cancel(self, request_id: str) -> None:
        if request_id in self._active:
            self._cancelled.add(request_id)


class LiteLLMTransport(StreamTransport):
    """
    经由 LiteLLM 的流式传输。

    请求体中的 model 必须是 LiteLLM 能识别的名称（如 "anthropic/claude-3-5-sonnet"），
    endpoint 非空时作为 api_base 传入。
    """

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._cancelled: set[str] = set()

    async def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        request_id: str,
        body: dict[str, Any],
    ) -> AsyncIterator[str]:
        litellm.suppress_debug_info = True
        litellm.drop_params = True

        kwargs: dict[str, Any] = {**body, "stream": True}
        if credentials.api_key:
            kwargs["api_key"] = credentials.api_key
        if endpoint:
            kwargs["api_base"] = endpoint
        if credentials.headers:
            kwargs["extra_headers"] = credentials.headers

        self._active.add(request_id)
        try:
            response = await acompletion(**kwargs)
            async for chunk in response:
                if request_id in self._cancelled:
                    logger.info(f"Stream {request_id} cancelled")
                    break
                yield json.dumps(chunk.model_dump(), ensure_ascii=False, default=str)
        except Exception as e:
            raise TransportError(f"LiteLLM error: {e}", request_id=request_id) from e
        finally:
            self._active.discard(request_id)
            self._cancelled.discard(request_id)

    async def cancel(self, request_id: str) -> None:
        if request_id in self._active:
            self._cancelled.add(request_id)
