"""
内置工具 (agent/tools/builtin.py)

- VISION(image, query): 把一张图片和问题发给视觉模型，返回模型的文字回答
- IMAGE(prompt, negative_prompt): 提交一个异步图像生成任务并轮询直到出结果

【图像任务轮询】
DashScope 风格的异步接口：POST 提交任务拿到 task_id，再 GET 轮询 task_status。
轮询间隔从 poll_interval 开始按 backoff_factor 递增，不超过 max_interval；
累计超过 timeout 秒仍未进入终态时抛出 ImageJobTimeout；
每轮都会检查取消标记，Agent 停止时任务轮询也随之结束。
"""

import asyncio
import base64
import mimetypes
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx
from loguru import logger

from orchestra.agent.tools.backends import ToolBackend
from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, ToolRef
from orchestra.errors import ImageJobTimeout, ToolArgumentError, ToolError, ToolNotFound, TransportError
from orchestra.providers.litellm_provider import LiteLLMProvider

VISION_SYSTEM_PROMPT = "你是一个专业的视觉模型，请根据用户的问题和图片内容，给出详细的回答。"

VISION_DESCRIPTOR = ToolDescriptor(
    ref=ToolRef(ToolKind.BUILTIN, "VISION"),
    description="使用视觉模型查看图片内容, 一次只能查看一张图片",
    parameters={
        "type": "object",
        "properties": {
            "image": {"type": "string", "description": "图片地址（URL、data URI 或本地文件路径）"},
            "query": {"type": "string", "description": "查询内容"},
        },
        "required": ["image", "query"],
    },
)

IMAGE_DESCRIPTOR = ToolDescriptor(
    ref=ToolRef(ToolKind.BUILTIN, "IMAGE"),
    description="根据文字描述生成图片，返回生成结果的图片地址",
    parameters={
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "description": "图片内容描述"},
            "negative_prompt": {"type": "string", "description": "不希望出现在图片中的内容（可选）"},
        },
        "required": ["prompt"],
    },
)


# ==============================================================================
# 视觉模型
# ==============================================================================


def image_to_url(image: str) -> str:
    """
    把图片引用转换为视觉模型可接受的 URL。

    http(s) 地址和 data URI 原样返回，本地文件读取后转为 base64 data URI。
    """
    if image.startswith(("http://", "https://", "data:")):
        return image

    path = Path(image).expanduser()
    mime, _ = mimetypes.guess_type(str(path))
    if not path.is_file() or not mime or not mime.startswith("image/"):
        raise ToolArgumentError(f"image not found or not an image file: {image}")
    b64 = base64.b64encode(path.read_bytes()).decode()
    return f"data:{mime};base64,{b64}"


class VisionModel(ABC):
    """视觉模型接口。"""

    @abstractmethod
    async def describe(self, image: str, query: str) -> str:
        """根据图片回答问题。"""


class LiteLLMVisionModel(VisionModel):
    """通过 LiteLLMProvider 的非流式补全调用视觉模型。"""

    def __init__(self, provider: LiteLLMProvider, model: str | None = None, temperature: float = 1.0, max_tokens: int = 1024):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def describe(self, image: str, query: str) -> str:
        messages = [
            {"role": "system", "content": VISION_SYSTEM_PROMPT},
            {"role": "user", "content": [
                {"type": "image_url", "image_url": {"url": image_to_url(image)}},
                {"type": "text", "text": query},
            ]},
        ]
        try:
            response = await self.provider.complete(
                messages,
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except TransportError as e:
            raise ToolError(f"vision model call failed: {e}") from e
        return response.content


# ==============================================================================
# 图像生成模型
# ==============================================================================


@dataclass
class ImageJobStatus:
    """
    图像任务状态。

    status 取值: PENDING / RUNNING / SUCCEEDED / FAILED / UNKNOWN
    """
    task_id: str
    status: str
    images: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in ("SUCCEEDED", "FAILED")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"task_id": self.task_id, "status": self.status, "images": self.images}
        if self.message:
            data["message"] = self.message
        return data


class ImageModel(ABC):
    """异步图像生成接口：提交任务 + 查询任务。"""

    @abstractmethod
    async def submit(self, prompt: str, negative_prompt: str = "", parameters: dict[str, Any] | None = None) -> str:
        """提交任务，返回 task_id。"""

    @abstractmethod
    async def fetch(self, task_id: str) -> ImageJobStatus:
        """查询任务当前状态。"""


class DashScopeImageModel(ImageModel):
    """
    DashScope（通义万相）文生图接口。

    属性:
        model: 模型名称（如 "wanx2.1-t2i-turbo"）
        post_url: 提交任务地址
        get_url: 查询任务地址前缀（后接 task_id）
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        post_url: str,
        get_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.model = model
        self.api_key = api_key
        self.post_url = post_url
        self.get_url = get_url
        self.timeout = timeout
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", **kwargs.pop("headers", {})}
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ToolError(f"image service request failed: {e}") from e

    async def submit(self, prompt: str, negative_prompt: str = "", parameters: dict[str, Any] | None = None) -> str:
        body = {
            "model": self.model,
            "input": {"prompt": prompt, "negative_prompt": negative_prompt},
            "parameters": parameters or {},
        }
        data = await self._request("POST", self.post_url, json=body, headers={"X-DashScope-Async": "enable"})
        task_id = (data.get("output") or {}).get("task_id")
        if not task_id:
            raise ToolError(data.get("message") or "image job submission failed")
        return task_id

    async def fetch(self, task_id: str) -> ImageJobStatus:
        data = await self._request("GET", f"{self.get_url}{task_id}")
        output = data.get("output") or {}
        return ImageJobStatus(
            task_id=task_id,
            status=output.get("task_status", "UNKNOWN"),
            images=[r["url"] for r in output.get("results") or [] if r.get("url")],
            message=output.get("message", ""),
        )


async def poll_image_job(
    model: ImageModel,
    task_id: str,
    poll_interval: float = 2.0,
    backoff_factor: float = 1.5,
    max_interval: float = 10.0,
    timeout: float = 300.0,
    is_cancelled: Callable[[], bool] | None = None,
) -> ImageJobStatus:
    """
    轮询图像任务直到进入终态。

    异常:
        ImageJobTimeout: 超过 timeout 秒仍未进入终态
        ToolError: 轮询过程中被取消
    """
    deadline = time.monotonic() + timeout
    interval = poll_interval
    while True:
        if is_cancelled and is_cancelled():
            raise ToolError(f"image job {task_id} cancelled")

        status = await model.fetch(task_id)
        if status.is_terminal:
            return status

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ImageJobTimeout(f"image job {task_id} did not finish within {timeout}s")
        await asyncio.sleep(min(interval, remaining))
        interval = min(interval * backoff_factor, max_interval)


# ==============================================================================
# 后端
# ==============================================================================


class BuiltinBackend(ToolBackend):
    """
    内置工具后端。

    参数:
        vision: 视觉模型（None 表示不提供 VISION）
        image: 图像生成模型（None 表示不提供 IMAGE）
        polling: 轮询参数 {poll_interval, backoff_factor, max_interval, timeout}
    """

    kind = ToolKind.BUILTIN

    def __init__(
        self,
        vision: VisionModel | None = None,
        image: ImageModel | None = None,
        polling: dict[str, float] | None = None,
    ):
        self.vision = vision
        self.image = image
        self.polling = polling or {}
        self._cancelled = False

    async def list_tools(self, ids: list[str] | None = None) -> list[ToolDescriptor]:
        available = []
        if self.vision is not None:
            available.append(VISION_DESCRIPTOR)
        if self.image is not None:
            available.append(IMAGE_DESCRIPTOR)
        if ids is None:
            return available
        return [d for d in available if d.ref.id in ids]

    async def execute(self, ref: ToolRef, arguments: dict[str, Any]) -> Any:
        if ref.id == "VISION" and self.vision is not None:
            image, query = arguments.get("image"), arguments.get("query")
            if not image or not query:
                raise ToolArgumentError("VISION requires both image and query")
            return await self.vision.describe(image, query)

        if ref.id == "IMAGE" and self.image is not None:
            prompt = arguments.get("prompt")
            if not prompt:
                raise ToolArgumentError("the prompt can't be empty")
            self._cancelled = False
            task_id = await self.image.submit(prompt, arguments.get("negative_prompt") or "")
            logger.info(f"Image job submitted: {task_id}")
            status = await poll_image_job(
                self.image,
                task_id,
                is_cancelled=lambda: self._cancelled,
                **self.polling,
            )
            logger.info(f"Image job {task_id} finished: {status.status}")
            return status.to_dict()

        raise ToolNotFound(f"Built-in tool {ref.id} is not enabled")

    async def cancel(self) -> None:
        self._cancelled = True
