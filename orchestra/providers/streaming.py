"""
流式模型适配器 - 把各家服务商的流式响应统一为一套事件模型。

【一个轮次的处理流程】
1. 若存在进行中的请求，先 stop() 它并等它收尾（每个实例同时最多一个请求）
2. 生成新的请求 ID，从 HistoryManager 取窗口化的模型视图，按描述符整形请求体
3. 向历史追加一条"生成中"的 assistant 消息（assistant:pending）
4. 逐帧处理：去掉 "data: " 前缀，跳过空行 / 注释行 / event 行，"[DONE]" 结束
5. 正文与推理增量实时写回本轮追加的那条消息并推送事件；工具调用增量交给累加器
6. 流结束后写入 tool_calls，标记 assistant:reply，返回 TurnResult

【失败处理】
TransportError / ParseError 或其他异常会把本轮消息改为 assistant:error
（内容为 "请求失败: <原因>"），推送 error 事件后继续向上抛出；
外部取消（CancelledError）同样收尾为 assistant:error 再抛出。
被 stop() 中止的轮次保留已收到的正文（没有正文时记为 assistant:error），loading 置为 False。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from orchestra.errors import ParseError, TransportError
from orchestra.history import HistoryManager, Message
from orchestra.history.message import TYPE_ERROR, TYPE_PENDING, TYPE_REPLY
from orchestra.providers.base import (
    Credentials,
    StreamEvent,
    StreamTransport,
    ToolCallAccumulator,
    TurnResult,
)
from orchestra.providers.registry import ProviderDescriptor
from orchestra.utils.helpers import gen_id

Subscriber = Callable[[StreamEvent], Any]


def frame_payload(line: str) -> str | None:
    """
    从一行原始数据中取出帧内容。

    返回:
        去掉 "data: " 前缀后的内容；需要忽略的行（空行、":" 注释、"event:" 行）返回 None
    """
    line = line.strip()
    if not line or line.startswith(":") or line.startswith("event:"):
        return None
    if line.startswith("data:"):
        line = line[5:].strip()
    return line or None


class StreamingModel:
    """
    流式模型适配器。

    属性:
        descriptor: 服务商描述符（决定请求体格式和帧解析方式）
        transport: 传输层
        credentials: 凭证
        endpoint: 完整请求地址
        model: 模型名称
        history: 当前对话的消息历史
        temperature: 采样温度
        current_request_id: 进行中的请求 ID（没有时为 None）
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        transport: StreamTransport,
        credentials: Credentials,
        endpoint: str,
        model: str,
        history: HistoryManager,
        temperature: float = 1.0,
    ):
        self.descriptor = descriptor
        self.transport = transport
        self.credentials = credentials
        self.endpoint = endpoint
        self.model = model
        self.history = history
        self.temperature = temperature
        self.current_request_id: str | None = None
        self._turn: "_Turn | None" = None
        self._subscribers: list[Subscriber] = []

    # ===== 订阅 =====

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        订阅流事件。

        返回:
            取消订阅的函数
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: StreamEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Stream subscriber failed on {event.type} event: {e}")

    # ===== 请求 =====

    async def stream(self, tools: list[dict[str, Any]] | None = None) -> TurnResult:
        """
        发起一个轮次的流式请求。

        参数:
            tools: 工具定义列表（OpenAI 函数格式），为空或 None 时请求体不携带 tools

        返回:
            TurnResult：本轮的完整正文、推理内容和按 index 排序的工具调用。
            被 stop() 中止的轮次保留已收到的正文，不带工具调用

        异常:
            TransportError: 网络失败、HTTP 错误状态或服务端 error 事件
            ParseError: 描述符不允许跳过的坏帧
        """
        if self.current_request_id:
            await self.stop()

        request_id = gen_id()
        messages = self.history.list_without_type()
        body = self.descriptor.build_request(self.model, messages, self.temperature, tools)
        message = Message(role="assistant", type=TYPE_PENDING, loading=True)
        self.history.push([message])

        turn = _Turn(request_id=request_id, message=message, owner=asyncio.current_task())
        self.current_request_id = request_id
        self._turn = turn

        logger.info(f"Stream start: {self.descriptor.name}/{self.model} request={request_id}")
        turn.pump = asyncio.create_task(self._consume(turn, body))
        try:
            try:
                await turn.pump
            except asyncio.CancelledError:
                if not turn.stopped or asyncio.current_task().cancelling():
                    self._fail(turn, "请求已取消")
                    raise
            except (TransportError, ParseError) as e:
                if not turn.stopped:
                    logger.error(f"Stream {request_id} failed: {e}")
                    self._fail(turn, f"请求失败: {e}")
                    raise
                logger.debug(f"Stream {request_id} ended with {e} after stop")
            except Exception as e:
                logger.exception(f"Stream {request_id} crashed")
                self._fail(turn, f"请求失败: {e}")
                raise

            if turn.stopped:
                return self._finish_stopped(turn)
            return self._finish(turn)
        finally:
            if self.current_request_id == request_id:
                self.current_request_id = None
            if self._turn is turn:
                self._turn = None
            turn.done.set()

    async def _consume(self, turn: "_Turn", body: dict[str, Any]) -> None:
        """逐帧读取传输层数据，把增量写到本轮绑定的消息上。"""
        async for line in self.transport.open_stream(self.endpoint, self.credentials, turn.request_id, body):
            payload = frame_payload(line)
            if payload is None:
                continue
            if payload == "[DONE]":
                break

            try:
                frame = self.descriptor.parse_frame(payload)
            except (ValueError, KeyError, TypeError, AttributeError, IndexError) as e:
                if self.descriptor.skip_malformed:
                    logger.debug(f"Skipping malformed frame from {self.descriptor.name}: {payload[:200]}")
                    continue
                raise ParseError(f"Malformed frame from {self.descriptor.name}: {e}", payload) from e

            if frame.error:
                raise TransportError(frame.error, request_id=turn.request_id)

            if frame.reasoning:
                turn.reasoning += frame.reasoning
                self.history.update_message(turn.message, reasoning=turn.reasoning)
                self._emit(StreamEvent("reasoning", turn.request_id, text=frame.reasoning, accumulated=turn.reasoning))

            if frame.content:
                turn.content += frame.content
                self.history.update_message(turn.message, content=turn.content)
                self._emit(StreamEvent("content", turn.request_id, text=frame.content, accumulated=turn.content))

            for delta in frame.tool_calls:
                turn.accumulator.add(delta)

    def _fail(self, turn: "_Turn", reason: str) -> None:
        self.history.update_message(turn.message, content=reason, type=TYPE_ERROR, loading=False)
        self._emit(StreamEvent("error", turn.request_id, error=reason))

    def _finish(self, turn: "_Turn") -> TurnResult:
        tool_calls = turn.accumulator.finalize()
        for call in tool_calls:
            self._emit(StreamEvent("tool_call", turn.request_id, tool_call=call))

        self.history.update_message(
            turn.message,
            tool_calls=[call.to_dict() for call in tool_calls] or None,
            type=TYPE_REPLY,
            loading=False,
        )
        self._emit(StreamEvent("done", turn.request_id, accumulated=turn.content))
        logger.info(f"Stream done: request={turn.request_id}, {len(turn.content)} chars, {len(tool_calls)} tool calls")
        return TurnResult(content=turn.content, reasoning=turn.reasoning, tool_calls=tool_calls, request_id=turn.request_id)

    def _finish_stopped(self, turn: "_Turn") -> TurnResult:
        # 未完成的工具调用参数不可靠，直接丢弃；没有正文时记为错误，避免给模型发送空的助手消息
        if turn.content:
            self.history.update_message(turn.message, type=TYPE_REPLY, loading=False)
        else:
            self.history.update_message(turn.message, content="请求已停止", type=TYPE_ERROR, loading=False)
        self._emit(StreamEvent("done", turn.request_id, accumulated=turn.content))
        logger.info(f"Stream stopped: request={turn.request_id}, {len(turn.content)} chars kept")
        return TurnResult(content=turn.content, reasoning=turn.reasoning, request_id=turn.request_id)

    async def stop(self) -> None:
        """
        取消进行中的请求，并等待该轮次把消息收尾后再返回。

        没有进行中的请求时什么也不做。
        """
        request_id = self.current_request_id
        if request_id is None:
            return
        self.current_request_id = None
        turn = self._turn if self._turn is not None and self._turn.request_id == request_id else None
        if turn is not None:
            turn.stopped = True
        try:
            await self.transport.cancel(request_id)
        except Exception as e:
            logger.warning(f"Failed to cancel stream {request_id}: {e}")

        if turn is None:
            return
        current = asyncio.current_task()
        if turn.pump is not None and turn.pump is not current:
            turn.pump.cancel()
        if current not in (turn.owner, turn.pump):
            await turn.done.wait()


@dataclass
class _Turn:
    """一次进行中的请求：绑定的消息、累计内容和读取任务。"""
    request_id: str
    message: Message
    owner: asyncio.Task | None = None
    content: str = ""
    reasoning: str = ""
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    pump: asyncio.Task | None = None
    stopped: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)
