"""
消息历史管理器 - 维护有序的对话状态，并在发送给模型前做窗口裁剪。

【窗口策略】
1. max_history > 0 时只保留最近 N 条原始消息，否则保留全部
2. 从头向后扫描，丢弃所有"非干净"的前导消息（tool 角色、或带 tool_calls / tool_call_id），
   直到遇到第一条干净消息，避免把一个"发起者已被裁掉"的工具结果发给模型
3. 模型视图始终以 system 消息开头，并剔除 type=assistant:error 的错误记录

【持久化】
每次 push / update / clear / remove 都把完整对话写入外部存储（KeyValueStore）。
"""

from __future__ import annotations

from typing import Any, Iterable

from loguru import logger

from orchestra.history.message import TYPE_ERROR, Conversation, Message
from orchestra.history.store import KeyValueStore, MemoryStore
from orchestra.utils.helpers import now_ms, truncate_string


class HistoryManager:
    """
    单个对话的消息历史管理器。

    属性:
        conversation: 被管理的对话
        store: 对话存储（键为对话 ID）
        max_history: 窗口大小（0 表示不限制）
    """

    def __init__(
        self,
        conversation: Conversation | None = None,
        store: KeyValueStore | None = None,
        max_history: int = 0,
    ):
        self.conversation = conversation or Conversation()
        self.store = store if store is not None else MemoryStore()
        self.max_history = max_history

    # ===== 创建与加载 =====

    @classmethod
    def create(
        cls,
        system: str = "",
        bot: str | None = None,
        store: KeyValueStore | None = None,
        max_history: int = 0,
    ) -> "HistoryManager":
        """新建一个空对话并立即持久化。"""
        manager = cls(Conversation(system=system, bot=bot), store, max_history)
        manager.save()
        return manager

    @classmethod
    def load(cls, conversation_id: str, store: KeyValueStore, max_history: int = 0) -> "HistoryManager | None":
        """从存储中加载对话，不存在或格式损坏时返回 None。"""
        data = store.get(conversation_id)
        if data is None:
            return None
        try:
            conversation = Conversation.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load conversation {conversation_id}: {e}")
            return None
        return cls(conversation, store, max_history)

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def list(self) -> list[Message]:
        """全部原始消息（含错误记录）。"""
        return self.conversation.messages

    # ===== 写操作（每次都会持久化） =====

    def push(self, messages: Iterable[Message | dict[str, Any]]) -> list[dict[str, Any]]:
        """
        追加消息并返回模型视图。

        参数:
            messages: Message 对象或字典（字典按 Message 字段解析）

        返回:
            list[dict]: 追加后的模型视图（等同于 list_without_type()）
        """
        for msg in messages:
            if isinstance(msg, dict):
                msg = Message.from_dict(msg)
            self.conversation.messages.append(msg)
            if not self.conversation.title and msg.role == "user" and msg.content:
                self.conversation.title = truncate_string(msg.content, 40)
        self.save()
        return self.list_without_type()

    def update_last_message(self, **partial: Any) -> Message | None:
        """
        就地更新最后一条消息的字段。

        参数:
            **partial: 要更新的字段（如 content="..."、tool_calls=[...]、type=...）

        返回:
            更新后的消息；历史为空时返回 None
        """
        last = self.get_last_message()
        if last is None:
            return None
        return self.update_message(last, **partial)

    def update_message(self, message: Message, **partial: Any) -> Message | None:
        """
        就地更新历史中的某一条消息（按对象身份定位，不要求是最后一条）。

        返回:
            更新后的消息；消息已不在历史中（被 clear / remove_last 移除）时返回 None

        异常:
            AttributeError: 未知字段
        """
        if not any(m is message for m in self.conversation.messages):
            logger.debug("Skipping update of a message no longer in the conversation")
            return None
        for key, value in partial.items():
            if key not in Message.__dataclass_fields__:
                raise AttributeError(f"Message has no field {key!r}")
            setattr(message, key, value)
        self.save()
        return message

    def clear(self) -> None:
        """清空所有消息（保留系统提示词和对话本身）。"""
        self.conversation.messages = []
        self.save()

    def remove_last(self) -> Message | None:
        """删除并返回最后一条消息；为空时返回 None。"""
        if not self.conversation.messages:
            return None
        msg = self.conversation.messages.pop()
        self.save()
        return msg

    def set_system(self, prompt: str) -> None:
        self.conversation.system = prompt
        self.save()

    def set_bot(self, bot: str | None) -> None:
        self.conversation.bot = bot
        self.save()

    def save(self) -> None:
        self.conversation.updated_at = now_ms()
        self.store.set(self.conversation.id, self.conversation.to_dict())

    def delete(self) -> bool:
        """从存储中删除整个对话。"""
        return self.store.delete(self.conversation.id)

    # ===== 读操作 =====

    def get_last_message(self) -> Message | None:
        """最后一条消息；历史为空时显式返回 None。"""
        return self.conversation.messages[-1] if self.conversation.messages else None

    def count(self) -> int:
        return len(self.conversation.messages)

    def window(self) -> list[Message]:
        """
        应用窗口策略后的消息列表（不含 system）。

        先按 max_history 截取最近 N 条，再剔除前导的工具相关消息，最后去掉错误记录。
        """
        messages = self.conversation.messages
        if self.max_history > 0:
            messages = messages[-self.max_history:]

        start = 0
        while start < len(messages) and messages[start].has_tool_reference:
            start += 1
        return [m for m in messages[start:] if m.type != TYPE_ERROR]

    def list_without_type(self) -> list[dict[str, Any]]:
        """
        模型视图：[system] + 窗口内消息，剔除错误记录，只保留模型需要的字段。
        """
        view = [{"role": "system", "content": self.conversation.system}]
        view.extend(m.to_model_dict() for m in self.window())
        return view

    def __len__(self) -> int:
        return self.count()
