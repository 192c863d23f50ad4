"""
消息历史模块 - 管理对话的有序消息状态与持久化。

【架构定位】
HistoryManager 位于 Agent 循环与流式模型适配器之间：
- Agent 循环追加用户消息、工具结果消息
- 流式适配器在一个轮次内实时更新最后一条 assistant 消息
- 发送给模型之前统一经过窗口裁剪（list_without_type）
"""

from orchestra.history.manager import HistoryManager
from orchestra.history.message import Conversation, Message
from orchestra.history.store import JsonFileStore, KeyValueStore, MemoryStore

__all__ = ["Conversation", "HistoryManager", "JsonFileStore", "KeyValueStore", "MemoryStore", "Message"]
