"""
消息与对话的数据结构。

- Message：对话中的一条消息（system / user / assistant / tool）
- Conversation：一次完整对话（系统提示词 + 有序消息列表 + 关联的 Agent）

Message.type 只用于界面展示，不会发送给模型；其中 assistant:error
标记的是"错误记录"，在构建模型上下文时会被整体剔除。
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from orchestra.utils.helpers import gen_id, now_ms

# 消息展示类型
TYPE_PENDING = "assistant:pending"
TYPE_REPLY = "assistant:reply"
TYPE_ERROR = "assistant:error"
TYPE_TOOL_RESULT = "tool:result"

ROLES = ("system", "user", "assistant", "tool")


@dataclass
class Message:
    """
    单条消息。

    属性:
        role: 消息角色
        content: 文本内容
        tool_calls: assistant 消息产生的工具调用（OpenAI 格式字典列表）
        tool_call_id: tool 消息对应的工具调用 ID
        created_at: 毫秒级创建时间
        type: 展示类型（见模块顶部常量），None 表示普通消息
        reasoning: 推理过程文本（部分模型会返回）
        loading: 是否仍在生成中
    """

    role: str
    content: str = ""
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    type: str | None = None
    reasoning: str = ""
    loading: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}")

    @property
    def is_error(self) -> bool:
        return self.type == TYPE_ERROR

    @property
    def has_tool_reference(self) -> bool:
        """是否携带工具调用或工具结果引用（窗口裁剪时需要剔除的"非干净"消息）。"""
        return self.role == "tool" or bool(self.tool_calls) or bool(self.tool_call_id)

    def to_model_dict(self) -> dict[str, Any]:
        """转换为发送给模型的格式，只保留 role/content/tool_calls/tool_call_id。"""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        return msg

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Conversation:
    """
    一次对话。

    属性:
        id: 对话 ID（也是持久化存储的键）
        system: 系统提示词
        messages: 有序消息列表
        bot: 关联的 Agent ID（可选）
        title: 对话标题（默认取第一条用户消息）
    """

    id: str = field(default_factory=gen_id)
    system: str = ""
    messages: list[Message] = field(default_factory=list)
    bot: str | None = None
    title: str = ""
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "system": self.system,
            "messages": [m.to_dict() for m in self.messages],
            "bot": self.bot,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            system=data.get("system", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            bot=data.get("bot"),
            title=data.get("title", ""),
            created_at=data.get("created_at") or now_ms(),
            updated_at=data.get("updated_at") or now_ms(),
        )
