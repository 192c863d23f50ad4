"""
工具引用与组合工具名编解码 (agent/tools/ref.py)

模型看到的工具名是一个扁平字符串，内部统一使用带类型标签的 ToolRef。
编解码只发生在与模型交互的边界上（组装 schema、解析工具调用）。

【组合工具名格式】（分隔符 "-"）
    VISION / IMAGE               内置工具，精确匹配
    knowledge-<知识库ID>          知识库检索
    workflow-<工作流ID>           工作流
    agent-<Agent ID>             子 Agent
    skill-<技能名>                技能
    <工具名>-mcp_<服务ID>         外部 MCP 工具服务器上的工具
    <工具名>-<插件ID>             插件工具

【解码顺序】
1. 内置工具名精确匹配
2. 以保留前缀开头的名称按前缀归类，分隔符之后的全部内容为 ID
3. 其余名称按最后一个分隔符切开：后半段以 "mcp_" 开头为外部工具，否则为插件工具
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orchestra.errors import ToolNotFound

TOOL_NAME_SPLIT = "-"
MCP_MARKER = "mcp_"


class ToolKind(str, Enum):
    """工具来源类型。"""
    PLUGIN = "plugin"
    KNOWLEDGE = "knowledge"
    WORKFLOW = "workflow"
    AGENT = "agent"
    SKILL = "skill"
    EXTERNAL = "external"
    BUILTIN = "builtin"


BUILTIN_TOOLS = ("VISION", "IMAGE")

# 保留前缀 → 类型
RESERVED_PREFIXES = {
    "knowledge": ToolKind.KNOWLEDGE,
    "workflow": ToolKind.WORKFLOW,
    "agent": ToolKind.AGENT,
    "skill": ToolKind.SKILL,
}


@dataclass(frozen=True)
class ToolRef:
    """
    工具引用（带类型标签的联合体）。

    属性:
        kind: 工具来源类型
        id: 来源实体 ID（插件 ID、知识库 ID、MCP 服务 ID 等；内置工具为工具名本身）
        tool: 来源内的工具名（插件工具、外部工具使用；其余类型为空）
    """
    kind: ToolKind
    id: str
    tool: str = ""


def encode_tool_name(ref: ToolRef) -> str:
    """
    ToolRef → 组合工具名。

    插件与外部工具的来源 ID 中不能包含分隔符，否则无法还原。
    """
    if ref.kind is ToolKind.BUILTIN:
        return ref.id
    if ref.kind in RESERVED_PREFIXES.values():
        prefix = ref.kind.value
        return f"{prefix}{TOOL_NAME_SPLIT}{ref.id}"

    if TOOL_NAME_SPLIT in ref.id:
        raise ValueError(f"Tool source id {ref.id!r} must not contain {TOOL_NAME_SPLIT!r}")
    if ref.kind is ToolKind.EXTERNAL:
        return f"{ref.tool}{TOOL_NAME_SPLIT}{MCP_MARKER}{ref.id}"
    return f"{ref.tool}{TOOL_NAME_SPLIT}{ref.id}"


def decode_tool_name(name: str) -> ToolRef:
    """
    组合工具名 → ToolRef。

    异常:
        ToolNotFound: 名称无法解析（没有分隔符，或某一段为空）
    """
    if name in BUILTIN_TOOLS:
        return ToolRef(ToolKind.BUILTIN, name)

    prefix, sep, rest = name.partition(TOOL_NAME_SPLIT)
    if sep and prefix in RESERVED_PREFIXES and rest:
        return ToolRef(RESERVED_PREFIXES[prefix], rest)

    tool, sep, source = name.rpartition(TOOL_NAME_SPLIT)
    if not sep or not tool or not source:
        raise ToolNotFound(f"Unknown tool: {name}")
    if source.startswith(MCP_MARKER) and len(source) > len(MCP_MARKER):
        return ToolRef(ToolKind.EXTERNAL, source[len(MCP_MARKER):], tool)
    return ToolRef(ToolKind.PLUGIN, source, tool)


@dataclass
class ToolDescriptor:
    """
    能力注册表给出的工具描述。

    属性:
        ref: 工具引用
        description: 展示给模型的描述
        parameters: JSON Schema
    """
    ref: ToolRef
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    @property
    def name(self) -> str:
        return encode_tool_name(self.ref)

    def to_schema(self) -> dict[str, Any]:
        """OpenAI Function Calling 格式，名称为组合工具名。"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }
