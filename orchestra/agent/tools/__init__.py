"""
Agent 工具子包 (agent/tools)

模块职责：
    Agent 可调用的所有"工具"及其调度。
      - Tool / ToolRegistry：插件内的工具定义与注册表
      - ToolRef / encode_tool_name / decode_tool_name：组合工具名的编解码
      - ToolBackend 及各类后端：插件、知识库、工作流、技能、外部 MCP、内置工具
      - ToolRouter：按工具类型分发调用，并把结果包装为 ToolResult

在架构中的位置：
    Agent 循环 (agent/loop.py) 拿到模型返回的 tool_calls 后，
    逐个交给 ToolRouter.dispatch()，结果作为 tool 消息写回历史。
"""

from orchestra.agent.tools.base import FunctionTool, Tool
from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, ToolRef, decode_tool_name, encode_tool_name
from orchestra.agent.tools.registry import ToolRegistry
from orchestra.agent.tools.router import ToolResult, ToolRouter, selection_from_profile

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolDescriptor",
    "ToolKind",
    "ToolRef",
    "ToolRegistry",
    "ToolResult",
    "ToolRouter",
    "decode_tool_name",
    "encode_tool_name",
    "selection_from_profile",
]
