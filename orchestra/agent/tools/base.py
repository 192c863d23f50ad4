"""
插件工具基类 (agent/tools/base.py)

一个插件（Plugin）由若干 Tool 组成，每个 Tool 只需要给出名称、描述、
参数 JSON Schema 和一个异步的 execute()。组合工具名、schema 格式这些
与模型打交道的细节由 ToolDescriptor 负责，Tool 本身不关心。

模型传来的参数在执行前会经过两步处理：
    coerce_arguments()  把 "3"、"true"、"[1,2]" 这类字符串按声明类型转换
    check_arguments()   按 schema 校验，返回错误列表（空列表表示通过）

也可以不写子类，直接用 FunctionTool 包装一个异步函数：
    FunctionTool("lookup", "查询词条", {...schema...}, lookup)
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from orchestra.agent.tools.ref import ToolDescriptor, ToolKind, ToolRef

# JSON Schema 类型 → Python 类型
SCHEMA_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}

_TRUE_WORDS = ("true", "1", "yes")
_FALSE_WORDS = ("false", "0", "no")


def _coerce_value(value: Any, expected: str | None) -> Any:
    if not isinstance(value, str) or expected in (None, "string"):
        return value
    text = value.strip()
    if expected == "boolean":
        if text.lower() in _TRUE_WORDS:
            return True
        if text.lower() in _FALSE_WORDS:
            return False
        return value
    try:
        if expected == "integer":
            return int(text)
        if expected == "number":
            return float(text)
        if expected in ("array", "object"):
            parsed = json.loads(text)
            return parsed if isinstance(parsed, SCHEMA_TYPES[expected]) else value
    except ValueError:
        return value
    return value


def coerce_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> dict[str, Any]:
    """
    按顶层 properties 的声明类型转换字符串参数。

    无法转换的值保持原样，留给 check_arguments() 报错。
    """
    props = (schema or {}).get("properties", {})
    return {k: _coerce_value(v, props.get(k, {}).get("type")) for k, v in arguments.items()}


def _check(value: Any, schema: dict[str, Any], path: str) -> list[str]:
    expected = schema.get("type")
    label = path or "arguments"
    python_type = SCHEMA_TYPES.get(expected)
    # bool 是 int 的子类
    if python_type and (
        not isinstance(value, python_type)
        or (expected in ("integer", "number") and isinstance(value, bool))
    ):
        return [f"{label} should be {expected}"]

    problems = []
    if "enum" in schema and value not in schema["enum"]:
        problems.append(f"{label} must be one of {schema['enum']}")

    if expected in ("integer", "number"):
        low, high = schema.get("minimum"), schema.get("maximum")
        if low is not None and value < low:
            problems.append(f"{label} must be >= {low}")
        if high is not None and value > high:
            problems.append(f"{label} must be <= {high}")
    elif expected == "string":
        low, high = schema.get("minLength"), schema.get("maxLength")
        if low is not None and len(value) < low:
            problems.append(f"{label} must be at least {low} chars")
        if high is not None and len(value) > high:
            problems.append(f"{label} must be at most {high} chars")
    elif expected == "object":
        props = schema.get("properties", {})
        prefix = f"{path}." if path else ""
        problems.extend(
            f"missing required {prefix}{key}" for key in schema.get("required", []) if key not in value
        )
        for key, item in value.items():
            if key in props:
                problems.extend(_check(item, props[key], prefix + key))
    elif expected == "array" and "items" in schema:
        for i, item in enumerate(value):
            problems.extend(_check(item, schema["items"], f"{path}[{i}]"))
    return problems


def check_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> list[str]:
    """
    按 JSON Schema 校验工具参数。

    参数:
        schema: 工具的参数 schema，顶层必须是 object（缺省 type 视为 object）
        arguments: 已经过 coerce_arguments() 的参数

    返回:
        错误描述列表，空列表表示校验通过
    """
    schema = schema or {}
    if schema.get("type", "object") != "object":
        raise ValueError(f"Tool parameters must be an object schema, got {schema.get('type')!r}")
    return _check(arguments, {**schema, "type": "object"}, "")


class Tool(ABC):
    """
    插件工具的抽象基类。

    子类实现 name / description / parameters 三个属性和 execute()。
    execute() 的返回值（字符串或可 JSON 序列化的对象）会作为 tool 消息回传给模型。
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """插件内的工具名（不含插件 ID，也不能包含 "-"）。"""

    @property
    @abstractmethod
    def description(self) -> str:
        """展示给模型的功能描述。"""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """参数的 JSON Schema。"""

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """以关键字参数接收已转换、已校验的参数。"""

    def prepare(self, arguments: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """转换并校验参数，返回 (转换后的参数, 错误列表)。"""
        arguments = coerce_arguments(self.parameters, arguments)
        return arguments, check_arguments(self.parameters, arguments)

    def describe(self, plugin_id: str) -> ToolDescriptor:
        """以所属插件的身份生成工具描述。"""
        return ToolDescriptor(
            ref=ToolRef(ToolKind.PLUGIN, plugin_id, self.name),
            description=self.description,
            parameters=self.parameters,
        )


class FunctionTool(Tool):
    """把一个异步函数包装成 Tool。"""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        func: Callable[..., Awaitable[Any]],
    ):
        self._name = name
        self._description = description
        self._parameters = parameters
        self._func = func

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, **kwargs: Any) -> Any:
        return await self._func(**kwargs)
