"""
配置文件的读写 (config/loader.py)

- 默认路径: ~/.orchestra/config.json
- 文件中使用 camelCase 键名，Python 内部使用 snake_case，读写时自动转换
- profiles / mcp_servers / headers / extra_headers 下的键是用户起的名字（Agent ID、
  MCP 服务名、请求头），只转换字段名本身，不动其下的键
- 文件损坏或校验失败时记录警告并退回默认配置
"""

import json
import re
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from orchestra.config.schema import Config

_VERBATIM_KEYS = {"profiles", "mcp_servers", "headers", "extra_headers"}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    return Path.home() / ".orchestra" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    读取配置文件。

    参数:
        config_path: 配置文件路径，None 时使用默认路径

    返回:
        Config 实例；文件不存在或无法解析时为默认配置
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config.model_validate(convert_keys(_migrate_config(data)))
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"Failed to load config from {path}: {e}; using default configuration")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """以 camelCase 键名写出配置。"""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(convert_to_camel(config.model_dump()), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    logger.debug(f"Config saved to {path}")


def _migrate_config(data: dict) -> dict:
    """
    旧版字段迁移：
    - settings.reactMaxIterations → agents.defaults.maxIterations
    - agents.defaults.memoryWindow → agents.defaults.maxHistory
    """
    settings = data.pop("settings", None) or {}
    defaults = data.setdefault("agents", {}).setdefault("defaults", {})
    if "reactMaxIterations" in settings:
        defaults.setdefault("maxIterations", settings["reactMaxIterations"])
    if "memoryWindow" in defaults:
        window = defaults.pop("memoryWindow")
        defaults.setdefault("maxHistory", window)
    return data


def _rename_keys(data: Any, rename: Callable[[str], str]) -> Any:
    if isinstance(data, list):
        return [_rename_keys(item, rename) for item in data]
    if not isinstance(data, dict):
        return data

    renamed = {}
    for key, value in data.items():
        new_key = rename(key)
        if isinstance(value, dict) and (key in _VERBATIM_KEYS or new_key in _VERBATIM_KEYS):
            renamed[new_key] = {name: _rename_keys(item, rename) for name, item in value.items()}
        else:
            renamed[new_key] = _rename_keys(value, rename)
    return renamed


def convert_keys(data: Any) -> Any:
    """camelCase → snake_case（递归）。"""
    return _rename_keys(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    """snake_case → camelCase（递归）。"""
    return _rename_keys(data, snake_to_camel)


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
