"""
通用辅助函数：数据目录定位、ID 与时间戳、字符串处理。
"""

import re
import time
import uuid
from pathlib import Path

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')


def ensure_dir(path: Path) -> Path:
    """递归创建目录（已存在时不做任何事），并原样返回。"""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """orchestra 的数据根目录 ~/.orchestra。"""
    return ensure_dir(Path.home() / ".orchestra")


def _configured_or_default(configured: str | None, default_name: str) -> Path:
    if configured:
        return ensure_dir(Path(configured).expanduser())
    return ensure_dir(get_data_path() / default_name)


def get_storage_path(storage: str | None = None) -> Path:
    """
    持久化文档（对话、知识库）的存放目录。

    参数:
        storage: 配置中的 storage.path，为空时使用 ~/.orchestra/storage
    """
    return _configured_or_default(storage, "storage")


def get_skills_path(skills_dir: str | None = None) -> Path:
    """技能目录，为空时使用 ~/.orchestra/skills。"""
    return _configured_or_default(skills_dir, "skills")


def now_ms() -> int:
    """毫秒级 Unix 时间戳。"""
    return int(time.time() * 1000)


def gen_id() -> str:
    # 不含 "-"，可以直接嵌入组合工具名
    return uuid.uuid4().hex[:16]


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """超过 max_len 时截断并加上后缀（结果长度包含后缀）。"""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """把文件系统不允许的字符替换为下划线。"""
    return _UNSAFE_FILENAME_CHARS.sub("_", name).strip()
