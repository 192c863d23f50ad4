"""
键值存储实现模块 - 对话、知识库等文档的持久化。

核心层只依赖"按 ID 读/写/删"三种语义（读后写一致），本模块提供：
- KeyValueStore：抽象接口
- MemoryStore：纯内存实现（测试、临时对话）
- JsonFileStore：每个键一个 JSON 文件的磁盘实现

【存储格式】
JsonFileStore 在目录下为每个键写入 "<safe_key>.json"，
文件第一层固定为 {"_key": 原始键, "value": 文档}，
这样即使文件名做过字符替换也能还原出原始键。

【存储路径】
默认在 ~/.orchestra/storage/ 下，不同类型的文档用 namespace() 分到子目录
（如 conversations/、knowledge/）。
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger

from orchestra.utils.helpers import ensure_dir, safe_filename


class KeyValueStore(ABC):
    """按 ID 存取 JSON 兼容文档的抽象存储。"""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """读取文档，不存在时返回 None。"""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """写入（覆盖）文档。"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """删除文档，返回是否确实删除了内容。"""

    @abstractmethod
    def keys(self) -> list[str]:
        """列出所有键。"""

    @abstractmethod
    def namespace(self, name: str) -> "KeyValueStore":
        """返回一个隔离的子存储（同一后端，不同命名空间）。"""

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStore(KeyValueStore):
    """
    内存存储。

    写入时做一次 JSON 往返拷贝，保证与磁盘实现一样：
    调用方拿到的是快照，后续修改不会"穿透"到已存储的数据。
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._children: dict[str, MemoryStore] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def namespace(self, name: str) -> "MemoryStore":
        if name not in self._children:
            self._children[name] = MemoryStore()
        return self._children[name]


class JsonFileStore(KeyValueStore):
    """
    磁盘存储 - 每个键一个 JSON 文件。

    采用"内存缓存 + 磁盘持久化"的双层结构：
    - 内存层（_cache）：已读取过的文档，避免重复磁盘 I/O
    - 磁盘层（JSON 文件）：持久化存储，程序重启后可恢复

    属性:
        directory: 文档所在目录
        _cache: {键: 文档} 的内存缓存
    """

    def __init__(self, directory: Path):
        self.directory = ensure_dir(Path(directory))
        self._cache: dict[str, Any] = {}

    def _get_path(self, key: str) -> Path:
        """键 → 文件路径（不安全字符替换为下划线）。"""
        return self.directory / f"{safe_filename(key.replace(':', '_'))}.json"

    def get(self, key: str) -> Any | None:
        """
        读取文档。

        查找顺序：内存缓存 → 磁盘文件。文件损坏时记录警告并返回 None。
        """
        if key in self._cache:
            return json.loads(json.dumps(self._cache[key]))

        path = self._get_path(key)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            value = data.get("value")
        except Exception as e:
            logger.warning(f"Failed to load {key} from {path}: {e}")
            return None

        self._cache[key] = value
        return json.loads(json.dumps(value))

    def set(self, key: str, value: Any) -> None:
        """全量覆盖写入，并同步更新缓存。"""
        path = self._get_path(key)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"_key": key, "value": value}, f, ensure_ascii=False)
        self._cache[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        path = self._get_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def keys(self) -> list[str]:
        """扫描目录下的 .json 文件，只读取 _key 字段还原原始键。"""
        result = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    key = json.load(f).get("_key")
            except Exception as e:
                logger.warning(f"Skipping unreadable store file {path}: {e}")
                continue
            if key:
                result.append(key)
        return result

    def namespace(self, name: str) -> "JsonFileStore":
        return JsonFileStore(self.directory / safe_filename(name))
