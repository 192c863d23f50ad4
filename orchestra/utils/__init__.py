"""
工具函数模块 - 提供 orchestra 项目全局通用的辅助函数。

本模块包含：
- ensure_dir：确保目录存在
- get_data_path / get_storage_path：数据与存储目录
- gen_id / now_ms：ID 与时间戳生成
"""

from orchestra.utils.helpers import ensure_dir, gen_id, get_data_path, get_storage_path, now_ms

__all__ = ["ensure_dir", "gen_id", "get_data_path", "get_storage_path", "now_ms"]
