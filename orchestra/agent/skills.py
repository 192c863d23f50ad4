"""
技能 (Skills) - 以 SKILL.md 形式保存的自然语言操作指南。

模型调用 "skill-<技能名>" 时拿到技能正文，再按指令使用其他工具完成任务，
技能内容按需加载，不占用 system prompt。

目录结构（技能名即目录名，也是工具 ID）：
    ~/.orchestra/skills/
    ├── weather/
    │   └── SKILL.md
    └── github/
        └── SKILL.md

frontmatter（可选）：
    ---
    description: 天气查询技能
    metadata: {"orchestra": {"requires": {"bins": ["curl"], "env": ["WEATHER_KEY"]}}}
    ---
"""

import json
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

SKILL_FILE = "SKILL.md"

_FRONTMATTER_RE = re.compile(r"^---\n(?P<meta>.*?)\n---\n?", re.DOTALL)


@dataclass
class Skill:
    """
    一个已解析的技能。

    属性:
        name: 技能名（目录名）
        path: SKILL.md 路径
        description: frontmatter 中的描述，缺省为技能名
        body: 去掉 frontmatter 的正文
        bins: 需要的命令行工具
        env: 需要的环境变量
    """
    name: str
    path: Path
    description: str
    body: str
    bins: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)

    def missing_requirements(self) -> list[str]:
        """缺失的依赖，如 ["CLI: tmux", "ENV: GITHUB_TOKEN"]。"""
        missing = [f"CLI: {b}" for b in self.bins if not shutil.which(b)]
        missing.extend(f"ENV: {e}" for e in self.env if not os.environ.get(e))
        return missing

    @property
    def available(self) -> bool:
        return not self.missing_requirements()

    @property
    def instructions(self) -> str:
        """返回给模型的指令文本。"""
        return f"### Skill: {self.name}\n\n{self.body}"


def _parse_frontmatter(text: str) -> tuple[dict[str, str], str]:
    """逐行按 'key: value' 解析 frontmatter，返回 (元数据, 正文)。"""
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text.strip()
    meta = {}
    for line in match.group("meta").splitlines():
        key, sep, value = line.partition(":")
        if sep:
            meta[key.strip()] = value.strip().strip("\"'")
    return meta, text[match.end():].strip()


def _parse_requires(raw: str) -> dict:
    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return (data.get("orchestra") or {}).get("requires") or {}


class SkillsLoader:
    """从技能目录发现并解析技能。每次调用都重新读取磁盘，新增技能无需重启。"""

    def __init__(self, skills_dir: Path):
        self.skills_dir = skills_dir

    def load(self, name: str) -> Skill | None:
        """按名称加载技能，不存在时返回 None。"""
        path = self.skills_dir / name / SKILL_FILE
        if not path.is_file():
            return None
        meta, body = _parse_frontmatter(path.read_text(encoding="utf-8"))
        requires = _parse_requires(meta.get("metadata", ""))
        return Skill(
            name=name,
            path=path,
            description=meta.get("description") or name,
            body=body,
            bins=list(requires.get("bins", [])),
            env=list(requires.get("env", [])),
        )

    def discover(self, only_available: bool = True) -> list[Skill]:
        """
        列出技能目录下的所有技能（按名称排序）。

        参数:
            only_available: 为 True 时跳过依赖不满足的技能
        """
        if not self.skills_dir.is_dir():
            return []
        skills = []
        for entry in sorted(self.skills_dir.iterdir()):
            skill = self.load(entry.name) if entry.is_dir() else None
            if skill is None:
                continue
            if only_available and not skill.available:
                logger.debug(f"Skill {skill.name} skipped, missing {', '.join(skill.missing_requirements())}")
                continue
            skills.append(skill)
        return skills
