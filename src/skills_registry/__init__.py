"""
Skills Registry（Python）。

说明：
- 内存中的 skill 注册表：按 id / 路径 / trigger / 分类 建索引，检测 trigger 冲突，做依赖拓扑排序；
- 热加载：监听 skill 目录，去抖后解析并同步到注册表（单事件循环，按路径租约锁）；
- 辅助组件：Parser（Markdown front-matter / JSON）、Migrator（v1/v2 → v3）、Loader（批量扫描）；
- CLI：`skills-registry`（JSON 输出，见 `skills_registry.cli.main`）。
"""

from __future__ import annotations

from skills_registry.skills.hot_reload import HotReloadManager
from skills_registry.skills.manager import SkillManager
from skills_registry.skills.models import Skill
from skills_registry.skills.registry import SkillRegistry

__all__ = ["HotReloadManager", "Skill", "SkillManager", "SkillRegistry", "__version__"]

__version__ = "0.3.0"
