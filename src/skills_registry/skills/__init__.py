"""
Skills 子系统：模型、解析、迁移、加载、注册表、热加载与 facade。
"""

from __future__ import annotations

from skills_registry.skills.hot_reload import HotReloadManager
from skills_registry.skills.loader import SkillLoader
from skills_registry.skills.manager import BatchResult, LoadReport, SkillManager
from skills_registry.skills.migrator import SkillMigrator
from skills_registry.skills.models import (
    DependencyResolution,
    HotReloadEvent,
    HotReloadStats,
    RegistryEntry,
    RegistryStats,
    Skill,
    SkillConflict,
)
from skills_registry.skills.parser import SkillParser
from skills_registry.skills.registry import SkillRegistry

__all__ = [
    "BatchResult",
    "DependencyResolution",
    "HotReloadEvent",
    "HotReloadManager",
    "HotReloadStats",
    "LoadReport",
    "RegistryEntry",
    "RegistryStats",
    "Skill",
    "SkillConflict",
    "SkillLoader",
    "SkillManager",
    "SkillMigrator",
    "SkillParser",
    "SkillRegistry",
]
