"""
Skill Loader：目录扫描 + 批量解析/迁移。

扫描策略：
- BFS，逐目录按名称排序（输出顺序稳定）；
- 跳过隐藏条目与内置忽略目录段（`.git`、`node_modules` 等）；
- 不跟随目录 symlink（避免扫描范围被链接扩展）；
- 只保留 skill 候选文件（见 `skills_registry.skills.paths.is_skill_file`）。

单文件失败只记录为 `FrameworkIssue`，不中断批量加载（`skip_invalid=False` 时改为抛出）。
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple, Union

from skills_registry.config.loader import LoaderConfig
from skills_registry.core.errors import FrameworkError, FrameworkIssue, SkillParseError
from skills_registry.skills.migrator import SkillMigrator
from skills_registry.skills.models import LoadedSkill, LoadResult, MigrationResult
from skills_registry.skills.parser import SkillParser
from skills_registry.skills.paths import IGNORED_DIR_SEGMENTS, is_ignored, is_skill_file

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class SkillLoader:
    """
    批量加载器。

    参数：
    - config：LoaderConfig（directories/recursive/max_depth/auto_migrate/skip_invalid）
    - parser / migrator：可注入（默认各自构造一个）
    - ignored：额外忽略 glob（与 hot reload 的 `ignored` 同义）
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        *,
        parser: Optional[SkillParser] = None,
        migrator: Optional[SkillMigrator] = None,
        ignored: Sequence[str] = (),
    ) -> None:
        """ignored：额外的 glob 忽略模式（与热加载共用）。"""

        self._config = config or LoaderConfig()
        self._parser = parser or SkillParser()
        self._migrator = migrator or SkillMigrator()
        self._ignored = list(ignored)

    @property
    def parser(self) -> SkillParser:
        """使用中的 Parser。"""

        return self._parser

    @property
    def migrator(self) -> SkillMigrator:
        """使用中的 Migrator。"""

        return self._migrator

    def enumerate(self, paths: Iterable[PathLike]) -> List[Path]:
        """
        枚举 skill 候选文件。

        参数：
        - paths：目录或文件；不存在的路径静默跳过

        返回：
        - 去重后的候选文件列表（按 root 顺序、BFS 顺序）
        """

        out: List[Path] = []
        seen: Set[Path] = set()

        def _keep(p: Path, root: Path) -> None:
            """记录候选文件（去重）。"""

            if p in seen:
                return
            if not is_skill_file(p) or is_ignored(p, [root], self._ignored):
                return
            seen.add(p)
            out.append(p)

        for raw in paths:
            root = Path(raw).expanduser()
            if root.is_file():
                _keep(root, root.parent)
                continue
            if not root.is_dir():
                logger.debug("Skipping missing skills path: %s", root)
                continue

            queue: List[Tuple[Path, int]] = [(root, 0)]
            while queue:
                cur, depth = queue.pop(0)
                try:
                    entries = sorted(cur.iterdir(), key=lambda p: p.name)
                except OSError:
                    logger.warning("Failed to list directory: %s", cur, exc_info=True)
                    continue
                for entry in entries:
                    if entry.name.startswith("."):
                        continue
                    if entry.is_symlink() and entry.is_dir():
                        continue
                    if entry.is_dir():
                        if not self._config.recursive or depth + 1 > self._config.max_depth:
                            continue
                        if entry.name in IGNORED_DIR_SEGMENTS:
                            continue
                        queue.append((entry, depth + 1))
                        continue
                    if entry.is_file():
                        _keep(entry, root)
        return out

    def load_file(self, path: PathLike) -> Tuple[Optional[LoadedSkill], Optional[FrameworkIssue], Optional[MigrationResult]]:
        """
        加载单个文件（必要时迁移）。

        返回：
        - (loaded, issue, migration)：loaded 与 issue 二者恰有其一
        """

        p = Path(path)
        result = self._parser.parse_file(p)
        if result.success and result.skill is not None:
            version = result.detected_format_version or "v3"
            return LoadedSkill(skill=result.skill, file_path=p, format_version=version), None, None

        detected = result.detected_format_version
        if detected in ("v1", "v2") and self._config.auto_migrate:
            migration = self._migrator.migrate_file(p)
            if migration.success and migration.skill is not None:
                logger.info("Migrated %s skill %s from %s", detected, migration.skill.id, p)
                loaded = LoadedSkill(skill=migration.skill, file_path=p, format_version=detected, migrated=True)
                return loaded, None, migration
            issue = FrameworkError(
                code="SKILL_MIGRATION_FAILED",
                message=migration.error or "Migration failed.",
                details={"path": str(p), "original_version": detected, "warnings": list(migration.warnings)},
            ).to_issue()
            return None, issue, migration

        issue = SkillParseError(
            result.error or "Parse failed.",
            path=str(p),
            details={"detected_format_version": detected, "warnings": list(result.warnings)},
        ).to_issue()
        return None, issue, None

    def load_all(self, directories: Optional[Iterable[PathLike]] = None) -> LoadResult:
        """
        扫描并加载目录下全部 skill。

        参数：
        - directories：None 表示使用配置中的 `loader.directories`

        异常：
        - FrameworkError：仅当 `skip_invalid=False` 且某个文件失败时抛出
        """

        started = time.monotonic()
        dirs = list(directories) if directories is not None else list(self._config.directories)
        files = self.enumerate(dirs)

        skills: List[LoadedSkill] = []
        errors: List[FrameworkIssue] = []
        migrated: List[MigrationResult] = []
        for file in files:
            loaded, issue, migration = self.load_file(file)
            if migration is not None:
                migrated.append(migration)
            if issue is not None:
                if not self._config.skip_invalid:
                    raise FrameworkError(code=issue.code, message=issue.message, details=dict(issue.details))
                logger.warning("Skipping invalid skill file %s: %s", file, issue.message)
                errors.append(issue)
                continue
            if loaded is not None:
                skills.append(loaded)

        return LoadResult(
            skills=skills,
            errors=errors,
            migrated=migrated,
            total_scanned=len(files),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
