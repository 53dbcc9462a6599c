"""
SkillManager：面向调用方的统一入口（facade）。

组合关系：
- 一个 SkillRegistry（唯一真相源）
- 一个 HotReloadManager（挂在同一个 registry 上）
- Parser / Migrator / Loader（可注入）

说明：
- 不提供进程级单例：调用方显式构造，并用 `aclose()`（或 `async with`）销毁；
- 事件订阅统一走 `on/off`：热加载事件名路由到 watcher，其余路由到 registry。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from skills_registry.config.loader import SkillsRegistryConfig
from skills_registry.core.errors import FrameworkError, FrameworkIssue, UserError
from skills_registry.core.utils import now_rfc3339
from skills_registry.skills.hot_reload import HotReloadManager
from skills_registry.skills.loader import SkillLoader
from skills_registry.skills.migrator import SkillMigrator
from skills_registry.skills.models import (
    SKILL_SOURCES,
    DependencyResolution,
    HotReloadStats,
    ImportResult,
    MigrationReport,
    MigrationResult,
    ParseResult,
    RegistryEntry,
    RegistryStats,
    Skill,
    SkillConflict,
)
from skills_registry.skills.parser import SkillParser, format_validation_error
from skills_registry.skills.paths import determine_source
from skills_registry.skills.registry import SkillRegistry
from skills_registry.skills.watcher import SubscriptionFactory

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "3.0.0"
HOT_RELOAD_EVENTS = frozenset({"add", "change", "unlink", "error", "ready", "event"})

PathLike = Union[str, Path]
Listener = Callable[..., Any]


@dataclass
class BatchResult:
    """批量操作结果（单条失败不影响其它条目）。"""

    success: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class LoadReport:
    """`load_all` 的结果：加载 + 注册两阶段的汇总。"""

    registered: List[str]
    issues: List[FrameworkIssue]
    migrated: List[MigrationResult]
    total_scanned: int
    duration_ms: int


class SkillManager:
    """
    Skills facade。

    参数：
    - config：SkillsRegistryConfig；None 表示全部默认值
    - registry / parser / migrator / loader：可注入
    - subscription_factory：热加载订阅工厂（测试注入内存实现）
    - workspace_root：解析相对路径的基准目录（默认 cwd）
    """

    def __init__(
        self,
        config: Optional[SkillsRegistryConfig] = None,
        *,
        registry: Optional[SkillRegistry] = None,
        parser: Optional[SkillParser] = None,
        migrator: Optional[SkillMigrator] = None,
        loader: Optional[SkillLoader] = None,
        subscription_factory: Optional[SubscriptionFactory] = None,
        workspace_root: Optional[Path] = None,
    ) -> None:
        """组装注册表、解析器、迁移器、加载器与热加载管理器；workspace_root 默认为当前目录。"""

        self._config = config or SkillsRegistryConfig()
        self._workspace_root = Path(workspace_root) if workspace_root is not None else Path.cwd()
        self._registry = registry if registry is not None else SkillRegistry()
        self._parser = parser or SkillParser(self._config.parser)
        self._migrator = migrator or SkillMigrator()
        self._loader = loader or SkillLoader(
            self._config.loader,
            parser=self._parser,
            migrator=self._migrator,
            ignored=self._config.hot_reload.ignored,
        )
        self._hot_reload = HotReloadManager(
            self._registry,
            config=self._config.hot_reload,
            parser=self._parser,
            subscription_factory=subscription_factory,
            workspace_root=self._workspace_root,
        )
        self._builtin_dirs = [self._resolve(p) for p in self._config.hot_reload.builtin_dirs]

    @property
    def config(self) -> SkillsRegistryConfig:
        """生效配置。"""

        return self._config

    @property
    def registry(self) -> SkillRegistry:
        """底层 registry。"""

        return self._registry

    @property
    def hot_reload(self) -> HotReloadManager:
        """底层热加载管理器。"""

        return self._hot_reload

    # ----------------------------
    # Registration
    # ----------------------------

    def register(self, skill: Skill, file_path: str, source: str = "user") -> RegistryEntry:
        """注册单个 skill。"""

        return self._registry.register(skill, file_path, source)

    def register_batch(self, items: Iterable[Tuple[Any, ...]]) -> List[RegistryEntry]:
        """批量注册；items 为 `(skill, file_path)` 或 `(skill, file_path, source)`。"""

        out: List[RegistryEntry] = []
        for item in items:
            skill, file_path, *rest = item
            out.append(self._registry.register(skill, file_path, rest[0] if rest else "user"))
        return out

    def unregister(self, skill_id: str) -> bool:
        """注销（被依赖时抛 DependencyError）。"""

        return self._registry.unregister(skill_id)

    def unregister_batch(self, ids: Iterable[str]) -> BatchResult:
        """批量注销：未知 id 与被依赖的 id 收集进 failed，不中断批次。"""

        result = BatchResult()
        for skill_id in ids:
            try:
                removed = self._registry.unregister(skill_id)
            except FrameworkError as exc:
                result.failed.append({"id": skill_id, "error": exc.message})
                continue
            if removed:
                result.success.append(skill_id)
            else:
                result.failed.append({"id": skill_id, "error": "Skill not found"})
        return result

    # ----------------------------
    # Lookup
    # ----------------------------

    def get(self, skill_id: str) -> Optional[RegistryEntry]:
        """按 id 查询。"""

        return self._registry.get_by_id(skill_id)

    def get_batch(self, ids: Iterable[str]) -> Dict[str, RegistryEntry]:
        """批量查询（未知 id 不出现在结果中）。"""

        out: Dict[str, RegistryEntry] = {}
        for skill_id in ids:
            entry = self._registry.get_by_id(skill_id)
            if entry is not None:
                out[skill_id] = entry
        return out

    def get_by_trigger(self, trigger: str) -> List[RegistryEntry]:
        """按 trigger 查询（enabled，优先级降序）。"""

        return self._registry.get_by_trigger(trigger)

    def get_by_category(self, category: str) -> List[RegistryEntry]:
        """按分类查询。"""

        return self._registry.get_by_category(category)

    def lookup(self, **filters: Any) -> List[RegistryEntry]:
        """组合过滤查询（参数同 `SkillRegistry.lookup`）。"""

        return self._registry.lookup(**filters)

    def search(self, query: str, limit: Optional[int] = None) -> List[RegistryEntry]:
        """全文检索（enabled）。"""

        return self._registry.search(query, limit)

    def list(self) -> List[RegistryEntry]:
        """全部条目。"""

        return self._registry.get_all()

    def list_enabled(self) -> List[RegistryEntry]:
        """全部启用条目。"""

        return self._registry.get_enabled()

    # ----------------------------
    # Enable / disable
    # ----------------------------

    def enable(self, skill_id: str) -> bool:
        """启用。"""

        return self._registry.enable(skill_id)

    def disable(self, skill_id: str) -> bool:
        """停用。"""

        return self._registry.disable(skill_id)

    def toggle(self, skill_id: str) -> bool:
        """切换启停，返回新状态。"""

        return self._registry.toggle(skill_id)

    def enable_batch(self, ids: Iterable[str]) -> BatchResult:
        """批量启用（无状态变化或未知 id 记为 failed）。"""

        return self._batch_flag(ids, self._registry.enable)

    def disable_batch(self, ids: Iterable[str]) -> BatchResult:
        """批量停用。"""

        return self._batch_flag(ids, self._registry.disable)

    # ----------------------------
    # Loading / parsing / migration
    # ----------------------------

    def load_all(self, directories: Optional[Iterable[PathLike]] = None) -> LoadReport:
        """
        批量加载并注册。

        说明：
        - 每个 skill 以真实文件路径注册；
        - 迁移得到的 skill 以 `migrated` 来源注册，并记录 `original_version`；
        - 注册失败（例如非法 source）收集为 issue，不中断批次。
        """

        raw = self._config.loader.directories if directories is None else directories
        result = self._loader.load_all([self._resolve(d) for d in raw])
        issues: List[FrameworkIssue] = list(result.errors)
        registered: List[str] = []
        for loaded in result.skills:
            path = str(loaded.file_path)
            try:
                if loaded.migrated:
                    self._registry.register(
                        loaded.skill, path, "migrated", original_version=loaded.format_version
                    )
                else:
                    self._registry.register(loaded.skill, path, determine_source(path, self._builtin_dirs))
            except (FrameworkError, ValueError) as exc:
                issues.append(
                    FrameworkIssue(
                        code="SKILL_REGISTER_FAILED",
                        message=str(exc),
                        details={"skill_id": loaded.skill.id, "path": path},
                    )
                )
                continue
            registered.append(loaded.skill.id)
        logger.info("Loaded %d skill(s) with %d issue(s)", len(registered), len(issues))
        return LoadReport(
            registered=registered,
            issues=issues,
            migrated=result.migrated,
            total_scanned=result.total_scanned,
            duration_ms=result.duration_ms,
        )

    def load_from_directory(self, directory: PathLike) -> LoadReport:
        """加载单个目录。"""

        return self.load_all([directory])

    def parse_file(self, path: PathLike) -> ParseResult:
        """解析单个文件（不注册）。"""

        return self._parser.parse_file(path)

    def parse_content(self, content: str, file_path: Optional[str] = None) -> ParseResult:
        """解析文本（不注册）。"""

        return self._parser.parse_content(content, file_path)

    def migrate_file(self, path: PathLike) -> MigrationResult:
        """迁移单个文件（不写回）。"""

        return self._migrator.migrate_file(path)

    def migrate_directory(
        self, directory: PathLike, *, output_dir: Optional[PathLike] = None, create_backups: bool = False
    ) -> MigrationReport:
        """迁移目录（可写出 Markdown）。"""

        return self._migrator.migrate_directory(directory, output_dir=output_dir, create_backups=create_backups)

    # ----------------------------
    # Hot reload
    # ----------------------------

    async def start_hot_reload(self) -> None:
        """启动热加载（失败抛 WatchError）。"""

        await self._hot_reload.start()

    async def stop_hot_reload(self) -> None:
        """停止热加载。"""

        await self._hot_reload.stop()

    def get_hot_reload_stats(self) -> HotReloadStats:
        """热加载统计。"""

        return self._hot_reload.get_stats()

    # ----------------------------
    # Conflicts / dependencies / stats
    # ----------------------------

    def detect_conflicts(self, skill: Skill) -> List[SkillConflict]:
        """检测 skill 与已注册 skill 的 trigger 冲突。"""

        return self._registry.detect_conflicts(skill)

    def get_all_conflicts(self) -> List[SkillConflict]:
        """全部 trigger 冲突。"""

        return self._registry.get_all_conflicts()

    def resolve_dependencies(self) -> DependencyResolution:
        """依赖解析。"""

        return self._registry.resolve_dependencies()

    def get_dependencies(self, skill_id: str) -> List[str]:
        """声明的依赖。"""

        return self._registry.get_dependencies(skill_id)

    def get_dependents(self, skill_id: str) -> List[str]:
        """反向依赖。"""

        return self._registry.get_dependents(skill_id)

    def get_missing_dependencies(self, skill_id: str) -> List[str]:
        """缺失依赖。"""

        return self._registry.get_missing_dependencies(skill_id)

    def get_stats(self) -> RegistryStats:
        """registry 统计。"""

        return self._registry.get_stats()

    def size(self) -> int:
        """条目数量。"""

        return self._registry.size()

    def has(self, skill_id: str) -> bool:
        """是否已注册。"""

        return self._registry.has(skill_id)

    def is_enabled(self, skill_id: str) -> bool:
        """是否启用。"""

        return self._registry.is_enabled(skill_id)

    def get_ids(self) -> List[str]:
        """全部 id。"""

        return self._registry.get_ids()

    def clear(self) -> None:
        """清空 registry。"""

        self._registry.clear()

    # ----------------------------
    # Export / import
    # ----------------------------

    def export_skills(self, ids: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        导出 skill（JSON 兼容 dict）。

        返回：
        - `{"format_version": "3.0.0", "exported_at": <RFC3339>, "skills": [...]}`；未知 id 被跳过
        """

        if ids is None:
            entries = self._registry.get_all()
        else:
            entries = [e for e in (self._registry.get_by_id(i) for i in ids) if e is not None]
        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": now_rfc3339(),
            "skills": [e.skill.to_dict() for e in entries],
        }

    def import_skills(self, data: Mapping[str, Any], *, source: str = "user") -> ImportResult:
        """
        导入 `export_skills` 的产物。

        说明：
        - 每个 skill 单独校验并以 `import://<id>` 伪路径注册，单条失败只记入 failed；
        - 格式版本接受 `3.x`（兼容 `version` 字段名）。

        异常：
        - UserError：格式版本不受支持、skills 不是数组、source 非法
        """

        if source not in SKILL_SOURCES:
            raise UserError(f"Unknown skill source: {source}", code="SKILL_IMPORT_INVALID", details={"source": source})
        tag = str(data.get("format_version") or data.get("version") or "")
        if not tag.startswith("3."):
            raise UserError(
                f"Unsupported export format version: {tag or '<missing>'}",
                code="SKILL_IMPORT_UNSUPPORTED",
                details={"format_version": tag},
            )
        items = data.get("skills")
        if not isinstance(items, list):
            raise UserError("Import data must contain a skills array.", code="SKILL_IMPORT_INVALID", details={})

        result = ImportResult()
        for item in items:
            raw_id = str(item.get("id") or "<unknown>") if isinstance(item, Mapping) else "<unknown>"
            if not isinstance(item, Mapping):
                result.failed.append({"id": raw_id, "error": "Skill must be an object"})
                continue
            try:
                skill = Skill.model_validate(dict(item))
            except ValidationError as exc:
                result.failed.append({"id": raw_id, "error": format_validation_error(exc)})
                continue
            self._registry.register(skill, f"import://{skill.id}", source)
            result.imported.append(skill.id)
        return result

    # ----------------------------
    # Events / teardown
    # ----------------------------

    def on(self, event: str, listener: Listener) -> "SkillManager":
        """订阅事件（热加载事件名路由到 watcher，其余路由到 registry）。"""

        self._emitter_for(event).on(event, listener)
        return self

    def off(self, event: str, listener: Listener) -> "SkillManager":
        """取消订阅。"""

        self._emitter_for(event).off(event, listener)
        return self

    async def aclose(self) -> None:
        """销毁：停止热加载、清空 registry、移除全部监听器。"""

        await self._hot_reload.stop()
        self._registry.close()
        self._hot_reload.remove_all_listeners()

    async def __aenter__(self) -> "SkillManager":
        """`async with SkillManager() as mgr:`。"""

        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        """退出时 aclose。"""

        await self.aclose()

    # ----------------------------
    # Internal
    # ----------------------------

    def _emitter_for(self, event: str) -> Any:
        """按事件名选择分发器。"""

        return self._hot_reload if event in HOT_RELOAD_EVENTS else self._registry

    def _batch_flag(self, ids: Iterable[str], op: Callable[[str], bool]) -> BatchResult:
        """批量启停的公共实现。"""

        result = BatchResult()
        for skill_id in ids:
            if op(skill_id):
                result.success.append(skill_id)
            else:
                result.failed.append({"id": skill_id, "error": "Skill not found or state unchanged"})
        return result

    def _resolve(self, path: PathLike) -> Path:
        """相对路径按 workspace_root 解析。"""

        p = Path(path).expanduser()
        return p if p.is_absolute() else (self._workspace_root / p)
