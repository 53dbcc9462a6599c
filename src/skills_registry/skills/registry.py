"""
SkillRegistry：skill 的唯一内存真相源。

索引：
- id → RegistryEntry（主存储，保持注册顺序）
- file_path → id
- trigger → ids（有序集合；空集合立即删除）
- category → ids（有序集合）

约束：
- 每个 id 恰好一个条目；重复注册视为替换，保留 `enabled` / `registered_at`；
- 反向依赖 `dependents` 是派生数据：每次 register/unregister 后全量重算；
- 仍被引用（`dependents` 非空）的条目不能 unregister（抛 `DependencyError`）；
- 所有修改都是同步的，只应在事件循环线程内调用（hot reload 保证这一点）。

事件（通过 EventEmitter 同步分发）：
`skill:registered`、`skill:updated`、`skill:unregistered`、`skill:enabled`、`skill:disabled`、
`conflict:detected`、`dependency:error`、`registry:cleared`。
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set

from skills_registry.core.errors import DependencyError
from skills_registry.core.events import EventEmitter
from skills_registry.skills.models import (
    SKILL_CATEGORIES,
    SKILL_SOURCES,
    DependencyResolution,
    FormatVersion,
    MissingDependency,
    RegistryEntry,
    RegistryStats,
    Skill,
    SkillConflict,
    compute_checksum,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

TRIGGER_CONFLICT_SUGGESTION = "Consider using a unique trigger or adjusting priority"
SORT_KEYS = ("name", "priority", "registered_at", "modified_at")

# 有序集合：dict 的 key 保留插入顺序（trigger 同优先级时按注册顺序稳定输出）
_OrderedIds = Dict[str, None]


class SkillRegistry(EventEmitter):
    """
    Skills 注册表。

    说明：
    - 继承 EventEmitter；监听器异常只记日志，不影响注册流程；
    - 不做任何持久化：进程重启后由 Loader/Hot Reload 重新填充。
    """

    def __init__(self) -> None:
        """创建空注册表。"""

        super().__init__()
        self._entries: Dict[str, RegistryEntry] = {}
        self._path_index: Dict[str, str] = {}
        self._trigger_index: Dict[str, _OrderedIds] = {}
        self._category_index: Dict[str, _OrderedIds] = {}

    # ----------------------------
    # Registration
    # ----------------------------

    def register(
        self,
        skill: Skill,
        file_path: str,
        source: str = "user",
        *,
        original_version: Optional[FormatVersion] = None,
    ) -> RegistryEntry:
        """
        注册（或替换）一个 skill。

        参数：
        - skill：规范化 Skill
        - file_path：来源文件路径（同一路径后注册者覆盖 path 索引）
        - source：builtin|user|marketplace|migrated
        - original_version：迁移前格式版本；None 时沿用旧条目的值

        返回：
        - 新的 RegistryEntry（替换时旧条目对象保持不变，作为 `skill:updated` 的第一个参数）
        """

        if source not in SKILL_SOURCES:
            raise ValueError(f"unknown skill source: {source!r}")

        for conflict in self.detect_conflicts(skill):
            self.emit("conflict:detected", conflict)

        existing = self._entries.get(skill.id)
        now = time.time()
        entry = RegistryEntry(
            skill=skill,
            file_path=str(file_path),
            enabled=existing.enabled if existing is not None else True,
            source=source,  # type: ignore[arg-type]
            registered_at=existing.registered_at if existing is not None else now,
            modified_at=now,
            estimated_tokens=estimate_tokens(skill),
            checksum=compute_checksum(skill),
            original_version=(
                original_version
                if original_version is not None
                else (existing.original_version if existing is not None else None)
            ),
        )

        if existing is not None:
            self._drop_from_indices(existing)
        self._entries[skill.id] = entry
        self._path_index[entry.file_path] = skill.id
        for trigger in skill.triggers:
            self._trigger_index.setdefault(trigger, {})[skill.id] = None
        self._category_index.setdefault(skill.metadata.category, {})[skill.id] = None
        self._recompute_dependents()

        if existing is not None:
            logger.debug("Updated skill %s from %s", skill.id, entry.file_path)
            self.emit("skill:updated", existing, entry)
        else:
            logger.debug("Registered skill %s from %s", skill.id, entry.file_path)
            self.emit("skill:registered", entry)
        return entry

    def unregister(self, skill_id: str) -> bool:
        """
        注销一个 skill。

        返回：
        - False：id 未注册
        - True：已注销

        异常：
        - DependencyError：仍被其它 skill 依赖（details 带排序后的 dependents）
        """

        entry = self._entries.get(skill_id)
        if entry is None:
            return False
        if entry.dependents:
            dependents = sorted(entry.dependents)
            raise DependencyError(
                f'Cannot unregister skill "{skill_id}": depended upon by: {", ".join(dependents)}',
                skill_id=skill_id,
                dependents=dependents,
            )

        self._drop_from_indices(entry)
        del self._entries[skill_id]
        self._recompute_dependents()
        logger.debug("Unregistered skill %s", skill_id)
        self.emit("skill:unregistered", entry)
        return True

    def unregister_by_path(self, file_path: str) -> bool:
        """按文件路径注销（路径未知返回 False；依赖阻塞时同样抛 DependencyError）。"""

        skill_id = self._path_index.get(str(file_path))
        if skill_id is None:
            return False
        return self.unregister(skill_id)

    # ----------------------------
    # Lookup
    # ----------------------------

    def get_by_id(self, skill_id: str) -> Optional[RegistryEntry]:
        """按 id 查询。"""

        return self._entries.get(skill_id)

    def get_by_path(self, file_path: str) -> Optional[RegistryEntry]:
        """按文件路径查询。"""

        skill_id = self._path_index.get(str(file_path))
        return self._entries.get(skill_id) if skill_id is not None else None

    def get_by_trigger(self, trigger: str) -> List[RegistryEntry]:
        """
        按 trigger 查询（只返回 enabled 条目）。

        排序：
        - 优先级降序（未声明视为 5）；同优先级保持注册顺序
        """

        ids = self._trigger_index.get(trigger)
        if not ids:
            return []
        entries = [self._entries[i] for i in ids if i in self._entries and self._entries[i].enabled]
        return sorted(entries, key=lambda e: -e.priority)

    def get_by_category(self, category: str) -> List[RegistryEntry]:
        """按分类查询（包含 disabled 条目）。"""

        ids = self._category_index.get(category) or {}
        return [self._entries[i] for i in ids if i in self._entries]

    def lookup(
        self,
        *,
        enabled: Optional[bool] = None,
        category: Optional[str] = None,
        source: Optional[str] = None,
        user_invocable: Optional[bool] = None,
        auto_activate: Optional[bool] = None,
        agent: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        search: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_dir: str = "asc",
        limit: Optional[int] = None,
    ) -> List[RegistryEntry]:
        """
        组合过滤查询。

        参数：
        - user_invocable / auto_activate：未声明时分别按 True / False 参与比较
        - agent：`config.agent_ids` 包含该 agent
        - tags：命中任一 tag 即可
        - search：大小写不敏感子串匹配（id、双语 name/description、triggers、tags）
        - sort_by：name（按 id）| priority | registered_at | modified_at
        - limit：截断条数（None/0 表示不截断）
        """

        results = list(self._entries.values())
        if enabled is not None:
            results = [e for e in results if e.enabled == enabled]
        if category:
            results = [e for e in results if e.skill.metadata.category == category]
        if source:
            results = [e for e in results if e.source == source]
        if user_invocable is not None:
            results = [e for e in results if _flag(e.skill.metadata.user_invocable, True) == user_invocable]
        if auto_activate is not None:
            results = [e for e in results if _flag(e.skill.metadata.auto_activate, False) == auto_activate]
        if agent:
            results = [e for e in results if agent in ((e.skill.config and e.skill.config.agent_ids) or [])]
        if tags:
            wanted = set(tags)
            results = [e for e in results if wanted.intersection(e.skill.metadata.tags)]
        if search:
            query = search.lower()
            results = [e for e in results if _matches(e.skill, query)]

        if sort_by:
            if sort_by not in SORT_KEYS:
                raise ValueError(f"unknown sort key: {sort_by!r}; expected one of {', '.join(SORT_KEYS)}")
            reverse = sort_dir == "desc"
            if sort_by == "name":
                results.sort(key=lambda e: e.skill.id, reverse=reverse)
            elif sort_by == "priority":
                results.sort(key=lambda e: e.priority, reverse=reverse)
            elif sort_by == "registered_at":
                results.sort(key=lambda e: e.registered_at, reverse=reverse)
            else:
                results.sort(key=lambda e: e.modified_at, reverse=reverse)

        if limit:
            results = results[:limit]
        return results

    def search(self, query: str, limit: Optional[int] = None) -> List[RegistryEntry]:
        """全文检索（只返回 enabled 条目）。"""

        return self.lookup(search=query, enabled=True, limit=limit)

    # ----------------------------
    # Enable / disable
    # ----------------------------

    def enable(self, skill_id: str) -> bool:
        """启用；未知 id 或本已启用返回 False。"""

        entry = self._entries.get(skill_id)
        if entry is None or entry.enabled:
            return False
        entry.enabled = True
        self.emit("skill:enabled", entry)
        return True

    def disable(self, skill_id: str) -> bool:
        """停用；未知 id 或本已停用返回 False。"""

        entry = self._entries.get(skill_id)
        if entry is None or not entry.enabled:
            return False
        entry.enabled = False
        self.emit("skill:disabled", entry)
        return True

    def toggle(self, skill_id: str) -> bool:
        """切换启停并返回新状态（未知 id 返回 False）。"""

        entry = self._entries.get(skill_id)
        if entry is None:
            return False
        if entry.enabled:
            self.disable(skill_id)
        else:
            self.enable(skill_id)
        return entry.enabled

    # ----------------------------
    # Conflicts
    # ----------------------------

    def detect_conflicts(self, skill: Skill) -> List[SkillConflict]:
        """检测 skill 的 trigger 与其它已注册 id 的冲突（信息性，不阻止注册）。"""

        conflicts: List[SkillConflict] = []
        for trigger in skill.triggers:
            others = [i for i in self._trigger_index.get(trigger, {}) if i != skill.id]
            if not others:
                continue
            conflicts.append(
                SkillConflict(
                    type="trigger",
                    skill_ids=[skill.id, *others],
                    details=f'Trigger "{trigger}" is already used by: {", ".join(others)}',
                    suggestion=TRIGGER_CONFLICT_SUGGESTION,
                    trigger=trigger,
                )
            )
        return conflicts

    def get_all_conflicts(self) -> List[SkillConflict]:
        """扫描 trigger 索引，返回所有被多个 id 共享的 trigger。"""

        out: List[SkillConflict] = []
        for trigger, ids in self._trigger_index.items():
            if len(ids) > 1:
                out.append(
                    SkillConflict(
                        type="trigger",
                        skill_ids=list(ids),
                        details=f'Trigger "{trigger}" is used by multiple skills',
                        suggestion=TRIGGER_CONFLICT_SUGGESTION,
                        trigger=trigger,
                    )
                )
        return out

    # ----------------------------
    # Dependencies
    # ----------------------------

    def resolve_dependencies(self) -> DependencyResolution:
        """
        解析依赖：缺失检查 + 拓扑排序（三态 DFS）。

        说明：
        - 缺失依赖逐个 skill 上报，并 emit `dependency:error(skill_id, missing)`；
        - 指向未注册 id 的边不跟随；
        - 发现环时记录当前路径上从重复节点开始的后缀，环上节点与依赖它们的节点都不进入 order；
        - 失败节点不会被重复访问，因此每个环只报告一次；无关的无环部分仍然正常排序。
        """

        missing: List[MissingDependency] = []
        for skill_id, entry in self._entries.items():
            lacking = [d for d in entry.skill.dependencies if d not in self._entries]
            if lacking:
                missing.append(MissingDependency(skill_id=skill_id, missing_deps=lacking))
                self.emit("dependency:error", skill_id, lacking)

        order: List[str] = []
        circular: List[List[str]] = []
        done: Set[str] = set()
        failed: Set[str] = set()
        visiting: Set[str] = set()
        path: List[str] = []

        def _visit(node: str) -> bool:
            """DFS；返回 node 是否成功进入 order。"""

            if node in done:
                return True
            if node in failed:
                return False
            if node in visiting:
                circular.append(path[path.index(node) :])
                return False

            visiting.add(node)
            path.append(node)
            ok = True
            for dep in self._entries[node].skill.dependencies:
                if dep not in self._entries:
                    continue
                if not _visit(dep):
                    ok = False
                    break
            path.pop()
            visiting.discard(node)
            if ok:
                done.add(node)
                order.append(node)
            else:
                failed.add(node)
            return ok

        for skill_id in list(self._entries):
            _visit(skill_id)

        if circular:
            logger.warning("Circular skill dependencies detected: %s", circular)
        return DependencyResolution(
            success=not missing and not circular,
            order=order,
            missing=missing,
            circular=circular,
        )

    def get_dependencies(self, skill_id: str) -> List[str]:
        """返回声明的依赖（未知 id 返回空列表）。"""

        entry = self._entries.get(skill_id)
        return list(entry.skill.dependencies) if entry is not None else []

    def get_dependents(self, skill_id: str) -> List[str]:
        """返回引用该 skill 的 ids（排序）。"""

        entry = self._entries.get(skill_id)
        return sorted(entry.dependents) if entry is not None else []

    def get_missing_dependencies(self, skill_id: str) -> List[str]:
        """返回声明了但尚未注册的依赖。"""

        return [d for d in self.get_dependencies(skill_id) if d not in self._entries]

    # ----------------------------
    # Stats / utility
    # ----------------------------

    def get_stats(self) -> RegistryStats:
        """统计（分类/来源的每个 key 都会出现，计数可以为 0）。"""

        by_category = {c: 0 for c in SKILL_CATEGORIES}
        by_source = {s: 0 for s in SKILL_SOURCES}
        total_tokens = 0
        enabled = 0
        last_registered: Optional[RegistryEntry] = None
        last_modified: Optional[RegistryEntry] = None
        for entry in self._entries.values():
            by_category[entry.skill.metadata.category] += 1
            by_source[entry.source] += 1
            total_tokens += entry.estimated_tokens
            if entry.enabled:
                enabled += 1
            if last_registered is None or entry.registered_at >= last_registered.registered_at:
                last_registered = entry
            if last_modified is None or entry.modified_at >= last_modified.modified_at:
                last_modified = entry

        total = len(self._entries)
        return RegistryStats(
            total_skills=total,
            enabled_skills=enabled,
            disabled_skills=total - enabled,
            by_category=by_category,
            by_source=by_source,
            total_tokens=total_tokens,
            last_registered=last_registered.id if last_registered is not None else None,
            last_modified=last_modified.id if last_modified is not None else None,
        )

    def has(self, skill_id: str) -> bool:
        """是否已注册。"""

        return skill_id in self._entries

    def is_enabled(self, skill_id: str) -> bool:
        """是否已注册且启用。"""

        entry = self._entries.get(skill_id)
        return bool(entry is not None and entry.enabled)

    def get_ids(self) -> List[str]:
        """全部 id（注册顺序）。"""

        return list(self._entries)

    def get_all(self) -> List[RegistryEntry]:
        """全部条目（注册顺序）。"""

        return list(self._entries.values())

    def get_enabled(self) -> List[RegistryEntry]:
        """全部启用条目。"""

        return self.lookup(enabled=True)

    def size(self) -> int:
        """条目数量。"""

        return len(self._entries)

    def __len__(self) -> int:
        """条目数量。"""

        return len(self._entries)

    def __contains__(self, skill_id: object) -> bool:
        """`id in registry`。"""

        return skill_id in self._entries

    def clear(self) -> None:
        """清空所有条目与索引（不检查依赖），emit `registry:cleared`。"""

        self._entries.clear()
        self._path_index.clear()
        self._trigger_index.clear()
        self._category_index.clear()
        self.emit("registry:cleared")

    def close(self) -> None:
        """显式销毁：清空并移除全部监听器。"""

        self.clear()
        self.remove_all_listeners()

    # ----------------------------
    # Internal
    # ----------------------------

    def _drop_from_indices(self, entry: RegistryEntry) -> None:
        """从 path/trigger/category 索引移除条目（path 只在仍指向该 id 时移除）。"""

        skill_id = entry.skill.id
        if self._path_index.get(entry.file_path) == skill_id:
            del self._path_index[entry.file_path]
        _discard_all(self._trigger_index, entry.skill.triggers, skill_id)
        _discard_all(self._category_index, [entry.skill.metadata.category], skill_id)

    def _recompute_dependents(self) -> None:
        """全量重算反向依赖（自依赖不计入 dependents）。"""

        for entry in self._entries.values():
            entry.dependents = set()
        for entry in self._entries.values():
            for dep in entry.skill.dependencies:
                target = self._entries.get(dep)
                if target is not None and dep != entry.skill.id:
                    target.dependents.add(entry.skill.id)


def _discard_all(index: Dict[str, _OrderedIds], keys: Iterable[str], skill_id: str) -> None:
    """从多值索引中移除 id，并删除变空的 key。"""

    for key in keys:
        ids = index.get(key)
        if ids is None:
            continue
        ids.pop(skill_id, None)
        if not ids:
            del index[key]


def _flag(value: Optional[bool], default: bool) -> bool:
    """可选布尔的有效值。"""

    return default if value is None else bool(value)


def _matches(skill: Skill, query: str) -> bool:
    """大小写不敏感子串匹配。"""

    meta = skill.metadata
    haystack = [skill.id, *meta.name.values(), *meta.description.values(), *skill.triggers, *meta.tags]
    return any(query in s.lower() for s in haystack)
