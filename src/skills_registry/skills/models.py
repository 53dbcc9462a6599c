"""
Skills 数据模型。

分两类：
- 规范化 Skill 记录（pydantic，frozen）：Parser/Migrator 的产物，注册后视为不可变值；
- Registry / Hot Reload / Loader 的运行期结构（dataclass）：RegistryEntry 由 Registry 独占并维护。

输入兼容：
- 字段同时接受 snake_case 与历史 camelCase 写法（例如 `useWhen`、`allowedTools`、`agents`、`timeout`）；
- 输出（`Skill.to_dict`）统一为 snake_case，语言 key 固定为 `en` / `zh-CN`。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import hashlib
import json
import math
from pathlib import Path
import re
from typing import Any, Dict, List, Literal, Mapping, Optional, Set, Tuple, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from skills_registry.core.errors import FrameworkIssue
from skills_registry.core.utils import epoch_to_rfc3339

SkillCategory = Literal["dev", "git", "review", "testing", "docs", "devops", "planning", "debugging", "seo", "custom"]
SkillSource = Literal["builtin", "user", "marketplace", "migrated"]
FormatVersion = Literal["v1", "v2", "v3"]
SkillDifficulty = Literal["beginner", "intermediate", "advanced"]
HookType = Literal[
    "PreToolUse",
    "PostToolUse",
    "SubagentStart",
    "SubagentStop",
    "PermissionRequest",
    "SkillActivate",
    "SkillComplete",
]
OutputType = Literal["file", "variable", "artifact"]
ContextMode = Literal["fork", "inherit"]
HotReloadEventType = Literal["add", "change", "unlink", "error", "ready"]

SKILL_CATEGORIES: Tuple[str, ...] = get_args(SkillCategory)
SKILL_SOURCES: Tuple[str, ...] = get_args(SkillSource)
SKILL_DIFFICULTIES: Tuple[str, ...] = get_args(SkillDifficulty)
HOOK_TYPES: Tuple[str, ...] = get_args(HookType)
OUTPUT_TYPES: Tuple[str, ...] = get_args(OutputType)

CURRENT_FORMAT_VERSION: FormatVersion = "v3"
DEFAULT_PRIORITY = 5
CHARS_PER_TOKEN = 4

_KEBAB_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(-[a-z0-9.]+)?$", re.IGNORECASE)


def is_valid_skill_id(value: Any) -> bool:
    """校验 skill id（kebab-case：小写字母/数字，以 `-` 分段）。"""

    return isinstance(value, str) and bool(_KEBAB_RE.match(value))


def is_valid_semver(value: Any) -> bool:
    """校验语义化版本号（`MAJOR.MINOR.PATCH[-pre]`）。"""

    return isinstance(value, str) and bool(_SEMVER_RE.match(value))


class LocalizedText(BaseModel):
    """双语文本（`en` + `zh-CN`；纯字符串输入视为两种语言相同）。"""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    en: str
    zh_cn: str = Field(validation_alias=AliasChoices("zh-CN", "zh_cn", "zh"), serialization_alias="zh-CN")

    @model_validator(mode="before")
    @classmethod
    def _coerce_plain_string(cls, data: Any) -> Any:
        """把纯字符串展开为两种语言。"""

        if isinstance(data, str):
            return {"en": data, "zh-CN": data}
        return data

    def values(self) -> Tuple[str, str]:
        """返回 `(en, zh-CN)`（用于全文检索）。"""

        return self.en, self.zh_cn


class SkillHook(BaseModel):
    """生命周期 hook 声明。"""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    type: HookType
    matcher: Optional[str] = None
    command: Optional[str] = None
    script: Optional[str] = None
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds", "timeout")
    )


class SkillOutput(BaseModel):
    """声明的输出产物。"""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1)
    type: OutputType
    path: Optional[str] = None
    description: Optional[str] = None


class SkillMetadata(BaseModel):
    """Skill 元数据。"""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: LocalizedText
    description: LocalizedText
    category: SkillCategory = "custom"
    tags: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    difficulty: Optional[SkillDifficulty] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    use_when: Optional[List[str]] = Field(default=None, validation_alias=AliasChoices("use_when", "useWhen"))
    auto_activate: Optional[bool] = Field(default=None, validation_alias=AliasChoices("auto_activate", "autoActivate"))
    user_invocable: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("user_invocable", "userInvocable")
    )
    related_skills: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("related_skills", "relatedSkills")
    )
    min_version: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("min_version", "minVersion", "ccjkVersion")
    )


class SkillConfig(BaseModel):
    """Skill 执行配置（全部可选）。"""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    allowed_tools: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("allowed_tools", "allowedTools")
    )
    permissions: Optional[List[str]] = None
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds", "timeout")
    )
    agent_ids: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("agent_ids", "agentIds", "agents")
    )
    context_mode: Optional[ContextMode] = Field(
        default=None, validation_alias=AliasChoices("context_mode", "contextMode")
    )
    hooks: Optional[List[SkillHook]] = None
    outputs: Optional[List[SkillOutput]] = None
    custom: Optional[Dict[str, Any]] = None


class Skill(BaseModel):
    """
    规范化 Skill 记录（解析后的不可变值）。

    约束：
    - `id` 为 kebab-case，全局唯一（唯一性由 Registry 保证）
    - `version` 为语义化版本号
    - `triggers` 非空且每项非空
    - `template` 为不透明正文（只要求非空，不做语义校验）
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    id: str
    version: str
    metadata: SkillMetadata
    triggers: List[str] = Field(min_length=1)
    template: str = Field(min_length=1)
    config: Optional[SkillConfig] = None
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        """id 必须为 kebab-case。"""

        if not is_valid_skill_id(value):
            raise ValueError(f"invalid id format: {value!r}; must be kebab-case")
        return value

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: str) -> str:
        """version 必须为 semver。"""

        if not is_valid_semver(value):
            raise ValueError(f"invalid version format: {value!r}; must be semver (e.g. 1.0.0)")
        return value

    @field_validator("triggers")
    @classmethod
    def _validate_triggers(cls, value: List[str]) -> List[str]:
        """trigger 不得为空串。"""

        for item in value:
            if not item.strip():
                raise ValueError("triggers must not contain empty strings")
        return value

    @property
    def priority(self) -> int:
        """有效优先级（未声明时为 5）。"""

        p = self.metadata.priority
        return DEFAULT_PRIORITY if p is None else int(p)

    @property
    def category(self) -> str:
        """所属分类。"""

        return self.metadata.category

    def to_dict(self) -> Dict[str, Any]:
        """投影为可 JSON 序列化的 dict（snake_case，省略空的可选字段）。"""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Skill":
        """从 dict 构造（失败抛 pydantic `ValidationError`）。"""

        return cls.model_validate(dict(data))


def _compact_json(obj: Any) -> str:
    """紧凑 JSON（与 token 估算/校验和的口径保持一致）。"""

    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def estimate_tokens(skill: Skill) -> int:
    """按 ~4 字符/token 估算 skill 的 token 数。"""

    total = len(skill.template) + len(skill.id)
    total += len(_compact_json(skill.metadata.model_dump(mode="json", by_alias=True, exclude_none=True)))
    total += len(",".join(skill.triggers))
    if skill.config is not None:
        total += len(_compact_json(skill.config.model_dump(mode="json", by_alias=True, exclude_none=True)))
    return int(math.ceil(total / CHARS_PER_TOKEN))


def compute_checksum(skill: Skill) -> str:
    """内容校验和（用于变更检测）。"""

    return hashlib.sha256(_compact_json(skill.to_dict()).encode("utf-8")).hexdigest()


@dataclass
class RegistryEntry:
    """
    Registry 条目（由 SkillRegistry 独占并维护）。

    字段：
    - skill：规范化 Skill（不可变）
    - file_path：来源文件路径（或导入时的伪路径）
    - enabled：启停状态（重新注册时保留）
    - source：builtin|user|marketplace|migrated
    - registered_at / modified_at：epoch 秒
    - estimated_tokens：由内容长度估算
    - checksum：内容校验和
    - original_version：迁移前的格式版本（如有）
    - dependents：反向依赖集合（派生数据，只由 Registry 重算）
    """

    skill: Skill
    file_path: str
    enabled: bool
    source: SkillSource
    registered_at: float
    modified_at: float
    estimated_tokens: int
    checksum: str
    original_version: Optional[FormatVersion] = None
    dependents: Set[str] = field(default_factory=set)

    @property
    def id(self) -> str:
        """skill id。"""

        return self.skill.id

    @property
    def priority(self) -> int:
        """有效优先级。"""

        return self.skill.priority

    def to_jsonable(self, *, include_skill: bool = False) -> Dict[str, Any]:
        """投影为 JSON 视图（默认只输出摘要字段，不含正文）。"""

        out: Dict[str, Any] = {
            "id": self.skill.id,
            "version": self.skill.version,
            "name": self.skill.metadata.name.en,
            "category": self.skill.metadata.category,
            "triggers": list(self.skill.triggers),
            "priority": self.skill.priority,
            "file_path": self.file_path,
            "enabled": self.enabled,
            "source": self.source,
            "original_version": self.original_version,
            "registered_at": epoch_to_rfc3339(self.registered_at),
            "modified_at": epoch_to_rfc3339(self.modified_at),
            "estimated_tokens": self.estimated_tokens,
            "dependencies": list(self.skill.dependencies),
            "dependents": sorted(self.dependents),
            "checksum": self.checksum,
        }
        if include_skill:
            out["skill"] = self.skill.to_dict()
        return out


@dataclass(frozen=True)
class SkillConflict:
    """冲突记录（信息性：不会阻止注册）。"""

    type: Literal["trigger", "id", "dependency"]
    skill_ids: List[str]
    details: str
    suggestion: Optional[str] = None
    trigger: Optional[str] = None

    def to_issue(self) -> FrameworkIssue:
        """投影为 FrameworkIssue（code=`SKILL_TRIGGER_CONFLICT` 等）。"""

        return FrameworkIssue(
            code=f"SKILL_{self.type.upper()}_CONFLICT",
            message=self.details,
            details={
                "skill_ids": list(self.skill_ids),
                "trigger": self.trigger,
                "suggestion": self.suggestion,
                "level": "warning",
            },
        )


@dataclass(frozen=True)
class MissingDependency:
    """某个 skill 声明但未注册的依赖。"""

    skill_id: str
    missing_deps: List[str]


@dataclass(frozen=True)
class DependencyResolution:
    """依赖解析结果（拓扑序 + 缺失 + 循环）。"""

    success: bool
    order: List[str]
    missing: List[MissingDependency]
    circular: List[List[str]]

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 JSON 视图。"""

        return asdict(self)


@dataclass(frozen=True)
class RegistryStats:
    """Registry 统计（按需 O(n) 重算）。"""

    total_skills: int
    enabled_skills: int
    disabled_skills: int
    by_category: Dict[str, int]
    by_source: Dict[str, int]
    total_tokens: int
    last_registered: Optional[str] = None
    last_modified: Optional[str] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 JSON 视图。"""

        return asdict(self)


@dataclass(frozen=True)
class HotReloadEvent:
    """热加载事件（`add/change/unlink/error/ready`）。"""

    type: HotReloadEventType
    file_path: str
    timestamp: float
    entry: Optional[RegistryEntry] = None
    previous_entry: Optional[RegistryEntry] = None
    error: Optional[str] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 JSON 视图（entry 只输出摘要）。"""

        return {
            "type": self.type,
            "file_path": self.file_path,
            "timestamp": epoch_to_rfc3339(self.timestamp),
            "entry": self.entry.to_jsonable() if self.entry is not None else None,
            "previous_entry": self.previous_entry.to_jsonable() if self.previous_entry is not None else None,
            "error": self.error,
        }


@dataclass
class HotReloadStats:
    """热加载计数器。"""

    watched_files: int = 0
    registered_skills: int = 0
    total_adds: int = 0
    total_changes: int = 0
    total_unlinks: int = 0
    total_errors: int = 0
    is_watching: bool = False
    last_event_at: Optional[float] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 JSON 视图。"""

        return asdict(self)


@dataclass
class ParseResult:
    """Parser 结果（Parser 从不抛异常，失败都放在这里）。"""

    success: bool
    skill: Optional[Skill] = None
    file_path: Optional[str] = None
    detected_format_version: Optional[FormatVersion] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    estimated_tokens: Optional[int] = None


@dataclass
class MigrationResult:
    """单个文件/记录的迁移结果。"""

    success: bool
    original_version: FormatVersion
    source_path: str
    skill: Optional[Skill] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 JSON 视图（skill 只输出 id）。"""

        return {
            "success": self.success,
            "original_version": self.original_version,
            "source_path": self.source_path,
            "skill_id": self.skill.id if self.skill is not None else None,
            "warnings": list(self.warnings),
            "error": self.error,
        }


@dataclass
class MigrationReport:
    """目录迁移报告。"""

    total_found: int
    success_count: int
    failed_count: int
    skipped_count: int
    results: List[MigrationResult]
    timestamp: float
    duration_ms: int


@dataclass(frozen=True)
class LoadedSkill:
    """Loader 产物：一个成功加载的 skill 及其来源。"""

    skill: Skill
    file_path: Path
    format_version: FormatVersion
    migrated: bool = False


@dataclass
class LoadResult:
    """批量加载结果。"""

    skills: List[LoadedSkill]
    errors: List[FrameworkIssue]
    migrated: List[MigrationResult]
    total_scanned: int
    duration_ms: int


@dataclass
class ImportResult:
    """批量导入结果（单条失败不影响其它条目）。"""

    imported: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)


def json_sanitize(value: Any, *, _depth: int = 0, _max_depth: int = 8) -> Any:
    """
    将任意对象递归清洗为 JSON 兼容值（dict/list/str/int/float/bool/None）。

    关键规则：
    - float NaN/Inf 降级为字符串（避免 `allow_nan=False` 失败）
    - Path/Exception 做结构化降级
    - dict key 强制转为 string
    - set 转为排序后的 list（保证稳定输出）
    - 最大深度保护
    """

    if _depth >= _max_depth:
        return "<max_depth_reached>"
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        if math.isnan(value):
            return "NaN"
        return "Infinity" if value > 0 else "-Infinity"
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Exception):
        return {"__type__": "exception", "class": value.__class__.__name__, "message": str(value)}
    if isinstance(value, FrameworkIssue):
        return issue_to_jsonable(value)
    if isinstance(value, (list, tuple)):
        return [json_sanitize(v, _depth=_depth + 1, _max_depth=_max_depth) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [json_sanitize(v, _depth=_depth + 1, _max_depth=_max_depth) for v in value]
        return sorted(items, key=lambda x: json.dumps(x, sort_keys=True, ensure_ascii=False, default=str))
    if isinstance(value, Mapping):
        out = {str(k): json_sanitize(v, _depth=_depth + 1, _max_depth=_max_depth) for k, v in value.items()}
        return {k: out[k] for k in sorted(out.keys())}
    return repr(value)


def issue_to_jsonable(issue: FrameworkIssue) -> Dict[str, Any]:
    """将 FrameworkIssue 投影为 `{code, message, details}`（details 做清洗）。"""

    details = issue.details if isinstance(issue.details, Mapping) else {"value": issue.details}
    return {"code": issue.code, "message": issue.message, "details": json_sanitize(dict(details))}
