"""
Skill Parser：文件/文本 → 规范化 Skill。

支持两种源格式：
- Markdown：YAML front-matter（`---` 包围）+ 正文（正文即 template）；
- JSON：v3 记录直接校验；v1/v2 记录识别出版本后以失败返回（由 Loader 交给 Migrator）。

约束：
- Parser 从不抛异常：所有失败（IO/编码/YAML/JSON/校验）都以 `ParseResult(success=False, error=...)` 返回；
- front-matter 字段做宽松修正并记 warning（未知分类 → custom、非法优先级 → 5 等）；
- `strict=True` 时 front-matter 出现未知 key 直接判定失败。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from skills_registry.config.loader import ParserConfig
from skills_registry.skills.models import (
    HOOK_TYPES,
    OUTPUT_TYPES,
    SKILL_CATEGORIES,
    SKILL_DIFFICULTIES,
    FormatVersion,
    ParseResult,
    Skill,
    estimate_tokens,
)
from skills_registry.skills.paths import SKILL_FILE_NAME, SKILL_FILE_SUFFIXES

logger = logging.getLogger(__name__)

_FRONTMATTER_KEYS = frozenset(
    {
        "name",
        "id",
        "version",
        "description",
        "category",
        "tags",
        "author",
        "difficulty",
        "priority",
        "use_when",
        "auto_activate",
        "user_invocable",
        "related_skills",
        "ccjk_version",
        "min_version",
        "allowed_tools",
        "permissions",
        "timeout",
        "agents",
        "context",
        "hooks",
        "outputs",
        "triggers",
        "dependencies",
        "custom",
    }
)


def format_validation_error(exc: ValidationError) -> str:
    """把 pydantic 校验错误压缩为单行可读文本（带字段路径）。"""

    parts: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()) if x != "__root__")
        msg = str(err.get("msg", "invalid value"))
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(exc)


def split_frontmatter(text: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """
    将 Markdown 拆分为 front-matter 与正文。

    返回：
    - (frontmatter, body)；没有合法 front-matter 时 frontmatter 为 None

    异常：
    - yaml.YAMLError：front-matter 不是合法 YAML（由调用方转为失败结果）
    """

    lines = text.lstrip("\ufeff").splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return None, text

    fm_lines: List[str] = []
    end_idx = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_idx = i
            break
        fm_lines.append(lines[i])
    if end_idx is None:
        return None, text

    obj = yaml.safe_load("".join(fm_lines))
    body = "".join(lines[end_idx + 1 :])
    if obj is None:
        return {}, body
    if not isinstance(obj, dict):
        return None, body
    return obj, body


def detect_format_version(data: Mapping[str, Any]) -> Optional[FormatVersion]:
    """
    识别 JSON 记录的格式版本。

    规则（按顺序）：
    - v3：`metadata.name` 为对象
    - v2：同时具备 `protocol` 与 `ast`
    - v1：顶层 `name` 为对象且具备 `triggers`
    - v3：同时具备 `id/triggers/template`（扁平的新格式记录）
    """

    metadata = data.get("metadata")
    if isinstance(metadata, Mapping) and isinstance(metadata.get("name"), Mapping):
        return "v3"
    if data.get("protocol") and data.get("ast"):
        return "v2"
    if isinstance(data.get("name"), Mapping) and data.get("triggers"):
        return "v1"
    if data.get("id") and data.get("triggers") and data.get("template"):
        return "v3"
    return None


def _localized(value: Any, field: str, warnings: List[str]) -> Dict[str, str]:
    """把字符串/双语对象规范化为 `{en, zh-CN}`；缺失的一侧用另一侧补齐。"""

    if value is None or value == "":
        warnings.append(f"Missing {field}")
        return {"en": "", "zh-CN": ""}
    if isinstance(value, str):
        return {"en": value, "zh-CN": value}
    if isinstance(value, Mapping):
        en = value.get("en") or ""
        zh = value.get("zh-CN") or value.get("zh_cn") or value.get("zh") or ""
        if not en or not zh:
            warnings.append(f"Incomplete localized {field}, missing locale filled from the other")
        return {"en": str(en or zh), "zh-CN": str(zh or en)}
    warnings.append(f"Invalid {field} format, expected string or localized object")
    return {"en": str(value), "zh-CN": str(value)}


def _string_list(value: Any, field: str, warnings: List[str]) -> List[str]:
    """把 list/逗号分隔字符串规范化为字符串列表。"""

    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(x) for x in value if x is not None and str(x) != ""]
    if isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    warnings.append(f"Invalid {field} format, expected array")
    return []


def _category(value: Any, warnings: List[str]) -> str:
    """非法分类降级为 `custom`。"""

    s = str(value) if value else "custom"
    if s in SKILL_CATEGORIES:
        return s
    warnings.append(f"Invalid category: {s}, defaulting to 'custom'")
    return "custom"


def _difficulty(value: Any, warnings: List[str]) -> str:
    """非法难度降级为 `intermediate`。"""

    s = str(value)
    if s in SKILL_DIFFICULTIES:
        return s
    warnings.append(f"Invalid difficulty: {s}, defaulting to 'intermediate'")
    return "intermediate"


def _priority(value: Any, warnings: List[str]) -> int:
    """优先级必须是 1..10 的整数，否则降级为 5。"""

    if isinstance(value, bool):
        num = None
    elif isinstance(value, int):
        num = value
    elif isinstance(value, float) and value.is_integer():
        num = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        num = int(value.strip())
    else:
        num = None
    if num is not None and 1 <= num <= 10:
        return num
    warnings.append(f"Invalid priority: {value}, defaulting to 5")
    return 5


def _hooks(value: Any, warnings: List[str]) -> List[Dict[str, Any]]:
    """过滤 hooks：类型非法的条目丢弃并记 warning。"""

    if not isinstance(value, list):
        warnings.append("hooks must be an array")
        return []
    out: List[Dict[str, Any]] = []
    for item in value:
        if not isinstance(item, Mapping):
            continue
        hook_type = str(item.get("type") or "")
        if hook_type not in HOOK_TYPES:
            warnings.append(f"Invalid hook type: {hook_type}")
            continue
        hook: Dict[str, Any] = {"type": hook_type}
        for key in ("matcher", "command", "script"):
            if item.get(key):
                hook[key] = str(item[key])
        if item.get("timeout"):
            hook["timeout_seconds"] = item["timeout"]
        out.append(hook)
    return out


def _outputs(value: Any, warnings: List[str]) -> List[Dict[str, Any]]:
    """过滤 outputs：缺 name 或类型非法的条目丢弃并记 warning。"""

    if not isinstance(value, list):
        warnings.append("outputs must be an array")
        return []
    out: List[Dict[str, Any]] = []
    for item in value:
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name") or "")
        output_type = str(item.get("type") or "")
        if not name or output_type not in OUTPUT_TYPES:
            warnings.append(f"Invalid output: {json.dumps(dict(item), ensure_ascii=False, default=str)}")
            continue
        output: Dict[str, Any] = {"name": name, "type": output_type}
        for key in ("path", "description"):
            if item.get(key):
                output[key] = str(item[key])
        out.append(output)
    return out


def frontmatter_to_record(fm: Mapping[str, Any], body: str, warnings: List[str]) -> Dict[str, Any]:
    """
    把 front-matter + 正文映射为 Skill 的 dict 形态（尚未校验）。

    说明：
    - id 优先取 `id`，其次取字符串形式的 `name`；
    - 未出现的可选字段不写入（保持 `to_dict` 输出紧凑）。
    """

    raw_id = fm.get("id")
    if not raw_id and isinstance(fm.get("name"), str):
        raw_id = fm.get("name")

    metadata: Dict[str, Any] = {
        "name": _localized(fm.get("name"), "name", warnings),
        "description": _localized(fm.get("description"), "description", warnings),
        "category": _category(fm.get("category"), warnings),
        "tags": _string_list(fm.get("tags"), "tags", warnings),
    }
    if fm.get("author") is not None:
        metadata["author"] = str(fm["author"])
    if fm.get("difficulty") is not None:
        metadata["difficulty"] = _difficulty(fm["difficulty"], warnings)
    if fm.get("priority") is not None:
        metadata["priority"] = _priority(fm["priority"], warnings)
    if fm.get("use_when") is not None:
        metadata["use_when"] = _string_list(fm["use_when"], "use_when", warnings)
    if fm.get("auto_activate") is not None:
        metadata["auto_activate"] = bool(fm["auto_activate"])
    if fm.get("user_invocable") is not None:
        metadata["user_invocable"] = bool(fm["user_invocable"])
    if fm.get("related_skills") is not None:
        metadata["related_skills"] = _string_list(fm["related_skills"], "related_skills", warnings)
    min_version = fm.get("min_version", fm.get("ccjk_version"))
    if min_version is not None:
        metadata["min_version"] = str(min_version)

    config: Dict[str, Any] = {}
    if fm.get("allowed_tools") is not None:
        config["allowed_tools"] = _string_list(fm["allowed_tools"], "allowed_tools", warnings)
    if fm.get("permissions") is not None:
        config["permissions"] = _string_list(fm["permissions"], "permissions", warnings)
    if fm.get("timeout") is not None:
        config["timeout_seconds"] = fm["timeout"]
    if fm.get("agents") is not None:
        config["agent_ids"] = _string_list(fm["agents"], "agents", warnings)
    if fm.get("context") is not None:
        config["context_mode"] = "fork" if fm["context"] == "fork" else "inherit"
    if fm.get("hooks") is not None:
        config["hooks"] = _hooks(fm["hooks"], warnings)
    if fm.get("outputs") is not None:
        config["outputs"] = _outputs(fm["outputs"], warnings)
    if isinstance(fm.get("custom"), Mapping):
        config["custom"] = dict(fm["custom"])

    record: Dict[str, Any] = {
        "id": str(raw_id or ""),
        "version": str(fm.get("version") or "1.0.0"),
        "metadata": metadata,
        "triggers": _string_list(fm.get("triggers"), "triggers", warnings),
        "template": body.strip(),
    }
    if config:
        record["config"] = config
    if fm.get("dependencies") is not None:
        record["dependencies"] = _string_list(fm["dependencies"], "dependencies", warnings)
    return record


class SkillParser:
    """
    Skill 文件解析器。

    参数：
    - config：ParserConfig（strict / max_file_bytes）；None 表示使用默认值
    """

    def __init__(self, config: Optional[ParserConfig] = None) -> None:
        """创建解析器。"""

        self._config = config or ParserConfig()

    @property
    def config(self) -> ParserConfig:
        """当前解析配置。"""

        return self._config

    def parse_file(self, path: Union[str, Path]) -> ParseResult:
        """
        解析单个文件。

        返回：
        - ParseResult（失败时 `error` 给出原因；不抛异常）
        """

        p = Path(path)
        file_path = str(p)
        suffix = p.suffix.lower()
        if suffix not in SKILL_FILE_SUFFIXES and p.name.lower() != SKILL_FILE_NAME.lower():
            return ParseResult(
                success=False,
                file_path=file_path,
                error=f"Invalid file extension: {suffix or '<none>'}. Expected: {', '.join(SKILL_FILE_SUFFIXES)}",
            )

        try:
            size = p.stat().st_size
            if size > self._config.max_file_bytes:
                return ParseResult(
                    success=False,
                    file_path=file_path,
                    error=f"File too large: {size} bytes. Maximum: {self._config.max_file_bytes} bytes",
                )
            content = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ParseResult(success=False, file_path=file_path, error=f"Failed to read file: {exc}")

        if suffix == ".json":
            return self._parse_json(content, file_path, [])
        return self._parse_markdown(content, file_path, [])

    def parse_content(self, content: str, file_path: Optional[str] = None) -> ParseResult:
        """按内容嗅探格式（`{` → JSON，`---` → Markdown）后解析。"""

        trimmed = content.lstrip("\ufeff").strip()
        if trimmed.startswith("{"):
            return self._parse_json(content, file_path, [])
        if trimmed.startswith("---"):
            return self._parse_markdown(content, file_path, [])
        return ParseResult(
            success=False,
            file_path=file_path,
            error="Unknown format. Expected JSON or Markdown with YAML front-matter.",
        )

    def validate_record(self, record: Mapping[str, Any]) -> Tuple[Optional[Skill], Optional[str]]:
        """
        校验 dict 形态的 skill。

        返回：
        - (skill, None)：成功
        - (None, error)：失败（error 为单行可读文本）
        """

        try:
            return Skill.model_validate(dict(record)), None
        except ValidationError as exc:
            return None, f"Validation failed: {format_validation_error(exc)}"

    def _success(
        self, skill: Skill, file_path: Optional[str], version: FormatVersion, warnings: List[str]
    ) -> ParseResult:
        """构造成功结果。"""

        return ParseResult(
            success=True,
            skill=skill,
            file_path=file_path,
            detected_format_version=version,
            warnings=warnings,
            estimated_tokens=estimate_tokens(skill),
        )

    def _parse_markdown(self, content: str, file_path: Optional[str], warnings: List[str]) -> ParseResult:
        """解析 front-matter Markdown。"""

        try:
            fm, body = split_frontmatter(content)
        except yaml.YAMLError as exc:
            logger.debug("YAML front-matter error in %s: %s", file_path, exc)
            return ParseResult(
                success=False, file_path=file_path, warnings=warnings, error=f"Invalid YAML front-matter: {exc}"
            )
        if fm is None:
            return ParseResult(
                success=False,
                file_path=file_path,
                warnings=warnings,
                error="No YAML front-matter found. SKILL.md files must start with ---",
            )

        unknown = sorted(str(k) for k in fm.keys() if k not in _FRONTMATTER_KEYS)
        if unknown:
            if self._config.strict:
                return ParseResult(
                    success=False,
                    file_path=file_path,
                    warnings=warnings,
                    detected_format_version="v3",
                    error=f"Unknown front-matter keys: {', '.join(unknown)}",
                )
            warnings.append(f"Ignoring unknown front-matter keys: {', '.join(unknown)}")

        record = frontmatter_to_record(fm, body, warnings)
        skill, error = self.validate_record(record)
        if skill is None:
            return ParseResult(
                success=False, file_path=file_path, warnings=warnings, detected_format_version="v3", error=error
            )
        return self._success(skill, file_path, "v3", warnings)

    def _parse_json(self, content: str, file_path: Optional[str], warnings: List[str]) -> ParseResult:
        """解析 JSON（只接受 v3；v1/v2 以失败返回并带上识别出的版本）。"""

        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            return ParseResult(success=False, file_path=file_path, warnings=warnings, error=f"Invalid JSON: {exc}")
        if not isinstance(data, dict):
            return ParseResult(
                success=False, file_path=file_path, warnings=warnings, error="Invalid JSON: root must be an object"
            )

        version = detect_format_version(data)
        if version is None:
            return ParseResult(
                success=False, file_path=file_path, warnings=warnings, error="Unrecognized skill format"
            )
        if version != "v3":
            warnings.append(f"Detected {version} format")
            return ParseResult(
                success=False,
                file_path=file_path,
                warnings=warnings,
                detected_format_version=version,
                error=f"{version} format detected. Use the migrator to convert.",
            )

        skill, error = self.validate_record(data)
        if skill is None:
            return ParseResult(
                success=False, file_path=file_path, warnings=warnings, detected_format_version="v3", error=error
            )
        return self._success(skill, file_path, "v3", warnings)
