"""
Skill Migrator：把历史 v1/v2 记录迁移为规范化（v3）Skill。

说明：
- v1：扁平记录（双语 name/description、category、triggers、template、agents）；
- v2：cognitive protocol 记录（metadata + protocol + ast）；layer 统一映射到 `dev`，
  protocol 渲染进 template，并原样保存在 `config.custom`；
- `render_markdown` 输出 Parser 可以读回的 front-matter Markdown（迁移落盘使用）。
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from skills_registry.skills.models import (
    SKILL_CATEGORIES,
    FormatVersion,
    MigrationReport,
    MigrationResult,
    Skill,
)
from skills_registry.skills.parser import detect_format_version, format_validation_error

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = ".backup"


def _localized_from(value: Any) -> Dict[str, str]:
    """v1 的双语字段（或纯字符串）→ `{en, zh-CN}`。"""

    if isinstance(value, Mapping):
        en = str(value.get("en") or "")
        zh = str(value.get("zh-CN") or value.get("zh") or "")
        return {"en": en or zh, "zh-CN": zh or en}
    text = "" if value is None else str(value)
    return {"en": text, "zh-CN": text}


def _clamp_priority(value: Any) -> int:
    """v2 优先级截断到 1..10（非数字降级为 5）。"""

    try:
        num = int(value)
    except (TypeError, ValueError):
        return 5
    return max(1, min(10, num))


def _protocol_to_template(protocol: Mapping[str, Any], name: str, description: str) -> str:
    """把 v2 cognitive protocol 渲染为 Markdown 正文。"""

    lines = [
        f"# {name}",
        "",
        description,
        "",
        "## Core Question",
        str(protocol.get("coreQuestion") or ""),
        "",
        "## Trace Up",
        str(protocol.get("traceUp") or "N/A"),
        "",
        "## Trace Down",
        str(protocol.get("traceDown") or "N/A"),
        "",
    ]
    quick = protocol.get("quickReference")
    if isinstance(quick, Mapping) and quick:
        lines.append("## Quick Reference")
        for key, value in quick.items():
            lines.append(f"- **{key}**: {value}")
        lines.append("")
    return "\n".join(lines).rstrip()


def render_markdown(skill: Skill) -> str:
    """
    把 Skill 渲染为 front-matter Markdown（`SKILL.md` 风格）。

    约束：
    - 输出必须能被 `SkillParser` 读回为等价的 Skill（id 单独写出，name 写成双语对象）。
    """

    meta = skill.metadata
    fm: Dict[str, Any] = {
        "id": skill.id,
        "version": skill.version,
        "name": {"en": meta.name.en, "zh-CN": meta.name.zh_cn},
        "description": {"en": meta.description.en, "zh-CN": meta.description.zh_cn},
        "category": meta.category,
    }
    if meta.tags:
        fm["tags"] = list(meta.tags)
    if meta.author is not None:
        fm["author"] = meta.author
    if meta.difficulty is not None:
        fm["difficulty"] = meta.difficulty
    if meta.priority is not None:
        fm["priority"] = meta.priority
    if meta.use_when is not None:
        fm["use_when"] = list(meta.use_when)
    if meta.auto_activate is not None:
        fm["auto_activate"] = meta.auto_activate
    if meta.user_invocable is not None:
        fm["user_invocable"] = meta.user_invocable
    if meta.related_skills is not None:
        fm["related_skills"] = list(meta.related_skills)
    if meta.min_version is not None:
        fm["min_version"] = meta.min_version

    cfg = skill.config
    if cfg is not None:
        if cfg.allowed_tools is not None:
            fm["allowed_tools"] = list(cfg.allowed_tools)
        if cfg.permissions is not None:
            fm["permissions"] = list(cfg.permissions)
        if cfg.timeout_seconds is not None:
            fm["timeout"] = cfg.timeout_seconds
        if cfg.agent_ids is not None:
            fm["agents"] = list(cfg.agent_ids)
        if cfg.context_mode is not None:
            fm["context"] = cfg.context_mode
        if cfg.hooks is not None:
            hooks: List[Dict[str, Any]] = []
            for hook in cfg.hooks:
                item = hook.model_dump(exclude_none=True)
                if "timeout_seconds" in item:
                    item["timeout"] = item.pop("timeout_seconds")
                hooks.append(item)
            fm["hooks"] = hooks
        if cfg.outputs is not None:
            fm["outputs"] = [o.model_dump(exclude_none=True) for o in cfg.outputs]
        if cfg.custom is not None:
            fm["custom"] = dict(cfg.custom)

    fm["triggers"] = list(skill.triggers)
    if skill.dependencies:
        fm["dependencies"] = list(skill.dependencies)

    header = yaml.safe_dump(fm, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{header}---\n\n{skill.template}\n"


class SkillMigrator:
    """v1/v2 → v3 迁移器（无状态）。"""

    def migrate_v1(self, data: Mapping[str, Any], path: str = "", warnings: Optional[List[str]] = None) -> MigrationResult:
        """
        迁移 v1 记录。

        说明：
        - v1 的 `enabled` 字段不迁移（启停状态由 Registry 持有）；
        - 未知分类降级为 `custom` 并记 warning。
        """

        warns = list(warnings or [])
        category = str(data.get("category") or "custom")
        if category not in SKILL_CATEGORIES:
            warns.append(f"Unknown v1 category: {category}, defaulting to 'custom'")
            category = "custom"

        record: Dict[str, Any] = {
            "id": data.get("id"),
            "version": str(data.get("version") or "1.0.0"),
            "metadata": {
                "name": _localized_from(data.get("name")),
                "description": _localized_from(data.get("description")),
                "category": category,
                "tags": list(data.get("tags") or []),
            },
            "triggers": list(data.get("triggers") or []),
            "template": data.get("template") or "",
        }
        if data.get("author"):
            record["metadata"]["author"] = str(data["author"])
        if data.get("agents"):
            record["config"] = {"agent_ids": list(data["agents"])}
        return self._finish(record, "v1", path, warns)

    def migrate_v2(self, data: Mapping[str, Any], path: str = "", warnings: Optional[List[str]] = None) -> MigrationResult:
        """
        迁移 v2（cognitive protocol）记录。

        说明：
        - trigger 固定为 `/<id>`；
        - layer/protocol 原样保存在 `config.custom`。
        """

        warns = list(warnings or [])
        meta = data.get("metadata")
        protocol = data.get("protocol")
        if not isinstance(meta, Mapping) or not isinstance(protocol, Mapping):
            return MigrationResult(
                success=False,
                original_version="v2",
                source_path=path,
                warnings=warns,
                error="V2 migration failed: metadata and protocol must be objects",
            )

        skill_id = str(meta.get("id") or "")
        name = str(meta.get("name") or skill_id)
        description = str(meta.get("description") or "")
        record: Dict[str, Any] = {
            "id": skill_id,
            "version": str(meta.get("version") or "1.0.0"),
            "metadata": {
                "name": {"en": name, "zh-CN": name},
                "description": {"en": description, "zh-CN": description},
                "category": "dev",
                "tags": list(meta.get("tags") or []),
                "priority": _clamp_priority(meta.get("priority", 5)),
            },
            "triggers": [f"/{skill_id}"],
            "template": _protocol_to_template(protocol, name, description),
            "config": {
                "custom": {
                    "layer": meta.get("layer"),
                    "coreQuestion": protocol.get("coreQuestion"),
                    "traceUp": protocol.get("traceUp"),
                    "traceDown": protocol.get("traceDown"),
                    "quickReference": dict(protocol.get("quickReference") or {}),
                }
            },
            "dependencies": list(meta.get("dependencies") or []),
        }
        if meta.get("author"):
            record["metadata"]["author"] = str(meta["author"])
        warns.append("V2 cognitive protocol converted to V3 format")
        warns.append("Original layer and protocol info stored in config.custom")
        return self._finish(record, "v2", path, warns)

    def migrate_record(self, data: Mapping[str, Any], path: str = "") -> MigrationResult:
        """按识别出的版本分派迁移（v3 记录视为跳过）。"""

        version = detect_format_version(data)
        if version == "v1":
            return self.migrate_v1(data, path)
        if version == "v2":
            return self.migrate_v2(data, path)
        if version == "v3":
            return MigrationResult(
                success=False,
                original_version="v3",
                source_path=path,
                warnings=["File is already V3 format"],
                error="File is already V3 format",
            )
        return MigrationResult(success=False, original_version="v1", source_path=path, error="Unknown format")

    def migrate_file(self, path: Union[str, Path]) -> MigrationResult:
        """
        迁移单个文件（只读，不写回）。

        返回：
        - Markdown 文件视为已是 v3（`original_version="v3"`，success=False，由调用方当作跳过）
        """

        p = Path(path)
        source = str(p)
        try:
            content = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return MigrationResult(
                success=False, original_version="v1", source_path=source, error=f"Migration failed: {exc}"
            )

        trimmed = content.strip()
        if trimmed.startswith("---"):
            return MigrationResult(
                success=False,
                original_version="v3",
                source_path=source,
                warnings=["Markdown format detected, may be V3 already"],
                error="Markdown format, parse as SKILL.md instead",
            )
        if not trimmed.startswith("{"):
            return MigrationResult(success=False, original_version="v1", source_path=source, error="Unknown format")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            return MigrationResult(
                success=False, original_version="v1", source_path=source, error=f"Migration failed: {exc}"
            )
        if not isinstance(data, dict):
            return MigrationResult(success=False, original_version="v1", source_path=source, error="Unknown format")
        return self.migrate_record(data, source)

    def migrate_directory(
        self,
        directory: Union[str, Path],
        *,
        output_dir: Union[str, Path, None] = None,
        create_backups: bool = False,
    ) -> MigrationReport:
        """
        迁移目录下全部 `.json/.md` 文件。

        参数：
        - output_dir：若提供，成功迁移的 skill 写为 `<output_dir>/<id>.md`
        - create_backups：写出前把源文件复制到 `<源目录>/.backup/<文件名>.bak`

        说明：
        - 跳过隐藏目录（包括 `.backup` 自身）；
        - skipped 统计已是 v3 的文件。
        """

        started = time.time()
        root = Path(directory)
        files = sorted(
            p
            for p in root.rglob("*")
            if p.is_file()
            and p.suffix.lower() in (".json", ".md")
            and not any(part.startswith(".") for part in p.relative_to(root).parts)
        )

        results: List[MigrationResult] = []
        for file in files:
            result = self.migrate_file(file)
            results.append(result)
            if result.success and result.skill is not None and output_dir is not None:
                self.write_migrated(result.skill, Path(output_dir), source=file, create_backup=create_backups)

        success = sum(1 for r in results if r.success)
        skipped = sum(1 for r in results if not r.success and r.original_version == "v3")
        failed = len(results) - success - skipped
        logger.info(
            "Migrated directory %s: found=%d success=%d failed=%d skipped=%d",
            root,
            len(results),
            success,
            failed,
            skipped,
        )
        return MigrationReport(
            total_found=len(results),
            success_count=success,
            failed_count=failed,
            skipped_count=skipped,
            results=results,
            timestamp=started,
            duration_ms=int((time.time() - started) * 1000),
        )

    def write_migrated(
        self, skill: Skill, output_dir: Path, *, source: Optional[Path] = None, create_backup: bool = False
    ) -> Path:
        """把迁移后的 skill 写为 Markdown，返回写出路径。"""

        output_dir.mkdir(parents=True, exist_ok=True)
        if create_backup and source is not None and source.exists():
            backup_dir = source.parent / BACKUP_DIR_NAME
            backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, backup_dir / f"{source.name}.bak")
        out = output_dir / f"{skill.id}.md"
        out.write_text(render_markdown(skill), encoding="utf-8")
        return out

    def _finish(self, record: Dict[str, Any], version: FormatVersion, path: str, warnings: List[str]) -> MigrationResult:
        """校验迁移产物并封装结果。"""

        try:
            skill = Skill.model_validate(record)
        except ValidationError as exc:
            return MigrationResult(
                success=False,
                original_version=version,
                source_path=path,
                warnings=warnings,
                error=f"{version.upper()} migration failed: {format_validation_error(exc)}",
            )
        return MigrationResult(
            success=True, skill=skill, original_version=version, source_path=path, warnings=warnings
        )
