"""
Skills Registry CLI（load/lookup/deps/conflicts/stats/export/import/watch）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；尽量在失败时也输出 JSON
- 日志只写 stderr（`--log-level`），不污染 stdout

Exit code：
- 0：成功
- 2：参数错误 / 配置无效 / watch 启动失败
- 10：load/import 存在失败条目，或依赖解析失败
- 12：存在 trigger 冲突（warning 级）
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from skills_registry.config.defaults import load_default_config_dict, overlay_paths_from_env
from skills_registry.config.loader import SkillsRegistryConfig, load_config_dicts
from skills_registry.core.errors import FrameworkError, FrameworkIssue, WatchError
from skills_registry.skills.manager import LoadReport, SkillManager
from skills_registry.skills.models import HotReloadEvent, issue_to_jsonable, json_sanitize


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps；调用方需确保已做清洗）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _issues_to_jsonable(issues: List[FrameworkIssue]) -> List[Dict[str, Any]]:
    """将 FrameworkIssue 列表投影为可 JSON 序列化结构（details 做清洗）。"""

    return [issue_to_jsonable(it) for it in issues]


def _resolve_path(workspace_root: Path, raw: str) -> Path:
    """相对路径按 workspace_root 解析为绝对路径。"""

    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = workspace_root / p
    return p.resolve()


def _load_yaml_mapping(path: Path) -> Tuple[Optional[Dict[str, Any]], Optional[FrameworkIssue]]:
    """读取 overlay YAML（根节点必须为 mapping）。"""

    if not path.exists():
        return None, FrameworkIssue(
            code="CLI_CONFIG_NOT_FOUND",
            message="Config overlay file not found.",
            details={"path": str(path)},
        )
    try:
        obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        return None, FrameworkIssue(
            code="CLI_CONFIG_LOAD_FAILED",
            message="Config overlay could not be read.",
            details={"path": str(path), "reason": str(exc)},
        )
    if obj is None:
        return {}, None
    if not isinstance(obj, dict):
        return None, FrameworkIssue(
            code="CLI_CONFIG_INVALID",
            message="Config overlay root must be a mapping.",
            details={"path": str(path)},
        )
    return obj, None


def _load_effective_config(
    *,
    workspace_root: Path,
    overlay_paths: List[Path],
) -> Tuple[Optional[SkillsRegistryConfig], List[FrameworkIssue]]:
    """
    加载默认配置 + env overlays + CLI overlays，返回校验后的配置。

    返回：
    - (config, issues)：当加载失败时 config 为 None，issues 至少包含一条 error。
    """

    overlays: List[Dict[str, Any]] = [load_default_config_dict()]
    issues: List[FrameworkIssue] = []

    env_paths = [_resolve_path(workspace_root, str(p)) for p in overlay_paths_from_env()]
    for p in [*env_paths, *overlay_paths]:
        obj, issue = _load_yaml_mapping(p)
        if issue is not None:
            issues.append(issue)
            continue
        overlays.append(obj or {})

    if issues:
        return None, issues

    try:
        return load_config_dicts(overlays), []
    except ValidationError as exc:
        return None, [
            FrameworkIssue(
                code="CLI_CONFIG_INVALID",
                message="Config is invalid.",
                details={"reason": str(exc)},
            )
        ]


def _build_manager(args: argparse.Namespace) -> Tuple[Optional[SkillManager], Optional[LoadReport], int]:
    """
    按公共 flags 构造 SkillManager 并加载 skill 目录。

    返回：
    - (manager, report, exit_code)：配置失败时 manager 为 None，且已输出错误 JSON（exit_code=2）
    """

    workspace_root = Path(args.workspace_root).expanduser().resolve()
    overlay_paths = [_resolve_path(workspace_root, p) for p in args.config]
    config, issues = _load_effective_config(workspace_root=workspace_root, overlay_paths=overlay_paths)
    if config is None:
        _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return None, None, 2

    dirs = [str(_resolve_path(workspace_root, d)) for d in args.dir]
    if args.command == "watch" and dirs:
        hot_reload = config.hot_reload.model_copy(
            update={"watch_paths": dirs, "watch_home_skills": False, "watch_local_skills": False}
        )
        config = config.model_copy(update={"hot_reload": hot_reload})

    manager = SkillManager(config, workspace_root=workspace_root)
    if args.command == "watch":
        return manager, None, 0

    try:
        report = manager.load_all(dirs or None)
    except FrameworkError as exc:
        _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable([exc.to_issue()])}, pretty=args.pretty)
        return None, None, 10
    return manager, report, 0


def _handle_load(args: argparse.Namespace) -> int:
    """load：加载目录并输出注册结果与问题列表。"""

    manager, report, code = _build_manager(args)
    if manager is None or report is None:
        return code
    payload = {
        "ok": not report.issues,
        "registered": report.registered,
        "issues": _issues_to_jsonable(report.issues),
        "migrated": [m.to_jsonable() for m in report.migrated],
        "stats": {"total_scanned": report.total_scanned, "duration_ms": report.duration_ms},
    }
    _dump_json_to_stdout(payload, pretty=args.pretty)
    return 10 if report.issues else 0


def _handle_lookup(args: argparse.Namespace) -> int:
    """lookup：按 trigger / 全文 / 分类查询（都不给时列出全部）。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    if args.trigger is not None:
        entries = manager.get_by_trigger(args.trigger)
    elif args.search is not None:
        entries = manager.search(args.search, args.limit)
    elif args.category is not None:
        entries = manager.get_by_category(args.category)
    else:
        entries = manager.list()
    _dump_json_to_stdout({"skills": [e.to_jsonable() for e in entries]}, pretty=args.pretty)
    return 0


def _handle_deps(args: argparse.Namespace) -> int:
    """deps：依赖解析报告。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    resolution = manager.resolve_dependencies()
    _dump_json_to_stdout(resolution.to_jsonable(), pretty=args.pretty)
    return 0 if resolution.success else 10


def _handle_conflicts(args: argparse.Namespace) -> int:
    """conflicts：全部 trigger 冲突（以 warning 级 issue 输出）。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    conflicts = manager.get_all_conflicts()
    _dump_json_to_stdout(
        {"conflicts": _issues_to_jsonable([c.to_issue() for c in conflicts])},
        pretty=args.pretty,
    )
    return 12 if conflicts else 0


def _handle_stats(args: argparse.Namespace) -> int:
    """stats：registry 统计。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    _dump_json_to_stdout(manager.get_stats().to_jsonable(), pretty=args.pretty)
    return 0


def _handle_export(args: argparse.Namespace) -> int:
    """export：导出为 JSON（`--out` 写文件，否则输出到 stdout）。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    data = manager.export_skills(args.ids or None)
    if args.out is None:
        _dump_json_to_stdout(data, pretty=args.pretty)
        return 0
    out = _resolve_path(Path(args.workspace_root).expanduser().resolve(), args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    _dump_json_to_stdout({"out": str(out), "count": len(data["skills"])}, pretty=args.pretty)
    return 0


def _handle_import(args: argparse.Namespace) -> int:
    """import：从 export 产物导入（先加载 `--dir`，便于检查依赖关系）。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    path = _resolve_path(Path(args.workspace_root).expanduser().resolve(), args.file)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("import file root must be an object")
        result = manager.import_skills(data, source=args.source)
    except (OSError, ValueError) as exc:
        issue = FrameworkIssue(code="SKILL_IMPORT_INVALID", message=str(exc), details={"path": str(path)})
        _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable([issue])}, pretty=args.pretty)
        return 10
    except FrameworkError as exc:
        _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable([exc.to_issue()])}, pretty=args.pretty)
        return 10
    _dump_json_to_stdout(
        {"ok": not result.failed, "imported": result.imported, "failed": json_sanitize(result.failed)},
        pretty=args.pretty,
    )
    return 10 if result.failed else 0


async def _run_watch(manager: SkillManager, *, duration: Optional[float]) -> int:
    """启动热加载，逐行输出事件；duration 为 None 时一直运行直到被中断。"""

    def _print_event(event: HotReloadEvent) -> None:
        """每个事件一行 JSON。"""

        _dump_json_to_stdout(event.to_jsonable(), pretty=False)

    manager.on("event", _print_event)
    try:
        await manager.start_hot_reload()
    except WatchError as exc:
        _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable([exc.to_issue()])}, pretty=False)
        await manager.aclose()
        return 2
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
            await manager.hot_reload.wait_idle(timeout=max(1.0, duration))
    finally:
        await manager.aclose()
    return 0


def _handle_watch(args: argparse.Namespace) -> int:
    """watch：热加载 `--duration` 秒。"""

    manager, _report, code = _build_manager(args)
    if manager is None:
        return code
    try:
        return asyncio.run(_run_watch(manager, duration=args.duration))
    except KeyboardInterrupt:
        return 0


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="skills-registry",
        description="Skills Registry CLI（load/lookup/deps/conflicts/stats/export/import/watch）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--dir", action="append", default=[], help="Skills directory (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument(
            "--log-level",
            default="WARNING",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Log level for stderr logging (default: WARNING).",
        )

    load = root_sub.add_parser("load", help="Load skills directories and report issues")
    _add_common_flags(load)

    lookup = root_sub.add_parser("lookup", help="Look up skills by trigger, text or category")
    _add_common_flags(lookup)
    group = lookup.add_mutually_exclusive_group()
    group.add_argument("--trigger", default=None, help="Exact trigger (e.g. /review).")
    group.add_argument("--search", default=None, help="Full-text query.")
    group.add_argument("--category", default=None, help="Skill category.")
    lookup.add_argument("--limit", type=int, default=None, help="Max results for --search (>=1).")

    deps = root_sub.add_parser("deps", help="Resolve skill dependencies")
    _add_common_flags(deps)

    conflicts = root_sub.add_parser("conflicts", help="List trigger conflicts")
    _add_common_flags(conflicts)

    stats = root_sub.add_parser("stats", help="Registry statistics")
    _add_common_flags(stats)

    export = root_sub.add_parser("export", help="Export skills as JSON")
    _add_common_flags(export)
    export.add_argument("--id", dest="ids", action="append", default=[], help="Skill id to export (repeatable).")
    export.add_argument("--out", default=None, help="Output file (default: stdout).")

    imp = root_sub.add_parser("import", help="Import skills from an export JSON file")
    _add_common_flags(imp)
    imp.add_argument("file", help="Export JSON file path.")
    imp.add_argument("--source", default="user", help="Source recorded for imported skills (default: user).")

    watch = root_sub.add_parser("watch", help="Hot reload skills directories and print events")
    _add_common_flags(watch)
    watch.add_argument("--duration", type=float, default=None, help="Seconds to watch (default: until Ctrl-C).")

    return parser


_HANDLERS = {
    "load": _handle_load,
    "lookup": _handle_lookup,
    "deps": _handle_deps,
    "conflicts": _handle_conflicts,
    "stats": _handle_stats,
    "export": _handle_export,
    "import": _handle_import,
    "watch": _handle_watch,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse 的约定：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return _HANDLERS[args.command](args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
