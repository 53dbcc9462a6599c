from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import pytest
import yaml

from skills_registry.config.defaults import CONFIG_PATHS_ENV


def _write_skill(
    dir_path: Path, skill_id: str, *, triggers: Sequence[str] = (), deps: Sequence[str] = ()
) -> Path:
    """写入最小 SKILL.md fixture。"""

    dir_path.mkdir(parents=True, exist_ok=True)
    lines = ["---", f"name: {skill_id}", f'description: "{skill_id} skill"', "triggers:"]
    lines.extend(f'  - "{t}"' for t in (triggers or [f"/{skill_id}"]))
    if deps:
        lines.append(f"dependencies: [{', '.join(deps)}]")
    lines.extend(["---", "body", ""])
    p = dir_path / "SKILL.md"
    p.write_text("\n".join(lines), encoding="utf-8")
    return p


def _run_cli(args: List[str], capsys) -> Tuple[int, Dict[str, Any], str]:  # type: ignore[no-untyped-def]
    """运行 CLI 并返回 (exit_code, parsed_json, raw_stdout)。"""

    from skills_registry.cli.main import main

    code = main(args)
    out = capsys.readouterr().out
    assert out.endswith("\n")
    return code, json.loads(out), out


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """清理 overlay env，避免本机环境变量影响测试。"""

    monkeypatch.delenv(CONFIG_PATHS_ENV, raising=False)


def _common(tmp_path: Path) -> List[str]:
    """公共 flags：workspace 为 tmp_path，skill 目录为 `skills/`。"""

    return ["--workspace-root", str(tmp_path), "--dir", "skills"]


def test_cli_load_ok(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "alpha", "alpha")
    _write_skill(tmp_path / "skills" / "beta", "beta")

    code, obj, _out = _run_cli(["load", *_common(tmp_path)], capsys)

    assert code == 0
    assert obj["ok"] is True
    assert obj["registered"] == ["alpha", "beta"]
    assert obj["issues"] == []
    assert obj["stats"]["total_scanned"] == 2


def test_cli_load_reports_issues_with_exit_10(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "alpha", "alpha")
    bad = tmp_path / "skills" / "broken" / "SKILL.md"
    bad.parent.mkdir(parents=True)
    bad.write_text("not a skill\n", encoding="utf-8")

    code, obj, _out = _run_cli(["load", *_common(tmp_path), "--pretty"], capsys)

    assert code == 10
    assert obj["registered"] == ["alpha"]
    assert [i["code"] for i in obj["issues"]] == ["SKILL_PARSE_FAILED"]


def test_cli_invalid_config_exits_2(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text(yaml.safe_dump({"hot_reload": {"debounce": 1}}), encoding="utf-8")

    code, obj, _out = _run_cli(["stats", *_common(tmp_path), "--config", "overlay.yaml"], capsys)

    assert code == 2
    assert obj["ok"] is False
    assert obj["issues"][0]["code"] == "CLI_CONFIG_INVALID"


def test_cli_missing_config_exits_2(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code, obj, _out = _run_cli(["stats", *_common(tmp_path), "--config", "nope.yaml"], capsys)

    assert code == 2
    assert obj["issues"][0]["code"] == "CLI_CONFIG_NOT_FOUND"


def test_cli_env_overlay_is_applied(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    overlay = tmp_path / "env.yaml"
    overlay.write_text(yaml.safe_dump({"loader": {"bogus": True}}), encoding="utf-8")
    monkeypatch.setenv(CONFIG_PATHS_ENV, str(overlay))

    code, obj, _out = _run_cli(["stats", *_common(tmp_path)], capsys)

    assert code == 2
    assert obj["issues"][0]["code"] == "CLI_CONFIG_INVALID"


def test_cli_lookup_by_trigger_orders_by_priority(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "low", "low", triggers=["/go"])
    high = _write_skill(tmp_path / "skills" / "high", "high", triggers=["/go"])
    high.write_text(high.read_text(encoding="utf-8").replace("triggers:", "priority: 9\ntriggers:"), encoding="utf-8")

    code, obj, _out = _run_cli(["lookup", *_common(tmp_path), "--trigger", "/go"], capsys)

    assert code == 0
    assert [s["id"] for s in obj["skills"]] == ["high", "low"]


def test_cli_lookup_search(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "code-review", "code-review")
    _write_skill(tmp_path / "skills" / "git-commit", "git-commit")

    code, obj, _out = _run_cli(["lookup", *_common(tmp_path), "--search", "commit"], capsys)

    assert code == 0
    assert [s["id"] for s in obj["skills"]] == ["git-commit"]


def test_cli_deps_reports_cycles_with_exit_10(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "a", "a", deps=["b"])
    _write_skill(tmp_path / "skills" / "b", "b", deps=["a"])
    _write_skill(tmp_path / "skills" / "c", "c")

    code, obj, _out = _run_cli(["deps", *_common(tmp_path)], capsys)

    assert code == 10
    assert obj["success"] is False
    assert obj["order"] == ["c"]
    assert len(obj["circular"]) == 1


def test_cli_deps_ok(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "a", "a")
    _write_skill(tmp_path / "skills" / "b", "b", deps=["a"])

    code, obj, _out = _run_cli(["deps", *_common(tmp_path)], capsys)

    assert code == 0
    assert obj["order"] == ["a", "b"]


def test_cli_conflicts_exit_12(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "one", "one", triggers=["/same"])
    _write_skill(tmp_path / "skills" / "two", "two", triggers=["/same"])

    code, obj, _out = _run_cli(["conflicts", *_common(tmp_path)], capsys)

    assert code == 12
    assert obj["conflicts"][0]["code"] == "SKILL_TRIGGER_CONFLICT"
    assert obj["conflicts"][0]["details"]["skill_ids"] == ["one", "two"]


def test_cli_stats(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "one", "one")

    code, obj, _out = _run_cli(["stats", *_common(tmp_path)], capsys)

    assert code == 0
    assert obj["total_skills"] == 1
    assert obj["by_source"]["user"] == 1


def test_cli_export_then_import(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _write_skill(tmp_path / "skills" / "one", "one")
    _write_skill(tmp_path / "skills" / "two", "two", deps=["one"])

    code, obj, _out = _run_cli(["export", *_common(tmp_path), "--out", "out/export.json"], capsys)
    assert code == 0
    assert obj["count"] == 2
    exported = json.loads((tmp_path / "out" / "export.json").read_text(encoding="utf-8"))
    assert exported["format_version"] == "3.0.0"

    code, obj, _out = _run_cli(["import", "out/export.json", "--workspace-root", str(tmp_path)], capsys)
    assert code == 0
    assert obj["imported"] == ["one", "two"]
    assert obj["failed"] == []


def test_cli_import_unsupported_version_exit_10(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    (tmp_path / "old.json").write_text(json.dumps({"format_version": "1.0.0", "skills": []}), encoding="utf-8")

    code, obj, _out = _run_cli(["import", "old.json", "--workspace-root", str(tmp_path)], capsys)

    assert code == 10
    assert obj["issues"][0]["code"] == "SKILL_IMPORT_UNSUPPORTED"


def test_cli_argparse_error_exit_2(capsys) -> None:  # type: ignore[no-untyped-def]
    from skills_registry.cli.main import main

    assert main(["frobnicate"]) == 2
    assert main(["lookup", "--trigger", "/a", "--search", "b"]) == 2
    capsys.readouterr()


def test_cli_watch_prints_one_line_per_event(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    from skills_registry.cli.main import main

    _write_skill(tmp_path / "skills" / "alpha", "alpha")

    code = main(["watch", *_common(tmp_path), "--duration", "0"])

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert code == 0
    assert [e["type"] for e in lines[:2]] == ["ready", "add"]
    assert lines[1]["entry"]["id"] == "alpha"
