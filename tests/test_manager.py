from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pytest

from skills_registry.config.loader import HotReloadConfig, LoaderConfig, SkillsRegistryConfig
from skills_registry.core.errors import DependencyError, UserError
from skills_registry.skills.manager import SkillManager
from skills_registry.skills.models import Skill
from skills_registry.skills.registry import SkillRegistry


def _skill(skill_id: str, *, deps: Sequence[str] = (), triggers: Sequence[str] = ()) -> Skill:
    """构造最小 Skill fixture。"""

    return Skill.model_validate(
        {
            "id": skill_id,
            "version": "1.2.3",
            "metadata": {
                "name": {"en": skill_id, "zh-CN": f"技能 {skill_id}"},
                "description": "demo",
                "category": "testing",
                "tags": ["demo"],
            },
            "triggers": list(triggers or [f"/{skill_id}"]),
            "template": f"Template for {skill_id}",
            "config": {"allowed_tools": ["Read"], "timeout_seconds": 30},
            "dependencies": list(deps),
        }
    )


def _write_skill(dir_path: Path, skill_id: str) -> Path:
    """写入 SKILL.md fixture。"""

    dir_path.mkdir(parents=True, exist_ok=True)
    p = dir_path / "SKILL.md"
    p.write_text(
        "\n".join(["---", f"name: {skill_id}", "description: demo", f"triggers: [/{skill_id}]", "---", "body", ""]),
        encoding="utf-8",
    )
    return p


def _config(**loader: Any) -> SkillsRegistryConfig:
    """不监听 home/local 约定目录的配置。"""

    return SkillsRegistryConfig(
        loader=LoaderConfig(**loader),
        hot_reload=HotReloadConfig(watch_home_skills=False, watch_local_skills=False),
    )


def test_export_import_round_trip_preserves_skills() -> None:
    source = SkillManager(_config())
    source.register(_skill("base"), "/s/base.md")
    source.register(_skill("child", deps=["base"]), "/s/child.md")

    exported = source.export_skills()
    payload = json.loads(json.dumps(exported))

    target = SkillManager(_config())
    result = target.import_skills(payload)

    assert exported["format_version"] == "3.0.0"
    assert exported["exported_at"].endswith("Z")
    assert result.imported == ["base", "child"]
    assert result.failed == []
    for skill_id in ("base", "child"):
        assert target.get(skill_id).skill == source.get(skill_id).skill
        assert target.get(skill_id).file_path == f"import://{skill_id}"
    assert target.get_dependents("base") == ["child"]


def test_export_selected_ids_skips_unknown() -> None:
    mgr = SkillManager(_config())
    mgr.register(_skill("one"), "/s/one.md")
    mgr.register(_skill("two"), "/s/two.md")

    exported = mgr.export_skills(["two", "ghost"])

    assert [s["id"] for s in exported["skills"]] == ["two"]
    assert exported["skills"][0]["metadata"]["name"]["zh-CN"] == "技能 two"


def test_import_collects_per_item_failures() -> None:
    mgr = SkillManager(_config())
    good = _skill("good").to_dict()
    bad = dict(good, id="Not Valid")

    result = mgr.import_skills({"format_version": "3.0.0", "skills": [good, bad, "oops"]}, source="marketplace")

    assert result.imported == ["good"]
    assert [f["id"] for f in result.failed] == ["Not Valid", "<unknown>"]
    assert mgr.get("good").source == "marketplace"


@pytest.mark.parametrize(
    "data",
    [
        {"format_version": "2.0.0", "skills": []},
        {"skills": []},
        {"format_version": "3.0.0", "skills": {}},
    ],
)
def test_import_rejects_unsupported_payloads(data: Dict[str, Any]) -> None:
    with pytest.raises(UserError):
        SkillManager(_config()).import_skills(data)


def test_import_rejects_unknown_source() -> None:
    with pytest.raises(UserError):
        SkillManager(_config()).import_skills({"format_version": "3.0.0", "skills": []}, source="pirate")


def test_batch_operations_collect_failures() -> None:
    mgr = SkillManager(_config())
    mgr.register_batch([(_skill("a"), "/s/a.md"), (_skill("b", deps=["a"]), "/s/b.md", "builtin")])

    assert mgr.get("b").source == "builtin"
    assert mgr.disable_batch(["a", "ghost"]).failed == [{"id": "ghost", "error": "Skill not found or state unchanged"}]
    assert mgr.enable_batch(["a"]).success == ["a"]
    assert set(mgr.get_batch(["a", "b", "ghost"])) == {"a", "b"}

    result = mgr.unregister_batch(["a", "ghost", "b"])

    assert result.success == ["b"]
    assert [f["id"] for f in result.failed] == ["a", "ghost"]
    assert "depended upon by: b" in result.failed[0]["error"]
    assert result.failed[1]["error"] == "Skill not found"

    mgr.register(_skill("c", deps=["a"]), "/s/c.md")
    with pytest.raises(DependencyError):
        mgr.unregister("a")


def test_load_all_registers_with_sources(tmp_path: Path) -> None:
    root = tmp_path / "skills"
    _write_skill(root / "native", "native")
    legacy = root / "legacy.json"
    legacy.write_text(
        json.dumps({"id": "legacy", "name": {"en": "Legacy"}, "triggers": ["/legacy"], "template": "t"}),
        encoding="utf-8",
    )
    config = SkillsRegistryConfig(
        loader=LoaderConfig(directories=["skills"]),
        hot_reload=HotReloadConfig(watch_home_skills=False, watch_local_skills=False, builtin_dirs=[str(root)]),
    )
    mgr = SkillManager(config, workspace_root=tmp_path)

    report = mgr.load_all()

    assert sorted(report.registered) == ["legacy", "native"]
    assert report.issues == []
    assert mgr.get("native").source == "builtin"
    assert mgr.get("native").file_path == str(root / "native" / "SKILL.md")
    assert mgr.get("legacy").source == "migrated"
    assert mgr.get("legacy").original_version == "v1"


def test_on_routes_events_to_registry_and_hot_reload(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    _write_skill(root / "watched", "watched")
    config = SkillsRegistryConfig(
        hot_reload=HotReloadConfig(
            watch_paths=[str(root)], watch_home_skills=False, watch_local_skills=False, debounce_ms=10
        )
    )

    def _factory(paths: Any, **kwargs: Any) -> Any:
        """不产生实时事件的订阅。"""

        class _Quiet:
            """只满足订阅接口。"""

            def start(self) -> None:
                """no-op。"""

            def add_path(self, path: Path) -> None:
                """no-op。"""

            def remove_path(self, path: Path) -> None:
                """no-op。"""

            def close(self) -> None:
                """no-op。"""

        return _Quiet()

    registered: List[str] = []
    hot: List[str] = []

    async def _run() -> None:
        """经 facade 启停热加载。"""

        async with SkillManager(config, subscription_factory=_factory) as mgr:
            mgr.on("skill:registered", lambda e: registered.append(e.id))
            mgr.on("add", lambda ev: hot.append(ev.type))
            await mgr.start_hot_reload()
            assert mgr.get_hot_reload_stats().is_watching is True
            await mgr.stop_hot_reload()
            assert mgr.has("watched")
        assert mgr.size() == 0

    asyncio.run(_run())

    assert registered == ["watched"]
    assert hot == ["add"]


def test_injected_empty_registry_is_used() -> None:
    registry = SkillRegistry()
    seen: List[str] = []
    registry.on("skill:registered", lambda e: seen.append(e.id))

    mgr = SkillManager(_config(), registry=registry)
    mgr.register(_skill("solo"), "/s/solo.md")

    assert mgr.registry is registry
    assert registry.has("solo")
    assert seen == ["solo"]
