from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import pytest

from skills_registry.config.loader import HotReloadConfig
from skills_registry.core.errors import WatchError
from skills_registry.skills.hot_reload import HotReloadManager, _LeaseLock
from skills_registry.skills.models import HotReloadEvent
from skills_registry.skills.registry import SkillRegistry


class FakeSubscription:
    """内存监听订阅：测试直接调用 `emit` 模拟文件系统事件。"""

    def __init__(
        self,
        paths: Sequence[Path],
        *,
        recursive: bool,
        on_event: Callable[[str, str], None],
        on_error: Optional[Callable[[str, BaseException], None]] = None,
        fail: bool = False,
    ) -> None:
        """记录构造参数。"""

        self.paths = list(paths)
        self.recursive = recursive
        self.on_event = on_event
        self.on_error = on_error
        self.fail = fail
        self.started = False
        self.closed = False

    def start(self) -> None:
        """fail=True 时模拟订阅启动失败。"""

        if self.fail:
            raise OSError("inotify watch limit reached")
        self.started = True

    def add_path(self, path: Path) -> None:
        """追加路径。"""

        self.paths.append(path)

    def remove_path(self, path: Path) -> None:
        """移除路径。"""

        self.paths.remove(path)

    def close(self) -> None:
        """关闭。"""

        self.closed = True

    def emit(self, kind: str, path: Path) -> None:
        """投递一个原始事件。"""

        self.on_event(kind, str(path))


class FakeFactory:
    """记录创建过的订阅。"""

    def __init__(self, *, fail: bool = False) -> None:
        """fail 透传给每个订阅。"""

        self.fail = fail
        self.created: List[FakeSubscription] = []

    def __call__(self, paths: Sequence[Path], **kwargs: Any) -> FakeSubscription:
        """工厂入口。"""

        sub = FakeSubscription(paths, fail=self.fail, **kwargs)
        self.created.append(sub)
        return sub


def _write_skill(dir_path: Path, skill_id: str, *, deps: Sequence[str] = (), body: str = "Do the thing.") -> Path:
    """写入 SKILL.md fixture。"""

    dir_path.mkdir(parents=True, exist_ok=True)
    lines = ["---", f"name: {skill_id}", f'description: "{skill_id} skill"', "category: dev", "triggers:"]
    lines.append(f'  - "/{skill_id}"')
    if deps:
        lines.append("dependencies:")
        lines.extend(f"  - {d}" for d in deps)
    lines.extend(["---", body, ""])
    p = dir_path / "SKILL.md"
    p.write_text("\n".join(lines), encoding="utf-8")
    return p


def _manager(
    root: Path, factory: FakeFactory, *, ignore_initial: bool = False, registry: Optional[SkillRegistry] = None
) -> HotReloadManager:
    """创建只监听 root 的 HotReloadManager（debounce 缩短到 20ms）。"""

    config = HotReloadConfig(
        watch_paths=[str(root)],
        watch_home_skills=False,
        watch_local_skills=False,
        debounce_ms=20,
        ignore_initial=ignore_initial,
    )
    return HotReloadManager(
        registry if registry is not None else SkillRegistry(), config=config, subscription_factory=factory
    )


async def _settle(mgr: HotReloadManager) -> None:
    """让 call_soon_threadsafe 的回调先执行，再等 debounce 与 handler 结束。"""

    await asyncio.sleep(0.005)
    await mgr.wait_idle(timeout=2)


def test_start_emits_ready_then_initial_scan_in_enumeration_order(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    _write_skill(root / "beta", "beta")
    _write_skill(root / "alpha", "alpha")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """启动并停止。"""

        await mgr.start()
        assert mgr.state == "watching"
        await mgr.stop()

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready", "add", "add"]
    assert events[0].file_path == os.pathsep.join([str(root)])
    assert [e.entry.id for e in events[1:]] == ["alpha", "beta"]
    assert registry.get_ids() == ["alpha", "beta"]
    assert factory.created[0].started is True
    assert factory.created[0].closed is True


def test_debounce_coalesces_rapid_events_into_one_handler_run(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint")
    factory = FakeFactory()
    mgr = _manager(root, factory, ignore_initial=True)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """同一路径连续 5 次 change。"""

        await mgr.start()
        for _ in range(5):
            factory.created[0].emit("change", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready", "change"]
    assert events[1].entry is not None and events[1].entry.id == "lint"
    assert mgr.get_stats().total_changes == 1


def test_change_event_carries_previous_entry(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint", body="v1 body")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    changes: List[HotReloadEvent] = []
    mgr.on("change", changes.append)

    async def _run() -> None:
        """初始扫描后修改正文。"""

        await mgr.start()
        _write_skill(root / "lint", "lint", body="v2 body")
        factory.created[0].emit("change", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert len(changes) == 1
    assert changes[0].previous_entry is not None
    assert changes[0].previous_entry.skill.template == "v1 body"
    assert registry.get_by_id("lint").skill.template == "v2 body"


def test_non_candidate_and_ignored_paths_are_dropped(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    factory = FakeFactory()
    mgr = _manager(root, factory, ignore_initial=True)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """投递若干不该处理的路径。"""

        await mgr.start()
        sub = factory.created[0]
        sub.emit("add", root / "notes.txt")
        sub.emit("add", root / "node_modules" / "x" / "SKILL.md")
        sub.emit("add", root / "lint" / ".SKILL.md.swp")
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready"]


def test_parse_failure_becomes_error_event(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    bad = root / "broken" / "SKILL.md"
    bad.parent.mkdir(parents=True)
    bad.write_text("no front matter here\n", encoding="utf-8")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    errors: List[HotReloadEvent] = []
    mgr.on("error", errors.append)

    async def _run() -> None:
        """初始扫描遇到坏文件。"""

        await mgr.start()
        await mgr.stop()

    asyncio.run(_run())

    assert len(errors) == 1
    assert errors[0].file_path == str(bad)
    assert "front-matter" in (errors[0].error or "")
    assert registry.size() == 0
    assert mgr.get_stats().total_errors == 1


def test_unlink_unregisters_by_path(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    unlinks: List[HotReloadEvent] = []
    mgr.on("unlink", unlinks.append)

    async def _run() -> None:
        """删除文件后投递 unlink。"""

        await mgr.start()
        path.unlink()
        factory.created[0].emit("unlink", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert registry.size() == 0
    assert len(unlinks) == 1
    assert unlinks[0].entry is not None and unlinks[0].entry.id == "lint"


def test_unlink_of_depended_upon_skill_is_reported_and_kept(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    base = _write_skill(root / "a-base", "base")
    _write_skill(root / "b-user", "user", deps=["base"])
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    errors: List[HotReloadEvent] = []
    mgr.on("error", errors.append)

    async def _run() -> None:
        """删除被依赖的 skill 文件。"""

        await mgr.start()
        factory.created[0].emit("unlink", base)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert registry.has("base")
    assert len(errors) == 1
    assert "depended upon by: user" in (errors[0].error or "")


def test_locked_path_drops_event(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, ignore_initial=True, registry=registry)

    async def _run() -> Optional[HotReloadEvent]:
        """租约被占用时 scan_file 直接返回 None。"""

        await mgr.start()
        token = mgr._leases.acquire(str(path))
        assert token is not None
        try:
            return await mgr.scan_file(path)
        finally:
            mgr._leases.release(str(path), token)
            await mgr.stop()

    assert asyncio.run(_run()) is None
    assert registry.size() == 0


def test_lease_lock_is_exclusive_per_path() -> None:
    async def _run() -> None:
        """同一路径只能被持有一次；不同路径互不影响。"""

        lock = _LeaseLock(5.0)
        token = lock.acquire("/a")
        assert token is not None
        assert lock.acquire("/a") is None
        assert lock.acquire("/b") is not None
        assert lock.release("/a", token + 100) is False
        assert lock.release("/a", token) is True
        assert lock.acquire("/a") is not None
        lock.release_all()
        assert not lock.is_held("/a") and not lock.is_held("/b")

    asyncio.run(_run())


def test_lease_expires_and_stale_release_is_noop() -> None:
    async def _run() -> None:
        """过期后旧 token 释放无效，新持有者不受影响。"""

        lock = _LeaseLock(0.01)
        stale = lock.acquire("/a")
        assert stale is not None
        await asyncio.sleep(0.05)
        assert lock.is_held("/a") is False
        fresh = lock.acquire("/a")
        assert fresh is not None and fresh != stale
        assert lock.release("/a", stale) is False
        assert lock.is_held("/a") is True

    asyncio.run(_run())


def test_start_failure_leaves_manager_idle(tmp_path: Path) -> None:
    mgr = _manager((tmp_path / "skills").resolve(), FakeFactory(fail=True))

    async def _run() -> None:
        """订阅启动失败。"""

        with pytest.raises(WatchError) as excinfo:
            await mgr.start()
        assert excinfo.value.code == "SKILL_WATCH_FAILED"
        assert "inotify" in excinfo.value.details["reason"]

    asyncio.run(_run())

    assert mgr.state == "idle"
    assert mgr.is_watching is False


def test_stop_is_safe_and_drops_late_events(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, ignore_initial=True, registry=registry)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """未启动时 stop 无副作用；stop 之后旧订阅的事件被丢弃。"""

        await mgr.stop()
        await mgr.start()
        sub = factory.created[0]
        sub.emit("add", path)
        await mgr.stop()
        sub.emit("add", path)
        await asyncio.sleep(0.1)

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready"]
    assert registry.size() == 0
    assert mgr.state == "idle"


def test_start_is_noop_while_watching(tmp_path: Path) -> None:
    factory = FakeFactory()
    mgr = _manager((tmp_path / "skills").resolve(), factory, ignore_initial=True)

    async def _run() -> None:
        """重复 start 不创建新订阅。"""

        await mgr.start()
        await mgr.start()
        await mgr.stop()

    asyncio.run(_run())

    assert len(factory.created) == 1


def test_add_watch_path_scans_existing_files(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    extra = (tmp_path / "more" / "skills").resolve()
    _write_skill(extra / "docs", "docs")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)

    async def _run() -> None:
        """运行期追加目录。"""

        await mgr.start()
        await mgr.add_watch_path(extra)
        await mgr.stop()

    asyncio.run(_run())

    assert registry.has("docs")
    assert str(extra) in mgr.get_watched_paths()
    assert extra in factory.created[0].paths


def test_created_then_modified_file_is_reported_as_add(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "fresh", "fresh")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, ignore_initial=True, registry=registry)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """新建文件：watchdog 先报 created 再报 modified。"""

        await mgr.start()
        factory.created[0].emit("add", path)
        factory.created[0].emit("change", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready", "add"]
    assert registry.has("fresh")
    stats = mgr.get_stats()
    assert stats.total_adds == 1 and stats.total_changes == 0


def test_unlink_then_add_within_window_is_reported_as_add(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "lint", "lint")
    factory = FakeFactory()
    mgr = _manager(root, factory, ignore_initial=True)
    events: List[HotReloadEvent] = []
    mgr.on("event", events.append)

    async def _run() -> None:
        """编辑器原子保存：旧文件被替换。"""

        await mgr.start()
        factory.created[0].emit("unlink", path)
        factory.created[0].emit("add", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert [e.type for e in events] == ["ready", "add"]


def test_id_rename_in_same_file_replaces_old_entry(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    path = _write_skill(root / "x", "old-id")
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    changes: List[HotReloadEvent] = []
    mgr.on("change", changes.append)

    async def _run() -> None:
        """改名后再删除文件。"""

        await mgr.start()
        _write_skill(root / "x", "new-id")
        factory.created[0].emit("change", path)
        await _settle(mgr)
        assert registry.get_ids() == ["new-id"]
        assert registry.get_by_path(str(path)).id == "new-id"
        path.unlink()
        factory.created[0].emit("unlink", path)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert len(changes) == 1
    assert changes[0].previous_entry is not None and changes[0].previous_entry.id == "old-id"
    assert changes[0].entry is not None and changes[0].entry.id == "new-id"
    assert registry.size() == 0


def test_id_rename_blocked_by_dependents_is_reported_and_kept(tmp_path: Path) -> None:
    root = (tmp_path / "skills").resolve()
    base = _write_skill(root / "a-base", "base")
    _write_skill(root / "b-user", "user", deps=["base"])
    factory = FakeFactory()
    registry = SkillRegistry()
    mgr = _manager(root, factory, registry=registry)
    errors: List[HotReloadEvent] = []
    mgr.on("error", errors.append)

    async def _run() -> None:
        """被依赖 skill 的文件改了 id。"""

        await mgr.start()
        _write_skill(root / "a-base", "renamed")
        factory.created[0].emit("change", base)
        await _settle(mgr)
        await mgr.stop()

    asyncio.run(_run())

    assert len(errors) == 1
    assert "depended upon by: user" in (errors[0].error or "")
    assert errors[0].entry is not None and errors[0].entry.id == "base"
    assert registry.has("base") and not registry.has("renamed")
    assert registry.get_by_path(str(base)).id == "base"
