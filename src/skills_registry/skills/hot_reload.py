"""
HotReloadManager：监听 skill 目录并把变更同步到 SkillRegistry。

流水线（每个原始事件）：
1. observer 线程收到 add/change/unlink → `loop.call_soon_threadsafe` 切回事件循环线程；
2. 非候选文件/命中忽略规则的路径直接丢弃；
3. 按路径 debounce（重复事件重置计时器；`add` 后的 `change` 仍记为 `add`，其余以最后一次为准）；
4. 计时器触发后获取该路径的租约锁（有硬过期时间）；已被持有则丢弃本次事件（debug 日志）；
5. 在租约内分派：add/change → 在 worker 线程解析 → 注册；unlink → 按路径注销；
6. `finally` 中释放租约（过期后用旧 token 释放是 no-op）。

状态机：`idle → starting → watching → stopping → idle`。

约束：
- Registry 只在事件循环线程内被修改；
- `stop()` 不等待进行中的 handler（它们完成后释放的租约 token 已失效）；
- 热加载只调用 Parser，不调用 Migrator（旧格式文件以 error 事件出现）。
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Dict, List, Literal, Optional, Set, Tuple, Union

from skills_registry.config.loader import HotReloadConfig, LoaderConfig
from skills_registry.core.errors import DependencyError, WatchError
from skills_registry.core.events import EventEmitter
from skills_registry.skills.loader import SkillLoader
from skills_registry.skills.models import HotReloadEvent, HotReloadStats, RegistryEntry
from skills_registry.skills.parser import SkillParser
from skills_registry.skills.paths import determine_source, is_ignored, is_skill_file, resolve_watch_paths
from skills_registry.skills.registry import SkillRegistry
from skills_registry.skills.watcher import SubscriptionFactory, WatchSubscription, watchdog_subscription_factory

logger = logging.getLogger(__name__)

WatchState = Literal["idle", "starting", "watching", "stopping"]
RawKind = Literal["add", "change", "unlink"]


class _LeaseLock:
    """
    按路径的租约锁（事件循环线程内使用）。

    说明：
    - acquire 返回 token；已被持有返回 None（不等待）；
    - 租约在 timeout 后自动过期（防止 handler 卡死导致路径永久被锁）；
    - release 只在 token 仍匹配时生效。
    """

    def __init__(self, timeout_s: float) -> None:
        """timeout_s：租约硬过期时间（秒）。"""

        self._timeout_s = timeout_s
        self._held: Dict[str, Tuple[int, asyncio.TimerHandle]] = {}
        self._tokens = itertools.count(1)

    def acquire(self, key: str) -> Optional[int]:
        """尝试获取租约。"""

        if key in self._held:
            return None
        token = next(self._tokens)
        handle = asyncio.get_running_loop().call_later(self._timeout_s, self._expire, key, token)
        self._held[key] = (token, handle)
        return token

    def release(self, key: str, token: int) -> bool:
        """释放租约；token 不匹配（已过期或已被重置）时返回 False。"""

        cur = self._held.get(key)
        if cur is None or cur[0] != token:
            return False
        cur[1].cancel()
        del self._held[key]
        return True

    def is_held(self, key: str) -> bool:
        """路径当前是否被持有。"""

        return key in self._held

    def release_all(self) -> None:
        """释放全部租约（stop 时调用）。"""

        for _token, handle in self._held.values():
            handle.cancel()
        self._held.clear()

    def _expire(self, key: str, token: int) -> None:
        """租约到期。"""

        cur = self._held.get(key)
        if cur is not None and cur[0] == token:
            del self._held[key]
            logger.warning("Lease for %s expired before release", key)


def _merge_kinds(pending: Optional[RawKind], incoming: RawKind) -> RawKind:
    """
    合并同一 debounce 窗口内的原始事件。

    规则：
    - `add` 之后的 `change` 仍是 `add`（新建文件通常紧跟一次写入）；
    - 其它情况以最后一次为准（`unlink → add` 得到 `add`，`add → unlink` 得到 `unlink`）。
    """

    if pending == "add" and incoming == "change":
        return "add"
    return incoming


class HotReloadManager(EventEmitter):
    """
    热加载管理器。

    参数：
    - registry：被同步的 SkillRegistry（一个 registry 只应挂一个 manager）
    - config：HotReloadConfig；None 表示默认值
    - parser：单文件解析器（默认 SkillParser()）
    - loader：初始扫描用的枚举器（默认按 config 构造）
    - subscription_factory：监听订阅工厂（默认 watchdog；测试可注入内存实现）
    - workspace_root：解析相对 watch 路径的基准目录（默认 cwd）

    事件：
    - `add` / `change` / `unlink` / `error` / `ready`（参数为 HotReloadEvent），以及全量 `event`
    """

    def __init__(
        self,
        registry: SkillRegistry,
        *,
        config: Optional[HotReloadConfig] = None,
        parser: Optional[SkillParser] = None,
        loader: Optional[SkillLoader] = None,
        subscription_factory: Optional[SubscriptionFactory] = None,
        workspace_root: Optional[Path] = None,
    ) -> None:
        """未显式传入的组件按 config 默认值构造。"""

        super().__init__()
        self._registry = registry
        self._config = config or HotReloadConfig()
        self._parser = parser or SkillParser()
        self._loader = loader or SkillLoader(
            LoaderConfig(recursive=self._config.recursive, auto_migrate=False),
            parser=self._parser,
            ignored=self._config.ignored,
        )
        self._factory: SubscriptionFactory = subscription_factory or watchdog_subscription_factory
        self._paths: List[Path] = resolve_watch_paths(self._config, workspace_root=workspace_root)
        self._builtin_dirs = [Path(p).expanduser() for p in self._config.builtin_dirs]

        self._state: WatchState = "idle"
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[WatchSubscription] = None
        # 每次 start/stop 递增；旧订阅/旧计时器带着旧代号的事件一律丢弃
        self._generation = 0
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending: Dict[str, RawKind] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._held_events: Optional[List[Tuple[RawKind, str]]] = None
        self._known_files: Set[str] = set()
        self._leases = _LeaseLock(self._config.lock_timeout_ms / 1000.0)
        self._stats = HotReloadStats()

    @property
    def config(self) -> HotReloadConfig:
        """当前配置。"""

        return self._config

    @property
    def state(self) -> WatchState:
        """生命周期状态。"""

        return self._state

    @property
    def is_watching(self) -> bool:
        """是否处于 watching 状态。"""

        return self._state == "watching"

    # ----------------------------
    # Lifecycle
    # ----------------------------

    async def start(self) -> None:
        """
        启动监听。

        说明：
        - 已在 watching/starting 时为 no-op；
        - 订阅 ready 后 emit `ready`，随后（除非 ignore_initial）按枚举顺序处理已有文件；
        - 初始扫描期间到达的实时事件先暂存，扫描结束后按到达顺序回放。

        异常：
        - WatchError：订阅启动失败（状态回到 idle）
        """

        if self._state in ("watching", "starting"):
            return
        if self._state == "stopping":
            raise WatchError("Cannot start while stopping.", paths=[str(p) for p in self._paths])

        self._state = "starting"
        self._loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        paths = list(self._paths)
        self._held_events = None if self._config.ignore_initial else []

        try:
            subscription = self._factory(
                paths,
                recursive=self._config.recursive,
                on_event=partial(self._on_raw_threadsafe, generation),
                on_error=partial(self._on_error_threadsafe, generation),
            )
            subscription.start()
        except WatchError:
            self._reset_after_failed_start()
            raise
        except Exception as exc:
            self._reset_after_failed_start()
            raise WatchError(
                "Failed to start file watcher.",
                paths=[str(p) for p in paths],
                reason=f"{type(exc).__name__}: {exc}",
            ) from exc

        self._subscription = subscription
        self._state = "watching"
        self._stats.is_watching = True
        logger.info("Hot reload watching %d path(s)", len(paths))
        ready = HotReloadEvent(type="ready", file_path=os.pathsep.join(str(p) for p in paths), timestamp=time.time())
        self._emit_event(ready)

        if self._config.ignore_initial:
            return
        try:
            await self._initial_scan(paths, generation)
        finally:
            held, self._held_events = self._held_events or [], None
            if generation == self._generation:
                for kind, path in held:
                    self._on_raw(generation, kind, path)

    async def stop(self) -> None:
        """
        停止监听（未启动时调用也是安全的）。

        说明：
        - 取消全部 debounce 计时器，释放全部租约，关闭订阅；
        - 不等待进行中的 handler。
        """

        if self._state == "idle" and self._subscription is None:
            return
        self._state = "stopping"
        self._generation += 1
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()
        self._held_events = None
        self._leases.release_all()

        subscription, self._subscription = self._subscription, None
        try:
            if subscription is not None:
                await asyncio.to_thread(subscription.close)
        finally:
            self._state = "idle"
            self._stats.is_watching = False
            logger.info("Hot reload stopped")

    async def restart(self) -> None:
        """stop + start。"""

        await self.stop()
        await self.start()

    async def add_watch_path(self, path: Union[str, Path]) -> None:
        """追加监听目录；watching 时立即订阅并扫描其中已有文件。"""

        p = Path(path).expanduser().resolve(strict=False)
        if p in self._paths:
            return
        self._paths.append(p)
        if self._state != "watching" or self._subscription is None:
            return
        self._subscription.add_path(p)
        if not self._config.ignore_initial:
            await self._initial_scan([p], self._generation)

    async def remove_watch_path(self, path: Union[str, Path]) -> None:
        """移除监听目录（已注册的 skill 保留）。"""

        p = Path(path).expanduser().resolve(strict=False)
        if p not in self._paths:
            return
        self._paths.remove(p)
        if self._subscription is not None:
            self._subscription.remove_path(p)

    def get_watched_paths(self) -> List[str]:
        """当前监听目录列表。"""

        return [str(p) for p in self._paths]

    async def scan_file(self, path: Union[str, Path]) -> Optional[HotReloadEvent]:
        """
        手动处理单个文件（等价于一次不经 debounce 的 add）。

        返回：
        - 产生的事件；路径被租约占用时返回 None
        """

        key = str(Path(path).expanduser().resolve(strict=False))
        return await self._process(key, "add")

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """等待全部 debounce 计时器与进行中的 handler 结束（测试/CLI 使用）。"""

        async def _drain() -> None:
            """循环等待直到没有计时器与任务。"""

            while self._timers or self._tasks:
                if self._tasks:
                    await asyncio.gather(*list(self._tasks), return_exceptions=True)
                else:
                    await asyncio.sleep(0.01)

        await asyncio.wait_for(_drain(), timeout)

    def get_stats(self) -> HotReloadStats:
        """统计快照。"""

        return replace(
            self._stats,
            watched_files=len(self._known_files),
            registered_skills=self._registry.size(),
            is_watching=self._state == "watching",
        )

    # ----------------------------
    # Raw events
    # ----------------------------

    def _on_raw_threadsafe(self, generation: int, kind: RawKind, path: str) -> None:
        """observer 线程回调：切回事件循环线程。"""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_raw, generation, kind, path)
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s event for %s", kind, path)

    def _on_error_threadsafe(self, generation: int, path: str, exc: BaseException) -> None:
        """observer 线程的订阅错误：切回事件循环线程后以 error 事件上报。"""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_subscription_error, generation, path, exc)
        except RuntimeError:
            logger.debug("Event loop closed, dropping watcher error for %s", path)

    def _on_subscription_error(self, generation: int, path: str, exc: BaseException) -> None:
        """订阅运行期错误不拆除 manager，只计数并上报。"""

        if generation != self._generation:
            return
        self._stats.total_errors += 1
        self._emit_event(
            HotReloadEvent(type="error", file_path=path, timestamp=time.time(), error=f"Watch error: {exc}")
        )

    def _on_raw(self, generation: int, kind: RawKind, path: str) -> None:
        """事件循环线程：过滤 → 暂存（初始扫描中）或 debounce。"""

        if generation != self._generation or self._state != "watching":
            return
        if not self._accepts(path):
            return
        if self._held_events is not None:
            self._held_events.append((kind, path))
            return
        self._debounce(generation, kind, path)

    def _accepts(self, path: str) -> bool:
        """是否为需要处理的候选文件。"""

        return is_skill_file(path) and not is_ignored(path, self._paths, self._config.ignored)

    def _debounce(self, generation: int, kind: RawKind, path: str) -> None:
        """重置该路径的计时器，并合并窗口内的 kind（见 `_merge_kinds`）。"""

        assert self._loop is not None
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        self._pending[path] = _merge_kinds(self._pending.get(path), kind)
        self._timers[path] = self._loop.call_later(
            self._config.debounce_ms / 1000.0, self._fire, generation, path
        )

    def _fire(self, generation: int, path: str) -> None:
        """debounce 到期：调度一次处理任务。"""

        self._timers.pop(path, None)
        kind = self._pending.pop(path, None)
        if kind is None or generation != self._generation:
            return
        assert self._loop is not None
        task = self._loop.create_task(self._process(path, kind))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ----------------------------
    # Dispatch
    # ----------------------------

    async def _initial_scan(self, paths: List[Path], generation: int) -> None:
        """按枚举顺序逐个处理已有文件（不经 debounce）。"""

        files = await asyncio.to_thread(self._loader.enumerate, paths)
        logger.debug("Initial scan found %d skill file(s)", len(files))
        for file in files:
            if generation != self._generation:
                return
            key = str(file)
            if not self._accepts(key):
                continue
            await self._process(key, "add")

    async def _process(self, path: str, kind: RawKind) -> Optional[HotReloadEvent]:
        """在租约内处理一次事件。"""

        token = self._leases.acquire(path)
        if token is None:
            logger.debug("Dropping %s event for %s: path is locked", kind, path)
            return None
        try:
            if kind == "unlink":
                return self._handle_unlink(path)
            return await self._handle_upsert(path, kind)
        except Exception as exc:
            logger.warning("Hot reload handler failed for %s", path, exc_info=True)
            self._stats.total_errors += 1
            return self._emit_event(
                HotReloadEvent(type="error", file_path=path, timestamp=time.time(), error=f"{type(exc).__name__}: {exc}")
            )
        finally:
            self._leases.release(path, token)

    async def _handle_upsert(self, path: str, kind: RawKind) -> HotReloadEvent:
        """
        add/change：解析（worker 线程）→ 注册。

        说明：
        - `previous_entry` 取该文件路径此前对应的条目（按路径，而非按 id）；
        - 文件内 id 被改名时先注销旧 id；旧 id 仍被依赖则转为 error 事件，registry 保持不变。
        """

        result = await asyncio.to_thread(self._parser.parse_file, path)
        if not result.success or result.skill is None:
            self._stats.total_errors += 1
            logger.debug("Failed to parse %s: %s", path, result.error)
            return self._emit_event(
                HotReloadEvent(
                    type="error", file_path=path, timestamp=time.time(), error=result.error or "Parse failed."
                )
            )

        self._known_files.add(path)
        skill = result.skill
        entry: Optional[RegistryEntry] = None
        previous = self._registry.get_by_path(path)
        if self._config.auto_register:
            if previous is not None and previous.id != skill.id:
                try:
                    self._registry.unregister(previous.id)
                except DependencyError as exc:
                    self._stats.total_errors += 1
                    return self._emit_event(
                        HotReloadEvent(
                            type="error", file_path=path, timestamp=time.time(), entry=previous, error=exc.message
                        )
                    )
                logger.debug("Skill id in %s renamed: %s -> %s", path, previous.id, skill.id)
            entry = self._registry.register(skill, path, determine_source(path, self._builtin_dirs))

        event_type: Literal["add", "change"] = "change" if kind == "change" else "add"
        if event_type == "change":
            self._stats.total_changes += 1
        else:
            self._stats.total_adds += 1
        return self._emit_event(
            HotReloadEvent(
                type=event_type, file_path=path, timestamp=time.time(), entry=entry, previous_entry=previous
            )
        )

    def _handle_unlink(self, path: str) -> HotReloadEvent:
        """unlink：按路径注销；被依赖时转为 error 事件并保留条目。"""

        self._known_files.discard(path)
        entry = self._registry.get_by_path(path)
        if entry is not None and self._config.auto_unregister:
            try:
                self._registry.unregister_by_path(path)
            except DependencyError as exc:
                self._stats.total_errors += 1
                return self._emit_event(
                    HotReloadEvent(type="error", file_path=path, timestamp=time.time(), entry=entry, error=exc.message)
                )
        self._stats.total_unlinks += 1
        return self._emit_event(HotReloadEvent(type="unlink", file_path=path, timestamp=time.time(), entry=entry))

    def _emit_event(self, event: HotReloadEvent) -> HotReloadEvent:
        """记录并分发事件（具体类型 + 全量 `event`）。"""

        self._stats.last_event_at = event.timestamp
        if self._config.verbose:
            logger.info("[hot-reload] %s %s%s", event.type, event.file_path, f" ({event.error})" if event.error else "")
        self.emit(event.type, event)
        self.emit("event", event)
        return event

    def _reset_after_failed_start(self) -> None:
        """启动失败：回到 idle。"""

        self._state = "idle"
        self._held_events = None
        self._stats.is_watching = False
