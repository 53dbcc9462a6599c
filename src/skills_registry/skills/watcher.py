"""
文件监听订阅（watchdog 适配层）。

职责边界：
- 只把底层文件系统事件翻译为原始事件 `(kind, path)`，kind ∈ {add, change, unlink}；
- 回调发生在 watchdog observer 线程：调用方必须自行切回事件循环线程（HotReloadManager 使用
  `loop.call_soon_threadsafe`），本模块绝不触碰 Registry；
- 目录事件不上报（目录内文件的增删会各自产生文件事件）。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from skills_registry.core.errors import WatchError

logger = logging.getLogger(__name__)

RawEventSink = Callable[[str, str], None]
ErrorSink = Callable[[str, BaseException], None]


class WatchSubscription(Protocol):
    """监听订阅的最小接口（测试可注入内存实现）。"""

    def start(self) -> None:
        """开始监听；返回即视为 ready。失败抛 WatchError。"""

    def add_path(self, path: Path) -> None:
        """运行期追加监听路径。"""

    def remove_path(self, path: Path) -> None:
        """运行期移除监听路径。"""

    def close(self) -> None:
        """停止监听并释放底层资源（可重复调用）。"""


SubscriptionFactory = Callable[..., WatchSubscription]


def _decode(path: Any) -> str:
    """watchdog 的 src_path 可能是 bytes。"""

    return os.fsdecode(path)


class _ForwardingHandler(FileSystemEventHandler):
    """把 watchdog 事件转发为原始事件。"""

    def __init__(self, sink: RawEventSink) -> None:
        """sink：原始事件回调。"""

        super().__init__()
        self._sink = sink

    def on_created(self, event: FileSystemEvent) -> None:
        """created → add。"""

        if not event.is_directory:
            self._sink("add", _decode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        """modified → change。"""

        if not event.is_directory:
            self._sink("change", _decode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        """deleted → unlink。"""

        if not event.is_directory:
            self._sink("unlink", _decode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        """moved → 旧路径 unlink + 新路径 add（编辑器的原子保存也走这里）。"""

        if event.is_directory:
            return
        self._sink("unlink", _decode(event.src_path))
        dest = getattr(event, "dest_path", None)
        if dest:
            self._sink("add", _decode(dest))


class WatchdogSubscription:
    """
    基于 watchdog Observer 的监听订阅。

    参数：
    - paths：初始监听目录（不存在的目录跳过并记 debug 日志）
    - recursive：是否递归监听子目录
    - on_event：原始事件回调（在 observer 线程调用）
    - on_error：运行期错误回调（例如 add_path 失败）；None 时只记日志
    """

    def __init__(
        self,
        paths: Sequence[Path],
        *,
        recursive: bool,
        on_event: RawEventSink,
        on_error: Optional[ErrorSink] = None,
    ) -> None:
        """构造后不启动 observer，需显式调用 start()。"""

        self._paths = [Path(p) for p in paths]
        self._recursive = recursive
        self._handler = _ForwardingHandler(on_event)
        self._on_error = on_error
        self._observer: Optional[Any] = None
        self._watches: Dict[Path, Any] = {}

    def start(self) -> None:
        """启动 observer 并调度全部路径。"""

        observer = Observer()
        try:
            for path in self._paths:
                self._schedule(observer, path)
            observer.start()
        except (OSError, RuntimeError) as exc:
            self._watches.clear()
            raise WatchError(
                "Failed to start file watcher.",
                paths=[str(p) for p in self._paths],
                reason=f"{type(exc).__name__}: {exc}",
            ) from exc
        self._observer = observer
        logger.debug("Watching %d path(s): %s", len(self._watches), [str(p) for p in self._watches])

    def add_path(self, path: Path) -> None:
        """追加监听目录（未启动时只记录，启动时一并调度）。"""

        p = Path(path)
        if p not in self._paths:
            self._paths.append(p)
        if self._observer is None or p in self._watches:
            return
        try:
            self._schedule(self._observer, p)
        except OSError as exc:
            self._report(str(p), exc)

    def remove_path(self, path: Path) -> None:
        """移除监听目录。"""

        p = Path(path)
        if p in self._paths:
            self._paths.remove(p)
        watch = self._watches.pop(p, None)
        if watch is None or self._observer is None:
            return
        try:
            self._observer.unschedule(watch)
        except (KeyError, OSError) as exc:
            self._report(str(p), exc)

    def close(self) -> None:
        """停止 observer（不等待尚在排队的回调）。"""

        observer, self._observer = self._observer, None
        self._watches.clear()
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)

    def _schedule(self, observer: Any, path: Path) -> None:
        """调度单个目录；目录不存在时跳过。"""

        if not path.is_dir():
            logger.debug("Watch path does not exist, skipping: %s", path)
            return
        self._watches[path] = observer.schedule(self._handler, str(path), recursive=self._recursive)

    def _report(self, path: str, exc: BaseException) -> None:
        """上报运行期错误。"""

        if self._on_error is not None:
            self._on_error(path, exc)
        else:
            logger.warning("File watcher error for %s", path, exc_info=exc)


def watchdog_subscription_factory(
    paths: Sequence[Path],
    *,
    recursive: bool,
    on_event: RawEventSink,
    on_error: Optional[ErrorSink] = None,
) -> WatchSubscription:
    """默认订阅工厂（HotReloadManager 的 `subscription_factory` 默认值）。"""

    return WatchdogSubscription(paths, recursive=recursive, on_event=on_event, on_error=on_error)
