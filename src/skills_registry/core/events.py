"""
EventEmitter：进程内同步事件分发（registry / hot reload 共用）。

说明：
- 监听器按注册顺序同步调用，调用发生在 emit 所在线程（registry 与 hot reload 都只在事件循环线程 emit）；
- 监听器异常不得影响主流程：记录日志后继续分发给后续监听器（fail-open）；
- 事件名是普通字符串（例如 `skill:registered`、`add`），不做预先声明。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """最小同步事件分发器。"""

    def __init__(self) -> None:
        """创建空的监听器表。"""

        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> "EventEmitter":
        """注册监听器（同一监听器可重复注册，重复注册会被重复调用）。"""

        self._listeners.setdefault(event, []).append(listener)
        return self

    def once(self, event: str, listener: Listener) -> "EventEmitter":
        """注册只触发一次的监听器。"""

        def _wrapper(*args: Any) -> Any:
            """首次触发时先移除自身，再转发给原监听器。"""
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> "EventEmitter":
        """移除监听器（只移除最早注册的一次；不存在则忽略）。"""

        items = self._listeners.get(event)
        if not items:
            return self
        try:
            items.remove(listener)
        except ValueError:
            return self
        if not items:
            self._listeners.pop(event, None)
        return self

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        """移除某个事件（或全部事件）的监听器。"""

        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        """返回某个事件当前的监听器数量。"""

        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """
        同步分发事件。

        返回：
        - True：至少有一个监听器
        - False：没有监听器
        """

        items = list(self._listeners.get(event, ()))
        for listener in items:
            try:
                listener(*args)
            except Exception:
                logger.warning("Listener for event %r raised", event, exc_info=True)
        return bool(items)
