"""
EventEmitter：事件发布的统一出口。

两条彼此解耦的发布路径：
1) 进程内 notifier（必选）：同步调用已订阅的 listener；
2) 外部 bus（可选）：跨进程扇出（例如消息队列），由宿主注入。

约束：
- 两条路径都是 fail-open：失败只影响可观测性，不得中断 run；
- 顺序固定：先 notifier，后 bus；
- loop 与 middleware 只依赖本类，不感知 bus 是否存在。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Protocol, runtime_checkable

from agent_kernel.events.model import AgentEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[AgentEvent], None]


@runtime_checkable
class EventBus(Protocol):
    """外部事件总线（可选）。"""

    def publish(self, event: AgentEvent) -> None:
        """发布事件（实现方自行处理序列化/网络）。"""


class LocalNotifier:
    """进程内 listener 集合（线程安全订阅/退订）。"""

    def __init__(self) -> None:
        """创建空 notifier。"""

        self._lock = threading.Lock()
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """
        订阅事件。

        返回：
        - 退订函数（重复调用无副作用）
        """

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: EventListener) -> None:
        """退订（不存在时忽略）。"""

        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def notify(self, event: AgentEvent) -> None:
        """依次调用 listener（fail-open）。"""

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("event listener failed for %s", event.type, exc_info=True)


class EventEmitter:
    """事件发布出口（notifier 必选，bus 可选）。"""

    def __init__(self, notifier: Optional[LocalNotifier] = None, bus: Optional[EventBus] = None) -> None:
        """
        创建 emitter。

        参数：
        - notifier：进程内 notifier；缺省时创建新的空 notifier
        - bus：可选外部总线
        """

        self.notifier = notifier or LocalNotifier()
        self.bus = bus

    def emit(self, event: AgentEvent) -> None:
        """发布事件：notifier → bus（两者均 fail-open）。"""

        self.notifier.notify(event)
        if self.bus is None:
            return
        try:
            self.bus.publish(event)
        except Exception:
            logger.warning("event bus publish failed for %s", event.type, exc_info=True)


__all__ = ["EventBus", "EventEmitter", "EventListener", "LocalNotifier"]
