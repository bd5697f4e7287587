"""事件模型与发布出口（进程内 notifier + 可选外部 bus）。"""

from __future__ import annotations

from agent_kernel.events.emitter import EventBus, EventEmitter, EventListener, LocalNotifier
from agent_kernel.events.model import AgentEvent, EventType

__all__ = ["AgentEvent", "EventBus", "EventEmitter", "EventListener", "EventType", "LocalNotifier"]
