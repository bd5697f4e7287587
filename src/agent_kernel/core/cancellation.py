"""
CancellationToken：run 级取消信号（可级联）。

说明：
- 父 token 取消时，所有 `child()` 派生出的子 token 同步取消（传播，不重新推导）；
- 子 token 取消不会影响父 token；
- 线程安全：内部用 `threading.Event` + Lock，既可被 asyncio 任务读取，也可被后台线程触发。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, List, Optional, TypeVar

from agent_kernel.core.errors import AgentKernelError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CancelListener = Callable[[str], None]


class RunCancelled(AgentKernelError):
    """挂起点（LLM 调用 / 工具执行 / 子 run）观察到取消信号。"""


class CancellationToken:
    """可级联的取消信号。"""

    def __init__(self, *, parent: Optional["CancellationToken"] = None) -> None:
        """
        创建 token。

        参数：
        - parent：可选父 token；父 token 已取消时本 token 立即处于取消态
        """

        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[CancelListener] = []
        self._reason: Optional[str] = None
        if parent is not None:
            parent.add_listener(self.cancel)

    @property
    def cancelled(self) -> bool:
        """是否已取消。"""

        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """取消原因（未取消时为 None）。"""

        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """
        触发取消（幂等）。

        约束：
        - listener 异常不影响其它 listener（记录 warning 后继续）。
        """

        with self._lock:
            if self._event.is_set():
                return
            self._reason = str(reason or "cancelled")
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()
        for cb in listeners:
            try:
                cb(self._reason)
            except Exception:
                logger.warning("cancel listener failed", exc_info=True)

    def add_listener(self, cb: CancelListener) -> None:
        """注册取消回调；若已取消则立即回调。"""

        with self._lock:
            if not self._event.is_set():
                self._listeners.append(cb)
                return
        cb(self._reason or "cancelled")

    def remove_listener(self, cb: CancelListener) -> None:
        """移除取消回调（不存在时忽略）。"""

        with self._lock:
            if cb in self._listeners:
                self._listeners.remove(cb)

    def child(self) -> "CancellationToken":
        """派生子 token（父取消 → 子取消）。"""

        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        """已取消时抛出 `RunCancelled`。"""

        if self.cancelled:
            raise RunCancelled(self._reason or "cancelled")


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """
    在取消信号下等待一个挂起点。

    返回：
    - awaitable 的结果

    异常：
    - RunCancelled：token 在等待前或等待期间被取消（挂起的任务会被 cancel）
    """

    token.raise_if_cancelled()
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    cancelled_fut: asyncio.Future[str] = loop.create_future()

    def _on_cancel(reason: str) -> None:
        """把线程侧的取消转交给事件循环。"""

        def _resolve() -> None:
            if not cancelled_fut.done():
                cancelled_fut.set_result(reason)

        loop.call_soon_threadsafe(_resolve)

    token.add_listener(_on_cancel)
    try:
        done, _ = await asyncio.wait({task, cancelled_fut}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelled(token.reason or "cancelled")
    finally:
        token.remove_listener(_on_cancel)
        if not cancelled_fut.done():
            cancelled_fut.cancel()


__all__ = ["CancellationToken", "RunCancelled", "run_cancellable"]
