"""防抖写入所需的调度抽象。

Store 不直接依赖事件循环，而是依赖 Scheduler 协议：

- LoopScheduler: 生产实现，基于 asyncio 的 loop.call_later；
  没有运行中的事件循环时（例如同步脚本里直接使用 Store）立即执行回调。
- 测试中可注入手动推进时钟的假实现。

Debouncer 在同一时刻最多持有一个待执行任务，新的 schedule()
会取消并替换旧任务（合并而不是排队），尾沿触发。
"""

import asyncio
from typing import Callable, Optional, Protocol

from chat_core.infrastructure.logging.logger import logger


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class _DoneHandle:
    """回调已同步执行完毕时返回的句柄。"""

    def cancel(self) -> None:
        pass


class LoopScheduler:
    """使用当前运行中的事件循环调度回调。"""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop, firing debounced write immediately")
                callback()
                return _DoneHandle()
        return loop.call_later(delay, callback)


class Debouncer:
    """尾沿防抖：静默 delay 秒后执行 action，期间的调用被合并。"""

    def __init__(self, scheduler: Scheduler, delay: float, action: Callable[[], None]):
        self._scheduler = scheduler
        self._delay = delay
        self._action = action
        self._handle: Optional[TimerHandle] = None
        # 标识当前有效的那一次 schedule()；被取消或已执行后置为 None
        self._token: Optional[object] = None

    @property
    def pending(self) -> bool:
        return self._token is not None

    def schedule(self) -> None:
        self.cancel()
        token = self._token = object()
        handle = self._scheduler.call_later(self._delay, lambda: self._fire(token))
        # 调度器可能已经同步执行了回调
        if self._token is token:
            self._handle = handle

    def cancel(self) -> None:
        self._token = None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """若有待执行任务则立即执行；没有则什么也不做。"""
        if self._token is None:
            return
        self.cancel()
        self._action()

    def _fire(self, token: object) -> None:
        if token is not self._token:
            return
        self._token = None
        self._handle = None
        self._action()
