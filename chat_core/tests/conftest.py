from typing import Callable, List

import httpx
import pytest

from chat_core.domain.store import ConversationStore
from chat_core.infrastructure.storage.json_store import KeyValuePersistenceGateway, MemoryKeyValueStore


class FakeTimer:
    def __init__(self, scheduler: "FakeScheduler", due: float, callback: Callable[[], None]):
        self._scheduler = scheduler
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """手动推进的时钟，advance() 时按到期顺序触发回调。"""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self, self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in sorted(self.pending, key=lambda t: t.due):
            if timer.due <= self.now and not timer.cancelled:
                timer.cancelled = True
                timer.callback()


class RecordingGateway(KeyValuePersistenceGateway):
    """记录写消息次数的内存网关。"""

    def __init__(self, kv=None):
        self.kv = kv or MemoryKeyValueStore()
        super().__init__(self.kv)
        self.message_writes: List[tuple] = []

    def write_messages(self, conversation_id, messages):
        self.message_writes.append((conversation_id, [m.content for m in messages]))
        super().write_messages(conversation_id, messages)


class SettingsStub:
    chat_url = "http://test/api/v1/ai/rag"
    http_timeout = 1.0
    api_token = None
    framing_mode = "accumulate"
    user_id = 7


def sse_response(chunks, status_code=200, gate=None):
    """构造一个按块产出的流式响应；gate 非空时在首块之后等待它。"""

    async def body():
        for i, chunk in enumerate(chunks):
            if i == 1 and gate is not None:
                await gate.wait()
            yield chunk.encode("utf-8")

    return httpx.Response(status_code, headers={"Content-Type": "text/event-stream"}, content=body())


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def store(gateway, scheduler):
    return ConversationStore(gateway, scheduler=scheduler, debounce_seconds=1.0)
