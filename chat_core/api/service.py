"""对外 API 服务模块。

ChatService 把 StreamSession 与 ConversationStore 串起来：
发送一条消息 = 追加用户消息 + 打开 assistant 消息 + 打开流式会话，
每个解码出的片段都绑定到本轮 assistant 消息的 ID 上再写入 Store。
"""

import json
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.domain.exceptions import BusinessError, ProtocolError
from chat_core.domain.models import ChatEnvelope, ChatRequest, Message, parse_session_marker
from chat_core.domain.scheduling import Scheduler
from chat_core.domain.store import ConversationStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonKeyValueStore, KeyValuePersistenceGateway
from chat_core.streaming.decoder import FramingMode
from chat_core.streaming.session import CancelHandle, StreamCallbacks, StreamSession


@dataclass(eq=False)
class _Turn:
    """一轮问答的上下文：片段只会写入这里记录的 assistant 消息。"""

    message_id: str
    conversation_id: Optional[str]
    handle: Optional[CancelHandle] = None
    error: Optional[Exception] = None


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._store = store
        self._settings = settings or default_settings
        self._client = client
        self._mode = FramingMode(self._settings.framing_mode)
        self._turns: List[_Turn] = []

    @property
    def store(self) -> ConversationStore:
        return self._store

    def send(
        self,
        text: str,
        on_complete: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> CancelHandle:
        """发送一条用户消息并开始接收流式回复。

        必须在运行中的事件循环里调用。AuthError 会原样交给 on_error，
        由 UI 层决定是否跳转登录。
        """
        if not text or not text.strip():
            raise BusinessError(code="EMPTY_MESSAGE", message="message must not be empty")

        store = self._store
        session_id = "" if store.is_new else (store.current_id or "")
        request = ChatRequest(message=text, session_id=session_id, user_id=self._settings.user_id)

        store.append_user_message(text)
        assistant = store.begin_assistant_message()
        turn = _Turn(message_id=assistant.id, conversation_id=store.current_id)
        store.set_streaming(True)

        callbacks = StreamCallbacks(
            on_fragment=lambda payload: self._on_fragment(turn, payload),
            on_complete=lambda: self._on_complete(turn, on_complete),
            on_error=lambda error: self._on_error(turn, error, on_error),
        )
        session = StreamSession(self._settings, client=self._client)
        turn.handle = session.open(request, callbacks, self._mode)
        self._turns.append(turn)
        return turn.handle

    async def ask(self, text: str) -> Optional[Message]:
        """send() 的等待版本：返回本轮 assistant 消息，失败时抛出对应异常。"""
        handle = self.send(text)
        turn = self._turns[-1]
        await handle.wait()
        if turn.error is not None:
            raise turn.error
        return next((m for m in self._store.messages if m.id == turn.message_id), None)

    def cancel(self) -> None:
        """取消所有在途会话；已写入的片段保留。"""
        for turn in self._turns:
            if turn.handle is not None:
                turn.handle.cancel()
        if self._turns:
            logger.info("Stream cancelled by user", extra={"extra": {"sessions": len(self._turns)}})
        self._turns.clear()
        self._store.set_streaming(False)
        self._store.flush()

    def _on_fragment(self, turn: _Turn, payload: str) -> None:
        if self._mode is not FramingMode.RAW:
            session_id = parse_session_marker(payload)
            if session_id is not None:
                # 会话 ID 标记不是回复内容
                self._adopt(turn, session_id)
                return
            self._store.append_fragment(payload, turn.message_id)
            return
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ProtocolError(code="BAD_ENVELOPE", message="envelope is not an object")
        except (json.JSONDecodeError, ProtocolError) as e:
            logger.warning("Skipped malformed envelope", extra={"extra": {"error": str(e), "payload": payload[:80]}})
            return
        envelope = ChatEnvelope.from_payload(data)
        if envelope.session_id:
            self._adopt(turn, envelope.session_id)
        if envelope.content:
            self._store.append_fragment(envelope.content, turn.message_id)

    def _adopt(self, turn: _Turn, session_id: str) -> None:
        # 只对仍处于活跃状态的新会话生效；用户已切走时忽略
        if (
            self._store.is_new
            and turn.conversation_id is not None
            and turn.conversation_id == self._store.current_id
        ):
            self._store.adopt_server_id(session_id)
            turn.conversation_id = session_id

    def _on_complete(self, turn: _Turn, callback: Optional[Callable[[], None]]) -> None:
        self._finish(turn)
        if callback:
            callback()

    def _on_error(self, turn: _Turn, error: Exception, callback: Optional[Callable[[Exception], None]]) -> None:
        turn.error = error
        message = self._store.open_assistant_message()
        if message is not None and message.id == turn.message_id and not message.content:
            note = error.message if isinstance(error, BusinessError) else str(error)
            self._store.append_fragment(f"Request failed: {note}", turn.message_id)
        self._finish(turn)
        if callback:
            callback(error)

    def _finish(self, turn: _Turn) -> None:
        if turn in self._turns:
            self._turns.remove(turn)
        self._store.set_streaming(bool(self._turns))
        self._store.flush()


_service: Optional[ChatService] = None


def get_default_service(scheduler: Optional[Scheduler] = None) -> ChatService:
    """获取默认的 ChatService 实例（单例），基于 storage_root 下的 JSON 存储。"""
    global _service
    if _service is None:
        gateway = KeyValuePersistenceGateway(JsonKeyValueStore(root=default_settings.storage_root))
        store = ConversationStore(
            gateway,
            scheduler=scheduler,
            debounce_seconds=default_settings.persist_debounce_ms / 1000,
        )
        store.initialize()
        _service = ChatService(store, default_settings)
    return _service
