"""会话状态机。

ConversationStore 独占会话列表与当前会话的消息列表；PersistenceGateway
只读取快照写出，从不修改它们。所有状态都挂在实例上，没有模块级全局。

生命周期：
    start_new_conversation()  -> current_id=None, is_new=True，不进列表
    append_user_message()     -> 首条消息时分配本地临时 ID 并插入列表头部
    adopt_server_id()         -> 临时 ID 被服务端 ID 覆盖，is_new=False
    switch_to()/delete_conversation()

持久化失败（PersistenceError）在这里就地恢复：读失败按空列表处理，
写失败只记录 warning，绝不影响继续聊天。
"""

from typing import Callable, List, Optional

from chat_core.domain.conversation import PersistenceGateway
from chat_core.domain.exceptions import PersistenceError
from chat_core.domain.models import (
    DEFAULT_TITLE,
    Conversation,
    Message,
    derive_title,
    new_conversation_id,
    new_message_id,
)
from chat_core.domain.scheduling import Debouncer, LoopScheduler, Scheduler
from chat_core.infrastructure.logging.logger import logger


DEFAULT_DEBOUNCE_SECONDS = 1.0


class ConversationStore:
    def __init__(
        self,
        gateway: PersistenceGateway,
        scheduler: Optional[Scheduler] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self._gateway = gateway
        self.conversations: List[Conversation] = []
        self.messages: List[Message] = []
        self.current_id: Optional[str] = None
        self.is_new = True
        self.is_streaming = False
        # 同一时刻只有一个待写任务，新的调度会取消并替换旧的
        self._debouncer = Debouncer(scheduler or LoopScheduler(), debounce_seconds, self._save_messages)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def current_conversation(self) -> Optional[Conversation]:
        if self.current_id is None:
            return None
        return self._find(self.current_id)

    def open_assistant_message(self) -> Optional[Message]:
        if self.messages and self.messages[-1].sender == "assistant":
            return self.messages[-1]
        return None

    @property
    def has_pending_write(self) -> bool:
        return self._debouncer.pending

    # ------------------------------------------------------------------
    # 状态迁移
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """从持久化层恢复会话列表与最近活跃会话。"""
        self.conversations = self._safe_read(self._gateway.read_conversations, "conversations")
        try:
            active_id = self._gateway.read_active_id()
        except PersistenceError as e:
            self._warn("read active id", e)
            active_id = None
        if active_id and self._find(active_id) is not None:
            self.current_id = active_id
            self.is_new = False
            self.messages = self._load_messages(active_id)
        else:
            self.start_new_conversation()

    def start_new_conversation(self) -> None:
        self._debouncer.flush()
        self.current_id = None
        self.messages = []
        self.is_new = True

    def append_user_message(self, text: str) -> Message:
        if not self.messages and (self.current_id is None or self._find(self.current_id) is None):
            # 会话只在真正发送第一条消息时进入列表，避免空会话堆积
            if self.current_id is None:
                self.current_id = new_conversation_id()
            self.conversations.insert(0, Conversation(id=self.current_id))
            logger.info("Conversation materialized", extra={"extra": {"conversation_id": self.current_id}})

        message = self._append("user", text)
        conv = self.current_conversation()
        if conv is not None:
            if sum(1 for m in self.messages if m.sender == "user") == 1 and conv.title == DEFAULT_TITLE:
                conv.title = derive_title(text)
            conv.touch()
        self._debouncer.cancel()
        self._save_messages()
        self._save_conversations()
        return message

    def begin_assistant_message(self) -> Message:
        message = self._append("assistant", "")
        self._debouncer.schedule()
        return message

    def append_fragment(self, text: str, message_id: Optional[str] = None) -> bool:
        """把片段拼接到当前打开的 assistant 消息上。

        传入 message_id 时，只有当打开的消息仍是该消息才会生效；
        用户中途切换会话后，旧会话迟到的片段会被丢弃而不是错配。

        Returns:
            片段是否被应用。
        """
        message = self.open_assistant_message()
        if message is None or (message_id is not None and message.id != message_id):
            logger.debug(
                "Dropped fragment for inactive message",
                extra={"extra": {"message_id": message_id, "conversation_id": self.current_id}},
            )
            return False
        message.content += text
        self._debouncer.schedule()
        return True

    def adopt_server_id(self, server_id: str) -> None:
        """用服务端分配的 ID 覆盖当前会话 ID，并立即落盘。"""
        old_id = self.current_id
        if not server_id or server_id == old_id:
            self.is_new = False
            return
        self._debouncer.cancel()
        conv = self._find(old_id) if old_id is not None else None
        if conv is None:
            conv = Conversation(id=server_id)
            self.conversations.insert(0, conv)
        conv.id = server_id
        self.current_id = server_id
        self.is_new = False
        if old_id is not None:
            self._safe_write(lambda: self._gateway.delete_messages(old_id), "delete messages")
        self._save_messages()
        self._save_conversations()
        logger.info(
            "Adopted server conversation id",
            extra={"extra": {"old_id": old_id, "conversation_id": server_id}},
        )

    def switch_to(self, conversation_id: str) -> None:
        # 先写出当前会话尚未落盘的内容，再加载目标会话
        self._debouncer.flush()
        self.current_id = conversation_id
        self.is_new = False
        conv = self._find(conversation_id)
        if conv is None:
            self.messages = []
            return
        self.messages = self._load_messages(conversation_id)
        conv.touch()
        self._save_conversations()

    def delete_conversation(self, conversation_id: str) -> None:
        index = next((i for i, c in enumerate(self.conversations) if c.id == conversation_id), None)
        if index is None:
            return
        was_active = conversation_id == self.current_id
        if was_active:
            # 被删除会话的待写内容直接丢弃
            self._debouncer.cancel()
        del self.conversations[index]
        self._safe_write(lambda: self._gateway.delete_messages(conversation_id), "delete messages")
        if was_active:
            if self.conversations:
                self.switch_to(self.conversations[0].id)
            else:
                self.start_new_conversation()
        self._save_conversations()

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        conv = self._find(conversation_id)
        if conv is None:
            return
        conv.title = title or DEFAULT_TITLE
        conv.touch()
        self._save_conversations()

    def clear_messages(self) -> None:
        self._debouncer.cancel()
        self.messages = []
        self._save_messages()

    def set_streaming(self, streaming: bool) -> None:
        self.is_streaming = streaming

    def flush(self) -> None:
        self._debouncer.flush()

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _append(self, sender, content: str) -> Message:
        message = Message(id=new_message_id(), sender=sender, content=content)
        self.messages.append(message)
        return message

    def _find(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        return next((c for c in self.conversations if c.id == conversation_id), None)

    def _load_messages(self, conversation_id: str) -> List[Message]:
        return self._safe_read(lambda: self._gateway.read_messages(conversation_id), "messages")

    def _save_messages(self) -> None:
        # pending 且尚未分配 ID 的会话没有可写的 key
        if self.current_id is None:
            return
        conversation_id = self.current_id
        snapshot = list(self.messages)
        self._safe_write(lambda: self._gateway.write_messages(conversation_id, snapshot), "write messages")

    def _save_conversations(self) -> None:
        snapshot = [c for c in self.conversations if c.id]
        self._safe_write(lambda: self._gateway.write_conversations(snapshot), "write conversations")
        if self.current_id and self._find(self.current_id) is not None:
            active_id = self.current_id
            self._safe_write(lambda: self._gateway.write_active_id(active_id), "write active id")

    def _safe_read(self, read: Callable[[], list], what: str) -> list:
        try:
            return read()
        except PersistenceError as e:
            self._warn(f"read {what}", e)
            return []

    def _safe_write(self, write: Callable[[], None], what: str) -> None:
        try:
            write()
        except PersistenceError as e:
            self._warn(what, e)

    def _warn(self, action: str, error: PersistenceError) -> None:
        logger.warning(
            f"Persistence failed, recovered locally: {action}",
            extra={"extra": {"code": error.code, "error": error.message, "conversation_id": self.current_id}},
        )
