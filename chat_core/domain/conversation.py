from typing import List, Optional, Protocol

from .models import Conversation, Message


class PersistenceGateway(Protocol):
    """会话状态的持久化协议。

    对 Store 而言所有操作都是同步的，按 key 后写覆盖前写；
    写入频率完全由 Store 控制。实现方在失败时抛出 PersistenceError。
    """

    def read_conversations(self) -> List[Conversation]:
        ...

    def write_conversations(self, conversations: List[Conversation]) -> None:
        ...

    def read_messages(self, conversation_id: str) -> List[Message]:
        ...

    def write_messages(self, conversation_id: str, messages: List[Message]) -> None:
        ...

    def delete_messages(self, conversation_id: str) -> None:
        ...

    def read_active_id(self) -> Optional[str]:
        ...

    def write_active_id(self, conversation_id: Optional[str]) -> None:
        ...
