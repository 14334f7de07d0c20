import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import PersistenceGateway
from chat_core.domain.exceptions import PersistenceError
from chat_core.domain.models import DEFAULT_TITLE, Conversation, Message


CONVERSATIONS_KEY = "chat_conversations"
ACTIVE_ID_KEY = "chat_current_conversation_id"
MESSAGES_KEY_PREFIX = "chat_messages_"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


def messages_key(conversation_id: str) -> str:
    return f"{MESSAGES_KEY_PREFIX}{conversation_id}"


class KeyValueStore(Protocol):
    """最小键值存储契约（值为字符串）。"""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """进程内键值存储，用于测试和不需要落盘的场景。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonKeyValueStore:
    """以目录下 <key>.json 文件实现的键值存储。

    写入先落临时文件再 os.replace，保证读到的总是完整内容。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve() / "kv"
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._root / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e), key=key)


def _dump_dt(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _load_dt(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class KeyValuePersistenceGateway(PersistenceGateway):
    """把 PersistenceGateway 协议映射到任意 KeyValueStore 上。

    - 会话列表存放在 chat_conversations；
    - 每个会话的消息存放在 chat_messages_<id>；
    - 最近活跃会话 ID 存放在 chat_current_conversation_id。

    读取或解析失败统一抛出 PersistenceError，由调用方决定如何恢复。
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    def read_conversations(self) -> List[Conversation]:
        data = self._read_json(CONVERSATIONS_KEY)
        if data is None:
            return []
        try:
            return [self._to_conversation(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(code="STORE_PARSE_ERROR", message=str(e), key=CONVERSATIONS_KEY)

    def write_conversations(self, conversations: List[Conversation]) -> None:
        payload = [
            {
                "id": c.id,
                "title": c.title,
                "createdAt": _dump_dt(c.created_at),
                "updatedAt": _dump_dt(c.updated_at),
            }
            for c in conversations
            if c.id
        ]
        self._kv.set(CONVERSATIONS_KEY, json.dumps(payload, ensure_ascii=False))

    def read_messages(self, conversation_id: str) -> List[Message]:
        key = messages_key(conversation_id)
        data = self._read_json(key)
        if data is None:
            return []
        try:
            return [self._to_message(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(code="STORE_PARSE_ERROR", message=str(e), key=key)

    def write_messages(self, conversation_id: str, messages: List[Message]) -> None:
        payload = [
            {
                "id": m.id,
                "sender": m.sender,
                "content": m.content,
                "timestamp": _dump_dt(m.timestamp),
            }
            for m in messages
        ]
        self._kv.set(messages_key(conversation_id), json.dumps(payload, ensure_ascii=False))

    def delete_messages(self, conversation_id: str) -> None:
        self._kv.delete(messages_key(conversation_id))

    def read_active_id(self) -> Optional[str]:
        return self._kv.get(ACTIVE_ID_KEY) or None

    def write_active_id(self, conversation_id: Optional[str]) -> None:
        if conversation_id:
            self._kv.set(ACTIVE_ID_KEY, conversation_id)
        else:
            self._kv.delete(ACTIVE_ID_KEY)

    def _read_json(self, key: str) -> Optional[list]:
        raw = self._kv.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(code="STORE_PARSE_ERROR", message=str(e), key=key)
        if not isinstance(data, list):
            raise PersistenceError(code="STORE_PARSE_ERROR", message=f"{key} is not a list", key=key)
        return data

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(data["id"]),
            title=data.get("title") or DEFAULT_TITLE,
            created_at=_load_dt(data["createdAt"]),
            updated_at=_load_dt(data.get("updatedAt") or data["createdAt"]),
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        sender = data["sender"]
        if sender not in ("user", "assistant"):
            raise ValueError(f"unknown sender {sender!r}")
        return Message(
            id=str(data["id"]),
            sender=sender,
            content=data.get("content") or "",
            timestamp=_load_dt(data["timestamp"]),
        )
