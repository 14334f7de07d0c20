"""统一的会话与流式数据模型。

本模块定义了客户端内部共享的标准数据结构：

- Conversation: 会话列表中的一项（标题、时间戳、服务端 ID）。
- Message: 当前会话中的一条消息，assistant 消息在流式过程中被原地修改。
- ChatRequest: 发往聊天接口的请求体。
- StreamEvent: StreamSession 产出的有序事件（片段/完成/错误）。
- ChatEnvelope: raw 帧格式下服务端返回的 JSON 信封。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import uuid4


# 消息发送方（与原前端 sender 字段对应）
Sender = Literal["user", "assistant"]

# 尚未被用户改名、也未从首条消息派生标题时的占位标题
DEFAULT_TITLE = "New conversation"
TITLE_MAX_CHARS = 30


# data: 帧格式下，服务端把新分配的会话 ID 作为流的首个事件发送："[SESSION_ID:<id>]"
SESSION_ID_PREFIX = "[SESSION_ID:"
SESSION_ID_SUFFIX = "]"


def parse_session_marker(payload: str) -> Optional[str]:
    """payload 是会话 ID 标记时返回其中的 ID，否则返回 None。"""
    text = payload.strip()
    if not (text.startswith(SESSION_ID_PREFIX) and text.endswith(SESSION_ID_SUFFIX)):
        return None
    session_id = text[len(SESSION_ID_PREFIX):-len(SESSION_ID_SUFFIX)].strip()
    return session_id or None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid4().hex}"


def new_conversation_id() -> str:
    """生成本地临时会话 ID，服务端分配正式 ID 后会被替换。"""
    return f"conv-{uuid4().hex}"


def derive_title(text: str) -> str:
    """取首条用户消息的前 30 个字符作为标题，超出部分以省略号结尾。"""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


@dataclass
class Conversation:
    """会话列表条目。

    - id: 会话 ID。pending 状态下为 None，首条消息发送后为本地临时 ID，
      服务端分配 ID 后被覆盖。
    - title: 会话标题，默认占位标题，首条用户消息发送后派生。
    """

    id: Optional[str]
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


@dataclass
class Message:
    """当前会话中的一条消息。"""

    id: str
    sender: Sender
    content: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ChatRequest:
    """一次聊天请求。

    session_id 为空字符串表示新会话，由服务端创建并回传 ID。
    """

    message: str
    session_id: str = ""
    user_id: int = 1

    def to_payload(self) -> Dict[str, Any]:
        return {"message": self.message, "sessionId": self.session_id, "userId": self.user_id}


@dataclass
class StreamEvent:
    """StreamSession 产生的流式事件。

    kind:
        - "fragment": 一个已解码的逻辑事件，data 为其文本。
        - "complete": 流正常结束，之后不会再有任何事件。
        - "error": 传输/认证错误，error 携带异常对象，之后不会再有任何事件。
    """

    kind: Literal["fragment", "complete", "error"]
    data: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class ChatEnvelope:
    """raw 帧格式下的一条 JSON 消息信封。"""

    content: str = ""
    session_id: Optional[str] = None
    is_new_session: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ChatEnvelope":
        session_id = data.get("sessionId")
        return cls(
            content=data.get("content") or "",
            session_id=str(session_id) if session_id else None,
            is_new_session=bool(data.get("isNewSession")),
        )
