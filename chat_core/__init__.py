"""Chat Core 顶层包。

该包提供流式聊天客户端的核心实现，包括配置加载、领域模型、
SSE 帧解码、流式会话、会话状态机与本地持久化。
"""

from chat_core.api.service import ChatService, get_default_service

__all__ = ["ChatService", "get_default_service"]
