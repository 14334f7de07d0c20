"""流式传输层。

- decoder: 把文本块流解码为逻辑事件 payload（三种帧格式）。
- session: 单次在途请求、事件通道与取消句柄。
"""

from chat_core.streaming.decoder import FrameDecoder, FramingMode, adecode_chunks, decode_chunks
from chat_core.streaming.session import CancelHandle, StreamCallbacks, StreamSession

__all__ = [
    "CancelHandle",
    "FrameDecoder",
    "FramingMode",
    "StreamCallbacks",
    "StreamSession",
    "adecode_chunks",
    "decode_chunks",
]
