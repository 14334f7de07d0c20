"""SSE 帧解码器。

把任意切分的文本块流还原为有序的逻辑事件 payload。服务端的帧格式在不同
版本之间变化过，这里通过 FramingMode 显式选择，不做自动探测：

- ACCUMULATE: `data:` 行去掉前缀后不再裁剪（空余部分代表一个换行符），
  直到空行才把累积的片段直接拼接（不插入分隔符）作为一个 payload 发出。
- PER_LINE: 忽略 `:` 开头的注释行，每个 `data:` 行去掉前缀并 strip 后
  单独作为一个 payload 发出，不跨行累积。
- RAW: 不做 `data:` 分帧，整个响应体就是一条 JSON 信封；网络块只做拼接，
  在 flush() 时把 strip 后的完整响应体作为唯一的 payload 发出。

缓冲规则：按 "\\n" 切分累积文本，最后一段（可能不完整）留作下一块的前缀，
其余完整行立即处理；行尾紧邻换行的 "\\r" 先被去掉。流结束时调用 flush()。

每个请求构造一个新的 FrameDecoder，实例不可复用。
"""

from enum import Enum
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List

from chat_core.infrastructure.logging.logger import logger


DATA_PREFIX = "data:"
COMMENT_PREFIX = ":"


class FramingMode(str, Enum):
    ACCUMULATE = "accumulate"
    PER_LINE = "per_line"
    RAW = "raw"


class FrameDecoder:
    """增量解码器：feed() 喂入文本块，返回本次可确定的完整 payload。"""

    def __init__(self, mode: FramingMode | str = FramingMode.ACCUMULATE):
        self.mode = FramingMode(mode)
        self._buffer = ""
        self._segments: List[str] = []
        self._closed = False
        # 无法识别而被跳过的行数，便于排查服务端帧格式问题
        self.ignored_lines = 0

    def feed(self, chunk: str) -> List[str]:
        if self._closed:
            raise RuntimeError("FrameDecoder already flushed; create a new instance per request")
        if not chunk:
            return []
        self._buffer += chunk
        if self.mode is FramingMode.RAW:
            return []

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        out: List[str] = []
        for line in lines:
            self._process_line(line, out)
        return out

    def flush(self) -> List[str]:
        """流结束：处理残留缓冲并发出尚未结束的累积事件。重复调用返回空列表。"""
        if self._closed:
            return []
        self._closed = True
        out: List[str] = []
        if self.mode is FramingMode.RAW:
            body, self._buffer = self._buffer.strip(), ""
            return [body] if body else []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._process_line(line, out)
        if self._segments:
            out.append("".join(self._segments))
            self._segments.clear()
        return out

    def _process_line(self, raw_line: str, out: List[str]) -> None:
        line = raw_line[:-1] if raw_line.endswith("\r") else raw_line

        if self.mode is FramingMode.ACCUMULATE:
            if not line:
                # 空行结束当前事件
                if self._segments:
                    out.append("".join(self._segments))
                    self._segments.clear()
                return
            if line.startswith(DATA_PREFIX):
                data = line[len(DATA_PREFIX):]
                self._segments.append(data if data else "\n")
                return
            self._skip(line)
            return

        # PER_LINE
        if not line or line.startswith(COMMENT_PREFIX):
            return
        if line.startswith(DATA_PREFIX):
            data = line[len(DATA_PREFIX):].strip()
            if data:
                out.append(data)
            return
        self._skip(line)

    def _skip(self, line: str) -> None:
        # 注释与 event:/id:/retry: 等字段都不参与 payload
        if not line.startswith(COMMENT_PREFIX):
            self.ignored_lines += 1
            logger.debug("Ignored SSE line", extra={"extra": {"line": line[:80], "mode": self.mode.value}})


def decode_chunks(chunks: Iterable[str], mode: FramingMode | str = FramingMode.ACCUMULATE) -> Iterator[str]:
    """同步便捷函数：把文本块序列解码为 payload 序列。"""
    decoder = FrameDecoder(mode)
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


async def adecode_chunks(
    chunks: AsyncIterable[str], mode: FramingMode | str = FramingMode.ACCUMULATE
) -> AsyncIterator[str]:
    """异步版本，供 StreamSession 直接消费 response.aiter_text()。"""
    decoder = FrameDecoder(mode)
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield payload
    for payload in decoder.flush():
        yield payload
