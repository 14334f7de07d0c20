"""流式聊天会话。

一个 StreamSession 只负责一次在途请求：

1. 发起 POST 请求（Accept: text/event-stream，按需携带 Bearer 凭证）。
2. 用 FrameDecoder 增量解码响应体。
3. 以 StreamEvent 的形式按到达顺序产出片段，最后恰好产出一次
   complete 或 error（二者互斥）。

events() 是主通道（异步迭代器）；open() 在其之上按顺序调度回调，
并返回 CancelHandle。取消是正常退出：取消之后不会再触发任何回调，
也不会触发 on_error。on_fragment 抛出的异常会终止会话并转交 on_error，
调用方同样只会收到一次终止回调。
"""

import asyncio
from contextlib import nullcontext, suppress
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import httpx

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.domain.exceptions import AuthError, BusinessError, TransportError
from chat_core.domain.models import ChatRequest, StreamEvent
from chat_core.infrastructure.logging.logger import logger
from chat_core.streaming.decoder import FramingMode, adecode_chunks


# 40100/40101 是后端自定义错误码，直接作为 HTTP status 返回
AUTH_STATUS_CODES = frozenset({401, 40100, 40101})


def status_error(status_code: int) -> BusinessError:
    """把非 2xx 状态码映射为 AuthError 或 TransportError。"""

    if status_code in AUTH_STATUS_CODES:
        return AuthError(
            code="UNAUTHENTICATED",
            message="Not logged in or credential rejected, please log in and retry",
            http_status=status_code,
        )
    return TransportError(code="HTTP_ERROR", message=f"HTTP error! status: {status_code}", http_status=status_code)


@dataclass
class StreamCallbacks:
    on_fragment: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


class CancelHandle:
    """在途会话的取消句柄。"""

    def __init__(self) -> None:
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        # 先同步置位：cancel() 返回后不会再有回调被调用
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """等待会话结束；取消视为正常结束。"""
        if self._task is None:
            return
        with suppress(asyncio.CancelledError):
            await self._task

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task


class StreamSession:
    """一次流式聊天请求。实例只能使用一次。

    Args:
        settings: 配置对象（需提供 chat_url / http_timeout / api_token / framing_mode）。
        client: 可选的 httpx.AsyncClient；传入时原样使用且不负责关闭。
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings or default_settings
        self._client = client
        self._used = False

    def _claim(self) -> None:
        if self._used:
            raise RuntimeError("StreamSession is single-use; create a new session per request")
        self._used = True

    def _build_headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        # 仅在 token 存在时携带 Authorization，避免发送 "Bearer None"
        token = getattr(self._settings, "api_token", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _client_context(self):
        if self._client is not None:
            return nullcontext(self._client)
        return httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)

    async def events(
        self, request: ChatRequest, mode: FramingMode | str | None = None
    ) -> AsyncIterator[StreamEvent]:
        """按到达顺序产出 StreamEvent，最后一个事件是 complete 或 error。"""

        self._claim()
        framing = FramingMode(mode or self._settings.framing_mode)
        url = self._settings.chat_url
        log_ctx = {"url": url, "mode": framing.value, "session_id": request.session_id}
        logger.info("Stream session opened", extra={"extra": log_ctx})
        fragments = 0
        try:
            async with self._client_context() as client:
                async with client.stream(
                    "POST", url, json=request.to_payload(), headers=self._build_headers()
                ) as resp:
                    if not resp.is_success:
                        raise status_error(resp.status_code)
                    async for payload in adecode_chunks(resp.aiter_text(), framing):
                        fragments += 1
                        yield StreamEvent(kind="fragment", data=payload)
        except BusinessError as e:
            logger.warning(f"Stream failed: {e.message}", extra={"extra": {**log_ctx, "code": e.code}})
            yield StreamEvent(kind="error", error=e)
            return
        except (httpx.HTTPError, httpx.StreamError) as e:
            err = TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
            logger.warning(f"Stream transport error: {err.message}", extra={"extra": log_ctx})
            yield StreamEvent(kind="error", error=err)
            return
        logger.info("Stream session completed", extra={"extra": {**log_ctx, "fragments": fragments}})
        yield StreamEvent(kind="complete")

    def open(
        self,
        request: ChatRequest,
        callbacks: StreamCallbacks,
        mode: FramingMode | str | None = None,
    ) -> CancelHandle:
        """在当前事件循环中启动会话，按顺序调用回调，返回取消句柄。"""

        handle = CancelHandle()
        task = asyncio.get_running_loop().create_task(self._dispatch(request, callbacks, mode, handle))
        handle._attach(task)
        return handle

    async def _dispatch(
        self,
        request: ChatRequest,
        callbacks: StreamCallbacks,
        mode: FramingMode | str | None,
        handle: CancelHandle,
    ) -> None:
        stream = self.events(request, mode)
        try:
            async for event in stream:
                if handle.cancelled:
                    break
                if event.kind == "fragment":
                    if callbacks.on_fragment:
                        try:
                            callbacks.on_fragment(event.data or "")
                        except Exception as e:
                            # 片段回调出错即终止本次会话，并以 on_error 作为唯一的终止回调
                            logger.exception("on_fragment callback failed, aborting stream")
                            if callbacks.on_error:
                                self._call_terminal(callbacks.on_error, e)
                            break
                elif event.kind == "complete":
                    if callbacks.on_complete:
                        self._call_terminal(callbacks.on_complete)
                elif callbacks.on_error:
                    self._call_terminal(callbacks.on_error, event.error)
        finally:
            await stream.aclose()

    @staticmethod
    def _call_terminal(callback: Callable[..., None], *args) -> None:
        # 终止回调之后不会再有任何回调，异常只记录日志
        try:
            callback(*args)
        except Exception:
            logger.exception("Terminal stream callback failed")
