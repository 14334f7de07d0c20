import asyncio
import json

import httpx
import pytest

from chat_core.domain.exceptions import AuthError, TransportError
from chat_core.domain.models import ChatRequest
from chat_core.streaming.session import StreamCallbacks, StreamSession
from chat_core.tests.conftest import SettingsStub, sse_response


class Recorder:
    def __init__(self):
        self.fragments = []
        self.completed = 0
        self.errors = []
        self.first_fragment = asyncio.Event()

    def callbacks(self):
        return StreamCallbacks(
            on_fragment=self.on_fragment,
            on_complete=self.on_complete,
            on_error=self.errors.append,
        )

    def on_fragment(self, payload):
        self.fragments.append(payload)
        self.first_fragment.set()

    def on_complete(self):
        self.completed += 1


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_stream_request_shape_and_fragments():
    captured = {}

    def handler(request):
        captured["request"] = request
        return sse_response(["data:Hel", "lo\n\ndata: wor", "ld\r\n\r\n"])

    class TokenSettings(SettingsStub):
        api_token = "secret-token"

    rec = Recorder()
    async with _client(handler) as client:
        session = StreamSession(TokenSettings(), client=client)
        handle = session.open(ChatRequest(message="hi", session_id="", user_id=7), rec.callbacks())
        await handle.wait()

    req = captured["request"]
    assert req.method == "POST"
    assert str(req.url) == SettingsStub.chat_url
    assert req.headers["Accept"] == "text/event-stream"
    assert req.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(req.content) == {"message": "hi", "sessionId": "", "userId": 7}
    assert rec.fragments == ["Hello", " world"]
    assert rec.completed == 1
    assert rec.errors == []


@pytest.mark.asyncio
async def test_no_authorization_header_without_token():
    captured = {}

    def handler(request):
        captured["request"] = request
        return sse_response(["data:x\n\n"])

    async with _client(handler) as client:
        events = [e async for e in StreamSession(SettingsStub(), client=client).events(ChatRequest(message="q"))]

    assert "Authorization" not in captured["request"].headers
    assert [e.kind for e in events] == ["fragment", "complete"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 40100, 40101])
async def test_auth_statuses_map_to_auth_error(status):
    rec = Recorder()
    async with _client(lambda request: httpx.Response(status)) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), rec.callbacks())
        await handle.wait()

    assert rec.completed == 0
    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0], AuthError)
    assert rec.errors[0].http_status == status


@pytest.mark.asyncio
async def test_server_error_is_generic_transport_error():
    rec = Recorder()
    async with _client(lambda request: httpx.Response(500)) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), rec.callbacks())
        await handle.wait()

    assert len(rec.errors) == 1
    err = rec.errors[0]
    assert isinstance(err, TransportError) and not isinstance(err, AuthError)
    assert err.http_status == 500


@pytest.mark.asyncio
async def test_network_failure_reports_transport_error_once():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    rec = Recorder()
    async with _client(handler) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), rec.callbacks())
        await handle.wait()

    assert rec.completed == 0
    assert len(rec.errors) == 1
    assert rec.errors[0].code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_cancel_after_first_fragment_suppresses_completion_and_error():
    gate = asyncio.Event()
    rec = Recorder()
    async with _client(lambda request: sse_response(["data:first\n\n", "data:second\n\n"], gate=gate)) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), rec.callbacks())
        await asyncio.wait_for(rec.first_fragment.wait(), timeout=5)
        handle.cancel()
        gate.set()
        await handle.wait()

    assert handle.cancelled
    assert handle.done
    assert rec.fragments == ["first"]
    assert rec.completed == 0
    assert rec.errors == []


@pytest.mark.asyncio
async def test_cancel_from_inside_fragment_callback():
    rec = Recorder()
    handle = None

    def on_fragment(payload):
        rec.fragments.append(payload)
        handle.cancel()

    async with _client(lambda request: sse_response(["data:a\n\ndata:b\n\n"])) as client:
        handle = StreamSession(SettingsStub(), client=client).open(
            ChatRequest(message="q"),
            StreamCallbacks(on_fragment=on_fragment, on_complete=rec.on_complete, on_error=rec.errors.append),
        )
        await handle.wait()

    assert rec.fragments == ["a"]
    assert rec.completed == 0
    assert rec.errors == []


@pytest.mark.asyncio
async def test_session_is_single_use():
    async with _client(lambda request: sse_response(["data:x\n\n"])) as client:
        session = StreamSession(SettingsStub(), client=client)
        _ = [e async for e in session.events(ChatRequest(message="q"))]
        with pytest.raises(RuntimeError):
            _ = [e async for e in session.events(ChatRequest(message="q"))]


@pytest.mark.asyncio
async def test_per_line_mode_from_argument():
    async with _client(lambda request: sse_response([": ping\ndata:  a \ndata: b\n"])) as client:
        events = [
            e async for e in StreamSession(SettingsStub(), client=client).events(ChatRequest(message="q"), "per_line")
        ]
    assert [e.data for e in events if e.kind == "fragment"] == ["a", "b"]
    assert events[-1].kind == "complete"


@pytest.mark.asyncio
async def test_fragment_callback_failure_becomes_single_error():
    rec = Recorder()
    boom = ValueError("render failed")

    def on_fragment(payload):
        rec.fragments.append(payload)
        raise boom

    callbacks = StreamCallbacks(on_fragment=on_fragment, on_complete=rec.on_complete, on_error=rec.errors.append)
    async with _client(lambda request: sse_response(["data:one\n\n", "data:two\n\n"])) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), callbacks)
        await handle.wait()

    assert rec.fragments == ["one"]
    assert rec.errors == [boom]
    assert rec.completed == 0


@pytest.mark.asyncio
async def test_failing_complete_callback_does_not_escape():
    errors = []

    def on_complete():
        raise RuntimeError("ui gone")

    callbacks = StreamCallbacks(on_complete=on_complete, on_error=errors.append)
    async with _client(lambda request: sse_response(["data:ok\n\n"])) as client:
        handle = StreamSession(SettingsStub(), client=client).open(ChatRequest(message="q"), callbacks)
        await handle.wait()

    assert errors == []
    assert handle.done
