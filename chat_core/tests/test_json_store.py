import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import PersistenceError
from chat_core.domain.models import Conversation, Message
from chat_core.infrastructure.storage.json_store import (
    JsonKeyValueStore,
    KeyValuePersistenceGateway,
    messages_key,
)


def test_json_kv_store_roundtrip_and_delete():
    with tempfile.TemporaryDirectory() as d:
        kv = JsonKeyValueStore(root=Path(d) / ".storage")
        assert kv.get("missing") is None
        kv.set("chat_messages_conv/1", "[]")
        assert kv.get("chat_messages_conv/1") == "[]"
        kv.delete("chat_messages_conv/1")
        assert kv.get("chat_messages_conv/1") is None
        kv.delete("chat_messages_conv/1")


def test_gateway_conversations_and_messages():
    with tempfile.TemporaryDirectory() as d:
        gateway = KeyValuePersistenceGateway(JsonKeyValueStore(root=d))
        conv = Conversation(id="c1", title="标题")
        gateway.write_conversations([conv, Conversation(id=None)])
        loaded = gateway.read_conversations()
        assert [c.id for c in loaded] == ["c1"]
        assert loaded[0].title == "标题"
        assert loaded[0].created_at == conv.created_at

        gateway.write_messages("c1", [Message(id="m1", sender="user", content="hi")])
        msgs = gateway.read_messages("c1")
        assert msgs[0].id == "m1"
        assert msgs[0].sender == "user"
        gateway.delete_messages("c1")
        assert gateway.read_messages("c1") == []

        assert gateway.read_active_id() is None
        gateway.write_active_id("c1")
        assert gateway.read_active_id() == "c1"
        gateway.write_active_id(None)
        assert gateway.read_active_id() is None


def test_gateway_parse_errors_raise_persistence_error():
    with tempfile.TemporaryDirectory() as d:
        kv = JsonKeyValueStore(root=d)
        gateway = KeyValuePersistenceGateway(kv)
        kv.set(messages_key("c1"), '{"not": "a list"}')
        with pytest.raises(PersistenceError) as exc:
            gateway.read_messages("c1")
        assert exc.value.code == "STORE_PARSE_ERROR"
        kv.set(messages_key("c2"), '[{"id": "m", "sender": "robot", "content": "", "timestamp": "2024-01-01T00:00:00Z"}]')
        with pytest.raises(PersistenceError):
            gateway.read_messages("c2")
