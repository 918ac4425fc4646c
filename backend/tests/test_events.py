"""Tests for inbound frame validation."""
import pytest

from carechat.errors import ValidationFailed
from carechat.messaging.schemas import MessageType
from carechat.realtime.events import (
    ConversationRef,
    EditFrame,
    JoinFrame,
    SendFrame,
    event_name,
    parse_frame,
)


def test_join_accepts_object_and_bare_id():
    parsed = parse_frame({"event": "conversation:join", "data": {"conversationId": "c1"}})
    assert isinstance(parsed, JoinFrame)
    assert parsed.data.conversationId == "c1"

    bare = parse_frame({"event": "conversation:join", "data": "c2"})
    assert bare.data == ConversationRef(conversationId="c2")


def test_send_frame_defaults():
    parsed = parse_frame({
        "event": "message:send",
        "data": {"conversationId": "c1", "content": "hello"},
    })
    assert isinstance(parsed, SendFrame)
    assert parsed.data.messageType is MessageType.TEXT
    assert parsed.data.replyToMessageId is None


def test_extra_fields_are_dropped():
    parsed = parse_frame({
        "event": "message:edit",
        "data": {"messageId": "m1", "content": "x", "senderId": "spoofed"},
    })
    assert isinstance(parsed, EditFrame)
    assert not hasattr(parsed.data, "senderId")


@pytest.mark.parametrize("raw", [
    "not an object",
    ["conversation:join"],
    {"event": "message:explode", "data": {}},
    {"data": {"conversationId": "c1"}},
    {"event": ["typing:start"], "data": {}},
])
def test_unknown_or_malformed_frames(raw):
    with pytest.raises(ValidationFailed):
        parse_frame(raw)


@pytest.mark.parametrize("raw", [
    {"event": "message:send", "data": {"conversationId": "c1"}},
    {"event": "message:send", "data": {"conversationId": "c1", "content": "x",
                                       "messageType": "video"}},
    {"event": "message:delete", "data": {}},
    {"event": "typing:start", "data": {"conversationId": ""}},
    {"event": "messages:read", "data": 42},
])
def test_invalid_payloads(raw):
    with pytest.raises(ValidationFailed) as exc_info:
        parse_frame(raw)
    assert exc_info.value.code == "ValidationFailed"
    assert raw["event"] in exc_info.value.message


def test_event_name():
    assert event_name({"event": "typing:stop"}) == "typing:stop"
    assert event_name({"event": 3}) == "unknown"
    assert event_name("junk") == "unknown"
