"""Wire-level event names and validated inbound frame shapes.

Every frame on the socket is ``{"event": <name>, "data": <payload>}``. Inbound
frames are parsed into one model per event name (a pydantic discriminated
union on ``event``); anything unrecognised or malformed is rejected with
``ValidationFailed`` before a handler runs.
"""
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ..errors import ValidationFailed
from ..messaging.schemas import MessageType


class InboundEvent(str, Enum):
    CONVERSATION_JOIN = "conversation:join"
    CONVERSATION_LEAVE = "conversation:leave"
    MESSAGE_SEND = "message:send"
    MESSAGE_EDIT = "message:edit"
    MESSAGE_DELETE = "message:delete"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    MESSAGES_READ = "messages:read"


class OutboundEvent(str, Enum):
    MESSAGE_NEW = "message:new"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGES_DELIVERED = "messages:delivered"
    MESSAGES_READ = "messages:read"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    USER_ONLINE = "user:online"
    USER_OFFLINE = "user:offline"
    USERS_ONLINE = "users:online"
    USER_JOINED_CONVERSATION = "user:joined-conversation"
    USER_LEFT_CONVERSATION = "user:left-conversation"
    USER_ACTIVE_IN_CONVERSATION = "user:active-in-conversation"
    CONVERSATIONS_UPDATED = "conversations:updated"
    ERROR = "error"


# =============================================================================
# Payloads
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class ConversationRef(_Payload):
    """Payload naming a conversation. A bare id string is also accepted."""
    conversationId: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_id(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"conversationId": value}
        return value


class SendPayload(_Payload):
    conversationId: str = Field(..., min_length=1)
    # Content rules (non-blank, max length) are enforced by MessageService.
    content: str
    messageType: MessageType = MessageType.TEXT
    replyToMessageId: Optional[str] = None
    fileName: Optional[str] = Field(default=None, max_length=255)
    fileSize: Optional[str] = Field(default=None, max_length=50)
    mimeType: Optional[str] = Field(default=None, max_length=100)


class EditPayload(_Payload):
    messageId: str = Field(..., min_length=1)
    content: str


class DeletePayload(_Payload):
    messageId: str = Field(..., min_length=1)


# =============================================================================
# Frames
# =============================================================================


class JoinFrame(BaseModel):
    event: Literal["conversation:join"]
    data: ConversationRef


class LeaveFrame(BaseModel):
    event: Literal["conversation:leave"]
    data: ConversationRef


class SendFrame(BaseModel):
    event: Literal["message:send"]
    data: SendPayload


class EditFrame(BaseModel):
    event: Literal["message:edit"]
    data: EditPayload


class DeleteFrame(BaseModel):
    event: Literal["message:delete"]
    data: DeletePayload


class TypingStartFrame(BaseModel):
    event: Literal["typing:start"]
    data: ConversationRef


class TypingStopFrame(BaseModel):
    event: Literal["typing:stop"]
    data: ConversationRef


class ReadFrame(BaseModel):
    event: Literal["messages:read"]
    data: ConversationRef


InboundFrame = Annotated[
    Union[
        JoinFrame,
        LeaveFrame,
        SendFrame,
        EditFrame,
        DeleteFrame,
        TypingStartFrame,
        TypingStopFrame,
        ReadFrame,
    ],
    Field(discriminator="event"),
]

_frame_adapter: TypeAdapter = TypeAdapter(InboundFrame)

_KNOWN_EVENTS = {e.value for e in InboundEvent}


def event_name(raw: Any) -> str:
    """Best-effort event name of a raw frame, for error reporting."""
    if isinstance(raw, dict) and isinstance(raw.get("event"), str):
        return raw["event"]
    return "unknown"


def parse_frame(raw: Any):
    """Validate a decoded JSON frame.

    Raises:
        ValidationFailed: Not an object, unknown event, or malformed payload.
    """
    if not isinstance(raw, dict):
        raise ValidationFailed("Frame must be a JSON object")
    name = raw.get("event")
    if not isinstance(name, str) or name not in _KNOWN_EVENTS:
        raise ValidationFailed(f"Unknown event: {name}")
    try:
        return _frame_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"][1:])
        raise ValidationFailed(f"Invalid {name} payload: {location} {first['msg']}".strip()) from e


def frame(event: OutboundEvent, data: Any) -> dict:
    """Build an outbound frame."""
    return {"event": event.value, "data": data}
