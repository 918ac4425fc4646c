"""Pydantic schemas for conversations and messages.

Wire-facing models use camelCase field names, matching the JSON the web and
mobile clients already consume. Timestamps are naive UTC datetimes as stored
in DuckDB and serialise to ISO-8601 strings.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class MessageStatus(str, Enum):
    """Delivery lifecycle of a message relative to its recipient.

    Statuses only move forward: sent -> delivered -> read. ``read`` is
    terminal.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def advance(self, target: "MessageStatus") -> "MessageStatus":
        """Return the status after attempting a transition to ``target``.

        Moving to an equal or earlier status is a no-op.
        """
        return target if target.rank > self.rank else self

    @classmethod
    def predecessors(cls, target: "MessageStatus") -> Tuple["MessageStatus", ...]:
        """Statuses from which ``target`` is a forward transition."""
        return tuple(status for status in _STATUS_ORDER if status.rank < target.rank)


_STATUS_ORDER = (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


class Participant(BaseModel):
    id: str
    name: str = ""


class ReplyPreview(BaseModel):
    """Summary of the message being replied to."""
    id: str
    senderId: str
    content: str
    messageType: MessageType
    createdAt: datetime


class Message(BaseModel):
    """A message as stored and broadcast.

    Attributes:
        id: Message UUID.
        conversationId: Owning conversation.
        senderId: Author's user id.
        messageType: text, image or file.
        content: Text content, or the object key/URL for image/file messages.
        status: Delivery status (sent, delivered, read).
        replyToMessageId: Optional message this one replies to.
        isDeleted: Soft-delete flag; deleted messages are never returned by
            history queries.
    """
    id: str
    conversationId: str
    senderId: str
    senderName: Optional[str] = None
    messageType: MessageType = MessageType.TEXT
    content: str
    fileName: Optional[str] = None
    fileSize: Optional[str] = None
    mimeType: Optional[str] = None
    status: MessageStatus = MessageStatus.SENT
    replyToMessageId: Optional[str] = None
    replyTo: Optional[ReplyPreview] = None
    readAt: Optional[datetime] = None
    editedAt: Optional[datetime] = None
    isDeleted: bool = False
    deletedAt: Optional[datetime] = None
    deletedBy: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class Conversation(BaseModel):
    """A two-party conversation tied to one job application."""
    id: str
    jobApplicationId: str
    jobPosterId: str
    healthcareUserId: str
    lastMessageAt: Optional[datetime] = None
    lastMessageId: Optional[str] = None
    jobPosterLastReadAt: Optional[datetime] = None
    healthcareLastReadAt: Optional[datetime] = None
    isActive: bool = True
    isArchived: bool = False
    isBlocked: bool = False
    blockedBy: Optional[str] = None
    blockedAt: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.jobPosterId, self.healthcareUserId)

    def other_participant_id(self, user_id: str) -> str:
        return self.healthcareUserId if user_id == self.jobPosterId else self.jobPosterId


class LastMessagePreview(BaseModel):
    id: str
    senderId: str
    content: str
    messageType: MessageType
    createdAt: datetime


class ConversationSummary(Conversation):
    """Conversation as listed for one participant."""
    jobPostId: Optional[str] = None
    jobTitle: Optional[str] = None
    otherParticipant: Participant
    lastMessage: Optional[LastMessagePreview] = None
    unreadCount: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
    hasNext: bool
    hasPrev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = -(-total // limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            totalPages=total_pages,
            hasNext=page < total_pages,
            hasPrev=page > 1,
        )


class MessagePage(BaseModel):
    """Messages oldest-first plus paging metadata."""
    data: List[Message]
    pagination: Pagination


class ConversationPage(BaseModel):
    data: List[ConversationSummary]
    pagination: Pagination


class ReadResult(BaseModel):
    """Outcome of ``mark_as_read``: ids moved to ``read`` in this call."""
    conversationId: str
    readBy: str
    messageIds: List[str] = Field(default_factory=list)
    readAt: datetime


class DeliveryResult(BaseModel):
    """Outcome of ``mark_all_as_delivered`` for one recipient."""
    userId: str
    conversationIds: List[str] = Field(default_factory=list)
    messageIds: List[str] = Field(default_factory=list)
    messageIdsByConversation: dict = Field(default_factory=dict)
    deliveredAt: datetime


class ConversationStats(BaseModel):
    totalConversations: int
    archivedConversations: int
    activeConversations: int
    unreadMessages: int


# =============================================================================
# REST request bodies
# =============================================================================


class SendMessageRequest(BaseModel):
    content: str
    messageType: MessageType = MessageType.TEXT
    replyToMessageId: Optional[str] = None
    fileName: Optional[str] = Field(default=None, max_length=255)
    fileSize: Optional[str] = Field(default=None, max_length=50)
    mimeType: Optional[str] = Field(default=None, max_length=100)


class EditMessageRequest(BaseModel):
    content: str


class BlockRequest(BaseModel):
    block: bool = True


class ArchiveRequest(BaseModel):
    archive: bool = True
