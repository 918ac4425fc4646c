"""MessageService — conversation lifecycle and the message delivery state machine.

Per-message status moves strictly forward:

    sent -> delivered -> read

``mark_all_as_delivered`` performs the sent -> delivered catch-up when a
recipient comes online; ``mark_as_read`` performs the bulk transition to read
when a recipient opens (or explicitly reads) a conversation. Both select
their candidate rows and update them inside one transaction, re-applying the
eligibility filter (not the reader's own message, status behind the target,
not soft-deleted) in the UPDATE itself, so a row deleted or already advanced
by a concurrent request is never touched.

A module-level singleton is initialised in ``carechat/main.py`` from config.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..database import Database
from ..directory.service import UserDirectory
from ..errors import (
    AccessDenied,
    Blocked,
    InvalidOperation,
    InvalidReference,
    NotFound,
    ValidationFailed,
)
from ..notifications.service import NotificationBridge
from .schemas import (
    Conversation,
    ConversationPage,
    ConversationStats,
    ConversationSummary,
    DeliveryResult,
    Message,
    MessagePage,
    MessageStatus,
    MessageType,
    Pagination,
    Participant,
    ReadResult,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

# Default edit window for text messages, measured from creation.
EDIT_WINDOW = timedelta(minutes=15)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_CONTENT_LENGTH = 1000

NEW_MESSAGE_TEMPLATE = "new_message_received"


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in DuckDB."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["MessageService"] = None


def get_message_service() -> "MessageService":
    """Return the global MessageService.

    Raises:
        RuntimeError: If the application lifespan has not initialised it.
    """
    if _service is None:
        raise RuntimeError("MessageService has not been initialised")
    return _service


def set_message_service(service: Optional["MessageService"]) -> None:
    """Set (or clear) the global MessageService instance."""
    global _service
    _service = service


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MessageService:
    """Transactional conversation and message operations.

    Args:
        database: Shared DuckDB database.
        directory: User/job-application lookups.
        notifier: Receives a ``new_message_received`` notification per send.
            Failures are logged and never reach the sender.
        edit_window: How long after creation a text message may be edited.
        clock: Returns the current naive-UTC time (injectable for tests).
    """

    def __init__(
        self,
        database: Database,
        directory: UserDirectory,
        notifier: Optional[NotificationBridge] = None,
        *,
        edit_window: timedelta = EDIT_WINDOW,
        max_content_length: int = MAX_CONTENT_LENGTH,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
        preview_length: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._store = MessageStore(database)
        self._directory = directory
        self._notifier = notifier
        self._edit_window = edit_window
        self._max_content_length = max_content_length
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._preview_length = preview_length
        self._clock = clock

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._db.transaction() as conn:
            conversation = self._store.get_conversation(conn, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation

    def _participant_conversation(self, conn, conversation_id: str, user_id: str) -> Conversation:
        conversation = self._store.get_conversation(conn, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if not conversation.is_participant(user_id):
            raise AccessDenied()
        return conversation

    def get_or_create_conversation(
        self, job_application_id: str, user_id: str
    ) -> ConversationSummary:
        """Return the conversation for a job application, creating it once.

        Raises:
            NotFound: The job application does not exist.
            AccessDenied: ``user_id`` is neither the poster nor the applicant.
        """
        application = self._directory.get_job_application(job_application_id)
        if application is None:
            raise NotFound("Job application not found")
        if user_id not in (application.jobPosterId, application.healthcareUserId):
            raise AccessDenied()

        now = self._clock()
        with self._db.transaction() as conn:
            self._store.insert_conversation_if_absent(
                conn,
                conversation_id=str(uuid.uuid4()),
                job_application_id=job_application_id,
                job_poster_id=application.jobPosterId,
                healthcare_user_id=application.healthcareUserId,
                now=now,
            )
            conversation = self._store.find_conversation_by_application(conn, job_application_id)

        other = self._directory.get_user(conversation.other_participant_id(user_id))
        return ConversationSummary(
            **conversation.model_dump(),
            jobPostId=application.jobPostId,
            jobTitle=application.jobTitle,
            otherParticipant=Participant(
                id=conversation.other_participant_id(user_id),
                name=other.name if other else "",
            ),
        )

    def get_user_conversations(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        archived: bool = False,
        blocked: bool = False,
    ) -> ConversationPage:
        page = max(page, 1)
        limit = self._clamp_limit(limit)
        with self._db.transaction() as conn:
            summaries, total = self._store.list_conversations(
                conn, user_id, archived, blocked, limit, (page - 1) * limit
            )
        return ConversationPage(data=summaries, pagination=Pagination.build(page, limit, total))

    def set_blocked(self, conversation_id: str, user_id: str, block: bool) -> Conversation:
        now = self._clock()
        with self._db.transaction() as conn:
            self._participant_conversation(conn, conversation_id, user_id)
            self._store.update_conversation(
                conn,
                conversation_id,
                now,
                is_blocked=block,
                blocked_by=user_id if block else None,
                blocked_at=now if block else None,
            )
            conversation = self._store.get_conversation(conn, conversation_id)
        logger.info(
            "[Messages] Conversation %s %s by %s",
            conversation_id, "blocked" if block else "unblocked", user_id,
        )
        return conversation

    def set_archived(self, conversation_id: str, user_id: str, archive: bool) -> Conversation:
        now = self._clock()
        with self._db.transaction() as conn:
            self._participant_conversation(conn, conversation_id, user_id)
            self._store.update_conversation(conn, conversation_id, now, is_archived=archive)
            return self._store.get_conversation(conn, conversation_id)

    def get_stats(self, user_id: str) -> ConversationStats:
        """Counts over unblocked conversations; unread covers the non-archived ones."""
        with self._db.transaction() as conn:
            _, active = self._store.list_conversations(conn, user_id, False, False, 1, 0)
            _, archived = self._store.list_conversations(conn, user_id, True, False, 1, 0)
            unread = 0
            offset = 0
            while True:
                summaries, count = self._store.list_conversations(
                    conn, user_id, False, False, self._max_page_size, offset
                )
                unread += sum(s.unreadCount for s in summaries)
                offset += len(summaries)
                if not summaries or offset >= count:
                    break
        return ConversationStats(
            totalConversations=active + archived,
            archivedConversations=archived,
            activeConversations=active,
            unreadMessages=unread,
        )

    # -----------------------------------------------------------------------
    # Sending and history
    # -----------------------------------------------------------------------

    def _validate_content(self, content: str) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationFailed("Message content is required")
        if len(content) > self._max_content_length:
            raise ValidationFailed(
                f"Message content cannot exceed {self._max_content_length} characters"
            )
        return content

    def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_message_id: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Message:
        """Persist a new message with status ``sent`` and notify the recipient.

        The insert and the conversation's last-message pointer update commit
        together. The notification is emitted after commit.

        Raises:
            ValidationFailed: Empty or oversized content.
            NotFound: Conversation missing or inactive.
            Blocked: Conversation is blocked.
            AccessDenied: Sender is not a participant.
            InvalidReference: ``reply_to_message_id`` is not a live message of
                this conversation.
        """
        content = self._validate_content(content)
        message_type = MessageType(message_type)
        now = self._clock()
        message_id = str(uuid.uuid4())

        with self._db.transaction() as conn:
            conversation = self._store.get_conversation(conn, conversation_id)
            if conversation is None or not conversation.isActive:
                raise NotFound("Conversation not found")
            if conversation.isBlocked:
                raise Blocked()
            if not conversation.is_participant(sender_id):
                raise AccessDenied()
            if reply_to_message_id and not self._store.live_message_exists(
                conn, reply_to_message_id, conversation_id
            ):
                raise InvalidReference()

            self._store.insert_message(
                conn,
                message_id=message_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type.value,
                reply_to_message_id=reply_to_message_id,
                file_name=file_name,
                file_size=file_size,
                mime_type=mime_type,
                now=now,
            )
            self._store.touch_last_message(conn, conversation_id, message_id, now)
            message = self._store.get_message(conn, message_id)

        logger.info(
            "[Messages] %s sent %s message %s in conversation %s",
            sender_id, message_type.value, message_id, conversation_id,
        )
        self._notify_recipient(conversation, message)
        return message

    def _notify_recipient(self, conversation: Conversation, message: Message) -> None:
        if self._notifier is None:
            return
        recipient_id = conversation.other_participant_id(message.senderId)
        try:
            sender = self._directory.get_user(message.senderId)
            application = self._directory.get_job_application(conversation.jobApplicationId)
            preview = message.content
            if len(preview) > self._preview_length:
                preview = preview[: self._preview_length] + "..."
            self._notifier.notify(
                recipient_id,
                NEW_MESSAGE_TEMPLATE,
                {
                    "senderName": sender.display_name if sender else "Someone",
                    "jobTitle": application.jobTitle if application else "",
                    "messagePreview": preview,
                    "conversationId": conversation.id,
                },
                {
                    "jobPostId": application.jobPostId if application else None,
                    "jobApplicationId": conversation.jobApplicationId,
                    "relatedUserId": message.senderId,
                    "conversationId": conversation.id,
                    "messageId": message.id,
                    "messageType": message.messageType.value,
                },
            )
        except Exception as exc:
            logger.error(
                "[Messages] Notification for message %s to %s failed: %s",
                message.id, recipient_id, exc,
            )

    def get_message(self, message_id: str) -> Message:
        with self._db.transaction() as conn:
            message = self._store.get_message(conn, message_id)
        if message is None or message.isDeleted:
            raise NotFound("Message not found")
        return message

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return self._default_page_size
        return min(limit, self._max_page_size)

    def get_conversation_messages(
        self,
        conversation_id: str,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        before: Optional[str] = None,
        after: Optional[str] = None,
    ) -> MessagePage:
        """Return one page of history, oldest first.

        Pages are fetched newest-first and reversed. A ``before``/``after``
        message id takes precedence over ``page``; an id that does not belong
        to the conversation is ignored.
        """
        page = max(page, 1)
        limit = self._clamp_limit(limit)
        with self._db.transaction() as conn:
            self._participant_conversation(conn, conversation_id, user_id)
            before_anchor = self._store.anchor_of(conn, before, conversation_id) if before else None
            after_anchor = self._store.anchor_of(conn, after, conversation_id) if after else None
            if (before and before_anchor is None) or (after and after_anchor is None):
                logger.debug(
                    "[Messages] Ignoring unknown cursor before=%s after=%s in %s",
                    before, after, conversation_id,
                )
            offset = 0 if (before or after) else (page - 1) * limit
            messages, total = self._store.page_messages(
                conn, conversation_id, before_anchor, after_anchor, limit, offset
            )
        messages.reverse()
        return MessagePage(data=messages, pagination=Pagination.build(page, limit, total))

    # -----------------------------------------------------------------------
    # Delivery state machine
    # -----------------------------------------------------------------------

    def mark_as_read(self, conversation_id: str, reader_id: str) -> ReadResult:
        """Advance every live sent/delivered message from the other party to read.

        Idempotent: a second call with no new messages returns no ids.

        Raises:
            NotFound: Conversation does not exist.
            AccessDenied: ``reader_id`` is not a participant.
        """
        now = self._clock()
        with self._db.transaction() as conn:
            conversation = self._participant_conversation(conn, conversation_id, reader_id)
            self._store.set_last_read(conn, conversation, reader_id, now)
            candidates = self._store.transition_candidates(
                conn, [conversation_id], reader_id, MessageStatus.READ
            )
            message_ids = [message_id for message_id, _ in candidates]
            self._store.advance_status(conn, message_ids, reader_id, MessageStatus.READ, now)

        if message_ids:
            logger.info(
                "[Messages] %s read %d message(s) in %s",
                reader_id, len(message_ids), conversation_id,
            )
        return ReadResult(
            conversationId=conversation_id,
            readBy=reader_id,
            messageIds=message_ids,
            readAt=now,
        )

    def mark_all_as_delivered(self, user_id: str) -> DeliveryResult:
        """Advance every live ``sent`` message addressed to ``user_id`` to delivered."""
        now = self._clock()
        with self._db.transaction() as conn:
            conversation_ids = self._store.conversation_ids_for_user(conn, user_id)
            candidates = self._store.transition_candidates(
                conn, conversation_ids, user_id, MessageStatus.DELIVERED
            )
            message_ids = [message_id for message_id, _ in candidates]
            self._store.advance_status(conn, message_ids, user_id, MessageStatus.DELIVERED, now)

        by_conversation: Dict[str, List[str]] = {}
        for message_id, conversation_id in candidates:
            by_conversation.setdefault(conversation_id, []).append(message_id)

        if message_ids:
            logger.info(
                "[Messages] Delivered %d message(s) to %s across %d conversation(s)",
                len(message_ids), user_id, len(by_conversation),
            )
        return DeliveryResult(
            userId=user_id,
            conversationIds=list(by_conversation),
            messageIds=message_ids,
            messageIdsByConversation=by_conversation,
            deliveredAt=now,
        )

    # -----------------------------------------------------------------------
    # Edit / delete
    # -----------------------------------------------------------------------

    def edit_message(self, message_id: str, editor_id: str, new_content: str) -> Message:
        """Replace the content of a text message within the edit window.

        Delivery status is left untouched.

        Raises:
            NotFound: Message missing or deleted.
            AccessDenied: ``editor_id`` is not the sender.
            InvalidOperation: Not a text message, or the edit window expired.
        """
        new_content = self._validate_content(new_content)
        now = self._clock()
        with self._db.transaction() as conn:
            message = self._store.get_message(conn, message_id)
            if message is None or message.isDeleted:
                raise NotFound("Message not found")
            if message.senderId != editor_id:
                raise AccessDenied()
            if message.messageType is not MessageType.TEXT:
                raise InvalidOperation("Only text messages can be edited")
            if now - message.createdAt > self._edit_window:
                minutes = int(self._edit_window.total_seconds() // 60)
                raise InvalidOperation(f"Message can only be edited within {minutes} minutes")
            self._store.update_content(conn, message_id, new_content, now)
            return self._store.get_message(conn, message_id)

    def delete_message(self, message_id: str, requester_id: str) -> Message:
        """Soft-delete a message. Content is retained but hidden from reads.

        Raises:
            NotFound: Message missing or already deleted.
            AccessDenied: ``requester_id`` is not the sender.
        """
        now = self._clock()
        with self._db.transaction() as conn:
            message = self._store.get_message(conn, message_id)
            if message is None or message.isDeleted:
                raise NotFound("Message not found")
            if message.senderId != requester_id:
                raise AccessDenied()
            self._store.soft_delete(conn, message_id, requester_id, now)
            message = self._store.get_message(conn, message_id)
        logger.info("[Messages] %s deleted message %s", requester_id, message_id)
        return message
