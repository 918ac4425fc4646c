"""Tests for MessageService: conversations, the delivery state machine,
edit/delete rules and history pagination."""
import itertools
from unittest.mock import MagicMock

import pytest

from carechat.errors import (
    AccessDenied,
    Blocked,
    InvalidOperation,
    InvalidReference,
    NotFound,
    ValidationFailed,
)
from carechat.messaging.schemas import MessageStatus, MessageType
from carechat.messaging.service import MessageService


def _status(service, message_id):
    return service.get_message(message_id).status


# =============================================================================
# Status ordering
# =============================================================================


class TestMessageStatus:
    def test_forward_transitions(self):
        assert MessageStatus.SENT.advance(MessageStatus.DELIVERED) is MessageStatus.DELIVERED
        assert MessageStatus.DELIVERED.advance(MessageStatus.READ) is MessageStatus.READ
        assert MessageStatus.SENT.advance(MessageStatus.READ) is MessageStatus.READ

    def test_backward_or_equal_is_noop(self):
        assert MessageStatus.READ.advance(MessageStatus.DELIVERED) is MessageStatus.READ
        assert MessageStatus.READ.advance(MessageStatus.SENT) is MessageStatus.READ
        assert MessageStatus.DELIVERED.advance(MessageStatus.DELIVERED) is MessageStatus.DELIVERED

    def test_any_order_ends_at_maximum(self):
        statuses = list(MessageStatus)
        for length in range(1, 4):
            for sequence in itertools.product(statuses, repeat=length):
                final = MessageStatus.SENT
                for target in sequence:
                    final = final.advance(target)
                assert final is max(sequence, key=lambda s: s.rank)

    def test_predecessors(self):
        assert MessageStatus.predecessors(MessageStatus.READ) == (
            MessageStatus.SENT, MessageStatus.DELIVERED,
        )
        assert MessageStatus.predecessors(MessageStatus.DELIVERED) == (MessageStatus.SENT,)
        assert MessageStatus.predecessors(MessageStatus.SENT) == ()


# =============================================================================
# Conversations
# =============================================================================


class TestConversations:
    def test_get_or_create_is_idempotent(self, service, application, poster, nurse):
        first = service.get_or_create_conversation(application.id, poster.id)
        second = service.get_or_create_conversation(application.id, nurse.id)
        assert first.id == second.id
        assert first.jobPosterId == poster.id
        assert first.healthcareUserId == nurse.id
        assert first.otherParticipant.id == nurse.id
        assert first.otherParticipant.name == "Nina Nurse"
        assert second.otherParticipant.id == poster.id
        assert first.jobTitle == "Night shift nurse"

    def test_get_or_create_rejects_outsider(self, service, application, stranger):
        with pytest.raises(AccessDenied):
            service.get_or_create_conversation(application.id, stranger.id)

    def test_get_or_create_unknown_application(self, service, poster):
        with pytest.raises(NotFound):
            service.get_or_create_conversation("no-such-application", poster.id)

    def test_list_with_unread_count_and_preview(self, service, conversation, poster, nurse):
        service.send_message(conversation.id, poster.id, "Hello")
        service.send_message(conversation.id, poster.id, "Are you free Friday?")

        nurse_view = service.get_user_conversations(nurse.id)
        assert nurse_view.pagination.total == 1
        summary = nurse_view.data[0]
        assert summary.unreadCount == 2
        assert summary.otherParticipant.name == "Pat Poster"
        assert summary.lastMessage.content == "Are you free Friday?"

        poster_view = service.get_user_conversations(poster.id)
        assert poster_view.data[0].unreadCount == 0

        service.mark_as_read(conversation.id, nurse.id)
        assert service.get_user_conversations(nurse.id).data[0].unreadCount == 0

    def test_archive_filters_listing(self, service, conversation, nurse):
        service.set_archived(conversation.id, nurse.id, True)
        assert service.get_user_conversations(nurse.id).pagination.total == 0
        archived = service.get_user_conversations(nurse.id, archived=True)
        assert [c.id for c in archived.data] == [conversation.id]

        service.set_archived(conversation.id, nurse.id, False)
        assert service.get_user_conversations(nurse.id).pagination.total == 1

    def test_block_and_unblock(self, service, conversation, poster, nurse):
        blocked = service.set_blocked(conversation.id, nurse.id, True)
        assert blocked.isBlocked is True
        assert blocked.blockedBy == nurse.id
        assert blocked.blockedAt is not None
        with pytest.raises(Blocked):
            service.send_message(conversation.id, poster.id, "hello?")

        unblocked = service.set_blocked(conversation.id, nurse.id, False)
        assert unblocked.isBlocked is False
        assert unblocked.blockedBy is None
        service.send_message(conversation.id, poster.id, "hello again")

    def test_flags_require_participant(self, service, conversation, stranger):
        with pytest.raises(AccessDenied):
            service.set_blocked(conversation.id, stranger.id, True)
        with pytest.raises(AccessDenied):
            service.set_archived(conversation.id, stranger.id, True)

    def test_stats(self, service, conversation, poster, nurse):
        service.send_message(conversation.id, poster.id, "one")
        service.send_message(conversation.id, poster.id, "two")
        stats = service.get_stats(nurse.id)
        assert stats.totalConversations == 1
        assert stats.activeConversations == 1
        assert stats.archivedConversations == 0
        assert stats.unreadMessages == 2

        service.set_archived(conversation.id, nurse.id, True)
        stats = service.get_stats(nurse.id)
        assert stats.totalConversations == 1
        assert stats.archivedConversations == 1
        assert stats.activeConversations == 0


# =============================================================================
# Sending
# =============================================================================


class TestSendMessage:
    def test_send_persists_with_sent_status(self, service, conversation, poster):
        message = service.send_message(conversation.id, poster.id, "Hi there")
        assert message.status is MessageStatus.SENT
        assert message.senderName == "Pat Poster"
        assert message.messageType is MessageType.TEXT

        updated = service.get_conversation(conversation.id)
        assert updated.lastMessageId == message.id
        assert updated.lastMessageAt == message.createdAt

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_blank_content_rejected(self, service, conversation, poster, content):
        with pytest.raises(ValidationFailed):
            service.send_message(conversation.id, poster.id, content)

    def test_content_length_limit(self, service, conversation, poster):
        service.send_message(conversation.id, poster.id, "x" * 1000)
        with pytest.raises(ValidationFailed):
            service.send_message(conversation.id, poster.id, "x" * 1001)

    def test_unknown_conversation(self, service, poster):
        with pytest.raises(NotFound):
            service.send_message("missing", poster.id, "hello")

    def test_non_participant(self, service, conversation, stranger):
        with pytest.raises(AccessDenied):
            service.send_message(conversation.id, stranger.id, "hello")

    def test_reply_preview(self, service, conversation, poster, nurse):
        original = service.send_message(conversation.id, poster.id, "Can you start Monday?")
        reply = service.send_message(
            conversation.id, nurse.id, "Yes", reply_to_message_id=original.id
        )
        assert reply.replyToMessageId == original.id
        assert reply.replyTo.id == original.id
        assert reply.replyTo.content == "Can you start Monday?"

    def test_reply_to_deleted_message(self, service, conversation, poster, nurse):
        original = service.send_message(conversation.id, poster.id, "oops")
        service.delete_message(original.id, poster.id)
        with pytest.raises(InvalidReference):
            service.send_message(conversation.id, nurse.id, "?", reply_to_message_id=original.id)

    def test_reply_to_other_conversation(
        self, service, directory, conversation, poster, nurse
    ):
        other_app = directory.add_job_application("job-2", poster.id, nurse.id, "Day shift")
        other = service.get_or_create_conversation(other_app.id, poster.id)
        foreign = service.send_message(other.id, poster.id, "elsewhere")
        with pytest.raises(InvalidReference):
            service.send_message(conversation.id, nurse.id, "?", reply_to_message_id=foreign.id)

    def test_file_metadata(self, service, conversation, nurse):
        message = service.send_message(
            conversation.id,
            nurse.id,
            "uploads/cv.pdf",
            MessageType.FILE,
            file_name="cv.pdf",
            file_size="120KB",
            mime_type="application/pdf",
        )
        assert message.messageType is MessageType.FILE
        assert message.fileName == "cv.pdf"
        assert message.mimeType == "application/pdf"

    def test_notification_sent_to_recipient(self, service, notifications, conversation, poster, nurse):
        service.send_message(conversation.id, poster.id, "x" * 60)
        [notification] = notifications.list_for_user(nurse.id)
        assert notification.title == "New message from Pat Poster"
        assert notification.body == (
            'Pat Poster sent you a message about "Night shift nurse": ' + "x" * 50 + "..."
        )
        assert notification.actionUrl == f"/messages/{conversation.id}"
        assert notification.conversationId == conversation.id
        assert notifications.list_for_user(poster.id) == []

    def test_notification_failure_does_not_fail_send(
        self, database, directory, clock, conversation, poster
    ):
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("notification store down")
        service = MessageService(database, directory, notifier, clock=clock)

        message = service.send_message(conversation.id, poster.id, "still delivered")

        assert service.get_message(message.id).content == "still delivered"
        notifier.notify.assert_called_once()


# =============================================================================
# Delivery state machine
# =============================================================================


class TestDelivery:
    def test_mark_all_as_delivered(self, service, conversation, poster, nurse):
        m1 = service.send_message(conversation.id, poster.id, "one")
        m2 = service.send_message(conversation.id, poster.id, "two")
        own = service.send_message(conversation.id, nurse.id, "mine")

        result = service.mark_all_as_delivered(nurse.id)

        assert result.conversationIds == [conversation.id]
        assert result.messageIds == [m1.id, m2.id]
        assert result.messageIdsByConversation == {conversation.id: [m1.id, m2.id]}
        assert _status(service, m1.id) is MessageStatus.DELIVERED
        assert _status(service, own.id) is MessageStatus.SENT

        again = service.mark_all_as_delivered(nurse.id)
        assert again.messageIds == []
        assert again.conversationIds == []

    def test_delivered_never_downgrades_read(self, service, conversation, poster, nurse):
        message = service.send_message(conversation.id, poster.id, "hello")
        service.mark_as_read(conversation.id, nurse.id)
        result = service.mark_all_as_delivered(nurse.id)
        assert result.messageIds == []
        assert _status(service, message.id) is MessageStatus.READ

    def test_mark_as_read_is_idempotent(self, service, conversation, poster, nurse):
        m1 = service.send_message(conversation.id, poster.id, "one")
        service.mark_all_as_delivered(nurse.id)
        m2 = service.send_message(conversation.id, poster.id, "two")

        first = service.mark_as_read(conversation.id, nurse.id)
        assert first.messageIds == [m1.id, m2.id]
        assert first.readBy == nurse.id
        read = service.get_message(m1.id)
        assert read.status is MessageStatus.READ
        assert read.readAt == first.readAt

        second = service.mark_as_read(conversation.id, nurse.id)
        assert second.messageIds == []

    def test_mark_as_read_updates_last_read(self, service, conversation, nurse, clock):
        service.mark_as_read(conversation.id, nurse.id)
        assert service.get_conversation(conversation.id).healthcareLastReadAt == clock.now

    def test_mark_as_read_skips_own_messages(self, service, conversation, poster):
        service.send_message(conversation.id, poster.id, "note to self")
        assert service.mark_as_read(conversation.id, poster.id).messageIds == []

    def test_mark_as_read_requires_participant(self, service, conversation, stranger):
        with pytest.raises(AccessDenied):
            service.mark_as_read(conversation.id, stranger.id)
        with pytest.raises(NotFound):
            service.mark_as_read("missing", stranger.id)

    def test_deleted_messages_are_never_transitioned(self, service, conversation, poster, nurse):
        kept = service.send_message(conversation.id, poster.id, "kept")
        gone = service.send_message(conversation.id, poster.id, "gone")
        service.delete_message(gone.id, poster.id)

        assert service.mark_all_as_delivered(nurse.id).messageIds == [kept.id]
        assert service.mark_as_read(conversation.id, nurse.id).messageIds == [kept.id]

        history = service.get_conversation_messages(conversation.id, nurse.id)
        assert [m.id for m in history.data] == [kept.id]


# =============================================================================
# Edit / delete
# =============================================================================


class TestEditAndDelete:
    def test_edit_within_window(self, service, conversation, poster, nurse, clock):
        message = service.send_message(conversation.id, poster.id, "draft")
        service.mark_all_as_delivered(nurse.id)
        clock.advance(minutes=14, seconds=59)

        edited = service.edit_message(message.id, poster.id, "final")

        assert edited.content == "final"
        assert edited.editedAt == clock.now
        assert edited.status is MessageStatus.DELIVERED

    def test_edit_after_window(self, service, conversation, poster, clock):
        message = service.send_message(conversation.id, poster.id, "draft")
        clock.advance(minutes=15, seconds=1)
        with pytest.raises(InvalidOperation):
            service.edit_message(message.id, poster.id, "too late")

    def test_edit_non_text(self, service, conversation, poster):
        message = service.send_message(
            conversation.id, poster.id, "uploads/photo.png", MessageType.IMAGE
        )
        with pytest.raises(InvalidOperation):
            service.edit_message(message.id, poster.id, "caption")

    def test_edit_by_other_user(self, service, conversation, poster, nurse):
        message = service.send_message(conversation.id, poster.id, "mine")
        with pytest.raises(AccessDenied):
            service.edit_message(message.id, nurse.id, "hijacked")

    def test_edit_validates_content(self, service, conversation, poster):
        message = service.send_message(conversation.id, poster.id, "mine")
        with pytest.raises(ValidationFailed):
            service.edit_message(message.id, poster.id, "  ")

    def test_delete_is_soft(self, service, conversation, poster, clock):
        message = service.send_message(conversation.id, poster.id, "secret")
        deleted = service.delete_message(message.id, poster.id)
        assert deleted.isDeleted is True
        assert deleted.deletedBy == poster.id
        assert deleted.deletedAt == clock.now
        assert deleted.content == "secret"

        with pytest.raises(NotFound):
            service.get_message(message.id)
        with pytest.raises(NotFound):
            service.delete_message(message.id, poster.id)
        with pytest.raises(NotFound):
            service.edit_message(message.id, poster.id, "revive")

    def test_delete_by_other_user(self, service, conversation, poster, nurse):
        message = service.send_message(conversation.id, poster.id, "mine")
        with pytest.raises(AccessDenied):
            service.delete_message(message.id, nurse.id)


# =============================================================================
# History pagination
# =============================================================================


class TestHistory:
    @pytest.fixture
    def messages(self, service, conversation, poster, nurse, clock):
        sent = []
        for i in range(1, 6):
            sender = poster if i % 2 else nurse
            sent.append(service.send_message(conversation.id, sender.id, f"m{i}"))
            clock.advance(seconds=1)
        return sent

    def _contents(self, page):
        return [m.content for m in page.data]

    def test_oldest_first(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(conversation.id, poster.id)
        assert self._contents(page) == ["m1", "m2", "m3", "m4", "m5"]
        assert page.pagination.total == 5
        assert page.pagination.hasNext is False

    def test_offset_pages_are_newest_first_pages(self, service, conversation, poster, messages):
        first = service.get_conversation_messages(conversation.id, poster.id, page=1, limit=2)
        second = service.get_conversation_messages(conversation.id, poster.id, page=2, limit=2)
        assert self._contents(first) == ["m4", "m5"]
        assert self._contents(second) == ["m2", "m3"]
        assert first.pagination.totalPages == 3
        assert first.pagination.hasNext is True
        assert second.pagination.hasPrev is True

    def test_before_cursor_walks_back_without_duplicates(
        self, service, conversation, poster, messages
    ):
        seen = []
        cursor = messages[-1].id
        seen.append(messages[-1].content)
        while True:
            page = service.get_conversation_messages(
                conversation.id, poster.id, limit=2, before=cursor
            )
            if not page.data:
                break
            seen = self._contents(page) + seen
            cursor = page.data[0].id
        assert seen == ["m1", "m2", "m3", "m4", "m5"]

    def test_before_excludes_anchor(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(
            conversation.id, poster.id, before=messages[2].id
        )
        assert self._contents(page) == ["m1", "m2"]

    def test_after_cursor(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(
            conversation.id, poster.id, after=messages[1].id
        )
        assert self._contents(page) == ["m3", "m4", "m5"]

    def test_cursor_beats_page(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(
            conversation.id, poster.id, page=3, limit=2, before=messages[4].id
        )
        assert self._contents(page) == ["m3", "m4"]

    def test_unknown_cursor_is_ignored(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(
            conversation.id, poster.id, before="not-a-message"
        )
        assert len(page.data) == 5

    def test_equal_timestamps_keep_insert_order(self, service, conversation, poster):
        sent = [service.send_message(conversation.id, poster.id, f"t{i}") for i in range(4)]
        page = service.get_conversation_messages(
            conversation.id, poster.id, before=sent[2].id
        )
        assert self._contents(page) == ["t0", "t1"]

    def test_limit_is_clamped(self, service, conversation, poster, messages):
        page = service.get_conversation_messages(conversation.id, poster.id, limit=1000)
        assert page.pagination.limit == 100

    def test_history_requires_participant(self, service, conversation, stranger):
        with pytest.raises(AccessDenied):
            service.get_conversation_messages(conversation.id, stranger.id)


# =============================================================================
# Scenarios
# =============================================================================


def test_offline_recipient_catch_up_then_read(service, conversation, poster, nurse):
    """A sends while B is offline; B connects (delivered) then opens (read)."""
    m1 = service.send_message(conversation.id, poster.id, "Interview tomorrow?")
    assert m1.status is MessageStatus.SENT

    delivery = service.mark_all_as_delivered(nurse.id)
    assert delivery.messageIdsByConversation == {conversation.id: [m1.id]}
    assert _status(service, m1.id) is MessageStatus.DELIVERED

    read = service.mark_as_read(conversation.id, nurse.id)
    assert read.messageIds == [m1.id]
    assert _status(service, m1.id) is MessageStatus.READ


def test_deleted_within_window_is_not_read(service, conversation, poster, nurse, clock):
    m2 = service.send_message(conversation.id, poster.id, "wrong chat")
    clock.advance(minutes=1)
    service.delete_message(m2.id, poster.id)

    assert m2.id not in service.mark_as_read(conversation.id, nurse.id).messageIds
    history = service.get_conversation_messages(conversation.id, nurse.id)
    assert all(m.id != m2.id for m in history.data)
