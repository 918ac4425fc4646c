"""Tests for NotificationService."""
import pytest


def _context(**overrides):
    context = {
        "senderName": "Pat Poster",
        "jobTitle": "Night shift nurse",
        "messagePreview": "hello",
        "conversationId": "c1",
    }
    context.update(overrides)
    return context


class TestNotificationService:
    def test_renders_template(self, notifications):
        notifications.notify("u1", "new_message_received", _context(), {"conversationId": "c1"})
        [n] = notifications.list_for_user("u1")
        assert n.title == "New message from Pat Poster"
        assert n.body == 'Pat Poster sent you a message about "Night shift nurse": hello'
        assert n.actionUrl == "/messages/c1"
        assert n.priority == "normal"
        assert n.conversationId == "c1"
        assert n.linkage == {"conversationId": "c1"}
        assert n.isRead is False

    def test_unknown_template(self, notifications):
        with pytest.raises(ValueError):
            notifications.notify("u1", "job_offer", _context(), {})

    def test_mark_conversation_read(self, notifications):
        notifications.notify("u1", "new_message_received", _context(), {"conversationId": "c1"})
        notifications.notify("u1", "new_message_received", _context(), {"conversationId": "c1"})
        notifications.notify(
            "u1", "new_message_received", _context(conversationId="c2"), {"conversationId": "c2"}
        )
        assert notifications.unread_count("u1") == 3

        assert notifications.mark_conversation_read("u1", "c1") == 2
        assert notifications.mark_conversation_read("u1", "c1") == 0
        assert notifications.unread_count("u1") == 1
        assert [n.conversationId for n in notifications.list_for_user("u1", unread_only=True)] == ["c2"]

    def test_other_users_untouched(self, notifications):
        notifications.notify("u1", "new_message_received", _context(), {"conversationId": "c1"})
        assert notifications.mark_conversation_read("u2", "c1") == 0
        assert notifications.unread_count("u1") == 1

