"""Notification bridge and its DuckDB-backed implementation.

The messaging core only ever calls ``notify(user_id, template_kind, context,
linkage)``. Rendering, storage and read tracking live here.

Usage:
    notifier = NotificationService(Database.get_instance())
    notifier.notify(user_id, "new_message_received", {...}, {...})
"""
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationTemplate:
    """Format strings rendered against the notify() context.

    Attributes:
        title: Short headline.
        body: Full notification text.
        action_url: Client route opened when the notification is clicked.
        priority: low, normal or high.
    """
    title: str
    body: str
    action_url: str
    priority: str = "normal"


TEMPLATES: Dict[str, NotificationTemplate] = {
    "new_message_received": NotificationTemplate(
        title="New message from {senderName}",
        body='{senderName} sent you a message about "{jobTitle}": {messagePreview}',
        action_url="/messages/{conversationId}",
    ),
}


class NotificationBridge(ABC):
    """One-way channel from the messaging core to the notification system."""

    @abstractmethod
    def notify(
        self,
        user_id: str,
        template_kind: str,
        context: Dict[str, Any],
        linkage: Dict[str, Any],
    ) -> None:
        """Deliver a notification. Callers treat this as fire-and-forget."""


class Notification(BaseModel):
    id: str
    userId: str
    kind: str
    title: str
    body: str
    actionUrl: str
    priority: str
    conversationId: Optional[str] = None
    linkage: Dict[str, Any] = {}
    isRead: bool = False
    readAt: Optional[datetime] = None
    createdAt: datetime


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS notifications (
    id              VARCHAR PRIMARY KEY,
    user_id         VARCHAR NOT NULL,
    kind            VARCHAR NOT NULL,
    title           VARCHAR NOT NULL,
    body            VARCHAR NOT NULL,
    action_url      VARCHAR NOT NULL,
    priority        VARCHAR NOT NULL DEFAULT 'normal',
    conversation_id VARCHAR,
    linkage         VARCHAR NOT NULL DEFAULT '{}',
    is_read         BOOLEAN NOT NULL DEFAULT FALSE,
    read_at         TIMESTAMP,
    created_at      TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)"

_COLUMNS = (
    "id, user_id, kind, title, body, action_url, priority, conversation_id, "
    "linkage, is_read, read_at, created_at"
)


def _row_to_notification(row: tuple) -> Notification:
    return Notification(
        id=row[0],
        userId=row[1],
        kind=row[2],
        title=row[3],
        body=row[4],
        actionUrl=row[5],
        priority=row[6],
        conversationId=row[7],
        linkage=json.loads(row[8]) if row[8] else {},
        isRead=row[9],
        readAt=row[10],
        createdAt=row[11],
    )


class NotificationService(NotificationBridge):
    """Stores rendered notifications in the shared DuckDB database."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.execute_script(_CREATE_TABLE, _INDEX)

    def notify(
        self,
        user_id: str,
        template_kind: str,
        context: Dict[str, Any],
        linkage: Dict[str, Any],
    ) -> None:
        """Render ``template_kind`` with ``context`` and store it for ``user_id``.

        Raises:
            ValueError: Unknown template kind.
            KeyError: A placeholder of the template is missing from ``context``.
        """
        template = TEMPLATES.get(template_kind)
        if template is None:
            raise ValueError(f"Unknown notification template: {template_kind}")

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        notification_id = str(uuid.uuid4())
        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO notifications ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE, NULL, ?)
                """,
                [
                    notification_id,
                    user_id,
                    template_kind,
                    template.title.format(**context),
                    template.body.format(**context),
                    template.action_url.format(**context),
                    template.priority,
                    linkage.get("conversationId") or context.get("conversationId"),
                    json.dumps(linkage, default=str),
                    now,
                ],
            )
        logger.debug("[Notifications] %s -> %s (%s)", template_kind, user_id, notification_id)

    def mark_conversation_read(self, user_id: str, conversation_id: str) -> int:
        """Mark the user's unread message notifications for a conversation read."""
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        with self._db.transaction() as conn:
            count = conn.execute(
                """
                SELECT count(*) FROM notifications
                WHERE user_id = ? AND conversation_id = ? AND kind = 'new_message_received'
                  AND NOT is_read
                """,
                [user_id, conversation_id],
            ).fetchone()[0]
            if count:
                conn.execute(
                    """
                    UPDATE notifications SET is_read = TRUE, read_at = ?
                    WHERE user_id = ? AND conversation_id = ?
                      AND kind = 'new_message_received' AND NOT is_read
                    """,
                    [now, user_id, conversation_id],
                )
        return count

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        sql = f"SELECT {_COLUMNS} FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND NOT is_read"
        rows = self._db.fetchall(sql + " ORDER BY created_at DESC", [user_id])
        return [_row_to_notification(r) for r in rows]

    def unread_count(self, user_id: str) -> int:
        row = self._db.fetchone(
            "SELECT count(*) FROM notifications WHERE user_id = ? AND NOT is_read",
            [user_id],
        )
        return row[0]
