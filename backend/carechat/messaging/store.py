"""SQL access layer for conversations and messages.

Every method takes the DuckDB connection of an open ``Database.transaction()``
so the service layer decides transaction boundaries and can compose several
statements into one atomic unit.

Database Schema:
    conversations table:
        - one row per job application (UNIQUE job_application_id)
        - last-message pointer, per-participant last-read timestamps
        - active/archived/blocked flags
    messages table:
        - seq: monotonically increasing tie-breaker for equal created_at
        - status: sent | delivered | read
        - is_deleted: soft-delete flag, content is retained
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

import duckdb

from ..database import Database
from .schemas import (
    Conversation,
    ConversationSummary,
    LastMessagePreview,
    Message,
    MessageStatus,
    Participant,
    ReplyPreview,
)

logger = logging.getLogger(__name__)

_CREATE_CONVERSATIONS = """
CREATE TABLE IF NOT EXISTS conversations (
    id                      VARCHAR PRIMARY KEY,
    job_application_id      VARCHAR NOT NULL UNIQUE,
    job_poster_id           VARCHAR NOT NULL,
    healthcare_user_id      VARCHAR NOT NULL,
    last_message_at         TIMESTAMP,
    last_message_id         VARCHAR,
    job_poster_last_read_at TIMESTAMP,
    healthcare_last_read_at TIMESTAMP,
    is_active               BOOLEAN NOT NULL DEFAULT TRUE,
    is_archived             BOOLEAN NOT NULL DEFAULT FALSE,
    is_blocked              BOOLEAN NOT NULL DEFAULT FALSE,
    blocked_by              VARCHAR,
    blocked_at              TIMESTAMP,
    created_at              TIMESTAMP NOT NULL,
    updated_at              TIMESTAMP NOT NULL
)
"""

_CREATE_MESSAGES_SEQ = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id                  VARCHAR PRIMARY KEY,
    seq                 BIGINT NOT NULL DEFAULT nextval('messages_seq'),
    conversation_id     VARCHAR NOT NULL,
    sender_id           VARCHAR NOT NULL,
    message_type        VARCHAR NOT NULL DEFAULT 'text',
    content             VARCHAR NOT NULL,
    file_name           VARCHAR,
    file_size           VARCHAR,
    mime_type           VARCHAR,
    status              VARCHAR NOT NULL DEFAULT 'sent',
    read_at             TIMESTAMP,
    edited_at           TIMESTAMP,
    reply_to_message_id VARCHAR,
    is_deleted          BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at          TIMESTAMP,
    deleted_by          VARCHAR,
    created_at          TIMESTAMP NOT NULL,
    updated_at          TIMESTAMP NOT NULL
)
"""

# Only immutable columns are indexed: DuckDB rewrites indexed rows on UPDATE.
_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_poster ON conversations(job_poster_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_healthcare ON conversations(healthcare_user_id)",
)

_CONVERSATION_COLUMNS = [
    "id", "job_application_id", "job_poster_id", "healthcare_user_id",
    "last_message_at", "last_message_id", "job_poster_last_read_at",
    "healthcare_last_read_at", "is_active", "is_archived", "is_blocked",
    "blocked_by", "blocked_at", "created_at", "updated_at",
]

_CONVERSATION_FIELDS = {
    "id": "id",
    "job_application_id": "jobApplicationId",
    "job_poster_id": "jobPosterId",
    "healthcare_user_id": "healthcareUserId",
    "last_message_at": "lastMessageAt",
    "last_message_id": "lastMessageId",
    "job_poster_last_read_at": "jobPosterLastReadAt",
    "healthcare_last_read_at": "healthcareLastReadAt",
    "is_active": "isActive",
    "is_archived": "isArchived",
    "is_blocked": "isBlocked",
    "blocked_by": "blockedBy",
    "blocked_at": "blockedAt",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}

_MESSAGE_SELECT = """
SELECT m.id, m.conversation_id, m.sender_id, u.name, m.message_type, m.content,
       m.file_name, m.file_size, m.mime_type, m.status, m.reply_to_message_id,
       m.read_at, m.edited_at, m.is_deleted, m.deleted_at, m.deleted_by,
       m.created_at, m.updated_at,
       r.id, r.sender_id, r.content, r.message_type, r.created_at
FROM messages m
LEFT JOIN users u ON u.id = m.sender_id
LEFT JOIN messages r ON r.id = m.reply_to_message_id AND NOT r.is_deleted
"""

# Conversation fields that callers may change through update_conversation().
_MUTABLE_CONVERSATION_COLUMNS = {
    "is_active", "is_archived", "is_blocked", "blocked_by", "blocked_at",
}


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _row_to_conversation(row: Sequence) -> Conversation:
    data = dict(zip(_CONVERSATION_COLUMNS, row))
    return Conversation(**{_CONVERSATION_FIELDS[k]: v for k, v in data.items()})


def _row_to_message(row: Sequence) -> Message:
    reply = None
    if row[18] is not None:
        reply = ReplyPreview(
            id=row[18],
            senderId=row[19],
            content=row[20],
            messageType=row[21],
            createdAt=row[22],
        )
    return Message(
        id=row[0],
        conversationId=row[1],
        senderId=row[2],
        senderName=row[3],
        messageType=row[4],
        content=row[5],
        fileName=row[6],
        fileSize=row[7],
        mimeType=row[8],
        status=row[9],
        replyToMessageId=row[10],
        replyTo=reply,
        readAt=row[11],
        editedAt=row[12],
        isDeleted=row[13],
        deletedAt=row[14],
        deletedBy=row[15],
        createdAt=row[16],
        updatedAt=row[17],
    )


class MessageStore:
    """Conversation and message persistence over a shared ``Database``."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.execute_script(
            _CREATE_CONVERSATIONS,
            _CREATE_MESSAGES_SEQ,
            _CREATE_MESSAGES,
            *_INDEXES,
        )

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def get_conversation(
        self, conn: duckdb.DuckDBPyConnection, conversation_id: str
    ) -> Optional[Conversation]:
        row = conn.execute(
            f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations WHERE id = ?",
            [conversation_id],
        ).fetchone()
        return _row_to_conversation(row) if row else None

    def find_conversation_by_application(
        self, conn: duckdb.DuckDBPyConnection, job_application_id: str
    ) -> Optional[Conversation]:
        row = conn.execute(
            f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations "
            "WHERE job_application_id = ?",
            [job_application_id],
        ).fetchone()
        return _row_to_conversation(row) if row else None

    def insert_conversation_if_absent(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation_id: str,
        job_application_id: str,
        job_poster_id: str,
        healthcare_user_id: str,
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO conversations
              (id, job_application_id, job_poster_id, healthcare_user_id,
               created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (job_application_id) DO NOTHING
            """,
            [conversation_id, job_application_id, job_poster_id, healthcare_user_id, now, now],
        )

    def conversation_ids_for_user(
        self, conn: duckdb.DuckDBPyConnection, user_id: str
    ) -> List[str]:
        rows = conn.execute(
            """
            SELECT id FROM conversations
            WHERE job_poster_id = ? OR healthcare_user_id = ?
            """,
            [user_id, user_id],
        ).fetchall()
        return [r[0] for r in rows]

    def touch_last_message(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation_id: str,
        message_id: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            UPDATE conversations
            SET last_message_at = ?, last_message_id = ?, updated_at = ?
            WHERE id = ?
            """,
            [at, message_id, at, conversation_id],
        )

    def set_last_read(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation: Conversation,
        reader_id: str,
        at: datetime,
    ) -> None:
        column = (
            "job_poster_last_read_at"
            if reader_id == conversation.jobPosterId
            else "healthcare_last_read_at"
        )
        conn.execute(
            f"UPDATE conversations SET {column} = ?, updated_at = ? WHERE id = ?",
            [at, at, conversation.id],
        )

    def update_conversation(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation_id: str,
        at: datetime,
        **fields,
    ) -> None:
        unknown = set(fields) - _MUTABLE_CONVERSATION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update conversation columns: {sorted(unknown)}")
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        conn.execute(
            f"UPDATE conversations SET {set_clause}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [at, conversation_id],
        )

    def list_conversations(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        archived: bool,
        blocked: bool,
        limit: int,
        offset: int,
    ) -> Tuple[List[ConversationSummary], int]:
        """Active conversations of ``user_id`` with the unread-count projection."""
        where = """
            (c.job_poster_id = ? OR c.healthcare_user_id = ?)
            AND c.is_active AND c.is_archived = ? AND c.is_blocked = ?
        """
        params = [user_id, user_id, archived, blocked]
        total = conn.execute(
            f"SELECT count(*) FROM conversations c WHERE {where}", params
        ).fetchone()[0]

        columns = ", ".join(f"c.{col}" for col in _CONVERSATION_COLUMNS)
        rows = conn.execute(
            f"""
            SELECT {columns},
                   ja.job_post_id, ja.job_title,
                   other.id, other.name,
                   lm.id, lm.sender_id, lm.content, lm.message_type, lm.created_at,
                   (SELECT count(*) FROM messages m
                    WHERE m.conversation_id = c.id
                      AND NOT m.is_deleted
                      AND m.sender_id <> ?
                      AND m.status <> 'read') AS unread_count
            FROM conversations c
            LEFT JOIN job_applications ja ON ja.id = c.job_application_id
            LEFT JOIN users other ON other.id = CASE
                WHEN c.job_poster_id = ? THEN c.healthcare_user_id
                ELSE c.job_poster_id END
            LEFT JOIN messages lm ON lm.id = c.last_message_id AND NOT lm.is_deleted
            WHERE {where}
            ORDER BY c.last_message_at DESC NULLS LAST, c.created_at DESC
            LIMIT ? OFFSET ?
            """,
            [user_id, user_id] + params + [limit, offset],
        ).fetchall()

        width = len(_CONVERSATION_COLUMNS)
        summaries = []
        for row in rows:
            conversation = _row_to_conversation(row[:width])
            extra = row[width:]
            last_message = None
            if extra[4] is not None:
                last_message = LastMessagePreview(
                    id=extra[4],
                    senderId=extra[5],
                    content=extra[6],
                    messageType=extra[7],
                    createdAt=extra[8],
                )
            summaries.append(ConversationSummary(
                **conversation.model_dump(),
                jobPostId=extra[0],
                jobTitle=extra[1],
                otherParticipant=Participant(
                    id=conversation.other_participant_id(user_id),
                    name=extra[3] or "",
                ),
                lastMessage=last_message,
                unreadCount=extra[9],
            ))
        return summaries, total

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def get_message(
        self, conn: duckdb.DuckDBPyConnection, message_id: str
    ) -> Optional[Message]:
        row = conn.execute(f"{_MESSAGE_SELECT} WHERE m.id = ?", [message_id]).fetchone()
        return _row_to_message(row) if row else None

    def live_message_exists(
        self, conn: duckdb.DuckDBPyConnection, message_id: str, conversation_id: str
    ) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM messages
            WHERE id = ? AND conversation_id = ? AND NOT is_deleted
            """,
            [message_id, conversation_id],
        ).fetchone()
        return row is not None

    def insert_message(
        self,
        conn: duckdb.DuckDBPyConnection,
        message_id: str,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        reply_to_message_id: Optional[str],
        file_name: Optional[str],
        file_size: Optional[str],
        mime_type: Optional[str],
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO messages
              (id, conversation_id, sender_id, message_type, content, file_name,
               file_size, mime_type, status, reply_to_message_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                message_id, conversation_id, sender_id, message_type, content,
                file_name, file_size, mime_type, MessageStatus.SENT.value,
                reply_to_message_id, now, now,
            ],
        )

    def update_content(
        self,
        conn: duckdb.DuckDBPyConnection,
        message_id: str,
        content: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            UPDATE messages SET content = ?, edited_at = ?, updated_at = ?
            WHERE id = ? AND NOT is_deleted
            """,
            [content, at, at, message_id],
        )

    def soft_delete(
        self,
        conn: duckdb.DuckDBPyConnection,
        message_id: str,
        deleted_by: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            UPDATE messages SET is_deleted = TRUE, deleted_at = ?, deleted_by = ?, updated_at = ?
            WHERE id = ?
            """,
            [at, deleted_by, at, message_id],
        )

    def transition_candidates(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation_ids: Sequence[str],
        recipient_id: str,
        target: MessageStatus,
    ) -> List[Tuple[str, str]]:
        """(message id, conversation id) pairs that may advance to ``target``.

        Candidates are live messages authored by someone other than the
        recipient whose current status is strictly behind ``target``.
        """
        if not conversation_ids:
            return []
        sources = [s.value for s in MessageStatus.predecessors(target)]
        rows = conn.execute(
            f"""
            SELECT id, conversation_id FROM messages
            WHERE conversation_id IN ({_placeholders(conversation_ids)})
              AND sender_id <> ?
              AND status IN ({_placeholders(sources)})
              AND NOT is_deleted
            ORDER BY created_at, seq
            """,
            list(conversation_ids) + [recipient_id] + sources,
        ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def advance_status(
        self,
        conn: duckdb.DuckDBPyConnection,
        message_ids: Iterable[str],
        recipient_id: str,
        target: MessageStatus,
        at: datetime,
    ) -> None:
        """Move the given messages forward to ``target``.

        The selection filter is re-applied so a row that was deleted, authored
        by the recipient, or already at/after ``target`` is left untouched.
        """
        message_ids = list(message_ids)
        if not message_ids:
            return
        sources = [s.value for s in MessageStatus.predecessors(target)]
        read_at_clause = ", read_at = ?" if target is MessageStatus.READ else ""
        params: List = [target.value, at]
        if target is MessageStatus.READ:
            params.append(at)
        conn.execute(
            f"""
            UPDATE messages SET status = ?, updated_at = ?{read_at_clause}
            WHERE id IN ({_placeholders(message_ids)})
              AND sender_id <> ?
              AND status IN ({_placeholders(sources)})
              AND NOT is_deleted
            """,
            params + message_ids + [recipient_id] + sources,
        )

    def anchor_of(
        self,
        conn: duckdb.DuckDBPyConnection,
        message_id: str,
        conversation_id: str,
    ) -> Optional[Tuple[datetime, int]]:
        """(created_at, seq) of a cursor message inside the conversation."""
        row = conn.execute(
            "SELECT created_at, seq FROM messages WHERE id = ? AND conversation_id = ?",
            [message_id, conversation_id],
        ).fetchone()
        return (row[0], row[1]) if row else None

    def page_messages(
        self,
        conn: duckdb.DuckDBPyConnection,
        conversation_id: str,
        before: Optional[Tuple[datetime, int]],
        after: Optional[Tuple[datetime, int]],
        limit: int,
        offset: int,
    ) -> Tuple[List[Message], int]:
        """One newest-first page of live messages plus the filtered total.

        Cursor comparisons are strict, so the anchor message itself is never
        part of the page.
        """
        conditions = ["m.conversation_id = ?", "NOT m.is_deleted"]
        params: List = [conversation_id]
        if before is not None:
            conditions.append("(m.created_at < ? OR (m.created_at = ? AND m.seq < ?))")
            params += [before[0], before[0], before[1]]
        if after is not None:
            conditions.append("(m.created_at > ? OR (m.created_at = ? AND m.seq > ?))")
            params += [after[0], after[0], after[1]]
        where = " AND ".join(conditions)

        total = conn.execute(
            f"SELECT count(*) FROM messages m WHERE {where}", params
        ).fetchone()[0]
        rows = conn.execute(
            f"{_MESSAGE_SELECT} WHERE {where} ORDER BY m.created_at DESC, m.seq DESC "
            "LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return [_row_to_message(r) for r in rows], total
