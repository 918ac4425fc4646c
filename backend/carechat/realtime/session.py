"""SessionManager — lifecycle and event routing for real-time connections.

Each connection moves through ``unauthenticated -> authenticated -> closed``.
Authentication happens before the socket is accepted; a failed credential
never reaches ``authenticated``.

On authentication:
1. Register the handle with the presence registry
2. Run the offline catch-up ``mark_all_as_delivered`` and announce
   ``messages:delivered`` to every affected conversation room
3. Announce ``user:online`` if this is the user's first connection
4. Send the new connection a ``users:online`` snapshot (without itself)

Inbound frames of one connection are dispatched sequentially by its receive
loop, so events from one connection are persisted and broadcast in order.
Store calls run in the thread pool; a failing event is reported to the
originating connection only.

Broadcasts use asyncio.gather() over the target connections, and a failed
send is logged and skipped, as in a chat room broadcast.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from fastapi import WebSocket
from starlette.concurrency import run_in_threadpool

from ..auth.dependencies import authenticate
from ..auth.service import IdentityVerifier
from ..directory.schemas import UserRecord
from ..directory.service import UserDirectory
from ..errors import AccessDenied, ChatError
from ..messaging.schemas import Message, ReadResult
from ..messaging.service import MessageService, utcnow
from ..notifications.service import NotificationService
from ..presence.registry import PresenceRegistry
from .events import (
    ConversationRef,
    DeletePayload,
    EditPayload,
    InboundEvent,
    OutboundEvent,
    SendPayload,
    event_name,
    frame,
    parse_frame,
)
from .rooms import RoomRegistry, conversation_room

logger = logging.getLogger(__name__)

CONVERSATION_LIST_SIZE = 20


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass
class Connection:
    """One live socket bound to an authenticated user.

    Attributes:
        handle: Opaque connection id used by presence and rooms.
        websocket: Underlying transport.
        user: The authenticated user.
        state: Lifecycle state.
    """
    handle: str
    websocket: WebSocket
    user: UserRecord
    state: ConnectionState = ConnectionState.AUTHENTICATED
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def user_id(self) -> str:
        return self.user.id

    async def send(self, message: dict) -> bool:
        """Send a frame; returns False instead of raising on a dead socket."""
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            async with self._send_lock:
                await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug("[WS] Failed to send to %s: %s", self.handle, e)
            return False


def _now_iso() -> str:
    return utcnow().isoformat()


def _dump(message: Message) -> dict:
    return message.model_dump(mode="json")


class SessionManager:
    """Owns the live connections, the room table and the presence registry.

    Args:
        messages: Conversation/message operations.
        directory: User lookups.
        verifier: Bearer-token verifier used at connect time.
        presence: Presence registry (a fresh one if omitted).
        rooms: Room registry (a fresh one if omitted).
        notifications: If set, message notifications are marked read on join.
        conversation_list_size: Size of the list pushed with
            ``conversations:updated``.
    """

    def __init__(
        self,
        messages: MessageService,
        directory: UserDirectory,
        verifier: Optional[IdentityVerifier],
        presence: Optional[PresenceRegistry] = None,
        rooms: Optional[RoomRegistry] = None,
        notifications: Optional[NotificationService] = None,
        conversation_list_size: int = CONVERSATION_LIST_SIZE,
    ) -> None:
        self.messages = messages
        self.directory = directory
        self.verifier = verifier
        self.presence = presence or PresenceRegistry()
        self.rooms = rooms or RoomRegistry()
        self.notifications = notifications
        self.conversation_list_size = conversation_list_size
        self.connections: Dict[str, Connection] = {}
        self._handlers = {
            InboundEvent.CONVERSATION_JOIN.value: self._on_join,
            InboundEvent.CONVERSATION_LEAVE.value: self._on_leave,
            InboundEvent.MESSAGE_SEND.value: self._on_send,
            InboundEvent.MESSAGE_EDIT.value: self._on_edit,
            InboundEvent.MESSAGE_DELETE.value: self._on_delete,
            InboundEvent.TYPING_START.value: self._on_typing_start,
            InboundEvent.TYPING_STOP.value: self._on_typing_stop,
            InboundEvent.MESSAGES_READ.value: self._on_read,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def authenticate(
        self, token_field: Optional[str], authorization: Optional[str]
    ) -> UserRecord:
        """Resolve the handshake credential to a user (raises ChatError)."""
        return await authenticate(
            token_field, authorization, verifier=self.verifier, directory=self.directory
        )

    async def open(self, websocket: WebSocket, user: UserRecord) -> Connection:
        """Register an accepted, authenticated socket and run the online flow.

        If the online flow fails the connection is torn down again before the
        error propagates, so presence never outlives the socket.
        """
        conn = Connection(handle=str(uuid.uuid4()), websocket=websocket, user=user)
        self.connections[conn.handle] = conn
        _, came_online = self.presence.register_connection(
            user.id, conn.handle, user.display_name
        )
        logger.info(
            "[WS] %s connected as %s (%s)",
            user.id, conn.handle, "online" if came_online else "additional connection",
        )
        try:
            await self._announce_online(conn, came_online)
        except BaseException:
            await self.close(conn)
            raise
        return conn

    async def _announce_online(self, conn: Connection, came_online: bool) -> None:
        user = conn.user
        try:
            delivery = await run_in_threadpool(self.messages.mark_all_as_delivered, user.id)
        except ChatError as e:
            logger.warning("[WS] Delivery catch-up for %s failed: %s", user.id, e)
        else:
            for conversation_id, message_ids in delivery.messageIdsByConversation.items():
                await self.publish(conversation_id, OutboundEvent.MESSAGES_DELIVERED, {
                    "userId": user.id,
                    "conversationId": conversation_id,
                    "messageIds": message_ids,
                    "timestamp": delivery.deliveredAt.isoformat(),
                })

        if came_online:
            await self.broadcast_all(
                OutboundEvent.USER_ONLINE,
                {"userId": user.id, "timestamp": _now_iso()},
                exclude=[conn.handle],
            )

        await conn.send(frame(OutboundEvent.USERS_ONLINE, {
            "users": [entry.to_dict() for entry in self.presence.snapshot(exclude_user=user.id)],
        }))

    async def close(self, conn: Connection) -> None:
        """Tear down a connection: rooms, presence, offline announcement.

        Registry state is released before anything is awaited.
        """
        if conn.state is ConnectionState.CLOSED:
            return
        conn.state = ConnectionState.CLOSED
        self.connections.pop(conn.handle, None)
        rooms = self.rooms.leave_all(conn.handle)
        last_seen = self.presence.deregister_connection(conn.user_id, conn.handle)

        for room in rooms:
            conversation_id = room.split(":", 1)[1]
            await self.publish(conversation_id, OutboundEvent.USER_LEFT_CONVERSATION, {
                "userId": conn.user_id,
                "conversationId": conversation_id,
                "timestamp": _now_iso(),
            })

        if last_seen is not None:
            logger.info("[WS] %s went offline", conn.user_id)
            await self.broadcast_all(OutboundEvent.USER_OFFLINE, {
                "userId": conn.user_id,
                "lastSeen": last_seen.isoformat(),
            })
        else:
            logger.info("[WS] %s closed %s", conn.user_id, conn.handle)

    async def dispatch(self, conn: Connection, raw: Any) -> None:
        """Validate and handle one inbound frame.

        Failures are reported to ``conn`` as an ``error`` frame and never
        propagate to the receive loop.
        """
        name = event_name(raw)
        try:
            parsed = parse_frame(raw)
            await self._handlers[parsed.event](conn, parsed.data)
        except ChatError as e:
            logger.info("[WS] %s from %s failed: %s %s", name, conn.user_id, e.code, e.message)
            await self._send_error(conn, name, e.code, e.message)
        except Exception:
            logger.exception("[WS] Unexpected error handling %s from %s", name, conn.user_id)
            await self._send_error(conn, name, "InternalError", "Unknown error occurred")

    async def _send_error(self, conn: Connection, name: str, code: str, message: str) -> None:
        await conn.send(frame(OutboundEvent.ERROR, {
            "event": name,
            "code": code,
            "message": message,
        }))

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def _send_many(self, handles: Iterable[str], message: dict) -> None:
        targets = [self.connections[h] for h in handles if h in self.connections]
        if not targets:
            return
        await asyncio.gather(*[c.send(message) for c in targets], return_exceptions=True)

    async def publish(
        self,
        conversation_id: str,
        event: OutboundEvent,
        data: Any,
        exclude: Iterable[str] = (),
    ) -> None:
        """Send to every connection joined to the conversation room."""
        excluded = set(exclude)
        handles = [
            h for h in self.rooms.members(conversation_room(conversation_id))
            if h not in excluded
        ]
        await self._send_many(handles, frame(event, data))

    async def send_to_user(self, user_id: str, event: OutboundEvent, data: Any) -> bool:
        """Send to the user's primary connection; False if the user is offline."""
        handle = self.presence.primary_handle(user_id)
        conn = self.connections.get(handle) if handle else None
        if conn is None:
            return False
        return await conn.send(frame(event, data))

    async def broadcast_all(
        self, event: OutboundEvent, data: Any, exclude: Iterable[str] = ()
    ) -> None:
        excluded = set(exclude)
        await self._send_many(
            [h for h in list(self.connections) if h not in excluded], frame(event, data)
        )

    # =========================================================================
    # Shared flows (also used by the REST router)
    # =========================================================================

    async def announce_read(self, conversation_id: str, reader_id: str) -> ReadResult:
        """Mark the conversation read for ``reader_id`` and announce the ids."""
        result = await run_in_threadpool(self.messages.mark_as_read, conversation_id, reader_id)
        if result.messageIds:
            await self.publish(conversation_id, OutboundEvent.MESSAGES_READ, {
                "conversationId": conversation_id,
                "readBy": reader_id,
                "messageIds": result.messageIds,
                "timestamp": result.readAt.isoformat(),
            })
        return result

    async def announce_new_message(self, message: Message) -> None:
        """Broadcast a persisted message and run the recipient follow-up.

        The recipient's primary connection gets a refreshed conversation list
        even when it is not in the room, and an online recipient's pending
        messages are marked delivered. Follow-up failures are logged only.
        """
        await self.publish(message.conversationId, OutboundEvent.MESSAGE_NEW, {
            "message": _dump(message),
            "conversationId": message.conversationId,
        })
        try:
            await self._deliver_to_recipient(message)
        except Exception:
            logger.exception(
                "[WS] Delivery follow-up for message %s failed", message.id
            )

    async def _deliver_to_recipient(self, message: Message) -> None:
        conversation = await run_in_threadpool(
            self.messages.get_conversation, message.conversationId
        )
        recipient_id = conversation.other_participant_id(message.senderId)

        if self.presence.primary_handle(recipient_id) is not None:
            page = await run_in_threadpool(
                self.messages.get_user_conversations,
                recipient_id,
                1,
                self.conversation_list_size,
            )
            await self.send_to_user(recipient_id, OutboundEvent.CONVERSATIONS_UPDATED, {
                "conversations": [c.model_dump(mode="json") for c in page.data],
            })

        if not self.presence.is_online(recipient_id):
            logger.debug(
                "[WS] %s is offline, message %s stays sent", recipient_id, message.id
            )
            return

        delivery = await run_in_threadpool(self.messages.mark_all_as_delivered, recipient_id)
        message_ids = delivery.messageIdsByConversation.get(message.conversationId)
        if message_ids:
            await self.publish(message.conversationId, OutboundEvent.MESSAGES_DELIVERED, {
                "userId": recipient_id,
                "conversationId": message.conversationId,
                "messageIds": message_ids,
                "timestamp": delivery.deliveredAt.isoformat(),
            })

    async def announce_edited(self, message: Message) -> None:
        await self.publish(message.conversationId, OutboundEvent.MESSAGE_EDITED, {
            "message": _dump(message),
            "conversationId": message.conversationId,
        })

    async def announce_deleted(self, message: Message) -> None:
        await self.publish(message.conversationId, OutboundEvent.MESSAGE_DELETED, {
            "messageId": message.id,
            "conversationId": message.conversationId,
        })

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_join(self, conn: Connection, data: ConversationRef) -> None:
        room = conversation_room(data.conversationId)
        self.rooms.join(room, conn.handle)
        try:
            await self.announce_read(data.conversationId, conn.user_id)
        except BaseException:
            self.rooms.leave(room, conn.handle)
            raise

        logger.info("[WS] %s joined %s", conn.user_id, room)
        await self.publish(data.conversationId, OutboundEvent.USER_JOINED_CONVERSATION, {
            "userId": conn.user_id,
            "conversationId": data.conversationId,
            "timestamp": _now_iso(),
        }, exclude=[conn.handle])

        if self.notifications is not None:
            try:
                await run_in_threadpool(
                    self.notifications.mark_conversation_read, conn.user_id, data.conversationId
                )
            except ChatError as e:
                logger.warning(
                    "[WS] Could not clear notifications of %s for %s: %s",
                    conn.user_id, data.conversationId, e,
                )

        await self.publish(data.conversationId, OutboundEvent.USER_ACTIVE_IN_CONVERSATION, {
            "userId": conn.user_id,
            "conversationId": data.conversationId,
            "timestamp": _now_iso(),
        })

    async def _on_leave(self, conn: Connection, data: ConversationRef) -> None:
        room = conversation_room(data.conversationId)
        if conn.handle not in self.rooms.members(room):
            return
        self.rooms.leave(room, conn.handle)
        await self.publish(data.conversationId, OutboundEvent.USER_LEFT_CONVERSATION, {
            "userId": conn.user_id,
            "conversationId": data.conversationId,
            "timestamp": _now_iso(),
        })

    async def _on_send(self, conn: Connection, data: SendPayload) -> None:
        message = await run_in_threadpool(
            self.messages.send_message,
            data.conversationId,
            conn.user_id,
            data.content,
            data.messageType,
            data.replyToMessageId,
            data.fileName,
            data.fileSize,
            data.mimeType,
        )
        await self.announce_new_message(message)

    async def _on_edit(self, conn: Connection, data: EditPayload) -> None:
        message = await run_in_threadpool(
            self.messages.edit_message, data.messageId, conn.user_id, data.content
        )
        await self.announce_edited(message)

    async def _on_delete(self, conn: Connection, data: DeletePayload) -> None:
        message = await run_in_threadpool(
            self.messages.delete_message, data.messageId, conn.user_id
        )
        await self.announce_deleted(message)

    async def _typing(self, conn: Connection, data: ConversationRef, event: OutboundEvent) -> None:
        conversation = await run_in_threadpool(
            self.messages.get_conversation, data.conversationId
        )
        if not conversation.is_participant(conn.user_id):
            raise AccessDenied()
        await self.publish(data.conversationId, event, {
            "userId": conn.user_id,
            "conversationId": data.conversationId,
        }, exclude=[conn.handle])

    async def _on_typing_start(self, conn: Connection, data: ConversationRef) -> None:
        await self._typing(conn, data, OutboundEvent.TYPING_START)

    async def _on_typing_stop(self, conn: Connection, data: ConversationRef) -> None:
        await self._typing(conn, data, OutboundEvent.TYPING_STOP)

    async def _on_read(self, conn: Connection, data: ConversationRef) -> None:
        await self.announce_read(data.conversationId, conn.user_id)


# =============================================================================
# Singleton
# =============================================================================

_manager: Optional[SessionManager] = None


def get_session_manager() -> Optional[SessionManager]:
    """The running SessionManager, or None outside the application lifespan."""
    return _manager


def set_session_manager(manager: Optional[SessionManager]) -> None:
    global _manager
    _manager = manager
