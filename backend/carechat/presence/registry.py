"""Presence registry: which users are connected, and through which handles.

A user may hold several live connections (browser tabs, mobile app). The
registry keeps the set of handles per user plus one "primary" handle that
receives user-targeted pushes. When the primary closes while others remain,
any surviving handle is promoted.

Thread Safety:
    Registration and deregistration run from many connection tasks at once
    (and from worker threads). Every mutation of a user's entry holds the lock
    of that user's shard, so updates for one user are exclusive while updates
    for unrelated users rarely contend. Reads of a single entry take the same
    lock; ``snapshot()`` takes the shard locks one at a time and is therefore
    a per-user consistent, not globally atomic, view.

The registry never broadcasts; the session manager raises online/offline
events from the return values of ``register_connection`` and
``deregister_connection``.
"""
import logging
import threading
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SHARDS = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class PresenceEntry:
    """Presence of one online user.

    Attributes:
        userId: Internal user id.
        displayName: Name shown to other users.
        lastSeen: Updated on every registration and deregistration.
        handles: Currently open connection handles.
        primaryHandle: Handle that receives user-targeted pushes.
    """
    userId: str
    displayName: str
    lastSeen: datetime
    handles: Set[str] = field(default_factory=set)
    primaryHandle: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "userId": self.userId,
            "displayName": self.displayName,
            "lastSeen": self.lastSeen.isoformat(),
        }


class PresenceRegistry:
    """Sharded-lock map of user id -> PresenceEntry."""

    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._locks = [threading.Lock() for _ in range(max(shards, 1))]
        self._entries: Dict[str, PresenceEntry] = {}
        self._clock = clock

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(user_id.encode("utf-8")) % len(self._locks)]

    def register_connection(
        self, user_id: str, handle: str, display_name: str = ""
    ) -> Tuple[PresenceEntry, bool]:
        """Add ``handle`` to the user's active set.

        Returns:
            (entry, came_online) where ``came_online`` is True when this is the
            user's first active connection.
        """
        now = self._clock()
        with self._lock_for(user_id):
            entry = self._entries.get(user_id)
            came_online = entry is None
            if came_online:
                entry = PresenceEntry(userId=user_id, displayName=display_name, lastSeen=now)
                self._entries[user_id] = entry
            entry.handles.add(handle)
            if entry.primaryHandle is None:
                entry.primaryHandle = handle
            if display_name:
                entry.displayName = display_name
            entry.lastSeen = now
            handle_count = len(entry.handles)

        logger.debug(
            "[Presence] %s registered %s (%d handle(s))", user_id, handle, handle_count
        )
        return entry, came_online

    def deregister_connection(self, user_id: str, handle: str) -> Optional[datetime]:
        """Remove ``handle`` from the user's active set.

        Returns:
            The last-seen timestamp if the user went fully offline, else None.
        """
        now = self._clock()
        with self._lock_for(user_id):
            entry = self._entries.get(user_id)
            if entry is None or handle not in entry.handles:
                return None
            entry.handles.discard(handle)
            entry.lastSeen = now
            if not entry.handles:
                del self._entries[user_id]
                logger.debug("[Presence] %s went offline", user_id)
                return now
            if entry.primaryHandle == handle:
                entry.primaryHandle = next(iter(entry.handles))
                logger.debug(
                    "[Presence] %s primary handle moved to %s", user_id, entry.primaryHandle
                )
        return None

    def is_online(self, user_id: str) -> bool:
        with self._lock_for(user_id):
            return user_id in self._entries

    def primary_handle(self, user_id: str) -> Optional[str]:
        with self._lock_for(user_id):
            entry = self._entries.get(user_id)
            return entry.primaryHandle if entry else None

    def handles(self, user_id: str) -> Set[str]:
        with self._lock_for(user_id):
            entry = self._entries.get(user_id)
            return set(entry.handles) if entry else set()

    def snapshot(self, exclude_user: Optional[str] = None) -> List[PresenceEntry]:
        """Copies of every online user's entry."""
        result = []
        for user_id in list(self._entries):
            if user_id == exclude_user:
                continue
            with self._lock_for(user_id):
                entry = self._entries.get(user_id)
                if entry is None:
                    continue
                result.append(PresenceEntry(
                    userId=entry.userId,
                    displayName=entry.displayName,
                    lastSeen=entry.lastSeen,
                    handles=set(entry.handles),
                    primaryHandle=entry.primaryHandle,
                ))
        return result
