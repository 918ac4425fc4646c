"""RoomRegistry, a set-valued mapping of group key to subscribed connections.

Conversation rooms are keyed ``conversation:{id}``. A connection may sit in
any number of rooms; ``leave_all`` drops it from every room on disconnect.
"""
import threading
from typing import Dict, List, Set


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class RoomRegistry:
    """Subscribe/unsubscribe bookkeeping. Publishing is done by the caller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._members: Dict[str, Set[str]] = {}
        self._rooms_of: Dict[str, Set[str]] = {}

    def join(self, room: str, handle: str) -> None:
        with self._lock:
            self._members.setdefault(room, set()).add(handle)
            self._rooms_of.setdefault(handle, set()).add(room)

    def leave(self, room: str, handle: str) -> None:
        with self._lock:
            self._discard(room, handle)

    def leave_all(self, handle: str) -> List[str]:
        """Remove ``handle`` from every room; returns the rooms it was in."""
        with self._lock:
            rooms = list(self._rooms_of.get(handle, ()))
            for room in rooms:
                self._discard(room, handle)
            return rooms

    def members(self, room: str) -> Set[str]:
        with self._lock:
            return set(self._members.get(room, ()))

    def rooms_of(self, handle: str) -> Set[str]:
        with self._lock:
            return set(self._rooms_of.get(handle, ()))

    def _discard(self, room: str, handle: str) -> None:
        members = self._members.get(room)
        if members is not None:
            members.discard(handle)
            if not members:
                del self._members[room]
        rooms = self._rooms_of.get(handle)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._rooms_of[handle]
