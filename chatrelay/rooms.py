"""Room Index for the relay.

Maps room name -> member connection ids. The default room is created at
startup and never removed; every other room exists only while it has members.
All methods expect the relay state lock to be held by the caller, or take it
themselves where noted.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .service import RelayService


class RoomManager:
    """Manages room memberships."""

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.rooms")
        self.rooms: dict[str, set[str]] = {}
        self.ensure_default_room()

    @property
    def default_room(self) -> str:
        return self.hub.config.default_room

    def ensure_default_room(self) -> None:
        self.rooms.setdefault(self.default_room, set())

    def clear_all(self) -> None:
        """Drop every room except an empty default room. Called during shutdown."""
        self.rooms.clear()
        self.ensure_default_room()

    def get_room_members(self, room: str) -> set[str]:
        """Copy of the ids currently in a room (empty if the room does not exist)."""
        return set(self.rooms.get(room, ()))

    def has_room(self, room: str) -> bool:
        return room in self.rooms

    def add_member(self, room: str, conn_id: str) -> None:
        """Add an id to a room, creating the room if needed."""
        if room not in self.rooms:
            self.rooms[room] = set()
            self.log.debug("Room created room=%s", room)
        self.rooms[room].add(conn_id)

    def remove_member(self, room: str, conn_id: str) -> None:
        """Remove an id from a room, deleting the room if it is now empty."""
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(conn_id)
        if not members and room != self.default_room:
            self.rooms.pop(room, None)
            self.log.debug("Room deleted room=%s", room)

    def room_counts(self) -> list[tuple[str, int]]:
        """(room, member count) pairs, default room first, then by name."""
        with self.hub._state_lock:
            items = [(room, len(ids)) for room, ids in self.rooms.items()]
        return sorted(items, key=lambda x: (x[0] != self.default_room, x[0]))

    def count(self) -> int:
        with self.hub._state_lock:
            return len(self.rooms)

    def get_stats(self) -> dict[str, Any]:
        """Get room statistics for relay stats."""
        with self.hub._state_lock:
            rooms_total = len(self.rooms)
            memberships = sum(len(v) for v in self.rooms.values())
            top_rooms = sorted(
                ((room, len(ids)) for room, ids in self.rooms.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
        return {
            "rooms_total": rooms_total,
            "memberships": memberships,
            "top_rooms": top_rooms,
        }
