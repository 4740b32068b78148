from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from .service import RelayService
    from .transport import Transport

R = TypeVar("R")


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass
class Session:
    """One live connection.

    ``id``, ``peer_address`` and ``join_time`` are fixed at registration and
    may not be reassigned. ``username`` changes at most once, from the sentinel
    to a real name. ``room`` changes only through ``SessionManager.move_room``.
    """

    _FIXED = frozenset({"id", "peer_address", "join_time"})

    id: str
    peer_address: str
    transport: Transport = field(repr=False)
    username: str
    room: str
    join_time: float
    last_heartbeat: float
    seq: int = 0

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._FIXED and name in self.__dict__:
            raise AttributeError(f"session field {name!r} cannot change")
        super().__setattr__(name, value)

    def is_named(self, sentinel: str) -> bool:
        return self.username != sentinel


class SessionManager:
    """
    Connection Registry: owns every live Session, keyed by connection id.

    Together with the RoomManager it forms one atomicity domain guarded by the
    relay's state lock. Every method that touches both takes the lock itself;
    the lock is re-entrant, so callers already holding it can compose calls.

    This class is responsible for:
    - Session registration and removal (with room membership)
    - Moving sessions between rooms
    - The one-time sentinel -> named transition and the username index
    - Heartbeat bookkeeping
    - Rate limiting with a token bucket
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.session")
        self.sessions: dict[str, Session] = {}
        self._rate: dict[str, _RateState] = {}
        self._index_by_name: dict[str, list[str]] = {}  # username -> ids, join order
        self._seq = itertools.count()

    def register(
        self, conn_id: str, transport: Transport, initial_room: str | None = None
    ) -> Session:
        """Insert a new sentinel-named session and add it to its initial room."""
        room = initial_room or self.hub.config.default_room
        now = self.hub.clock()
        sess = Session(
            id=conn_id,
            peer_address=transport.peer_address,
            transport=transport,
            username=self.hub.config.sentinel_username,
            room=room,
            join_time=now,
            last_heartbeat=now,
            seq=next(self._seq),
        )
        with self.hub._state_lock:
            if conn_id in self.sessions:
                raise ValueError(f"connection id already registered: {conn_id}")
            self.sessions[conn_id] = sess
            self._rate[conn_id] = _RateState(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=now,
            )
            self.hub.room_manager.add_member(room, conn_id)

        self.log.info(
            "Session registered id=%s peer=%s room=%s", conn_id, sess.peer_address, room
        )
        return sess

    def lookup(self, conn_id: str) -> Session | None:
        with self.hub._state_lock:
            return self.sessions.get(conn_id)

    def mutate(self, conn_id: str, fn: Callable[[Session], R]) -> R | None:
        """Apply ``fn`` to a session under the lock. Returns None if it is gone."""
        with self.hub._state_lock:
            sess = self.sessions.get(conn_id)
            if sess is None:
                return None
            return fn(sess)

    def remove(self, conn_id: str) -> Session | None:
        """Remove a session and its room membership. A second call returns None."""
        with self.hub._state_lock:
            sess = self.sessions.pop(conn_id, None)
            self._rate.pop(conn_id, None)
            if sess is None:
                return None
            self._unindex_name(conn_id, sess.username)
            self.hub.room_manager.remove_member(sess.room, conn_id)
            return sess

    def move_room(self, conn_id: str, old: str, new: str) -> bool:
        """Move a session from ``old`` to ``new`` as one step.

        Returns False without changing anything if the session is gone or is
        no longer in ``old``.
        """
        with self.hub._state_lock:
            sess = self.sessions.get(conn_id)
            if sess is None or sess.room != old:
                return False
            self.hub.room_manager.remove_member(old, conn_id)
            self.hub.room_manager.add_member(new, conn_id)
            sess.room = new
            return True

    def members_of(self, room: str) -> list[Session]:
        """Sessions currently in a room, in join order."""
        with self.hub._state_lock:
            out = [
                self.sessions[cid]
                for cid in self.hub.room_manager.get_room_members(room)
                if cid in self.sessions
            ]
        out.sort(key=lambda s: s.seq)
        return out

    def assign_username(self, conn_id: str, username: str) -> bool:
        """Name a sentinel session. Returns True only on the first assignment."""
        sentinel = self.hub.config.sentinel_username
        with self.hub._state_lock:
            sess = self.sessions.get(conn_id)
            if sess is None or sess.is_named(sentinel) or username == sentinel:
                return False
            sess.username = username
            self._index_by_name.setdefault(username, []).append(conn_id)
            return True

    def find_by_username(self, username: str) -> str | None:
        """Resolve a username to a connection id; earliest joined wins."""
        with self.hub._state_lock:
            ids = self._index_by_name.get(username)
            return ids[0] if ids else None

    def touch(self, conn_id: str) -> None:
        """Refresh last_heartbeat. Never moves it backwards."""
        now = self.hub.clock()
        with self.hub._state_lock:
            sess = self.sessions.get(conn_id)
            if sess is not None and now > sess.last_heartbeat:
                sess.last_heartbeat = now

    def sessions_from_address(self, peer_address: str) -> list[Session]:
        with self.hub._state_lock:
            return [s for s in self.sessions.values() if s.peer_address == peer_address]

    def count(self) -> int:
        with self.hub._state_lock:
            return len(self.sessions)

    def refill_and_take(self, conn_id: str, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        A limit of 0 disables rate limiting.
        """
        limit = int(self.hub.config.rate_limit_msgs_per_minute)
        if limit <= 0:
            return True

        with self.hub._state_lock:
            state = self._rate.get(conn_id)
            if state is None:
                return True

            now = self.hub.clock()
            per_min = float(limit)
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * per_min / 60.0)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[Transport]:
        """
        Drop every session and return their transports for teardown.
        """
        with self.hub._state_lock:
            transports = [s.transport for s in self.sessions.values()]
            for sess in self.sessions.values():
                self.hub.room_manager.remove_member(sess.room, sess.id)
            self.sessions.clear()
            self._rate.clear()
            self._index_by_name.clear()
        return transports

    def get_stats(self) -> dict[str, Any]:
        """Get session statistics for monitoring."""
        sentinel = self.hub.config.sentinel_username
        with self.hub._state_lock:
            total = len(self.sessions)
            named = sum(1 for s in self.sessions.values() if s.is_named(sentinel))
            indexed = len(self._index_by_name)
        return {"total": total, "named": named, "indexed_by_name": indexed}

    def _unindex_name(self, conn_id: str, username: str) -> None:
        ids = self._index_by_name.get(username)
        if not ids:
            return
        if conn_id in ids:
            ids.remove(conn_id)
        if not ids:
            self._index_by_name.pop(username, None)
