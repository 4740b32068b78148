"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class StatsManager:
    """
    Manages relay statistics collection and reporting.

    Tracks counters for:
    - Frames received and rejected
    - Envelopes delivered and delivery failures
    - Chats, private messages, room switches and commands
    - Ping/pong activity
    - Evictions, liveness timeouts and rate limiting
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub

        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "frames_in": 0,
            "frames_bad": 0,
            "envelopes_out": 0,
            "delivery_failures": 0,
            "connects": 0,
            "disconnects": 0,
            "chats_forwarded": 0,
            "privates_forwarded": 0,
            "room_switches": 0,
            "commands": 0,
            "pings_in": 0,
            "pongs_in": 0,
            "pings_out": 0,
            "pongs_out": 0,
            "evictions": 0,
            "liveness_timeouts": 0,
            "rate_limited": 0,
            "unknown_types": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self.hub._state_lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return self._counters.get(key, 0)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        with self.hub._state_lock:
            connections = len(self.hub.session_manager.sessions)
            room_stats = self.hub.room_manager.get_stats()
            c = dict(self._counters)

        lines: list[str] = [
            "relay statistics:",
            f"connections: {connections}",
            f"rooms: {room_stats['rooms_total']}",
            f"uptime_s={uptime_s:.1f}",
        ]
        if room_stats["top_rooms"]:
            lines.append(
                "top_rooms=" + ", ".join(f"{r}:{n}" for r, n in room_stats["top_rooms"])
            )
        lines.append(
            "io: frames_in={} frames_bad={} envelopes_out={} delivery_failures={}".format(
                c["frames_in"], c["frames_bad"], c["envelopes_out"], c["delivery_failures"]
            )
        )
        lines.append(
            "events: connects={} disconnects={} chats={} privates={} switches={} commands={}".format(
                c["connects"],
                c["disconnects"],
                c["chats_forwarded"],
                c["privates_forwarded"],
                c["room_switches"],
                c["commands"],
            )
        )
        lines.append(
            "liveness: pings_in={} pongs_in={} pings_out={} pongs_out={} timeouts={} evictions={}".format(
                c["pings_in"],
                c["pongs_in"],
                c["pings_out"],
                c["pongs_out"],
                c["liveness_timeouts"],
                c["evictions"],
            )
        )
        return "\n".join(lines)
