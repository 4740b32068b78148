"""Slash-command handling for relay clients."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from .envelope import MsgType

if TYPE_CHECKING:
    from .messages import Outgoing
    from .service import RelayService

# /join and /msg are listed for parity with older clients, which send them as
# `join` and `private` envelopes rather than as command text.
HELP_TEXT = "\n".join(
    [
        "available commands:",
        "/help - show this help",
        "/rooms - list all rooms",
        "/join <room> - join a room",
        "/users - list users in the current room",
        "/msg <user> <message> - send a private message",
        "/ping - test round-trip latency",
        "/stats - show relay statistics",
    ]
)


class CommandHandler:
    """Maps command text to a response for the caller.

    An empty response means the command already queued its own output.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub

    def handle_command(self, conn_id: str, text: str, outgoing: Outgoing) -> str:
        """Run one command. Must be called with the state lock held."""
        parts = text.split()
        if not parts:
            return "please enter a command"

        self.hub.stats_manager.inc("commands")
        cmd = parts[0]

        if cmd == "/help":
            return HELP_TEXT

        if cmd == "/rooms":
            rooms = self.hub.room_manager.room_counts()
            lines = [f"{room} ({n} online)" for room, n in rooms]
            return "rooms:\n" + "\n".join(lines)

        if cmd == "/users":
            sess = self.hub.session_manager.sessions.get(conn_id)
            if sess is None:
                return ""
            members = self.hub.session_manager.members_of(sess.room)
            lines = [f"{m.username} ({m.peer_address})" for m in members]
            return f"{len(members)} user(s) in {sess.room}:\n" + "\n".join(lines)

        if cmd == "/ping":
            # Clients echo the body back in a pong; microseconds give them the RTT.
            ping = self.hub.message_helper.system_envelope(
                str(time.time_ns() // 1000), msg_type=MsgType.PING
            )
            self.hub.message_helper.queue_env(outgoing, conn_id, ping)
            self.hub.stats_manager.inc("pings_out")
            return ""

        if cmd == "/stats":
            return self.hub.stats_manager.format_stats()

        return f"unknown command: {text}"
