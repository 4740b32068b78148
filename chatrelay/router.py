from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import decode_envelope
from .envelope import DecodeError, Envelope, MsgType, now_s
from .util import norm_room, normalize_username

if TYPE_CHECKING:
    from .messages import Outgoing
    from .service import RelayService
    from .session import Session


class MessageRouter:
    """
    Handles inbound frames for the relay.

    This class is responsible for:
    - Decoding and validating incoming frames
    - Refreshing liveness on any inbound traffic
    - The one-time sentinel -> named transition with its announcement
    - Dispatching envelopes by type (chat, private, ping, pong, join, command)
    - The room-switch protocol
    - Rate limiting
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.router")

    def route_frame(self, conn_id: str, data: str | bytes) -> bool:
        """
        Main entry point for one inbound frame.

        State changes happen under the state lock; the resulting deliveries
        are written after it is released. Returns False when the connection
        should stop: its session is gone, or a write to its own socket failed.
        """
        outgoing: Outgoing = []
        with self.hub._state_lock:
            sess = self.hub.session_manager.sessions.get(conn_id)
            if sess is None:
                return False
            own = sess.transport
            self._route_locked(sess, data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Sending %d envelope(s) for id=%s", len(outgoing), conn_id)

        return self.hub.message_helper.flush(outgoing, own=own)

    def _route_locked(self, sess: Session, data: str | bytes, outgoing: Outgoing) -> None:
        self.hub.stats_manager.inc("frames_in")
        self.hub.session_manager.touch(sess.id)

        try:
            env = decode_envelope(data)
        except DecodeError as e:
            self.hub.stats_manager.inc("frames_bad")
            self.log.debug(
                "Bad frame id=%s peer=%s bytes=%s err=%s",
                sess.id,
                sess.peer_address,
                len(data),
                e,
            )
            self.hub.message_helper.queue_notice(
                outgoing, sess.id, f"malformed message, check the client: {e}"
            )
            return

        kind = env.kind

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX id=%s user=%r t=%s room=%r text_len=%s",
                sess.id,
                sess.username,
                env.msg_type,
                env.room,
                len(env.text),
            )

        if kind is not MsgType.PONG and not self.hub.session_manager.refill_and_take(sess.id):
            self.hub.stats_manager.inc("rate_limited")
            self.hub.message_helper.queue_notice(outgoing, sess.id, "rate limited")
            return

        self._maybe_assign_username(sess, env, outgoing)

        if kind is MsgType.CHAT:
            self._handle_chat(sess, env, outgoing)
        elif kind is MsgType.PRIVATE:
            self._handle_private(sess, env, outgoing)
        elif kind is MsgType.PING:
            self._handle_ping(sess, env, outgoing)
        elif kind is MsgType.PONG:
            self.hub.stats_manager.inc("pongs_in")
        elif kind is MsgType.JOIN:
            self._handle_join(sess, env, outgoing)
        elif kind is MsgType.COMMAND:
            self._handle_command(sess, env, outgoing)
        else:
            # Unknown tags and server-only tags (system, userlist).
            self.hub.stats_manager.inc("unknown_types")
            self.log.warning(
                "Unhandled message type %r from id=%s", env.msg_type, sess.id
            )

    def _maybe_assign_username(
        self, sess: Session, env: Envelope, outgoing: Outgoing
    ) -> None:
        cfg = self.hub.config
        if sess.is_named(cfg.sentinel_username):
            return
        name = normalize_username(
            env.username,
            max_chars=cfg.username_max_chars,
            sentinel=cfg.sentinel_username,
        )
        if name is None:
            return
        if not self.hub.session_manager.assign_username(sess.id, name):
            return

        self.log.info("Named id=%s username=%r room=%s", sess.id, name, sess.room)
        helper = self.hub.message_helper
        helper.queue_room(
            outgoing, sess.room, helper.system_envelope(f"{name} joined the chat", room=sess.room)
        )
        helper.queue_user_list(outgoing, sess.room)

    def _handle_chat(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        # Identity fields come from the session, never from the client.
        out = env.with_(
            username=sess.username, room=sess.room, timestamp=now_s(), target=None
        )
        recipients = self.hub.message_helper.queue_room(outgoing, sess.room, out)
        self.hub.stats_manager.inc("chats_forwarded")

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Forwarded chat user=%r room=%s recipients=%s",
                sess.username,
                sess.room,
                recipients,
            )

    def _handle_private(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        helper = self.hub.message_helper
        target = env.target
        if not target:
            helper.queue_notice(
                outgoing, sess.id, "private message requires a target", room=sess.room
            )
            return

        target_id = self.hub.session_manager.find_by_username(target)
        if target_id is None:
            helper.queue_notice(
                outgoing,
                sess.id,
                f"user {target} is not online or does not exist",
                room=sess.room,
            )
            return

        out = env.with_(username=sess.username, room=sess.room, timestamp=now_s())
        helper.queue_env(outgoing, target_id, out)
        if target_id != sess.id:
            helper.queue_env(outgoing, sess.id, out)
        self.hub.stats_manager.inc("privates_forwarded")
        self.log.info("Private message from %r to %r", sess.username, target)

    def _handle_ping(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        self.hub.stats_manager.inc("pings_in")
        pong = self.hub.message_helper.system_envelope(env.text, msg_type=MsgType.PONG)
        self.hub.message_helper.queue_env(outgoing, sess.id, pong)
        self.hub.stats_manager.inc("pongs_out")

    def _handle_join(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        if not env.room.strip():
            return
        try:
            room = norm_room(env.room, max_len=self.hub.config.max_room_name_len)
        except ValueError as e:
            self.hub.message_helper.queue_notice(outgoing, sess.id, str(e), room=sess.room)
            return
        self.switch_room(sess, room, outgoing)

    def _handle_command(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Command id=%s text=%r", sess.id, env.text)
        response = self.hub.command_handler.handle_command(sess.id, env.text, outgoing)
        if response:
            self.hub.message_helper.queue_notice(outgoing, sess.id, response, room=sess.room)

    def switch_room(self, sess: Session, new_room: str, outgoing: Outgoing) -> None:
        """Move a session to ``new_room``, announcing the move on both sides.

        Must be called with the state lock held.
        """
        helper = self.hub.message_helper
        old_room = sess.room
        if new_room == old_room:
            helper.queue_notice(
                outgoing, sess.id, f"you are already in room {new_room}", room=old_room
            )
            return

        if not self.hub.session_manager.move_room(sess.id, old_room, new_room):
            return

        name = sess.username
        helper.queue_room(
            outgoing, old_room, helper.system_envelope(f"{name} left the room", room=old_room)
        )
        helper.queue_room(
            outgoing, new_room, helper.system_envelope(f"{name} joined the room", room=new_room)
        )
        helper.queue_user_list(outgoing, old_room)
        helper.queue_user_list(outgoing, new_room)
        self.hub.stats_manager.inc("room_switches")

        self.log.info("User %r moved from room %s to room %s", name, old_room, new_room)
