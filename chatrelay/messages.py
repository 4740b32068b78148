"""Message queueing and delivery for the relay."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import encode_envelope
from .constants import USERLIST_SEP
from .envelope import Envelope, MsgType, make_envelope
from .transport import DeliveryError

if TYPE_CHECKING:
    from .service import RelayService
    from .transport import Transport

Outgoing = list[tuple["Transport", Envelope]]


class MessageHelper:
    """
    Helper methods for queueing and delivering envelopes.

    Handlers run with the state lock held and only *queue* work: each entry in
    an outgoing list pairs a recipient transport with an envelope. ``flush``
    performs the writes after the lock is released, so a slow recipient never
    stalls state changes elsewhere.

    Handles:
    - Unicast, room broadcast and system notice queueing
    - Presence snapshots (userlist envelopes)
    - Per-recipient encoding (JSON text or CBOR binary)
    - Delivery failure isolation
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.delivery")

    def system_envelope(
        self, text: str, *, room: str = "", msg_type: MsgType = MsgType.SYSTEM
    ) -> Envelope:
        return make_envelope(
            msg_type, username=self.hub.config.system_username, room=room, text=text
        )

    def queue_env(self, outgoing: Outgoing, conn_id: str, env: Envelope) -> None:
        """Queue an envelope for one connection. Missing sessions are skipped."""
        sess = self.hub.session_manager.sessions.get(conn_id)
        if sess is None:
            return
        outgoing.append((sess.transport, env))

    def queue_room(self, outgoing: Outgoing, room: str, env: Envelope) -> int:
        """Queue an envelope for every member of a room. Returns recipient count."""
        members = self.hub.session_manager.members_of(room)
        if not members and self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("No members in room=%s, %s not delivered", room, env.msg_type)
        for sess in members:
            outgoing.append((sess.transport, env))
        return len(members)

    def queue_notice(
        self, outgoing: Outgoing, conn_id: str, text: str, *, room: str = ""
    ) -> None:
        self.queue_env(outgoing, conn_id, self.system_envelope(text, room=room))

    def queue_user_list(self, outgoing: Outgoing, room: str) -> None:
        """Queue a presence snapshot of ``room`` to its members."""
        members = self.hub.session_manager.members_of(room)
        if not members:
            return
        text = USERLIST_SEP.join(f"{s.username}:{s.peer_address}" for s in members)
        env = self.system_envelope(text, room=room, msg_type=MsgType.USERLIST)
        for sess in members:
            outgoing.append((sess.transport, env))

    def send(self, transport: Transport, env: Envelope) -> bool:
        """Encode and write one envelope immediately. Returns False on failure."""
        try:
            transport.send(encode_envelope(env, binary=transport.binary))
        except DeliveryError as e:
            self.hub.stats_manager.inc("delivery_failures")
            self.log.warning(
                "Send failed peer=%s type=%s err=%s",
                transport.peer_address,
                env.msg_type,
                e,
            )
            return False
        self.hub.stats_manager.inc("envelopes_out")
        return True

    def flush(self, outgoing: Outgoing, *, own: Transport | None = None) -> bool:
        """
        Deliver queued envelopes in order. Must be called without the state lock.

        A failed write to another connection is logged and skipped. Returns
        False if a write to ``own`` (the calling connection) failed, which is
        fatal to that connection.
        """
        own_ok = True
        encoded: dict[tuple[int, bool], str | bytes] = {}
        for transport, env in outgoing:
            key = (id(env), transport.binary)
            frame = encoded.get(key)
            if frame is None:
                frame = encode_envelope(env, binary=transport.binary)
                encoded[key] = frame
            try:
                transport.send(frame)
            except DeliveryError as e:
                self.hub.stats_manager.inc("delivery_failures")
                if transport is own:
                    own_ok = False
                    self.log.warning(
                        "Send to own connection failed peer=%s err=%s",
                        transport.peer_address,
                        e,
                    )
                else:
                    self.log.debug(
                        "Broadcast send failed peer=%s type=%s err=%s",
                        transport.peer_address,
                        env.msg_type,
                        e,
                    )
                continue
            self.hub.stats_manager.inc("envelopes_out")
        return own_ok
