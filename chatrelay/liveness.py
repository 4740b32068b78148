from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .envelope import MsgType
from .transport import DeliveryError

if TYPE_CHECKING:
    from .service import RelayService


class LivenessMonitor:
    """Heartbeat-based dead connection detection.

    Each connection task calls ``tick`` once per ``ping_interval_s``. A
    connection whose last inbound traffic is older than ``liveness_timeout_s``
    is reported dead; otherwise it is probed with an application ``ping`` and a
    protocol keepalive. A probe that cannot be written counts as dead too.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.liveness")

    @property
    def interval(self) -> float:
        return float(self.hub.config.ping_interval_s)

    def elapsed(self, conn_id: str) -> float | None:
        """Seconds since the last inbound traffic, or None if the session is gone."""
        with self.hub._state_lock:
            sess = self.hub.session_manager.sessions.get(conn_id)
            if sess is None:
                return None
            return self.hub.clock() - sess.last_heartbeat

    def tick(self, conn_id: str) -> bool:
        """Run one liveness check. Returns False if the connection must end."""
        sess = self.hub.session_manager.lookup(conn_id)
        if sess is None:
            return False
        transport = sess.transport

        # A keepalive acknowledged since the last tick is inbound traffic.
        if transport.keepalive_acked():
            self.hub.session_manager.touch(conn_id)

        elapsed = self.elapsed(conn_id)
        if elapsed is None:
            return False

        timeout = float(self.hub.config.liveness_timeout_s)
        if timeout > 0 and elapsed > timeout:
            self.hub.stats_manager.inc("liveness_timeouts")
            self.log.info(
                "Client timed out id=%s peer=%s idle_s=%.1f",
                conn_id,
                sess.peer_address,
                elapsed,
            )
            return False

        ping = self.hub.message_helper.system_envelope("", msg_type=MsgType.PING)
        if not self.hub.message_helper.send(transport, ping):
            self.log.info("Ping failed id=%s peer=%s", conn_id, sess.peer_address)
            return False
        self.hub.stats_manager.inc("pings_out")

        try:
            transport.send_keepalive()
        except DeliveryError as e:
            self.log.info(
                "Keepalive failed id=%s peer=%s err=%s", conn_id, sess.peer_address, e
            )
            return False
        return True
