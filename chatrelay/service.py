from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from collections.abc import Callable

from websockets.sync.server import Server, ServerConnection, serve

from .commands import CommandHandler
from .config import RelayRuntimeConfig
from .constants import SUBPROTOCOL_CBOR, SUBPROTOCOL_JSON
from .liveness import LivenessMonitor
from .messages import MessageHelper, Outgoing
from .rooms import RoomManager
from .router import MessageRouter
from .session import Session, SessionManager
from .stats import StatsManager
from .transport import Transport, TransportClosed, WebSocketTransport


class RelayService:
    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.clock = clock
        self.log = logging.getLogger("chatrelay.relay")

        # Sessions and rooms are touched from every connection thread. Guard
        # them with a single re-entrant lock and never hold it while writing
        # to a socket.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)
        self.room_manager = RoomManager(self)
        self.session_manager = SessionManager(self)
        self.message_helper = MessageHelper(self)
        self.command_handler = CommandHandler(self)
        self.router = MessageRouter(self)
        self.liveness = LivenessMonitor(self)

        self._server: Server | None = None
        self._listener_thread: threading.Thread | None = None

    # Connection lifecycle

    def open_session(self, transport: Transport) -> tuple[str, bool]:
        """
        Evict stale sessions from the same address, register a new session in
        the default room, welcome it and push a presence snapshot.

        Returns (connection id, whether writing to the new connection worked).
        """
        conn_id = str(uuid.uuid4())
        outgoing: Outgoing = []
        evicted: list[Transport] = []
        helper = self.message_helper

        with self._state_lock:
            evicted = self._evict_stale_locked(transport.peer_address, outgoing)
            sess = self.session_manager.register(conn_id, transport)
            self.stats_manager.inc("connects")

            welcome = helper.system_envelope(
                f"connected to {self.config.server_name}, your address: {sess.peer_address}",
                room=sess.room,
            )
            helper.queue_env(outgoing, conn_id, welcome)
            helper.queue_user_list(outgoing, sess.room)

        ok = helper.flush(outgoing, own=transport)

        # Wake the evicted connections' tasks; their own cleanup is then a no-op.
        for old in evicted:
            old.close()

        return conn_id, ok

    def _evict_stale_locked(self, peer_address: str, outgoing: Outgoing) -> list[Transport]:
        if not self.config.evict_stale_same_address:
            return []

        now = self.clock()
        stale_after = float(self.config.stale_after_s)
        evicted: list[Transport] = []
        for old in self.session_manager.sessions_from_address(peer_address):
            if now - old.last_heartbeat <= stale_after:
                continue
            if self._disconnect_locked(old.id, outgoing) is None:
                continue
            evicted.append(old.transport)
            self.stats_manager.inc("evictions")
            self.log.info(
                "Removing stale connection id=%s from same address %s", old.id, peer_address
            )
        return evicted

    def disconnect(self, conn_id: str, *, reason: str = "closed") -> bool:
        """
        Tear down a session: registry entry, room membership and, for named
        sessions, a departure notice plus presence snapshot to the vacated room.

        Idempotent; returns False if the session was already gone.
        """
        outgoing: Outgoing = []
        with self._state_lock:
            sess = self._disconnect_locked(conn_id, outgoing)
        if sess is None:
            return False

        self.message_helper.flush(outgoing)
        self.log.info(
            "Connection closed id=%s user=%r room=%s reason=%s",
            conn_id,
            sess.username,
            sess.room,
            reason,
        )
        return True

    def _disconnect_locked(self, conn_id: str, outgoing: Outgoing) -> Session | None:
        sess = self.session_manager.remove(conn_id)
        if sess is None:
            return None
        self.stats_manager.inc("disconnects")

        if sess.is_named(self.config.sentinel_username):
            helper = self.message_helper
            helper.queue_room(
                outgoing,
                sess.room,
                helper.system_envelope(f"{sess.username} left the chat", room=sess.room),
            )
            helper.queue_user_list(outgoing, sess.room)
        return sess

    def handle_connection(self, transport: Transport) -> None:
        """Per-connection task: runs until the connection ends, then cleans up."""
        conn_id, ok = self.open_session(transport)
        self.log.info("New connection id=%s peer=%s", conn_id, transport.peer_address)

        reason = "send failed"
        try:
            if ok:
                reason = self._connection_loop(conn_id, transport)
        except Exception:
            self.log.exception("Connection task failed id=%s", conn_id)
            reason = "error"
        finally:
            self.disconnect(conn_id, reason=reason)
            transport.close()

    def _connection_loop(self, conn_id: str, transport: Transport) -> str:
        """
        Wait for whichever comes first: the next inbound frame or the next
        liveness tick. Returns the reason the loop ended.
        """
        interval = self.liveness.interval
        next_tick = self.clock() + interval if interval > 0 else None

        while not self._shutdown.is_set():
            timeout = None
            if next_tick is not None:
                timeout = next_tick - self.clock()
                if timeout <= 0:
                    if not self.liveness.tick(conn_id):
                        return "liveness"
                    next_tick = self.clock() + interval
                    continue

            try:
                data = transport.recv(timeout=timeout)
            except TimeoutError:
                continue
            except TransportClosed:
                return "peer closed"

            if not self.router.route_frame(conn_id, data):
                return "session ended"

        return "shutdown"

    # Listener

    def _ws_handler(self, conn: ServerConnection) -> None:
        self.handle_connection(WebSocketTransport(conn))

    def start(self) -> None:
        self.stats_manager.set_start_time()
        self._server = serve(
            self._ws_handler,
            self.config.host,
            self.config.port,
            subprotocols=[SUBPROTOCOL_JSON, SUBPROTOCOL_CBOR],
            # Liveness is handled per connection by LivenessMonitor.
            ping_interval=None,
            max_size=self.config.max_frame_bytes,
            close_timeout=self.config.close_timeout_s,
        )
        self._listener_thread = threading.Thread(
            target=self._server.serve_forever, name="chatrelay-listener", daemon=True
        )
        self._listener_thread.start()

        self.log.info(
            "Relay listening on %s:%s default_room=%s",
            self.config.host,
            self.bound_port(),
            self.config.default_room,
        )
        self.log.info(
            "Policy ping_interval_s=%s liveness_timeout_s=%s evict_stale=%s stale_after_s=%s rate_limit_msgs_per_minute=%s",
            self.config.ping_interval_s,
            self.config.liveness_timeout_s,
            self.config.evict_stale_same_address,
            self.config.stale_after_s,
            self.config.rate_limit_msgs_per_minute,
        )

    def bound_port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.socket.getsockname()[1]

    def run_forever(self) -> None:
        if self._server is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        if self._server is not None:
            self._server.shutdown()

        transports = self.session_manager.clear_all()
        with self._state_lock:
            self.room_manager.clear_all()

        for transport in transports:
            transport.close()

        self.log.info("Relay stopped")
