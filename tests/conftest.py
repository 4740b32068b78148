import itertools
import json
import queue

import pytest

from chatrelay.codec import decode_envelope
from chatrelay.config import RelayRuntimeConfig
from chatrelay.envelope import make_envelope
from chatrelay.service import RelayService
from chatrelay.transport import DeliveryError, TransportClosed

_CLOSE = object()


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self, peer_address: str, *, binary: bool = False) -> None:
        self.peer_address = peer_address
        self.binary = binary
        self.conn_id: str | None = None
        self.sent: list = []
        self.closed = False
        self.fail_sends = False
        self.acked = False
        self.keepalives = 0
        self._inbox: queue.Queue = queue.Queue()

    def feed(self, frame) -> None:
        self._inbox.put(frame)

    def recv(self, timeout=None):
        try:
            item = self._inbox.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError from None
        if item is _CLOSE:
            raise TransportClosed("closed")
        return item

    def send(self, frame) -> None:
        if self.fail_sends or self.closed:
            raise DeliveryError("broken pipe")
        self.sent.append(frame)

    def send_keepalive(self) -> None:
        if self.fail_sends or self.closed:
            raise DeliveryError("broken pipe")
        self.keepalives += 1

    def keepalive_acked(self) -> bool:
        acked, self.acked = self.acked, False
        return acked

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put(_CLOSE)

    def envelopes(self):
        return [decode_envelope(f) for f in self.sent]

    def of_type(self, msg_type: str):
        return [e for e in self.envelopes() if e.msg_type == msg_type]


def make_frame(msg_type: str, *, username: str = "unnamed", room: str = "", text: str = "",
               target: str | None = None) -> str:
    env = make_envelope(msg_type, username=username, room=room, text=text, target=target)
    return json.dumps(env.to_wire())


@pytest.fixture
def frame():
    return make_frame


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> RelayRuntimeConfig:
    return RelayRuntimeConfig()


@pytest.fixture
def relay(config, clock) -> RelayService:
    return RelayService(config, clock=clock)


@pytest.fixture
def connect(relay):
    """Open a session over a fake transport; optionally name it and clear its outbox."""
    addrs = (f"10.0.0.{n}" for n in itertools.count(1))

    def _connect(name: str | None = None, *, peer: str | None = None, binary: bool = False,
                 clear: bool = True) -> FakeTransport:
        t = FakeTransport(peer or next(addrs), binary=binary)
        conn_id, ok = relay.open_session(t)
        assert ok
        t.conn_id = conn_id
        if name is not None:
            assert relay.router.route_frame(conn_id, make_frame("pong", username=name))
        if clear:
            t.sent.clear()
        return t

    return _connect


@pytest.fixture
def invariants(relay):
    """Return a checker for the registry / room index consistency rules."""

    def _check() -> None:
        sm = relay.session_manager
        rm = relay.room_manager
        default = relay.config.default_room
        with relay._state_lock:
            assert default in rm.rooms
            for cid, sess in sm.sessions.items():
                holders = [room for room, ids in rm.rooms.items() if cid in ids]
                assert holders == [sess.room]
            for room, ids in rm.rooms.items():
                assert ids <= set(sm.sessions)
                if room != default:
                    assert ids, f"empty room {room!r} left in index"

    return _check


@pytest.fixture
def fake_transport():
    return FakeTransport
