import json
from dataclasses import replace

import cbor2
import pytest
from websockets.sync.client import connect

from chatrelay.config import RelayRuntimeConfig
from chatrelay.constants import SUBPROTOCOL_CBOR, SUBPROTOCOL_JSON
from chatrelay.envelope import make_envelope
from chatrelay.service import RelayService


@pytest.fixture
def live_relay():
    cfg = replace(RelayRuntimeConfig(), host="127.0.0.1", port=0, evict_stale_same_address=False)
    svc = RelayService(cfg)
    svc.start()
    yield svc
    svc.stop()


def _recv_until(ws, msg_type: str, decode=json.loads) -> dict:
    while True:
        env = decode(ws.recv(timeout=5))
        if env["msg_type"] == msg_type:
            return env


def test_chat_over_websocket(live_relay) -> None:
    uri = f"ws://127.0.0.1:{live_relay.bound_port()}"
    with connect(uri, subprotocols=[SUBPROTOCOL_JSON]) as alice, connect(
        uri, subprotocols=[SUBPROTOCOL_CBOR]
    ) as bob:
        welcome = _recv_until(alice, "system")
        assert welcome["text"] == "connected to chatrelay, your address: 127.0.0.1"
        _recv_until(bob, "userlist", decode=cbor2.loads)

        hello = make_envelope("chat", username="Alice", text="hello").to_wire()
        alice.send(json.dumps(hello))

        chat = _recv_until(bob, "chat", decode=cbor2.loads)
        assert chat["username"] == "Alice"
        assert chat["room"] == "lobby"
        assert chat["text"] == "hello"
        assert "target" not in chat


def test_bad_frame_over_websocket(live_relay) -> None:
    uri = f"ws://127.0.0.1:{live_relay.bound_port()}"
    with connect(uri) as ws:
        _recv_until(ws, "userlist")
        ws.send("not json")
        notice = _recv_until(ws, "system")
        assert notice["text"].startswith("malformed message")
