from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum

from .constants import (
    K_ID,
    K_ROOM,
    K_TARGET,
    K_TEXT,
    K_TS,
    K_TYPE,
    K_USERNAME,
    T_CHAT,
    T_COMMAND,
    T_JOIN,
    T_PING,
    T_PONG,
    T_PRIVATE,
    T_SYSTEM,
    T_USERLIST,
)


class DecodeError(ValueError):
    """Inbound frame is not a valid envelope."""


class MsgType(str, Enum):
    CHAT = T_CHAT
    SYSTEM = T_SYSTEM
    COMMAND = T_COMMAND
    PING = T_PING
    PONG = T_PONG
    JOIN = T_JOIN
    USERLIST = T_USERLIST
    PRIVATE = T_PRIVATE

    @classmethod
    def parse(cls, tag: str) -> MsgType | None:
        """Return the member for a wire tag, or None for unrecognized tags."""
        try:
            return cls(tag)
        except ValueError:
            return None


def now_s() -> int:
    return int(time.time())


def msg_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Envelope:
    msg_type: str
    username: str
    room: str
    text: str
    timestamp: int
    id: str
    target: str | None = None

    @property
    def kind(self) -> MsgType | None:
        return MsgType.parse(self.msg_type)

    def with_(self, **changes) -> Envelope:
        return replace(self, **changes)

    def to_wire(self) -> dict:
        env: dict[str, object] = {
            K_TYPE: self.msg_type,
            K_USERNAME: self.username,
            K_ROOM: self.room,
            K_TEXT: self.text,
            K_TS: self.timestamp,
            K_ID: self.id,
        }
        if self.target is not None:
            env[K_TARGET] = self.target
        return env


def make_envelope(
    msg_type: str | MsgType,
    *,
    username: str,
    room: str = "",
    text: str = "",
    target: str | None = None,
    mid: str | None = None,
    ts: int | None = None,
) -> Envelope:
    return Envelope(
        msg_type=str(msg_type.value if isinstance(msg_type, MsgType) else msg_type),
        username=username,
        room=room,
        text=text,
        timestamp=now_s() if ts is None else ts,
        id=mid or msg_id(),
        target=target,
    )


def validate_envelope(env) -> None:
    if not isinstance(env, dict):
        raise DecodeError("envelope must be an object")

    for k in (K_TYPE, K_USERNAME, K_ROOM, K_TEXT, K_TS, K_ID):
        if k not in env:
            raise DecodeError(f"missing envelope field {k!r}")

    for k in (K_TYPE, K_USERNAME, K_ROOM, K_TEXT, K_ID):
        if not isinstance(env[k], str):
            raise DecodeError(f"envelope field {k!r} must be a string")

    ts = env[K_TS]
    # bool is an int subclass; reject it explicitly.
    if not isinstance(ts, int) or isinstance(ts, bool):
        raise DecodeError("timestamp must be an integer")
    if ts < 0:
        raise DecodeError("timestamp must be unsigned")

    target = env.get(K_TARGET)
    if target is not None and not isinstance(target, str):
        raise DecodeError("target must be a string")


def envelope_from_wire(env) -> Envelope:
    """Validate a decoded wire object and build an Envelope. Unknown fields are ignored."""
    validate_envelope(env)
    return Envelope(
        msg_type=env[K_TYPE],
        username=env[K_USERNAME],
        room=env[K_ROOM],
        text=env[K_TEXT],
        timestamp=env[K_TS],
        id=env[K_ID],
        target=env.get(K_TARGET),
    )
