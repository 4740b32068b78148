import pytest

from chatrelay.constants import K_ID, K_ROOM, K_TARGET, K_TEXT, K_TS, K_TYPE, K_USERNAME, T_CHAT
from chatrelay.envelope import (
    DecodeError,
    MsgType,
    envelope_from_wire,
    make_envelope,
    validate_envelope,
)


def _wire(**changes) -> dict:
    env = make_envelope(T_CHAT, username="alice", room="lobby", text="hi").to_wire()
    env.update(changes)
    return env


def test_validate_accepts_make_envelope() -> None:
    validate_envelope(_wire())


@pytest.mark.parametrize("key", [K_TYPE, K_USERNAME, K_ROOM, K_TEXT, K_TS, K_ID])
def test_validate_rejects_missing_required_key(key) -> None:
    env = _wire()
    env.pop(key)
    with pytest.raises(DecodeError):
        validate_envelope(env)


def test_validate_rejects_non_object() -> None:
    with pytest.raises(DecodeError):
        validate_envelope(["chat"])


def test_validate_rejects_wrong_field_types() -> None:
    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_USERNAME: 123}))

    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_TS: "not-int"}))

    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_TS: 1.5}))

    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_TS: True}))

    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_TARGET: 7}))


def test_validate_rejects_negative_timestamp() -> None:
    with pytest.raises(DecodeError):
        validate_envelope(_wire(**{K_TS: -1}))


def test_unknown_fields_are_ignored() -> None:
    env = envelope_from_wire(_wire(color="red"))
    assert env.text == "hi"
    assert not hasattr(env, "color")


def test_null_target_reads_as_absent() -> None:
    env = envelope_from_wire(_wire(**{K_TARGET: None}))
    assert env.target is None
    assert K_TARGET not in env.to_wire()


def test_unknown_type_tag_decodes() -> None:
    env = envelope_from_wire(_wire(**{K_TYPE: "telepathy"}))
    assert env.msg_type == "telepathy"
    assert env.kind is None
    assert MsgType.parse("chat") is MsgType.CHAT


def test_make_envelope_fills_id_and_timestamp() -> None:
    a = make_envelope(MsgType.SYSTEM, username="server")
    b = make_envelope(MsgType.SYSTEM, username="server")
    assert a.msg_type == "system"
    assert a.id != b.id
    assert a.timestamp > 0
    assert make_envelope(T_CHAT, username="x", ts=5, mid="m1").to_wire()[K_TS] == 5
