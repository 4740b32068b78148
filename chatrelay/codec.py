from __future__ import annotations

import json

import cbor2

from .envelope import DecodeError, Envelope, envelope_from_wire


def encode(obj, *, binary: bool = False) -> str | bytes:
    if binary:
        return cbor2.dumps(obj)
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def decode(frame: str | bytes):
    """Decode one frame: text frames are JSON, binary frames are CBOR."""
    try:
        if isinstance(frame, (bytes, bytearray)):
            return cbor2.loads(bytes(frame))
        return json.loads(frame)
    except (ValueError, RecursionError, cbor2.CBORDecodeError) as e:
        raise DecodeError(f"undecodable frame: {e}") from e


def encode_envelope(env: Envelope, *, binary: bool = False) -> str | bytes:
    return encode(env.to_wire(), binary=binary)


def decode_envelope(frame: str | bytes) -> Envelope:
    return envelope_from_wire(decode(frame))
