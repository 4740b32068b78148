from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_username(value, *, max_chars: int, sentinel: str) -> str | None:
    """Return a usable display name, or None if the value cannot name a session."""
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s or s == sentinel:
        return None

    if max_chars > 0 and len(s) > max_chars:
        return None

    # Embedded newlines or NUL break userlist rendering and log lines.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    return s


def norm_room(room: str, *, max_len: int) -> str:
    r = room.strip()
    if not r:
        raise ValueError("room name must not be empty")
    if max_len > 0 and len(r) > max_len:
        raise ValueError("room name too long")
    return r


def fmt_addr(addr) -> str:
    """Render a transport peer address (host or (host, port) tuple) as a host string."""
    if isinstance(addr, (tuple, list)) and addr:
        return str(addr[0])
    if addr:
        return str(addr)
    return "unknown"
