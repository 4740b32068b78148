from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080
    server_name: str = "chatrelay"
    default_room: str = "lobby"
    sentinel_username: str = "unnamed"
    system_username: str = "server"
    ping_interval_s: float = 30.0
    liveness_timeout_s: float = 90.0
    # Same-address eviction: NAT-shared addresses can produce false positives.
    evict_stale_same_address: bool = True
    stale_after_s: float = 60.0
    max_room_name_len: int = 64
    username_max_chars: int = 32
    rate_limit_msgs_per_minute: int = 240
    max_frame_bytes: int = 64 * 1024
    close_timeout_s: float = 2.0
    log_level: str = "INFO"
    log_websockets_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "websockets_level": "log_websockets_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay a parsed TOML document onto a config.

    Keys may live at the top level or in a [relay] table; [logging] keys are
    mapped onto the log_* fields. Unknown keys are ignored.
    """
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    for opt_key in ("log_file", "log_datefmt"):
        if opt_key in updates and updates[opt_key] == "":
            updates[opt_key] = None

    for int_key in ("port", "max_room_name_len", "username_max_chars",
                    "rate_limit_msgs_per_minute", "max_frame_bytes"):
        if int_key in updates:
            updates[int_key] = int(updates[int_key])
    for float_key in ("ping_interval_s", "liveness_timeout_s", "stale_after_s",
                      "close_timeout_s"):
        if float_key in updates:
            updates[float_key] = float(updates[float_key])

    return replace(base, **updates) if updates else base


def load_config_file(base: RelayRuntimeConfig, path: str) -> RelayRuntimeConfig:
    return apply_config_data(replace(base, config_path=path), load_toml(path))
