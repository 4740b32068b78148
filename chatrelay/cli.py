from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import tomlkit

from .config import RelayRuntimeConfig, load_config_file
from .logging_config import configure_logging
from .paths import default_config_path, ensure_private_dir
from .service import RelayService


def build_default_config() -> tomlkit.TOMLDocument:
    d = RelayRuntimeConfig()
    doc = tomlkit.document()
    doc.add(tomlkit.comment("chatrelay configuration (TOML)"))
    doc.add(tomlkit.comment(""))
    doc.add(tomlkit.comment("This file was created on first run."))
    doc.add(tomlkit.comment("Edit it, then start chatrelay again."))
    doc.add(tomlkit.nl())

    relay = tomlkit.table()
    relay.add(tomlkit.comment("Listen address for the WebSocket endpoint."))
    relay.add("host", d.host)
    relay.add("port", d.port)
    relay.add("server_name", d.server_name)
    relay.add(tomlkit.nl())

    relay.add(tomlkit.comment("Room every new connection starts in. It always exists."))
    relay.add("default_room", d.default_room)
    relay.add(tomlkit.comment("Name a connection has until its client sends a real one."))
    relay.add("sentinel_username", d.sentinel_username)
    relay.add(tomlkit.comment("Username on relay-generated envelopes."))
    relay.add("system_username", d.system_username)
    relay.add(tomlkit.nl())

    relay.add(tomlkit.comment("Liveness: ping every ping_interval_s; drop connections"))
    relay.add(tomlkit.comment("silent for longer than liveness_timeout_s (0 disables)."))
    relay.add("ping_interval_s", d.ping_interval_s)
    relay.add("liveness_timeout_s", d.liveness_timeout_s)
    relay.add(tomlkit.nl())

    relay.add(tomlkit.comment("On connect, evict sessions from the same peer address that"))
    relay.add(tomlkit.comment("have been silent longer than stale_after_s. Clients behind a"))
    relay.add(tomlkit.comment("shared NAT address can be evicted by mistake."))
    relay.add("evict_stale_same_address", d.evict_stale_same_address)
    relay.add("stale_after_s", d.stale_after_s)
    relay.add(tomlkit.nl())

    relay.add(tomlkit.comment("Limits (0 disables the username and rate limits)."))
    relay.add("max_room_name_len", d.max_room_name_len)
    relay.add("username_max_chars", d.username_max_chars)
    relay.add("rate_limit_msgs_per_minute", d.rate_limit_msgs_per_minute)
    relay.add("max_frame_bytes", d.max_frame_bytes)
    relay.add("close_timeout_s", d.close_timeout_s)
    doc.add("relay", relay)

    logging_tbl = tomlkit.table()
    logging_tbl.add("level", d.log_level)
    logging_tbl.add(tomlkit.comment("Level for the websockets library loggers."))
    logging_tbl.add("websockets_level", d.log_websockets_level)
    logging_tbl.add("console", d.log_console)
    logging_tbl.add(tomlkit.comment("Optional log file path (empty disables)."))
    logging_tbl.add("file", "")
    logging_tbl.add("format", d.log_format)
    logging_tbl.add("datefmt", "")
    doc.add("logging", logging_tbl)
    return doc


def write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(tomlkit.dumps(build_default_config()))


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatrelay", description="Run a multi-room chat relay")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help="Listen host")
    p.add_argument("--port", type=int, default=None, help="Listen port")
    p.add_argument("--default-room", default=None, help="Room new connections start in")

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Seconds between liveness pings (0 disables)",
    )
    p.add_argument(
        "--liveness-timeout",
        type=float,
        default=None,
        help="Drop a connection silent for this many seconds (0 disables)",
    )
    p.add_argument(
        "--stale-after",
        type=float,
        default=None,
        help="Silence after which a same-address session is evicted on connect",
    )
    p.add_argument(
        "--no-evict-stale",
        action="store_true",
        help="Disable same-address stale session eviction",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )
    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig()
    if args.config and os.path.exists(args.config):
        cfg = load_config_file(cfg, str(args.config))

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.default_room is not None:
        cfg = replace(cfg, default_room=str(args.default_room))
    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.liveness_timeout is not None:
        cfg = replace(cfg, liveness_timeout_s=float(args.liveness_timeout))
    if args.stale_after is not None:
        cfg = replace(cfg, stale_after_s=float(args.stale_after))
    if args.no_evict_stale:
        cfg = replace(cfg, evict_stale_same_address=False)
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    if not os.path.exists(config_path):
        write_default_config(config_path)
        print(
            "Created default chatrelay config. Edit it before starting:\n"
            f"- Config: {config_path}\n"
            "\nThen re-run chatrelay.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
