"""
Unified CLI entrypoint for the authenticated TCP relay.

Supports subcommands:
- ao: Relay a TCP-AO (RFC 5925) authenticated session with key rotation
- md5: Relay a TCP-MD5 (RFC 2385) authenticated session with one static key
- plan: Show which keys would be installed/current at a given time (no kernel calls)

Signals: SIGINT/SIGTERM stop the relay after the current loop iteration,
SIGHUP re-reads the key file (ao mode with --keys).
"""

import sys
import argparse
import signal
import json
import time
import logging
import threading
from pathlib import Path
from typing import Optional, Tuple

from authproxy.config import CONFIG, effective_rotation_interval, validate_config
from authproxy.exceptions import BootstrapError, ConfigError, KeyConfigError
from authproxy.keychain import load_keys_file, load_keys_json, parse_timestamp
from authproxy.keys import KeyRecord, KeySet, compute_desired_state, is_valid_for_accept, is_valid_for_send
from authproxy.logging_utils import get_logger, configure_file_logger

logger = get_logger("authproxy")

STOP_EVENT = threading.Event()
RELOAD_EVENT = threading.Event()


def signal_handler(signum, frame):
    """Request a cooperative shutdown; the relay loop exits within one poll interval."""
    logger.info("Received signal, shutting down", extra={"signum": signum})
    STOP_EVENT.set()


def reload_handler(signum, frame):
    RELOAD_EVENT.set()


def install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, signal_handler)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, reload_handler)
    if hasattr(signal, 'SIGPIPE'):
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)


def parse_forward_address(value: str) -> Tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6 literals)."""
    host, sep, port_text = value.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Invalid forward address format (expected host:port): {value}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid forward port: {port_text}")
    return host, port


def write_json_report(json_path: Optional[str], payload: dict, *, quiet: bool = False) -> None:
    """Persist counters payload to JSON if a path is provided."""

    if not json_path:
        return

    try:
        path = Path(json_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        if not quiet:
            print(f"Wrote JSON report to {path}")
    except OSError as exc:
        print(f"Warning: Failed to write JSON output to {json_path}: {exc}")


def build_config(args, mode: str) -> dict:
    """Overlay CLI arguments on CONFIG and validate the result."""
    cfg = CONFIG.copy()
    cfg["AUTH_MODE"] = mode
    cfg["PEER_HOST"] = args.peer
    cfg["LISTEN_PORT"] = args.listen_port
    if getattr(args, "listen_host", None):
        cfg["LISTEN_HOST"] = args.listen_host
    cfg["FORWARD_HOST"], cfg["FORWARD_PORT"] = parse_forward_address(args.forward)

    interval = getattr(args, "rotation_interval", None)
    if interval is not None:
        cfg["ROTATION_INTERVAL"] = float(interval)
        if cfg["ROTATION_INTERVAL"] < cfg["MIN_ROTATION_INTERVAL"]:
            print(
                f"Warning: rotation interval too small, using minimum "
                f"{cfg['MIN_ROTATION_INTERVAL']:g} seconds"
            )
            cfg["ROTATION_INTERVAL"] = cfg["MIN_ROTATION_INTERVAL"]
    if getattr(args, "retry_failed", False):
        cfg["RETRY_FAILED_OPERATIONS"] = True
    if getattr(args, "keep_keys", False):
        cfg["REMOVE_KEYS_ON_SHUTDOWN"] = False

    validate_config(cfg)
    return cfg


def _load_ao_keys(args) -> KeySet:
    if args.keys and args.keys_json:
        raise KeyConfigError("--keys cannot be combined with --keys-json")
    if args.keys:
        return load_keys_file(args.keys)
    if args.keys_json:
        return load_keys_json(args.keys_json)
    raise KeyConfigError("ao mode requires --keys FILE or --keys-json JSON")


def _load_md5_key(args) -> KeySet:
    if args.password and args.password_file:
        raise KeyConfigError("--password cannot be combined with --password-file")
    if args.password_file:
        try:
            secret = Path(args.password_file).read_bytes().rstrip(b"\r\n")
        except OSError as exc:
            raise KeyConfigError(f"cannot read password file: {exc}")
    elif args.password:
        secret = args.password.encode("utf-8")
    else:
        raise KeyConfigError("md5 mode requires --password or --password-file")
    return KeySet([KeyRecord(0, "md5", secret)])


def _require_run_relay():
    """Import the relay only when a command actually needs sockets."""
    from authproxy.relay import run_relay as _run_relay
    return _run_relay


def _run(args, mode: str, keys: KeySet, key_loader=None) -> int:
    quiet = getattr(args, "quiet", False)

    def info(msg: str) -> None:
        if not quiet:
            print(msg)

    try:
        cfg = build_config(args, mode)
    except (ConfigError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.log_dir:
        log_path = configure_file_logger(mode, logger, logs_dir=args.log_dir)
        info(f"Log file: {log_path}")

    logger.info(
        "Key configuration loaded",
        extra={"mode": mode, "peer": cfg["PEER_HOST"], "key_count": len(keys),
               "keys": [_describe_key(k) for k in keys],
               "rotation_interval": effective_rotation_interval(cfg)},
    )
    info(f"Starting {mode} relay: {cfg['PEER_HOST']} -> :{cfg['LISTEN_PORT']} -> "
         f"{cfg['FORWARD_HOST']}:{cfg['FORWARD_PORT']}")
    if args.stop_seconds:
        info(f"Will auto-stop after {args.stop_seconds} seconds")

    run_relay = _require_run_relay()
    try:
        counters = run_relay(
            cfg=cfg,
            keys=keys,
            stop_event=STOP_EVENT,
            stop_after_seconds=args.stop_seconds,
            reload_event=RELOAD_EVENT if key_loader is not None else None,
            key_loader=key_loader,
        )
    except BootstrapError as exc:
        logger.error("Failed to configure authentication keys", extra={"error": str(exc)})
        print(f"Error: {exc}")
        sys.exit(1)
    except OSError as exc:
        logger.error("Relay failed", extra={"error": str(exc)})
        print(f"Error: {exc}")
        sys.exit(1)

    if not quiet:
        print(f"{mode} relay stopped. Final counters:")
        for key, value in counters.items():
            print(f"  {key}: {value}")
    write_json_report(args.json_out, {
        "mode": mode,
        "peer": cfg["PEER_HOST"],
        "counters": counters,
        "ts_stop_ns": time.time_ns(),
    }, quiet=quiet)
    return 0


def _describe_key(key: KeyRecord) -> dict:
    return {
        "key_id": key.key_id,
        "algorithm": key.algorithm,
        "fingerprint": key.fingerprint(),
        "send": key.send_window.to_dict(),
        "accept": key.accept_window.to_dict(),
    }


def ao_command(args) -> int:
    """Start TCP-AO relay."""
    try:
        keys = _load_ao_keys(args)
    except KeyConfigError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    key_loader = None
    if args.keys:
        key_path = args.keys

        def key_loader() -> KeySet:
            return load_keys_file(key_path)

    return _run(args, "ao", keys, key_loader)


def md5_command(args) -> int:
    """Start TCP-MD5 relay."""
    try:
        keys = _load_md5_key(args)
    except KeyConfigError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    return _run(args, "md5", keys)


def plan_command(args) -> int:
    """Print the installed set and current send key for a key file at a point in time."""
    try:
        keys = _load_ao_keys(args)
        at = parse_timestamp(args.at, "--at") if args.at is not None else None
    except KeyConfigError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    now = time.time() if at is None else at

    state = compute_desired_state(keys, now)
    payload = {
        "at": now,
        **state.to_dict(),
        "keys": [
            dict(_describe_key(k), send_valid=is_valid_for_send(k, now), accept_valid=is_valid_for_accept(k, now))
            for k in keys
        ],
    }
    print(json.dumps(payload, indent=2))
    return 0


def _add_relay_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--peer", required=True,
                        help="IP address of the authenticated peer (router)")
    parser.add_argument("--listen-port", type=int, required=True,
                        help="Port to accept the authenticated session on")
    parser.add_argument("--listen-host",
                        help=f"Address to bind (default: {CONFIG['LISTEN_HOST']})")
    parser.add_argument("--forward", required=True,
                        help="Unauthenticated backend as host:port")
    parser.add_argument("--stop-seconds", type=float,
                        help="Auto-stop after N seconds (for testing)")
    parser.add_argument("--quiet", action="store_true",
                        help="Suppress informational prints (warnings/errors still shown)")
    parser.add_argument("--json-out",
                        help="Optional path to write counters JSON on shutdown")
    parser.add_argument("--log-dir",
                        help="Also write JSON logs to a timestamped file in this directory")
    parser.add_argument("--keep-keys", action="store_true",
                        help="Do not withdraw installed keys on shutdown")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TCP-AO / TCP-MD5 Authenticated Relay")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ao subcommand
    ao_parser = subparsers.add_parser('ao', help='Start TCP-AO relay with key rotation')
    _add_relay_arguments(ao_parser)
    ao_parser.add_argument("--keys",
                           help="Path to key configuration JSON (reloaded on SIGHUP)")
    ao_parser.add_argument("--keys-json",
                           help="Key configuration JSON given inline")
    ao_parser.add_argument("--rotation-interval", type=float,
                           help=f"Seconds between key validity checks (default: {CONFIG['ROTATION_INTERVAL']:g}, "
                                f"minimum: {CONFIG['MIN_ROTATION_INTERVAL']:g})")
    ao_parser.add_argument("--retry-failed", action="store_true",
                           help="Re-attempt failed key installs/removals on every rotation check")

    # md5 subcommand
    md5_parser = subparsers.add_parser('md5', help='Start TCP-MD5 relay with a single static key')
    _add_relay_arguments(md5_parser)
    md5_parser.add_argument("--password",
                            help="MD5 signature password")
    md5_parser.add_argument("--password-file",
                            help="File holding the MD5 signature password")

    # plan subcommand
    plan_parser = subparsers.add_parser('plan', help='Show desired key state without touching the kernel')
    plan_parser.add_argument("--keys",
                             help="Path to key configuration JSON")
    plan_parser.add_argument("--keys-json",
                             help="Key configuration JSON given inline")
    plan_parser.add_argument("--at",
                             help="Unix seconds or ISO-8601 time to evaluate (default: now)")

    return parser


def main(argv=None):
    """Main CLI entrypoint with subcommands."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == 'plan':
        return plan_command(args)

    install_signal_handlers()
    if getattr(args, "quiet", False):
        logger.setLevel(logging.WARNING)

    if args.command == 'ao':
        return ao_command(args)
    elif args.command == 'md5':
        return md5_command(args)


if __name__ == "__main__":
    sys.exit(main())
