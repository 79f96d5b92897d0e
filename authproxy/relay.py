"""
Selectors-based authenticated TCP relay.

Responsibilities:
1. Open the listening socket and install its TCP-AO/MD5 keys *before* bind
   (the kernel only accepts the first keys on an unbound socket, and the
   port must never be reachable without authentication).
2. Accept sessions from the configured peer only and relay bytes to the
   unauthenticated forward target, both directions.
3. Drive the key rotation reconciler from the same loop; the selector timeout
   (POLL_INTERVAL) keeps rotation checks running on idle connections.

Single-threaded: sockets, the reconciler and the selector all live on the
caller's thread. Stopping is cooperative through ``stop_event``.
"""

from __future__ import annotations

import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from ipaddress import ip_address
from typing import Callable, Dict, Optional, Tuple

from authproxy.config import effective_rotation_interval, validate_config
from authproxy.keys import KeySet
from authproxy.logging_utils import get_logger
from authproxy.rotation import KeyRotationManager, RotationReport
from authproxy.tcp_auth import AuthBackend, create_backend

logger = get_logger("authproxy")

BackendFactory = Callable[[str, socket.socket], AuthBackend]

FORWARD_CONNECT_TIMEOUT = 5.0


class RelayCounters:
    """Simple counters for relay statistics."""

    def __init__(self) -> None:
        self.sessions_accepted = 0
        self.sessions_rejected = 0   # connections from an unexpected source address
        self.sessions_closed = 0
        self.forward_connect_failures = 0
        self.bytes_peer_to_forward = 0
        self.bytes_forward_to_peer = 0
        self.rotation_checks = 0
        self.rotations = 0
        self.keys_added = 0
        self.keys_removed = 0
        self.key_failures = 0

    def record_rotation(self, report: RotationReport) -> None:
        self.rotation_checks += 1
        if report.changed:
            self.rotations += 1
        self.keys_added += len(report.added)
        self.keys_removed += len(report.removed)
        self.key_failures += len(report.failed_add) + len(report.failed_remove)

    def to_dict(self) -> Dict[str, int]:
        return dict(vars(self))


@dataclass
class _Session:
    peer_sock: socket.socket
    forward_sock: socket.socket
    peer_addr: Tuple[str, int]
    opened: float = field(default_factory=time.time)

    def other(self, sock: socket.socket) -> socket.socket:
        return self.forward_sock if sock is self.peer_sock else self.peer_sock


def _address_family(host: str) -> int:
    try:
        return socket.AF_INET6 if ip_address(host).version == 6 else socket.AF_INET
    except ValueError:
        return socket.AF_INET


def _same_host(a: str, b: str) -> bool:
    try:
        return ip_address(a) == ip_address(b)
    except ValueError:
        return a == b


def open_authenticated_listener(
    cfg: dict,
    keys: KeySet,
    *,
    backend_factory: BackendFactory = create_backend,
    clock: Callable[[], float] = time.time,
) -> Tuple[socket.socket, KeyRotationManager]:
    """Create, authenticate, bind and listen. Raises BootstrapError before bind on key failure."""
    sock = socket.socket(_address_family(cfg["PEER_HOST"]), socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        backend = backend_factory(cfg["AUTH_MODE"], sock)
        manager = KeyRotationManager(
            backend,
            cfg["PEER_HOST"],
            keys,
            effective_rotation_interval(cfg),
            retry_failed=cfg["RETRY_FAILED_OPERATIONS"],
            clock=clock,
        )
        manager.bootstrap()

        sock.bind((cfg["LISTEN_HOST"], cfg["LISTEN_PORT"]))
        sock.listen(cfg["LISTEN_BACKLOG"])
        sock.setblocking(False)
    except BaseException:
        sock.close()
        raise

    logger.info(
        "Authenticated relay listening",
        extra={"mode": cfg["AUTH_MODE"], "listen": list(sock.getsockname()[:2]),
               "peer": cfg["PEER_HOST"], "forward": f"{cfg['FORWARD_HOST']}:{cfg['FORWARD_PORT']}"},
    )
    return sock, manager


def _connect_forward(cfg: dict) -> socket.socket:
    fwd = socket.create_connection((cfg["FORWARD_HOST"], cfg["FORWARD_PORT"]), timeout=FORWARD_CONNECT_TIMEOUT)
    fwd.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return fwd


def run_relay(
    *,
    cfg: dict,
    keys: KeySet,
    stop_event: Optional[threading.Event] = None,
    stop_after_seconds: Optional[float] = None,
    ready_event: Optional[threading.Event] = None,
    reload_event: Optional[threading.Event] = None,
    key_loader: Optional[Callable[[], KeySet]] = None,
    backend_factory: BackendFactory = create_backend,
    clock: Callable[[], float] = time.time,
    on_listening: Optional[Callable[[socket.socket, KeyRotationManager], None]] = None,
) -> Dict[str, int]:
    """
    Run a blocking relay until ``stop_event`` is set or ``stop_after_seconds`` elapse.

    Raises BootstrapError (nothing bound) if the initial key installation fails.
    Returns counters on clean exit.
    """
    validate_config(cfg)
    stop_event = stop_event or threading.Event()
    counters = RelayCounters()
    start_time = time.monotonic()

    listener, manager = open_authenticated_listener(
        cfg, keys, backend_factory=backend_factory, clock=clock
    )
    if on_listening is not None:
        on_listening(listener, manager)
    if ready_event:
        ready_event.set()

    selector = selectors.DefaultSelector()
    selector.register(listener, selectors.EVENT_READ, data=None)
    sessions: Dict[socket.socket, _Session] = {}
    buffer_size = cfg["BUFFER_SIZE"]

    def close_session(session: _Session, reason: str) -> None:
        for s in (session.peer_sock, session.forward_sock):
            sessions.pop(s, None)
            try:
                selector.unregister(s)
            except (KeyError, ValueError):
                pass
            s.close()
        counters.sessions_closed += 1
        logger.info(
            "Session closed",
            extra={"peer_addr": f"{session.peer_addr[0]}:{session.peer_addr[1]}", "reason": reason,
                   "duration_s": round(time.time() - session.opened, 3)},
        )

    def accept_session() -> None:
        try:
            conn, addr = listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            # ECONNABORTED/ECONNRESET here usually means a signature mismatch
            logger.warning("Accept failed (possible authentication mismatch)", extra={"error": str(exc)})
            return

        src_ip, src_port = addr[0], addr[1]
        if not _same_host(src_ip, cfg["PEER_HOST"]):
            counters.sessions_rejected += 1
            logger.warning(
                "Rejected connection from unexpected peer",
                extra={"expected": cfg["PEER_HOST"], "received": src_ip},
            )
            conn.close()
            return

        try:
            fwd = _connect_forward(cfg)
        except OSError as exc:
            counters.forward_connect_failures += 1
            logger.error(
                "Failed to connect to forward target",
                extra={"forward": f"{cfg['FORWARD_HOST']}:{cfg['FORWARD_PORT']}", "error": str(exc)},
            )
            conn.close()
            return

        conn.setblocking(True)
        session = _Session(conn, fwd, (src_ip, src_port))
        sessions[conn] = session
        sessions[fwd] = session
        selector.register(conn, selectors.EVENT_READ, data="peer")
        selector.register(fwd, selectors.EVENT_READ, data="forward")
        counters.sessions_accepted += 1
        logger.info(
            "Session established",
            extra={"peer_addr": f"{src_ip}:{src_port}",
                   "forward": f"{cfg['FORWARD_HOST']}:{cfg['FORWARD_PORT']}"},
        )

    def pump(sock: socket.socket, direction: str) -> None:
        session = sessions.get(sock)
        if session is None:
            return
        try:
            data = sock.recv(buffer_size)
        except OSError as exc:
            close_session(session, f"recv error ({direction}): {exc}")
            return
        if not data:
            close_session(session, f"{direction} closed")
            return
        try:
            session.other(sock).sendall(data)
        except OSError as exc:
            close_session(session, f"send error ({direction}): {exc}")
            return
        if direction == "peer":
            counters.bytes_peer_to_forward += len(data)
        else:
            counters.bytes_forward_to_peer += len(data)

    try:
        while not stop_event.is_set():
            if stop_after_seconds is not None and (time.monotonic() - start_time) >= stop_after_seconds:
                break

            if reload_event is not None and reload_event.is_set():
                reload_event.clear()
                if key_loader is not None:
                    try:
                        manager.replace_keys(key_loader())
                    except ValueError as exc:
                        logger.error("Key reload rejected; keeping previous keys", extra={"error": str(exc)})

            report = manager.tick()
            if report is not None:
                counters.record_rotation(report)

            events = selector.select(timeout=cfg["POLL_INTERVAL"])
            for key, _mask in events:
                if key.data is None:
                    accept_session()
                else:
                    pump(key.fileobj, key.data)
    except KeyboardInterrupt:
        pass
    finally:
        for session in list({id(s): s for s in sessions.values()}.values()):
            close_session(session, "relay stopping")
        selector.close()
        if cfg.get("REMOVE_KEYS_ON_SHUTDOWN", True):
            manager.shutdown()
        listener.close()
        logger.info("Relay stopped", extra={"counters": counters.to_dict()})

    return counters.to_dict()
