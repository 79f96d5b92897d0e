"""
Kernel TCP authentication backends (Linux).

Two variants share one capability set (install one key, remove one key,
remove everything for a peer):

- TcpAoBackend: TCP Authentication Option (RFC 5925) through TCP_AO_ADD_KEY /
  TCP_AO_DEL_KEY / TCP_AO_INFO. Several keys may be installed per peer; one of
  them is flagged as the current send key.
- TcpMd5Backend: TCP MD5 signature option (RFC 2385) through TCP_MD5SIG. A
  single static key per peer; a new install replaces the old key atomically.

Each public operation issues one setsockopt() per key. The structs below are
packed by hand from include/uapi/linux/tcp.h; there is no libc binding for
them in the socket module.
"""

from __future__ import annotations

import errno
import socket
import struct
import sys
from ipaddress import ip_address
from typing import Dict, FrozenSet, Iterable, Optional, Set

from authproxy.exceptions import (
    AuthBackendError,
    InvalidParameters,
    TransientKernelRejection,
    UnsupportedEnvironment,
)
from authproxy.keys import MAX_KEY_ID, KeyRecord
from authproxy.logging_utils import get_logger

logger = get_logger("authproxy")


# Socket options (include/uapi/linux/tcp.h)
TCP_MD5SIG = 14
TCP_AO_ADD_KEY = 38
TCP_AO_DEL_KEY = 39
TCP_AO_INFO = 40

TCP_AO_MAXKEYLEN = 80
TCP_MD5SIG_MAXKEYLEN = 80
TCP_AO_ALG_NAME_LEN = 64
SOCKADDR_STORAGE_LEN = 128

# struct tcp_ao_add: addr, alg_name, ifindex, flags bitfield, reserved2,
# prefix, sndid, rcvid, maclen, keyflags, keylen, key
TCP_AO_ADD_STRUCT = "=128s64siIHBBBBBB80s"
# struct tcp_ao_del: addr, ifindex, flags bitfield, reserved2,
# prefix, sndid, rcvid, current_key, rnext, keyflags
TCP_AO_DEL_STRUCT = "=128siIHBBBBBB"
# struct tcp_ao_info_opt: flags bitfield, reserved2, current_key, rnext, 5 packet counters
TCP_AO_INFO_STRUCT = "=IHBB5Q"
# struct tcp_md5sig: addr, flags, prefixlen, keylen, ifindex, key
TCP_MD5SIG_STRUCT = "=128sBBHi80s"

_UNSUPPORTED_ERRNOS = frozenset(
    {errno.EPERM, errno.EACCES, errno.ENOPROTOOPT, errno.EOPNOTSUPP, errno.EAFNOSUPPORT}
)
_INVALID_ERRNOS = frozenset(
    code for code in (errno.EINVAL, errno.ENOENT, getattr(errno, "EKEYREJECTED", None)) if code is not None
)


def _flag(bit: int) -> int:
    """Value of the ``bit``-th one-bit field of a __u32 bitfield word."""
    if sys.byteorder == "little":
        return 1 << bit
    return 1 << (31 - bit)


def pack_sockaddr(address: str, port: int = 0) -> bytes:
    """Return a zero-padded ``struct __kernel_sockaddr_storage`` for ``address``."""
    ip = ip_address(address)
    if ip.version == 4:
        raw = struct.pack("=H", socket.AF_INET) + struct.pack("!H", port) + ip.packed
    else:
        raw = (
            struct.pack("=H", socket.AF_INET6)
            + struct.pack("!HI", port, 0)
            + ip.packed
            + struct.pack("=I", 0)
        )
    return raw.ljust(SOCKADDR_STORAGE_LEN, b"\x00")


def host_prefix(address: str) -> int:
    """Prefix length meaning "exactly this host"."""
    return 32 if ip_address(address).version == 4 else 128


def pack_tcp_ao_add(peer: str, key: KeyRecord, *, set_current: bool) -> bytes:
    flags = _flag(0) if set_current else 0
    return struct.pack(
        TCP_AO_ADD_STRUCT,
        pack_sockaddr(peer),
        key.algorithm.encode("ascii"),
        0,                      # ifindex: no VRF binding
        flags,
        0,                      # reserved2
        host_prefix(peer),
        key.key_id,             # sndid
        key.key_id,             # rcvid
        0,                      # maclen: algorithm default
        0,                      # keyflags
        len(key.secret),
        key.secret,
    )


def pack_tcp_ao_del(peer: str, key_id: int) -> bytes:
    return struct.pack(
        TCP_AO_DEL_STRUCT,
        pack_sockaddr(peer),
        0,                      # ifindex
        0,                      # set_current / set_rnext / del_async
        0,                      # reserved2
        host_prefix(peer),
        key_id,                 # sndid
        key_id,                 # rcvid
        0,                      # current_key
        0,                      # rnext
        0,                      # keyflags
    )


def pack_tcp_ao_info_set_current(key_id: int) -> bytes:
    return struct.pack(TCP_AO_INFO_STRUCT, _flag(0), 0, key_id, 0, 0, 0, 0, 0, 0)


def pack_tcp_md5sig(peer: str, secret: bytes) -> bytes:
    return struct.pack(
        TCP_MD5SIG_STRUCT,
        pack_sockaddr(peer),
        0,                      # tcpm_flags: no prefix/ifindex matching
        0,                      # tcpm_prefixlen (ignored without TCP_MD5SIG_FLAG_PREFIX)
        len(secret),
        0,                      # tcpm_ifindex
        secret,
    )


class AuthBackend:
    """Capability interface over one socket's kernel authentication state."""

    mode = "none"
    max_key_len = 0

    def __init__(self, sock) -> None:
        self.sock = sock
        self._installed: Dict[str, Set[int]] = {}

    def installed_key_ids(self, peer: str) -> FrozenSet[int]:
        return frozenset(self._installed.get(peer, ()))

    def install_key(self, peer: str, key: KeyRecord, is_current: bool) -> None:
        raise NotImplementedError

    def remove_key(self, peer: str, key_id: int) -> None:
        raise NotImplementedError

    def remove_all_keys(self, peer: str, key_ids: Optional[Iterable[int]] = None) -> int:
        """Best-effort removal of every key for ``peer``; returns how many were removed."""
        targets = set(self._installed.get(peer, ()))
        if key_ids is not None:
            targets.update(key_ids)
        removed = 0
        for key_id in sorted(targets):
            try:
                self.remove_key(peer, key_id)
                removed += 1
            except AuthBackendError as exc:
                logger.warning(
                    "Failed to remove key during cleanup",
                    extra={"mode": self.mode, "peer": peer, "key_id": key_id,
                           "errno": exc.errno, "error": str(exc)},
                )
        return removed

    def _setsockopt(self, option: int, payload: bytes) -> None:
        self.sock.setsockopt(socket.IPPROTO_TCP, option, payload)

    def _check_secret(self, peer: str, key: KeyRecord) -> None:
        if len(key.secret) > self.max_key_len:
            raise InvalidParameters(
                f"secret for key {key.key_id} is {len(key.secret)} bytes (max {self.max_key_len})",
                peer=peer, key_id=key.key_id,
            )

    def _classify_install_error(self, exc: OSError, peer: str, key: KeyRecord) -> AuthBackendError:
        code = exc.errno
        detail = f"{self.mode} install of key {key.key_id} ({key.algorithm}) for {peer} failed: {exc.strerror or exc}"
        if code in _UNSUPPORTED_ERRNOS:
            return UnsupportedEnvironment(detail, peer=peer, key_id=key.key_id, errno=code)
        if code in _INVALID_ERRNOS:
            return InvalidParameters(detail, peer=peer, key_id=key.key_id, errno=code)
        return TransientKernelRejection(detail, peer=peer, key_id=key.key_id, errno=code)

    def _classify_remove_error(self, exc: OSError, peer: str, key_id: int) -> AuthBackendError:
        code = exc.errno
        detail = f"{self.mode} removal of key {key_id} for {peer} failed: {exc.strerror or exc}"
        if code in _UNSUPPORTED_ERRNOS:
            return UnsupportedEnvironment(detail, peer=peer, key_id=key_id, errno=code)
        return TransientKernelRejection(detail, peer=peer, key_id=key_id, errno=code)


class TcpAoBackend(AuthBackend):
    mode = "ao"
    max_key_len = TCP_AO_MAXKEYLEN

    def install_key(self, peer: str, key: KeyRecord, is_current: bool) -> None:
        self._check_secret(peer, key)
        try:
            alg = key.algorithm.encode("ascii")
        except UnicodeEncodeError:
            alg = b""
        if not alg or len(alg) >= TCP_AO_ALG_NAME_LEN:
            raise InvalidParameters(
                f"algorithm name {key.algorithm!r} is not a valid kernel crypto name",
                peer=peer, key_id=key.key_id,
            )

        try:
            self._setsockopt(TCP_AO_ADD_KEY, pack_tcp_ao_add(peer, key, set_current=is_current))
        except OSError as exc:
            if exc.errno != errno.EEXIST:
                raise self._classify_install_error(exc, peer, key)
            # Same (peer, sndid, rcvid) already present: overwrite of an
            # unchanged key is a no-op; only the current flag may need moving.
            if is_current:
                self._set_current(peer, key)
            logger.debug(
                "TCP-AO key already installed",
                extra={"peer": peer, "key_id": key.key_id, "current": is_current},
            )
        else:
            logger.info(
                "Installed TCP-AO key",
                extra={"peer": peer, "key_id": key.key_id, "algorithm": key.algorithm,
                       "current": is_current, "fingerprint": key.fingerprint()},
            )
        self._installed.setdefault(peer, set()).add(key.key_id)

    def _set_current(self, peer: str, key: KeyRecord) -> None:
        try:
            self._setsockopt(TCP_AO_INFO, pack_tcp_ao_info_set_current(key.key_id))
        except OSError as exc:
            raise self._classify_install_error(exc, peer, key)
        logger.info(
            "Promoted TCP-AO key to current",
            extra={"peer": peer, "key_id": key.key_id, "algorithm": key.algorithm},
        )

    def remove_key(self, peer: str, key_id: int) -> None:
        if not (0 <= key_id <= MAX_KEY_ID):
            raise InvalidParameters(f"key_id {key_id} out of range", peer=peer, key_id=key_id)
        try:
            self._setsockopt(TCP_AO_DEL_KEY, pack_tcp_ao_del(peer, key_id))
        except OSError as exc:
            if exc.errno != errno.ENOENT:
                raise self._classify_remove_error(exc, peer, key_id)
            logger.debug("TCP-AO key already absent", extra={"peer": peer, "key_id": key_id})
        else:
            logger.info("Removed TCP-AO key", extra={"peer": peer, "key_id": key_id})
        self._installed.get(peer, set()).discard(key_id)


class TcpMd5Backend(AuthBackend):
    """Single-key backend: key ids and the current flag carry no meaning to the kernel."""

    mode = "md5"
    max_key_len = TCP_MD5SIG_MAXKEYLEN

    def install_key(self, peer: str, key: KeyRecord, is_current: bool = True) -> None:
        self._check_secret(peer, key)
        try:
            self._setsockopt(TCP_MD5SIG, pack_tcp_md5sig(peer, key.secret))
        except OSError as exc:
            raise self._classify_install_error(exc, peer, key)
        # The kernel replaced whatever key the peer had before.
        self._installed[peer] = {key.key_id}
        logger.info(
            "Installed TCP-MD5 key",
            extra={"peer": peer, "key_id": key.key_id, "key_len": len(key.secret),
                   "fingerprint": key.fingerprint()},
        )

    def remove_key(self, peer: str, key_id: int) -> None:
        tracked = self._installed.get(peer, set())
        if tracked and key_id not in tracked:
            # Another key occupies the single MD5 slot; leave it alone.
            return
        try:
            self._setsockopt(TCP_MD5SIG, pack_tcp_md5sig(peer, b""))
        except OSError as exc:
            if exc.errno != errno.ENOENT:
                raise self._classify_remove_error(exc, peer, key_id)
        else:
            logger.info("Removed TCP-MD5 key", extra={"peer": peer, "key_id": key_id})
        tracked.discard(key_id)


BACKENDS = {
    TcpAoBackend.mode: TcpAoBackend,
    TcpMd5Backend.mode: TcpMd5Backend,
}


def create_backend(mode: str, sock) -> AuthBackend:
    try:
        backend_cls = BACKENDS[mode]
    except KeyError:
        raise ValueError(f"unknown authentication mode: {mode!r}")
    return backend_cls(sock)
