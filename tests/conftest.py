"""Shared fakes: a socket that records setsockopt calls and a recording backend."""

from __future__ import annotations

import errno
from typing import Dict, List, Optional, Set, Tuple

import pytest

from authproxy.keys import KeyRecord, ValidityWindow
from authproxy.tcp_auth import AuthBackend


class FakeSocket:
    """Stands in for socket.socket in backend tests; fails on demand by option number."""

    def __init__(self) -> None:
        self.calls: List[Tuple[int, int, bytes]] = []
        self.failures: Dict[int, List[int]] = {}

    def fail(self, option: int, *codes: int) -> None:
        """Queue errno codes to raise for successive setsockopt(option) calls."""
        self.failures.setdefault(option, []).extend(codes)

    def setsockopt(self, level: int, option: int, value) -> None:
        queued = self.failures.get(option)
        if queued:
            code = queued.pop(0)
            raise OSError(code, errno.errorcode.get(code, "error"))
        self.calls.append((level, option, bytes(value)))

    def options(self) -> List[int]:
        return [option for _level, option, _payload in self.calls]


class RecordingBackend(AuthBackend):
    """In-memory backend recording every call in order.

    ``install_failures`` / ``remove_failures`` map key id -> exception class
    raised on every attempt for that key.
    """

    mode = "ao"
    max_key_len = 80

    def __init__(self, sock=None) -> None:
        super().__init__(sock)
        self.calls: List[Tuple] = []
        self.install_failures: Dict[int, type] = {}
        self.remove_failures: Dict[int, type] = {}

    def install_key(self, peer: str, key: KeyRecord, is_current: bool) -> None:
        self.calls.append(("add", key.key_id, is_current))
        exc_cls = self.install_failures.get(key.key_id)
        if exc_cls is not None:
            raise exc_cls(f"install {key.key_id} rejected", peer=peer, key_id=key.key_id, errno=errno.EBUSY)
        self._installed.setdefault(peer, set()).add(key.key_id)

    def remove_key(self, peer: str, key_id: int) -> None:
        self.calls.append(("remove", key_id))
        exc_cls = self.remove_failures.get(key_id)
        if exc_cls is not None:
            raise exc_cls(f"remove {key_id} rejected", peer=peer, key_id=key_id, errno=errno.EBUSY)
        self._installed.get(peer, set()).discard(key_id)

    def installed(self, peer: str) -> Set[int]:
        return set(self._installed.get(peer, ()))


def make_key(key_id: int, send=(None, None), accept=(None, None), secret: Optional[bytes] = None,
             algorithm: str = "hmac(sha256)") -> KeyRecord:
    return KeyRecord(
        key_id,
        algorithm,
        secret if secret is not None else f"secret-{key_id}".encode(),
        ValidityWindow(*send),
        ValidityWindow(*accept),
    )


@pytest.fixture
def fake_socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def recording_backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def peer() -> str:
    return "192.0.2.1"


