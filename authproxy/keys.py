"""
Key records and the pure policy that decides which keys belong in the kernel.

A key is *installed* at time ``now`` when it may be used for sending or is
still accepted on receipt. Among the send-valid keys, the numerically largest
key id is the current send key (higher key id = more recently issued), so both
peers converge on the same key once their clocks agree the new key is live.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Iterator, Optional, Sequence, Tuple

from authproxy.exceptions import KeyConfigError


# TCP-AO SndID/RcvID are single octets on the wire (RFC 5925 section 2.2).
MAX_KEY_ID = 255


@dataclass(frozen=True)
class ValidityWindow:
    """Closed time interval in Unix seconds; ``None`` on either side is unbounded."""

    start: Optional[float] = None
    end: Optional[float] = None

    def __post_init__(self):
        if self.start is not None and self.end is not None and self.end < self.start:
            raise KeyConfigError(f"window end {self.end} precedes start {self.start}")

    @property
    def unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, now: float) -> bool:
        if self.start is not None and now < self.start:
            return False
        if self.end is not None and now > self.end:
            return False
        return True

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


ALWAYS = ValidityWindow()


@dataclass(frozen=True)
class KeyRecord:
    key_id: int
    algorithm: str
    secret: bytes = field(repr=False)
    send_window: ValidityWindow = ALWAYS
    accept_window: ValidityWindow = ALWAYS

    def __post_init__(self):
        if isinstance(self.key_id, bool) or not isinstance(self.key_id, int):
            raise KeyConfigError("key_id must be int")
        if not (0 <= self.key_id <= MAX_KEY_ID):
            raise KeyConfigError(f"key_id must be in range 0-{MAX_KEY_ID}, got {self.key_id}")
        if not isinstance(self.algorithm, str) or not self.algorithm:
            raise KeyConfigError(f"key {self.key_id}: algorithm must be a non-empty string")
        if not isinstance(self.secret, bytes) or not self.secret:
            raise KeyConfigError(f"key {self.key_id}: secret must be non-empty bytes")
        # Secret length is bounded by the backend, not here; an oversized secret
        # is rejected per key at install time.

    def fingerprint(self) -> str:
        """Short digest used in logs instead of the secret."""
        return hashlib.sha256(self.secret).hexdigest()[:8] + "..."

    def __repr__(self) -> str:
        return (
            f"KeyRecord(key_id={self.key_id}, algorithm={self.algorithm!r}, "
            f"secret=<{len(self.secret)} bytes {self.fingerprint()}>, "
            f"send_window={self.send_window!r}, accept_window={self.accept_window!r})"
        )


def is_valid_for_send(key: KeyRecord, now: float) -> bool:
    return key.send_window.contains(now)


def is_valid_for_accept(key: KeyRecord, now: float) -> bool:
    return key.accept_window.contains(now)


def is_installed_at(key: KeyRecord, now: float) -> bool:
    return is_valid_for_send(key, now) or is_valid_for_accept(key, now)


class KeySet(Sequence[KeyRecord]):
    """Ordered, read-only collection of key records with unique key ids."""

    def __init__(self, records: Iterable[KeyRecord] = ()) -> None:
        items = tuple(records)
        seen = set()
        for rec in items:
            if not isinstance(rec, KeyRecord):
                raise KeyConfigError(f"expected KeyRecord, got {type(rec).__name__}")
            if rec.key_id in seen:
                raise KeyConfigError(f"duplicate key_id {rec.key_id} in key set")
            seen.add(rec.key_id)
        self._records: Tuple[KeyRecord, ...] = items
        self._by_id = {rec.key_id: rec for rec in items}

    def __getitem__(self, index):
        return self._records[index]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[KeyRecord]:
        return iter(self._records)

    def __repr__(self) -> str:
        return f"KeySet({list(self._records)!r})"

    def get(self, key_id: int) -> Optional[KeyRecord]:
        return self._by_id.get(key_id)

    @property
    def key_ids(self) -> FrozenSet[int]:
        return frozenset(self._by_id)


@dataclass(frozen=True)
class DesiredState:
    installed_keys: FrozenSet[int] = frozenset()
    current_send_key_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "installed_keys": sorted(self.installed_keys),
            "current_send_key_id": self.current_send_key_id,
        }


EMPTY_STATE = DesiredState()


def compute_desired_state(keys: Iterable[KeyRecord], now: float) -> DesiredState:
    """Return the key ids that must be installed at ``now`` and the current send key."""
    installed = set()
    current: Optional[int] = None
    for key in keys:
        can_send = is_valid_for_send(key, now)
        if can_send or is_valid_for_accept(key, now):
            installed.add(key.key_id)
        if can_send and (current is None or key.key_id > current):
            current = key.key_id
    return DesiredState(frozenset(installed), current)
