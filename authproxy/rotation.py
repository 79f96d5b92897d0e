"""
Key rotation reconciler.

Keeps the kernel's key set for one peer in line with the configured validity
windows. Each due check recomputes the desired state, diffs it against the
state remembered from the previous check and drives the backend
make-before-break: every newly valid key is installed before any expired key
is withdrawn, so a segment signed with either key verifies during the switch.

The reconciler is synchronous and owned by a single control loop; it never
retries on its own. With ``retry_failed=False`` the remembered state is the
*intended* one, so a failed install/remove is revisited only when that key's
validity changes again. ``retry_failed=True`` remembers the *achieved* state
instead, which re-diffs failed operations on the next due check.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set, Tuple

from authproxy.exceptions import (
    AuthBackendError,
    BootstrapError,
    UnsupportedEnvironment,
)
from authproxy.keys import (
    EMPTY_STATE,
    DesiredState,
    KeyRecord,
    KeySet,
    compute_desired_state,
)
from authproxy.logging_utils import get_logger
from authproxy.tcp_auth import AuthBackend

logger = get_logger("authproxy")


@dataclass
class ReconcilerMemory:
    state: Optional[DesiredState] = None
    last_check: Optional[float] = None


@dataclass
class RotationReport:
    """Outcome of one reconciliation pass."""

    at: float
    previous: DesiredState
    desired: DesiredState
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    failed_add: List[int] = field(default_factory=list)
    failed_remove: List[int] = field(default_factory=list)
    promoted: Optional[int] = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.failed_add or self.failed_remove or self.promoted is not None)

    @property
    def ok(self) -> bool:
        return not (self.failed_add or self.failed_remove)

    def to_dict(self) -> dict:
        return {
            "at": self.at,
            "previous": self.previous.to_dict(),
            "desired": self.desired.to_dict(),
            "added": list(self.added),
            "removed": list(self.removed),
            "failed_add": list(self.failed_add),
            "failed_remove": list(self.failed_remove),
            "promoted": self.promoted,
        }


class KeyRotationManager:
    def __init__(
        self,
        backend: AuthBackend,
        peer: str,
        keys: Iterable[KeyRecord],
        interval: float,
        *,
        retry_failed: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("rotation interval must be > 0")
        self.backend = backend
        self.peer = peer
        self.keys = keys if isinstance(keys, KeySet) else KeySet(keys)
        self.interval = float(interval)
        self.retry_failed = retry_failed
        self.clock = clock
        self.memory = ReconcilerMemory()

    @property
    def bootstrapped(self) -> bool:
        return self.memory.state is not None

    @property
    def current_state(self) -> DesiredState:
        return self.memory.state or EMPTY_STATE

    def replace_keys(self, keys: Iterable[KeyRecord]) -> None:
        """Swap in a new configured key set; the next tick() is due immediately."""
        self.keys = keys if isinstance(keys, KeySet) else KeySet(keys)
        if self.bootstrapped:
            self.memory.last_check = None
        logger.info(
            "Key configuration replaced",
            extra={"peer": self.peer, "key_ids": sorted(self.keys.key_ids)},
        )

    def bootstrap(self, now: Optional[float] = None) -> RotationReport:
        """Install every currently valid key before the socket is bound.

        Raises BootstrapError if the kernel rejects TCP authentication outright
        or if no key could be installed; the caller must not bind in that case.
        """
        if self.bootstrapped:
            raise RuntimeError("bootstrap already performed")
        now = self.clock() if now is None else now
        desired = compute_desired_state(self.keys, now)

        logger.info(
            "Configuring authentication keys before bind",
            extra={"mode": self.backend.mode, "peer": self.peer, "at": now,
                   "configured": len(self.keys), "current": desired.current_send_key_id},
        )
        if not desired.installed_keys:
            raise BootstrapError(f"no configured key is valid at {now:.0f}; refusing to listen unauthenticated")

        try:
            report = self._apply(EMPTY_STATE, desired, now, fatal_unsupported=True)
        except UnsupportedEnvironment as exc:
            raise BootstrapError(
                f"kernel rejected {self.backend.mode} configuration for {self.peer}: {exc}"
            ) from exc

        if not report.added:
            raise BootstrapError(f"none of {len(desired.installed_keys)} valid keys could be installed")

        self._remember(report, now)
        logger.info(
            "Authentication keys configured",
            extra={"peer": self.peer, "installed": report.added, "failed": report.failed_add,
                   "current": desired.current_send_key_id},
        )
        return report

    def due(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        last = self.memory.last_check
        return last is None or (now - last) >= self.interval

    def tick(self, now: Optional[float] = None) -> Optional[RotationReport]:
        """Run one rate-limited reconciliation pass.

        Returns None when the check is not yet due, otherwise a report (which
        may carry no changes, the common case).
        """
        if not self.bootstrapped:
            raise RuntimeError("tick() called before bootstrap()")
        now = self.clock() if now is None else now
        if not self.due(now):
            return None

        previous = self.current_state
        desired = compute_desired_state(self.keys, now)
        self.memory.last_check = now

        if desired == previous:
            logger.debug("No key validity changes detected", extra={"peer": self.peer, "at": now})
            return RotationReport(at=now, previous=previous, desired=desired)

        logger.info(
            "Key validity changed, performing seamless rotation",
            extra={"peer": self.peer, "at": now, "previous": previous.to_dict(), "desired": desired.to_dict()},
        )
        report = self._apply(previous, desired, now, fatal_unsupported=False)
        self._remember(report, now)
        logger.info("Key rotation completed", extra={"peer": self.peer, **report.to_dict()})
        return report

    def shutdown(self) -> int:
        """Best-effort withdrawal of every key this manager may have installed."""
        known: Set[int] = set(self.current_state.installed_keys)
        removed = self.backend.remove_all_keys(self.peer, known)
        logger.info("Authentication keys withdrawn", extra={"peer": self.peer, "removed": removed})
        return removed

    def _apply(
        self,
        previous: DesiredState,
        desired: DesiredState,
        now: float,
        *,
        fatal_unsupported: bool,
    ) -> RotationReport:
        report = RotationReport(at=now, previous=previous, desired=desired)
        to_add = sorted(desired.installed_keys - previous.installed_keys)
        to_remove = sorted(previous.installed_keys - desired.installed_keys)

        current = desired.current_send_key_id
        if current is not None and current != previous.current_send_key_id and current not in to_add:
            # Installed set unchanged for this key but it is now the newest send key.
            to_promote: Optional[int] = current
        else:
            to_promote = None

        # Make before break: every install is issued before any removal.
        for key_id in to_add:
            key = self.keys.get(key_id)
            if self._install(key, key_id == current, fatal_unsupported):
                report.added.append(key_id)
            else:
                report.failed_add.append(key_id)

        if to_promote is not None:
            key = self.keys.get(to_promote)
            if self._install(key, True, fatal_unsupported):
                report.promoted = to_promote
            else:
                report.failed_add.append(to_promote)

        for key_id in to_remove:
            if self._remove(key_id):
                report.removed.append(key_id)
            else:
                report.failed_remove.append(key_id)

        if current is None and desired.installed_keys:
            logger.warning(
                "No key is currently valid for sending; only accept-window keys remain",
                extra={"peer": self.peer, "installed": sorted(desired.installed_keys)},
            )
        return report

    def _install(self, key: KeyRecord, is_current: bool, fatal_unsupported: bool) -> bool:
        try:
            self.backend.install_key(self.peer, key, is_current)
        except UnsupportedEnvironment as exc:
            self._log_failure("Failed to add key", key, exc)
            if fatal_unsupported:
                raise
            return False
        except AuthBackendError as exc:
            self._log_failure("Failed to add key", key, exc)
            return False
        return True

    def _remove(self, key_id: int) -> bool:
        try:
            self.backend.remove_key(self.peer, key_id)
        except AuthBackendError as exc:
            # A stale key lingering is less harmful than a missing new one.
            logger.warning(
                "Failed to remove key",
                extra={"peer": self.peer, "key_id": key_id, "errno": exc.errno,
                       "error_type": type(exc).__name__, "error": str(exc)},
            )
            return False
        return True

    def _log_failure(self, message: str, key: KeyRecord, exc: AuthBackendError) -> None:
        logger.error(
            message,
            extra={"peer": self.peer, "key_id": key.key_id, "algorithm": key.algorithm,
                   "errno": exc.errno, "error_type": type(exc).__name__, "error": str(exc)},
        )

    def _remember(self, report: RotationReport, now: float) -> None:
        self.memory.last_check = now
        if not self.retry_failed:
            self.memory.state = report.desired
            return

        installed: Set[int] = set(report.previous.installed_keys)
        installed.update(report.added)
        installed.difference_update(report.removed)
        current: Optional[int] = report.desired.current_send_key_id
        if current in report.failed_add:
            current = report.previous.current_send_key_id
        self.memory.state = DesiredState(frozenset(installed), current)

    def plan(self, now: Optional[float] = None) -> Tuple[DesiredState, DesiredState]:
        """Return (remembered, desired-at-now) without touching the kernel."""
        now = self.clock() if now is None else now
        return self.current_state, compute_desired_state(self.keys, now)
