"""Project-specific exception types for clearer error semantics."""

from typing import Optional


class ConfigError(NotImplementedError, ValueError):
    """Configuration validation errors (subclass of NotImplementedError for legacy callers)."""
    pass


class KeyConfigError(ConfigError):
    """Key configuration could not be parsed or violates key-set invariants."""
    pass


class AuthBackendError(Exception):
    """A kernel authentication configuration call failed."""

    def __init__(
        self,
        message: str,
        *,
        peer: Optional[str] = None,
        key_id: Optional[int] = None,
        errno: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.peer = peer
        self.key_id = key_id
        self.errno = errno


class UnsupportedEnvironment(AuthBackendError):
    """Kernel lacks the feature or the process lacks CAP_NET_ADMIN."""
    pass


class InvalidParameters(AuthBackendError):
    """Algorithm unsupported, key id out of range or secret too long."""
    pass


class TransientKernelRejection(AuthBackendError):
    """Any other kernel rejection; retried only by a later rotation."""
    pass


class BootstrapError(Exception):
    """Initial key installation failed; the listening socket must not be bound."""
    pass
