"""
Core configuration constants for the authenticated TCP relay.

Single source of truth for listen/forward endpoints, the expected peer, and
key-rotation runtime parameters.
"""

import os
from ipaddress import ip_address
from typing import Dict, Any

from authproxy.exceptions import ConfigError


# Default configuration - all required keys with correct types
CONFIG = {
    # Authenticated listener (router/peer connects here)
    "LISTEN_HOST": "0.0.0.0",
    "LISTEN_PORT": 11019,
    "LISTEN_BACKLOG": 5,

    # Only this peer may connect; TCP-AO/MD5 keys are installed for this address
    "PEER_HOST": "192.168.1.1",

    # Unauthenticated backend (collector) that receives the relayed bytes
    "FORWARD_HOST": "127.0.0.1",
    "FORWARD_PORT": 11020,

    # "ao" (RFC 5925, multiple keys, rotation) or "md5" (RFC 2385, single static key)
    "AUTH_MODE": "ao",

    # Key rotation check cadence (seconds). Values below MIN_ROTATION_INTERVAL are clamped.
    "ROTATION_INTERVAL": 60.0,
    "MIN_ROTATION_INTERVAL": 10.0,

    # Selector timeout for the relay loop; bounds how late a rotation check can run
    "POLL_INTERVAL": 1.0,

    "BUFFER_SIZE": 65536,

    # When True, failed install/remove calls are re-attempted on the next rotation
    # check. When False, memory tracks the intended state and a failed key is only
    # revisited on its next validity transition.
    "RETRY_FAILED_OPERATIONS": False,

    # Withdraw all installed keys from the listening socket on clean shutdown
    "REMOVE_KEYS_ON_SHUTDOWN": True,
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "LISTEN_HOST": str,
    "LISTEN_PORT": int,
    "LISTEN_BACKLOG": int,
    "PEER_HOST": str,
    "FORWARD_HOST": str,
    "FORWARD_PORT": int,
    "AUTH_MODE": str,
    "ROTATION_INTERVAL": float,
    "MIN_ROTATION_INTERVAL": float,
    "POLL_INTERVAL": float,
    "BUFFER_SIZE": int,
    "RETRY_FAILED_OPERATIONS": bool,
    "REMOVE_KEYS_ON_SHUTDOWN": bool,
}

# Keys that can be overridden by environment variables
_ENV_OVERRIDABLE = {
    "LISTEN_HOST",
    "LISTEN_PORT",
    "PEER_HOST",
    "FORWARD_HOST",
    "FORWARD_PORT",
    "AUTH_MODE",
    "ROTATION_INTERVAL",
    "POLL_INTERVAL",
    "RETRY_FAILED_OPERATIONS",
    "REMOVE_KEYS_ON_SHUTDOWN",
}

_FLOAT_KEYS = {"ROTATION_INTERVAL", "MIN_ROTATION_INTERVAL", "POLL_INTERVAL"}

AUTH_MODES = ("ao", "md5")


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise ConfigError("<reason>") on any violation.
    No return value on success.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise ConfigError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if key in _FLOAT_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"CONFIG[{key}] must be float seconds, got {type(value).__name__}")
            continue
        if expected_type is int and isinstance(value, bool):
            raise ConfigError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise ConfigError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    for key in ("LISTEN_PORT", "FORWARD_PORT"):
        port = cfg[key]
        if not (1 <= port <= 65535):
            raise ConfigError(f"CONFIG[{key}] must be valid port (1-65535), got {port}")

    if cfg["AUTH_MODE"] not in AUTH_MODES:
        raise ConfigError(f"CONFIG[AUTH_MODE] must be one of {', '.join(AUTH_MODES)}, got {cfg['AUTH_MODE']!r}")

    # The kernel keys security state by exact peer address, so no hostnames here.
    try:
        ip_address(cfg["PEER_HOST"])
    except ValueError as exc:
        raise ConfigError(f"CONFIG[PEER_HOST] must be a valid IP address: {exc}")

    for host_key in ("LISTEN_HOST", "FORWARD_HOST"):
        host = cfg[host_key]
        if not host:
            raise ConfigError(f"CONFIG[{host_key}] must be non-empty string, got {repr(host)}")

    if cfg["MIN_ROTATION_INTERVAL"] <= 0:
        raise ConfigError("CONFIG[MIN_ROTATION_INTERVAL] must be > 0")
    if cfg["ROTATION_INTERVAL"] <= 0:
        raise ConfigError("CONFIG[ROTATION_INTERVAL] must be > 0")
    if not (0 < cfg["POLL_INTERVAL"] <= cfg["ROTATION_INTERVAL"]):
        raise ConfigError("CONFIG[POLL_INTERVAL] must be > 0 and <= ROTATION_INTERVAL")

    if cfg["BUFFER_SIZE"] < 1024:
        raise ConfigError(f"CONFIG[BUFFER_SIZE] must be >= 1024, got {cfg['BUFFER_SIZE']}")
    if cfg["LISTEN_BACKLOG"] < 1:
        raise ConfigError(f"CONFIG[LISTEN_BACKLOG] must be >= 1, got {cfg['LISTEN_BACKLOG']}")


def effective_rotation_interval(cfg: Dict[str, Any]) -> float:
    """Return ROTATION_INTERVAL clamped to MIN_ROTATION_INTERVAL."""
    return max(float(cfg["ROTATION_INTERVAL"]), float(cfg["MIN_ROTATION_INTERVAL"]))


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        env_var = f"AUTHPROXY_{key}"
        if env_var in os.environ:
            env_value = os.environ[env_var]
            expected_type = _REQUIRED_KEYS[key]

            try:
                if expected_type == int:
                    result[key] = int(env_value)
                elif expected_type == str:
                    result[key] = str(env_value)
                elif expected_type == bool:
                    lowered = str(env_value).strip().lower()
                    if lowered in {"1", "true", "yes", "on"}:
                        result[key] = True
                    elif lowered in {"0", "false", "no", "off"}:
                        result[key] = False
                    else:
                        raise ValueError(f"invalid boolean literal: {env_value}")
                elif expected_type == float:
                    result[key] = float(env_value)
                else:
                    raise ConfigError(f"Unsupported type for env override: {expected_type}")
            except ValueError:
                raise ConfigError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
