"""
Key-configuration loader.

Accepts the keychain export format:

    [
      {"keyId": 1, "algorithm": "hmac-sha-256", "password": "key1",
       "sendStart": 0, "sendEnd": 1767225600,
       "acceptStart": 0, "acceptEnd": 1767229200},
      ...
    ]

Time bounds may be omitted, ``null``, ``0``, ``"always"`` (start) or
``"forever"`` (end) for an unbounded side; numbers are Unix seconds and other
strings are ISO-8601 timestamps (naive values are read as UTC). Secrets come
from ``password`` (UTF-8), ``passwordHex`` or ``passwordBase64``.

Every failure raises KeyConfigError; nothing partially parsed is returned.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from authproxy.exceptions import KeyConfigError
from authproxy.keys import KeyRecord, KeySet, ValidityWindow


# User-facing names -> Linux crypto API names used by TCP_AO_ADD_KEY
ALGORITHM_ALIASES: Dict[str, str] = {
    "hmac-sha-1": "hmac(sha1)",
    "hmac-sha-1-96": "hmac(sha1)",
    "hmac-sha1": "hmac(sha1)",
    "hmac-sha-256": "hmac(sha256)",
    "hmac-sha256": "hmac(sha256)",
    "aes-128-cmac": "cmac(aes)",
    "aes-128-cmac-96": "cmac(aes)",
    # MD5 cannot drive TCP-AO; keychains carrying it fall back to hmac(sha256)
    "md5": "hmac(sha256)",
}

KERNEL_ALGORITHMS = frozenset({"hmac(sha1)", "hmac(sha256)", "cmac(aes)"})

_OPEN_START = {"", "always"}
_OPEN_END = {"", "forever", "infinite"}


def normalize_algorithm(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise KeyConfigError("algorithm must be a non-empty string")
    candidate = name.strip().lower()
    if candidate in ALGORITHM_ALIASES:
        return ALGORITHM_ALIASES[candidate]
    if candidate in KERNEL_ALGORITHMS:
        return candidate
    # Unknown names are passed through; the kernel decides and the backend
    # reports InvalidParameters for that key only.
    return name.strip()


def parse_timestamp(value: Any, field_name: str = "time") -> float:
    """Parse one point in time: Unix seconds (number or numeric string) or ISO-8601."""
    if isinstance(value, bool):
        raise KeyConfigError(f"{field_name} must be a timestamp, got bool")
    if isinstance(value, str):
        token = value.strip()
        try:
            numeric = float(token)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
            except ValueError:
                raise KeyConfigError(f"{field_name} is not an ISO-8601 timestamp: {value!r}")
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
        value = numeric
    if not isinstance(value, (int, float)):
        raise KeyConfigError(f"{field_name} has unsupported type {type(value).__name__}")
    # NaN compares false against everything, which would make a window never close
    if not math.isfinite(value):
        raise KeyConfigError(f"{field_name} must be a finite timestamp, got {value}")
    if value < 0:
        raise KeyConfigError(f"{field_name} must be >= 0, got {value}")
    return float(value)


def _parse_time(value: Any, field_name: str, open_tokens) -> Optional[float]:
    """Parse a window bound; ``None`` means unbounded."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in open_tokens:
        return None
    moment = parse_timestamp(value, field_name)
    return None if moment == 0 else moment


def _parse_secret(entry: Dict[str, Any], key_id: int) -> bytes:
    present = [name for name in ("password", "passwordHex", "passwordBase64") if entry.get(name) is not None]
    if not present:
        raise KeyConfigError(f"key {key_id}: missing password")
    if len(present) > 1:
        raise KeyConfigError(f"key {key_id}: only one of {', '.join(present)} may be given")

    source = present[0]
    raw = entry[source]
    if not isinstance(raw, str):
        raise KeyConfigError(f"key {key_id}: {source} must be a string")
    try:
        if source == "passwordHex":
            secret = bytes.fromhex(raw)
        elif source == "passwordBase64":
            secret = base64.b64decode(raw, validate=True)
        else:
            secret = raw.encode("utf-8")
    except (ValueError, binascii.Error) as exc:
        raise KeyConfigError(f"key {key_id}: {source} could not be decoded: {exc}")
    if not secret:
        raise KeyConfigError(f"key {key_id}: empty secret")
    return secret


def parse_key_entry(entry: Dict[str, Any]) -> KeyRecord:
    """Build one KeyRecord from a decoded JSON object."""
    if not isinstance(entry, dict):
        raise KeyConfigError(f"key entry must be an object, got {type(entry).__name__}")

    key_id = entry.get("keyId")
    if isinstance(key_id, bool) or not isinstance(key_id, int):
        raise KeyConfigError(f"keyId must be an integer, got {key_id!r}")

    algorithm = normalize_algorithm(entry.get("algorithm", ""))
    secret = _parse_secret(entry, key_id)

    send_window = ValidityWindow(
        _parse_time(entry.get("sendStart"), f"key {key_id} sendStart", _OPEN_START),
        _parse_time(entry.get("sendEnd"), f"key {key_id} sendEnd", _OPEN_END),
    )
    accept_window = ValidityWindow(
        _parse_time(entry.get("acceptStart"), f"key {key_id} acceptStart", _OPEN_START),
        _parse_time(entry.get("acceptEnd"), f"key {key_id} acceptEnd", _OPEN_END),
    )
    return KeyRecord(key_id, algorithm, secret, send_window, accept_window)


def load_keys_json(text: str) -> KeySet:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise KeyConfigError(f"key configuration is not valid JSON: {exc}")
    if isinstance(payload, dict) and "keys" in payload:
        payload = payload["keys"]
    if not isinstance(payload, list):
        raise KeyConfigError("key configuration must be a JSON array of key objects")
    if not payload:
        raise KeyConfigError("key configuration contains no keys")
    return KeySet(parse_key_entry(entry) for entry in payload)


def load_keys_file(path: Union[str, Path]) -> KeySet:
    key_path = Path(path).expanduser()
    try:
        text = key_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise KeyConfigError(f"cannot read key file {key_path}: {exc}")
    return load_keys_json(text)
