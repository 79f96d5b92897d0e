from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from authproxy.exceptions import KeyConfigError
from authproxy.keychain import (
    load_keys_file,
    load_keys_json,
    normalize_algorithm,
    parse_key_entry,
    parse_timestamp,
)


def _entry(**overrides) -> dict:
    entry = {
        "keyId": 1,
        "algorithm": "hmac-sha-256",
        "password": "key1",
        "sendStart": 0,
        "sendEnd": 1767225600,
        "acceptStart": 0,
        "acceptEnd": 1767229200,
    }
    entry.update(overrides)
    return entry


def test_keychain_export_format_parses() -> None:
    key = parse_key_entry(_entry())
    assert key.key_id == 1
    assert key.algorithm == "hmac(sha256)"
    assert key.secret == b"key1"
    assert key.send_window.start is None
    assert key.send_window.end == 1767225600.0
    assert key.accept_window.end == 1767229200.0


@pytest.mark.parametrize(
    "name, expected",
    [
        ("hmac-sha-1", "hmac(sha1)"),
        ("HMAC-SHA-1-96", "hmac(sha1)"),
        ("hmac-sha-256", "hmac(sha256)"),
        ("aes-128-cmac", "cmac(aes)"),
        ("md5", "hmac(sha256)"),
        ("hmac(sha1)", "hmac(sha1)"),
        ("gost(3411)", "gost(3411)"),
    ],
)
def test_algorithm_normalisation(name: str, expected: str) -> None:
    assert normalize_algorithm(name) == expected


def test_missing_algorithm_rejected() -> None:
    entry = _entry()
    del entry["algorithm"]
    with pytest.raises(KeyConfigError):
        parse_key_entry(entry)


def test_open_time_tokens() -> None:
    key = parse_key_entry(_entry(sendStart="always", sendEnd="forever", acceptStart=None, acceptEnd=0))
    assert key.send_window.unbounded
    assert key.accept_window.unbounded


def test_omitted_bounds_are_unbounded() -> None:
    key = parse_key_entry({"keyId": 4, "algorithm": "hmac-sha-1", "password": "x"})
    assert key.send_window.unbounded
    assert key.accept_window.unbounded


def test_iso_timestamps() -> None:
    key = parse_key_entry(_entry(sendStart="2026-01-01T00:00:00Z", sendEnd="2026-01-02T00:00:00"))
    expected_start = datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()
    assert key.send_window.start == expected_start
    assert key.send_window.end == expected_start + 86400


def test_numeric_string_timestamp() -> None:
    key = parse_key_entry(_entry(sendEnd="1767225600"))
    assert key.send_window.end == 1767225600.0


@pytest.mark.parametrize("bad", [-5, True, "yesterday", [1]])
def test_bad_time_values_rejected(bad) -> None:
    with pytest.raises(KeyConfigError):
        parse_key_entry(_entry(sendStart=bad))


@pytest.mark.parametrize("bound", ["NaN", '"nan"', "Infinity", '"-Infinity"', '"inf"'])
def test_non_finite_bounds_rejected(bound: str) -> None:
    text = (
        '[{"keyId": 1, "algorithm": "hmac-sha-256", "password": "k", '
        '"sendEnd": %s}]' % bound
    )
    with pytest.raises(KeyConfigError, match="finite"):
        load_keys_json(text)


def test_parse_timestamp_keeps_epoch() -> None:
    assert parse_timestamp(0, "--at") == 0.0
    assert parse_timestamp("0", "--at") == 0.0
    assert parse_timestamp("1970-01-01T00:00:10Z") == 10.0
    with pytest.raises(KeyConfigError):
        parse_timestamp("always")


def test_window_end_before_start_rejected() -> None:
    with pytest.raises(KeyConfigError):
        parse_key_entry(_entry(sendStart=2000, sendEnd=1000))


def test_hex_and_base64_secrets() -> None:
    hex_key = parse_key_entry(_entry(password=None, passwordHex="00ff10"))
    assert hex_key.secret == b"\x00\xff\x10"
    b64_key = parse_key_entry(_entry(password=None, passwordBase64=base64.b64encode(b"\x01\x02").decode()))
    assert b64_key.secret == b"\x01\x02"


def test_secret_sources_are_exclusive() -> None:
    with pytest.raises(KeyConfigError, match="only one"):
        parse_key_entry(_entry(passwordHex="00"))


@pytest.mark.parametrize("overrides", [{"password": None}, {"password": ""}, {"password": None, "passwordHex": "zz"}])
def test_bad_secrets_rejected(overrides) -> None:
    with pytest.raises(KeyConfigError):
        parse_key_entry(_entry(**overrides))


@pytest.mark.parametrize("key_id", [None, "1", 1.5, True, 256, -1])
def test_bad_key_ids_rejected(key_id) -> None:
    with pytest.raises(KeyConfigError):
        parse_key_entry(_entry(keyId=key_id))


def test_load_keys_json_list_and_wrapped() -> None:
    payload = [_entry(), _entry(keyId=2, password="key2")]
    keys = load_keys_json(json.dumps(payload))
    assert keys.key_ids == frozenset({1, 2})
    wrapped = load_keys_json(json.dumps({"keys": payload}))
    assert wrapped.key_ids == keys.key_ids


@pytest.mark.parametrize("text", ["", "{", "[]", "{}", "42"])
def test_load_keys_json_rejects_bad_documents(text: str) -> None:
    with pytest.raises(KeyConfigError):
        load_keys_json(text)


def test_load_keys_json_rejects_duplicate_ids() -> None:
    with pytest.raises(KeyConfigError, match="duplicate"):
        load_keys_json(json.dumps([_entry(), _entry()]))


def test_load_keys_file(tmp_path: Path) -> None:
    path = tmp_path / "keys.json"
    path.write_text(json.dumps([_entry(keyId=3)]), encoding="utf-8")
    keys = load_keys_file(path)
    assert keys.key_ids == frozenset({3})


def test_load_keys_file_missing(tmp_path: Path) -> None:
    with pytest.raises(KeyConfigError, match="cannot read"):
        load_keys_file(tmp_path / "absent.json")
