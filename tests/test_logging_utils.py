import json
import logging
from pathlib import Path

from authproxy.logging_utils import JsonFormatter, configure_file_logger, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("authproxy", logging.WARNING, __file__, 10, "key %s failed", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(peer="192.0.2.1", key_id=3)))
    assert payload["msg"] == "key 3 failed"
    assert payload["level"] == "WARNING"
    assert payload["name"] == "authproxy"
    assert payload["peer"] == "192.0.2.1"
    assert payload["key_id"] == 3
    assert "lineno" not in payload
    assert "args" not in payload


def test_json_formatter_stringifies_unserialisable_values() -> None:
    payload = json.loads(JsonFormatter().format(_record(installed={1, 2})))
    assert payload["installed"] == str({1, 2})


def test_get_logger_is_idempotent() -> None:
    first = get_logger("authproxy.test-idempotent")
    second = get_logger("authproxy.test-idempotent")
    assert first is second
    assert len(first.handlers) == 1
    assert first.propagate is False


def test_configure_file_logger_replaces_previous_handler(tmp_path: Path) -> None:
    logger = get_logger("authproxy.test-file")
    first = configure_file_logger("ao", logger, logs_dir=str(tmp_path / "a"))
    second = configure_file_logger("ao", logger, logs_dir=str(tmp_path / "b"))
    try:
        file_handlers = [h for h in logger.handlers if getattr(h, "_authproxy_file_handler", False)]
        assert len(file_handlers) == 1
        logger.info("Key rotation completed", extra={"added": [2]})
        file_handlers[0].flush()
        line = second.read_text(encoding="utf-8").strip()
        assert json.loads(line)["added"] == [2]
        assert first.exists()
        assert first.read_text(encoding="utf-8") == ""
    finally:
        for handler in list(logger.handlers):
            if getattr(handler, "_authproxy_file_handler", False):
                logger.removeHandler(handler)
                handler.close()
