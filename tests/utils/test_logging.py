from __future__ import annotations

import json
import logging

from Memory_KG.utils.logging import (
    JsonFormatter,
    bind_correlation_id,
    get_correlation_id,
    reset_correlation_id,
)


def test_correlation_id_binding_is_restorable() -> None:
    outer = bind_correlation_id("run-outer")
    inner = bind_correlation_id("run-inner")
    assert get_correlation_id() == "run-inner"

    reset_correlation_id(inner)
    assert get_correlation_id() == "run-outer"
    reset_correlation_id(outer)
    assert get_correlation_id() is None


def test_json_formatter_scrubs_sensitive_fields() -> None:
    formatter = JsonFormatter(scrub_fields=["api_key"])
    record = logging.LogRecord("memkg", logging.INFO, __file__, 1, "provider configured", None, None)
    record.api_key = "secret-value"
    record.options = {"api_key": "nested", "model": "small"}

    token = bind_correlation_id("run-1")
    try:
        payload = json.loads(formatter.format(record))
    finally:
        reset_correlation_id(token)

    assert payload["message"] == "provider configured"
    assert payload["api_key"] == "***"
    assert payload["options"] == {"api_key": "***", "model": "small"}
    assert payload["correlation_id"] == "run-1"
