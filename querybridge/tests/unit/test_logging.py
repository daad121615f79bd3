from __future__ import annotations

import json
import logging
import sys

from querybridge.core.logging import JsonFormatter


def test_json_formatter_emits_one_object_per_record() -> None:
    record = logging.LogRecord(
        name="querybridge.services.execution",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="execution_completed tenant_id=%s rows=%s",
        args=("t-acme", 3),
        exc_info=None,
    )

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "querybridge.services.execution"
    assert payload["message"] == "execution_completed tenant_id=t-acme rows=3"
    assert "exc_info" not in payload


def test_json_formatter_includes_traceback() -> None:
    try:
        raise RuntimeError("pool closed")
    except RuntimeError:
        exc_info = sys.exc_info()
    record = logging.LogRecord(
        name="querybridge.engines.pools",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="pool_close_failed",
        args=(),
        exc_info=exc_info,
    )

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: pool closed" in payload["exc_info"]
