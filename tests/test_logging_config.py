"""Tests for structured log output."""

import json
import logging

from src.logging_config import CustomJsonFormatter, get_logger


def _record(**extra):
    record = logging.LogRecord(
        name="src.dedupe.scanner",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="scan finished",
        args=(),
        exc_info=None,
        func="run_scan",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_adds_context_fields():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    payload = json.loads(formatter.format(_record(tenant_id=3, scan_id=17)))

    assert payload["message"] == "scan finished"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "src.dedupe.scanner"
    assert payload["function"] == "run_scan"
    assert payload["tenant_id"] == 3
    assert payload["scan_id"] == 17
    assert "merge_key" not in payload


def test_get_logger_attaches_context(caplog):
    log = get_logger("src.dedupe.merge", tenant_id=5, merge_key="candidate:9")

    with caplog.at_level(logging.INFO, logger="src.dedupe.merge"):
        log.info("merged")

    record = caplog.records[-1]
    assert record.tenant_id == 5
    assert record.merge_key == "candidate:9"
