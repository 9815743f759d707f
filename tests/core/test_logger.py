import json
import logging

from pgupsert.core.logger import (
    SUCCESS_LEVEL,
    CustomFormatter,
    JSONFormatter,
    configure_driver_logging,
    setup_logger,
)
from pgupsert.core.logging_context import ContextFilter, log_context, upsert_log_fields


def _record(msg="hello", level=logging.INFO):
    return logging.LogRecord("pgupsert.test", level, __file__, 10, msg, None, None)


def test_driver_log_level_mapping():
    assert configure_driver_logging("debug") == logging.DEBUG
    assert configure_driver_logging("INFO") == logging.INFO
    assert configure_driver_logging("warn") == logging.WARNING
    assert configure_driver_logging("error") == logging.ERROR
    assert configure_driver_logging("verbose") == logging.ERROR
    assert logging.getLogger("psycopg.pool").level == logging.ERROR


def test_success_level():
    logger = setup_logger("pgupsert.test.success")
    assert logging.getLevelName(SUCCESS_LEVEL) == "SUCCESS"
    assert hasattr(logger, "success")


def test_upsert_log_fields_nest_and_reset():
    with upsert_log_fields(target="metrics"):
        with upsert_log_fields(staging="temp_metrics_1") as fields:
            assert fields == {"target": "metrics", "staging": "temp_metrics_1"}
            record = _record()
            ContextFilter().filter(record)
            assert record.target == "metrics"
            assert record.staging == "temp_metrics_1"
        assert log_context.get() == {"target": "metrics"}
    assert log_context.get() == {}


def test_explicit_extra_is_not_overwritten():
    with upsert_log_fields(target="metrics"):
        record = _record()
        record.target = "other"
        ContextFilter().filter(record)
    assert record.target == "other"


def test_json_formatter_includes_context():
    record = _record("loaded rows")
    record.target = "metrics"
    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "loaded rows"
    assert payload["level"] == "INFO"
    assert payload["extra"]["target"] == "metrics"


def test_custom_formatter():
    text = CustomFormatter(include_location=True).format(_record("loaded rows"))
    assert "loaded rows" in text
    assert "INFO" in text
