"""
Upsert fields attached to every log record emitted inside a call.

``bulk_upsert`` binds the target table for the whole call and the staging
table once it exists; ``ContextFilter`` copies them onto records so the JSON
formatter can emit them under ``extra``.
"""
import contextvars
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

LOG_FIELDS = ("target", "staging")

log_context: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar("pgupsert_log_fields", default={})


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in log_context.get().items():
            # fields passed explicitly through ``extra`` win
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def upsert_log_fields(target: Optional[str] = None, staging: Optional[str] = None) -> Iterator[Dict[str, str]]:
    """Bind upsert fields for the current task; unset arguments keep the outer binding."""
    fields = dict(log_context.get())
    for key, value in zip(LOG_FIELDS, (target, staging)):
        if value is not None:
            fields[key] = value
    token = log_context.set(fields)
    try:
        yield fields
    finally:
        log_context.reset(token)
