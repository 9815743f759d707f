from datetime import datetime
import re
import sys
import json
import logging
import traceback

from pgupsert.core.logging_context import ContextFilter, upsert_log_fields


SUCCESS_LEVEL = 25
LOG_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "SUCCESS",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL"
}

LOG_COLORS = {
    "DEBUG": "\033[36m",      # Cyan
    "INFO": "\033[37m",       # White
    "SUCCESS": "\033[32m",    # Green
    "WARNING": "\033[33m",    # Yellow
    "ERROR": "\033[31m",      # Red
    "CRITICAL": "\033[35m"    # Magenta
}
RESET_COLOR = "\033[0m"

# Config file log levels (debug/info/warn/error) -> logging levels
DRIVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
DRIVER_LOGGERS = ("psycopg", "psycopg.pool")

logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

_STANDARD_RECORD_KEYS = {
    "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "scope", "name", "taskName"
}


class CustomLogger(logging.Logger):
    def success(self, message, *args, **kwargs):
        if self.isEnabledFor(SUCCESS_LEVEL):
            self.log(SUCCESS_LEVEL, message, *args, **kwargs, stacklevel=2)


def stringify_extra(value):
    if isinstance(value, (list, dict)):
        return str(value)
    else:
        return value


class CustomFormatter(logging.Formatter):

    def __init__(self, fmt="%(message)s", include_location=False, with_color=False):
        super().__init__(fmt)
        self.include_location = include_location
        self.with_color = with_color

    def format(self, record):
        level_name = LOG_SEVERITY.get(record.levelname, record.levelname)
        scope = f"{record.scope}" if hasattr(record, "scope") else ""
        location = ""
        if self.include_location:
            location = f"{record.pathname}:{record.lineno}\n({record.module}:{record.funcName}:{record.lineno})"

        if self.with_color:
            level_color = LOG_COLORS.get(record.levelname, "")
            metadata_line = f"{level_color}[{level_name}]{RESET_COLOR} {scope} {location}".strip()
        else:
            metadata_line = f"{datetime.now().isoformat()} [{level_name}] {scope} {location}".strip()

        message = record.getMessage()
        message_split = message.splitlines()
        if len(message_split) > 1:
            message_line = f"     Message: {message_split[0]}"
            for line in message_split[1:]:
                message_line += f"\n             {line}"
        else:
            message_line = f"     Message: {message}"

        extra_items = [
            f"{key}: {stringify_extra(value)}"
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_KEYS and key != "message"
        ]
        extra_info = ""
        if extra_items:
            extra_info = f"\n     {' '.join(extra_items)}"
        formatted_log = f"{metadata_line}\n{message_line}{extra_info}"
        if record.exc_info:
            # clickable "path:line" locations in editors
            format_exception = traceback.format_exception(*record.exc_info)
            for i in range(len(format_exception)):
                format_exception[i] = re.sub(r'File "([^"]+)", line (\d+),', r'File "\1:\2"', format_exception[i])
            formatted_log += "\n" + "".join(format_exception)
        return formatted_log


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_dict = {
            "level": record.levelname,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
            "logger": record.name,
        }
        if hasattr(record, "scope"):
            log_dict["scope"] = record.scope
        log_dict["location"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        extra = {
            key: stringify_extra(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_KEYS and key != "message"
        }
        if extra:
            log_dict["extra"] = extra
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_dict, ensure_ascii=False, default=str)


def setup_logger(name: str, include_location=False, use_json=False, level=logging.DEBUG):
    logging.setLoggerClass(CustomLogger)
    logger = logging.getLogger(name)
    logger.addFilter(ContextFilter())

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.DEBUG)
        if use_json:
            stream_handler.setFormatter(JSONFormatter())
        else:
            stream_handler.setFormatter(CustomFormatter(include_location=include_location))
        logger.addHandler(stream_handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def configure_driver_logging(log_level: str = "error", use_json: bool = False) -> int:
    """
    Route psycopg and psycopg_pool logs through our formatter.

    Unknown level names fall back to ERROR. Returns the applied level.
    """
    level = DRIVER_LOG_LEVELS.get((log_level or "").strip().lower(), logging.ERROR)
    for name in DRIVER_LOGGERS:
        setup_logger(name, use_json=use_json, level=level)
    return level


def set_package_log_level(level: int) -> None:
    """Adjust the level of every pgupsert logger created so far."""
    for name, item in logging.root.manager.loggerDict.items():
        if name.startswith("pgupsert") and isinstance(item, logging.Logger):
            item.setLevel(level)


logger = setup_logger(__name__, include_location=True)

__all__ = [
    "SUCCESS_LEVEL",
    "CustomLogger",
    "CustomFormatter",
    "JSONFormatter",
    "upsert_log_fields",
    "setup_logger",
    "configure_driver_logging",
    "set_package_log_level",
]
