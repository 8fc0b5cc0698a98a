"""
Logging utilities for the import pipeline.

Playlist files are untrusted input: channel names, group titles and URLs
read from them end up in log messages. The custom LogRecord factory below
escapes CR/LF in log arguments so a crafted entry cannot forge log lines
(CWE-117).

Install once at startup via configure_logging().
"""

import logging

from config import set_log_level

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_ORIGINAL_FACTORY = logging.getLogRecordFactory()


def _sanitize_value(value):
    """Strip newlines and carriage returns from a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args to prevent log injection."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str):
        record.msg = _sanitize_value(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install a global LogRecord factory that sanitizes all log messages."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the service.

    Installs the sanitizing record factory, sets the handler format, and
    applies the requested level to every known logger.
    """
    install_safe_logging()
    logging.basicConfig(format=LOG_FORMAT)
    set_log_level(level)
