#!/usr/bin/env python3
"""
Unified logging utility for VoiceChat.

Provides setup_logger(name, logfile) to configure a rotating file handler and
console handler with consistent formatting. Idempotent: reuses existing handlers
if already configured for the logger.

Supports both traditional and structured JSON logging.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime
from logging.handlers import RotatingFileHandler

LOG_DIR = os.environ.get("VOICECHAT_LOG_DIR", "logs")

# Set by enable_debug_logging; applies to loggers created afterwards too
_debug_enabled = False

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'request_id', 'error_details',
    'taskName',
})


def setup_logger(name: str, logfile: str, level: int = logging.INFO, structured: bool = False) -> logging.Logger:
    """Create or return a configured logger with rotating file + console handlers.

    Args:
        name: Logger name
        logfile: Log file name, placed under LOG_DIR unless it has a directory
        level: Log level
        structured: Whether to use structured JSON logging
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG if _debug_enabled else level)

    if not os.path.dirname(logfile):
        logfile = os.path.join(LOG_DIR, logfile)

    fmt: logging.Formatter
    if structured:
        fmt = JSONFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # File handler; console only if the log directory is not writable
    try:
        os.makedirs(os.path.dirname(logfile), exist_ok=True)
        fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        pass

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


def enable_debug_logging(prefix: str = "voicechat") -> None:
    """Switch every `prefix` logger, existing and future, to DEBUG"""
    global _debug_enabled
    _debug_enabled = True
    for name, existing in list(logging.root.manager.loggerDict.items()):
        if isinstance(existing, logging.Logger) and (name == prefix or name.startswith(prefix + ".")):
            existing.setLevel(logging.DEBUG)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, include_request_id: bool = True):
        super().__init__()
        self.include_request_id = include_request_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_request_id and hasattr(record, 'request_id'):
            log_entry['request_id'] = record.request_id

        if getattr(record, 'error_details', None):
            log_entry['error_details'] = record.error_details

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def log_with_context(logger: logging.Logger, level: int, message: str, **context) -> str:
    """Log message with additional context, returning the request id used"""
    request_id = context.pop('request_id', None) or str(uuid.uuid4())[:8]
    logger.log(level, message, extra={'request_id': request_id, **context})
    return request_id


__all__ = ["setup_logger", "enable_debug_logging", "JSONFormatter", "log_with_context", "LOG_DIR"]
