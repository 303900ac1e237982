"""JSON structured logging with mandatory fields and PII redaction."""
import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Optional

from backend.core.config import settings
from backend.core.logging import redact_pii

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'taskName',
))


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def format(self, record):
        trace_id = getattr(_context, 'trace_id', None) or 'unknown'
        run_id = getattr(_context, 'run_id', None)

        log_entry = {
            'trace_id': trace_id,
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': redact_pii(record.getMessage()),
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

        if run_id:
            log_entry['run_id'] = run_id

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        # Extra fields, redacted
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            log_entry[key] = redact_pii(value)

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: str) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_run_id(run_id: Optional[str]) -> None:
    """Set dispatch/worker run ID for current thread context."""
    _context.run_id = run_id


def init_logging(level: Optional[str] = None) -> None:
    """Initialize JSON logging with mandatory fields."""
    logger = logging.getLogger()
    level_name = (level or settings.log_level).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)
