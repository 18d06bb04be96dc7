"""Logging infrastructure with structured JSON logging."""

import logging
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


STRUCTURED_FIELDS = ('resource_id', 'resource_type', 'operation', 'attempt', 'duration')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': _utcnow().isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for field_name in STRUCTURED_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            Formatted log string with colors
        """
        if self.use_color:
            color = self.COLORS.get(record.levelname, '')
            reset = self.RESET
        else:
            color = reset = ''

        timestamp = _utcnow().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{reset}"
        message = record.getMessage()

        if hasattr(record, 'resource_id'):
            message = f"[{record.resource_id}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.stackforge/logs') -> None:
    """Setup logging infrastructure.

    Console output goes to stderr so that machine-readable command output
    (``stackforge output --json``) stays clean on stdout.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory for JSON-lines log files, or None to disable file logging
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"stackforge-{_utcnow().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from boto3 and other libraries
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """Logger adapter that attaches structured fields to every record.

    Example:
        log = LogContext(logger, resource_id='aws_elb.example', operation='create')
        log.info("Creating load balancer")
    """

    def __init__(self, logger: logging.Logger, **fields: Any):
        super().__init__(logger, fields)

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs
