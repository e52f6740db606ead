import json
import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from .config import settings


class CustomJsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging"""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add request_id if available in the record
        if hasattr(record, 'request_id'):
            log_data['request_id'] = record.request_id

        # Correlation fields passed as extra={"extra": {...}}
        if hasattr(record, 'extra') and isinstance(record.extra, dict):
            log_data.update(record.extra)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_configured = False


def setup_logging(log_dir: str = None, level: str = None):
    """Configure structured JSON logging to both file and console"""
    global _configured

    root_logger = logging.getLogger()
    if _configured:
        return root_logger

    root_logger.setLevel(logging.DEBUG)
    json_formatter = CustomJsonFormatter()

    # File handler (rotating, max 10MB per file, keep 5 files)
    log_dir = log_dir or settings.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(json_formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level or settings.LOG_LEVEL)
    console_handler.setFormatter(json_formatter)
    root_logger.addHandler(console_handler)

    _configured = True
    return root_logger


def get_logger(name):
    """Get a logger with request context"""
    return logging.getLogger(name)


def log_context(**fields):
    """Build the extra= payload that CustomJsonFormatter merges into the record"""
    return {"extra": {k: v for k, v in fields.items() if v is not None}}
