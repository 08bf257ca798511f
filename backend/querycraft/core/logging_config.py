import logging
import logging.config
from contextvars import ContextVar
from pathlib import Path
import json
from datetime import datetime, timezone
from typing import Optional

from querycraft.core.config import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_TO_FILE,
    LOG_DIR,
    LOG_FILE_MAX_SIZE,
    LOG_FILE_BACKUP_COUNT,
    LOG_JSON_ENABLED,
    DEBUG
)

# Attributes every LogRecord carries; anything else came in through extra=
STANDARD_RECORD_ATTRS = {
    'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
    'funcName', 'id', 'levelname', 'levelno', 'lineno', 'module',
    'msecs', 'message', 'msg', 'name', 'pathname', 'process',
    'processName', 'relativeCreated', 'stack_info', 'taskName', 'thread', 'threadName'
}

# Id of the request being handled in the current context
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.
    """
    def format(self, record):
        logobj = {}
        logobj['timestamp'] = datetime.now(timezone.utc).isoformat()
        logobj['name'] = record.name
        logobj['level'] = record.levelname
        logobj['module'] = record.module
        logobj['line'] = record.lineno
        logobj['message'] = record.getMessage()

        if hasattr(record, 'request_id'):
            logobj['request_id'] = record.request_id

        if record.exc_info:
            logobj['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'duration'):
            logobj['duration_ms'] = record.duration

        for key, value in record.__dict__.items():
            if key not in STANDARD_RECORD_ATTRS and not key.startswith('_') and key not in logobj:
                logobj[key] = value

        return json.dumps(logobj, default=str)


def build_logging_config(log_to_file: bool = LOG_TO_FILE, log_dir: str = LOG_DIR) -> dict:
    """
    Build the dictConfig for the application loggers.

    Args:
        log_to_file: Add rotating file handlers next to the console handler
        log_dir: Directory for the log files, created when file logging is on

    Returns:
        dict: A configuration accepted by logging.config.dictConfig
    """
    app_level = 'DEBUG' if DEBUG else LOG_LEVEL

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            },
            'detailed': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s'
            },
            'json': {
                '()': 'querycraft.core.logging_config.JsonFormatter',
            }
        },
        'handlers': {
            'console': {
                'level': app_level,
                'formatter': LOG_FORMAT if LOG_FORMAT in ['standard', 'detailed', 'json'] else 'standard',
                'class': 'logging.StreamHandler',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {  # root logger
                'handlers': ['console'],
                'level': LOG_LEVEL,
                'propagate': True
            },
            'querycraft': {
                'handlers': ['console'],
                'level': app_level,
                'propagate': False
            },
            'querycraft.services': {
                'handlers': ['console'],
                'level': app_level,
                'propagate': False
            },
            'querycraft.api': {
                'handlers': ['console'],
                'level': LOG_LEVEL,
                'propagate': False
            },
            'uvicorn': {
                'handlers': ['console'],
                'level': LOG_LEVEL,
                'propagate': False
            },
            'uvicorn.error': {
                'handlers': ['console'],
                'level': LOG_LEVEL,
                'propagate': False
            }
        }
    }

    if not log_to_file:
        return config

    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    current_date = datetime.now().strftime('%Y-%m-%d')

    config['handlers']['file'] = {
        'level': 'DEBUG',
        'formatter': 'detailed',
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': str(logs_dir / f'querycraft_{current_date}.log'),
        'maxBytes': LOG_FILE_MAX_SIZE,
        'backupCount': LOG_FILE_BACKUP_COUNT,
        'encoding': 'utf8'
    }

    config['handlers']['error_file'] = {
        'level': 'ERROR',
        'formatter': 'detailed',
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': str(logs_dir / f'error_{current_date}.log'),
        'maxBytes': LOG_FILE_MAX_SIZE,
        'backupCount': LOG_FILE_BACKUP_COUNT,
        'encoding': 'utf8'
    }

    for logger_name in config['loggers']:
        config['loggers'][logger_name]['handlers'].extend(['file', 'error_file'])

    if LOG_JSON_ENABLED:
        config['handlers']['json_file'] = {
            'level': LOG_LEVEL,
            'formatter': 'json',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(logs_dir / f'json_{current_date}.log'),
            'maxBytes': LOG_FILE_MAX_SIZE,
            'backupCount': LOG_FILE_BACKUP_COUNT,
            'encoding': 'utf8'
        }

        # Structured output for the pipeline loggers only
        for logger_name in ['querycraft', 'querycraft.services']:
            config['loggers'][logger_name]['handlers'].append('json_file')

    return config


def install_request_id_factory():
    """Tag log records with the request id bound in the current context, once per process"""
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "tags_request_id", False):
        return

    def record_factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        request_id = request_id_var.get()
        if request_id is not None:
            record.request_id = request_id
        return record

    record_factory.tags_request_id = True
    logging.setLogRecordFactory(record_factory)


def configure_logging():
    """Configure logging based on the environment settings"""
    logging.config.dictConfig(build_logging_config())
    install_request_id_factory()

    logger = logging.getLogger(__name__)
    logger.debug("Logging configured successfully")

    return logger
