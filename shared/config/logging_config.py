"""
Logging configuration for the business-context analysis library.

This module provides centralized logging setup with support for file rotation,
structured JSON logging, and a per-analysis trace id carried through
``contextvars`` so concurrent analyses keep their log lines apart.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .environment import get_environment


_trace_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('trace_id', default=None)


class LoggingConfig(BaseModel):
    """Logging configuration model."""
    model_config = ConfigDict(extra='forbid')

    level: str = Field(default="INFO", description="Root logging level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
        description="Log message format"
    )
    date_format: str = Field(default="%Y-%m-%d %H:%M:%S")

    # File logging
    enable_file_logging: bool = Field(default=False)
    log_file_path: str = Field(default="logs/business_context.log")
    max_file_size_mb: int = Field(default=100, ge=1, le=1000)
    backup_count: int = Field(default=5, ge=1, le=50)

    # Console logging
    enable_console_logging: bool = Field(default=True)
    console_level: str = Field(default="INFO")

    # Structured logging
    enable_json_logging: bool = Field(default=False)
    include_trace_id: bool = Field(default=True)

    # Component-specific logging levels
    component_levels: Dict[str, str] = Field(default_factory=dict)

    suppress_noisy_loggers: bool = Field(default=True)
    noisy_loggers: List[str] = Field(
        default_factory=lambda: [
            'httpx',
            'httpcore',
            'google_genai',
            'urllib3.connectionpool',
        ]
    )


class StructuredFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    _RESERVED = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
        'filename', 'module', 'lineno', 'funcName', 'created',
        'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'exc_info', 'exc_text',
        'stack_info', 'taskName', 'message'
    }

    def __init__(self, config: LoggingConfig):
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Everything passed through ``extra=`` ends up on the record
        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith('_'):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class TraceIDFilter(logging.Filter):
    """Adds the current trace id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        trace_id = _trace_id_var.get()
        if trace_id:
            record.trace_id = trace_id
        return True


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Setup centralized logging configuration.

    Args:
        config: Optional logging configuration. If not provided, will use
                environment-appropriate defaults.

    Returns:
        Root logger instance
    """
    if config is None:
        config = get_default_logging_config()

    root_logger = logging.getLogger()

    # Clear any existing handlers to avoid duplicates
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, config.level.upper()))

    if config.enable_file_logging:
        _setup_file_logging(root_logger, config)

    if config.enable_console_logging:
        _setup_console_logging(root_logger, config)

    for logger_name, level in config.component_levels.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))

    if config.suppress_noisy_loggers:
        for logger_name in config.noisy_loggers:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    if config.include_trace_id:
        for handler in root_logger.handlers:
            handler.addFilter(TraceIDFilter())

    root_logger.info(f"Logging configured for environment: {get_environment().value}")
    return root_logger


def _setup_file_logging(logger: logging.Logger, config: LoggingConfig) -> None:
    """Setup file logging with rotation."""
    log_path = Path(config.log_file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=config.log_file_path,
        maxBytes=config.max_file_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
        encoding='utf-8'
    )

    if config.enable_json_logging:
        formatter = StructuredFormatter(config)
    else:
        formatter = logging.Formatter(fmt=config.format, datefmt=config.date_format)

    file_handler.setFormatter(formatter)
    file_handler.setLevel(getattr(logging, config.level.upper()))
    logger.addHandler(file_handler)


def _setup_console_logging(logger: logging.Logger, config: LoggingConfig) -> None:
    """Setup console logging."""
    console_handler = logging.StreamHandler(sys.stdout)

    if config.enable_json_logging:
        formatter = StructuredFormatter(config)
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt=config.date_format
        )

    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, config.console_level.upper()))
    logger.addHandler(console_handler)


def get_default_logging_config() -> LoggingConfig:
    """Get default logging configuration based on environment."""
    env = get_environment()

    config_dict: Dict[str, Any] = {
        'level': env.log_level,
        'enable_console_logging': True,
        'suppress_noisy_loggers': True
    }

    if env.is_development:
        config_dict.update({
            'console_level': 'DEBUG',
            'enable_json_logging': False,
        })
    elif env.is_testing:
        config_dict.update({
            'console_level': 'WARNING',
            'enable_file_logging': False,
            'include_trace_id': False
        })
    elif env.is_production:
        config_dict.update({
            'console_level': 'WARNING',
            'enable_file_logging': True,
            'enable_json_logging': True,
            'max_file_size_mb': 500,
            'backup_count': 10
        })

    return LoggingConfig(**config_dict)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Library code never installs handlers itself; call ``setup_logging``
    from the application entry point.
    """
    return logging.getLogger(name)


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges call-site ``extra`` with the component context."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def configure_logger_for_component(component_name: str) -> logging.LoggerAdapter:
    """
    Configure a logger for a pipeline component.

    Args:
        component_name: Dotted component name (e.g. 'analysis.intent_ensemble')

    Returns:
        Logger adapter tagging every record with the component name
    """
    logger = get_logger(f"business_context.{component_name}")
    return ComponentLoggerAdapter(logger, {"component": component_name})


def set_trace_id(trace_id: Optional[str]) -> contextvars.Token:
    """Set trace ID for the current execution context."""
    return _trace_id_var.set(trace_id)


def reset_trace_id(token: contextvars.Token) -> None:
    _trace_id_var.reset(token)


def get_trace_id() -> Optional[str]:
    return _trace_id_var.get()
