"""Logging configuration."""
import logging
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog

from gridengine.core.config import LoggingConfig, logging_config


def setup_logging(config: Optional[LoggingConfig] = None, level: Optional[str] = None):
    """Configure structured logging.

    ``level`` overrides the configured level (the CLI's ``--log-level``).
    """
    config = config or logging_config
    log_level = getattr(logging, (level or config.level).upper())

    # Create logs directory
    log_path = Path(config.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if config.json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Add rotating file handler
    file_handler = RotatingFileHandler(
        config.file, maxBytes=config.max_bytes, backupCount=config.backup_count
    )
    file_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)

    # ccxt logs every request at DEBUG
    logging.getLogger("ccxt").setLevel(max(log_level, logging.INFO))


@contextmanager
def log_context(**values):
    """Bind ``values`` to every log line emitted inside the block
    (per asyncio task, via contextvars)."""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
