"""
Logging Configuration
=====================

Structured logging for the gateway host and its sandbox context processes.
Uses structlog on top of standard library logging; production writes JSON
lines through python-json-logger.

Logs always go to stderr so ``ssr-gateway render`` can write pages to
stdout. Records carry the process name, which tells host records apart from
``ssr-sandbox-N`` context records. Sandbox processes are spawned, so they
configure logging again when they import this module.
"""

import logging
import logging.config
import sys
from typing import Dict, Any, List, TYPE_CHECKING
import structlog
from structlog.types import Processor

from .settings import get_settings

if TYPE_CHECKING:
    from .settings import Settings

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(processName)s %(name)s: %(message)s"
JSON_FORMAT = "%(asctime)s %(processName)s %(name)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def setup_logging() -> None:
    """Configure structlog and the standard library handlers from settings."""
    settings = get_settings()

    processors: List[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=settings.environment != "testing"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(get_logging_config(settings))


def get_logging_config(settings: "Settings") -> Dict[str, Any]:
    """
    Build the ``dictConfig`` mapping for the gateway.

    Args:
        settings: Application settings; ``environment``, ``log_level`` and
            ``log_file`` are used

    Returns:
        Logging configuration dictionary
    """
    formatter = "json" if settings.environment == "production" else "text"
    handlers: Dict[str, Any] = {
        "stderr": {
            "class": "logging.StreamHandler",
            "level": settings.log_level,
            "formatter": formatter,
            "stream": sys.stderr,
        },
    }

    if settings.log_file is not None:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": settings.log_level,
            "formatter": formatter,
            "filename": str(settings.log_file),
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {"format": TEXT_FORMAT, "datefmt": DATE_FORMAT},
            "json": {"()": "pythonjsonlogger.json.JsonFormatter", "format": JSON_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "": {
                "level": settings.log_level,
                "handlers": list(handlers),
                "propagate": False,
            },
            # `ssr-gateway serve` runs uvicorn with log_config=None
            "uvicorn": {"level": "INFO", "handlers": ["stderr"], "propagate": False},
        },
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


setup_logging()
