"""
Structured Logging Configuration with structlog

Outputs JSON logs in production and colored console logs in development.
Every log includes: version, timestamp, and the active run_id / item_id.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variables for run-scoped logging
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
item_id_var: ContextVar[Optional[str]] = ContextVar("item_id", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    run_id = run_id_var.get()
    if run_id:
        event_dict["run_id"] = run_id

    item_id = item_id_var.get()
    if item_id:
        event_dict["item_id"] = item_id

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(run_id="abc123", item_id="panel-1"):
            logger.info("panel_generation_started")
    """

    def __init__(self, run_id: Optional[str] = None, item_id: Optional[str] = None):
        self.run_id = run_id
        self.item_id = item_id
        self._run_id_token = None
        self._item_id_token = None

    def __enter__(self):
        if self.run_id:
            self._run_id_token = run_id_var.set(self.run_id)
        if self.item_id:
            self._item_id_token = item_id_var.set(self.item_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._item_id_token:
            item_id_var.reset(self._item_id_token)
        if self._run_id_token:
            run_id_var.reset(self._run_id_token)
        return False
