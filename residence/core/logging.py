"""
Structured logging configuration for the Residence Manager.

Every event carries the correlation id of the CLI run and, once a session is
bound, the role and user it was issued for.
"""

import logging
import sys
import uuid
from typing import Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

from residence.core.models import Session

# Global correlation ID for request tracing
_correlation_id: Optional[str] = None


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set a correlation ID for the current execution context."""
    global _correlation_id
    _correlation_id = correlation_id or str(uuid.uuid4())[:8]
    return _correlation_id


def add_correlation_id(logger, method_name, event_dict):
    """Add correlation ID to log entries."""
    if _correlation_id:
        event_dict["correlation_id"] = _correlation_id
    return event_dict


def bind_session(session: Session) -> None:
    """Tag every following log event with the signed-in role and user."""
    structlog.contextvars.bind_contextvars(
        role=session.role.value,
        user=session.username or session.user_id,
    )
    if session.resident_id is not None:
        structlog.contextvars.bind_contextvars(resident_id=session.resident_id)


def setup_logging(debug: bool = False, rich_output: bool = True) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        debug: Log API requests and page changes too
        rich_output: Colored console output on stderr; JSON lines on stdout otherwise
    """
    level = logging.DEBUG if debug else logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
    ]

    if rich_output:
        processors += [
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(
                colors=True, exception_formatter=structlog.dev.rich_traceback
            ),
        ]
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler])
        stream = sys.stderr
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
        logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)
        stream = sys.stdout

    # httpx logs every request at INFO; the API client logs its own
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
