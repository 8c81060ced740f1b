"""
Logging configuration
"""

import logging
import sys
from typing import Any, Dict

import structlog
from structlog.stdlib import LoggerFactory

from pitchguard.core.config import settings


def setup_logging() -> None:
    """Setup structured logging"""

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.LOG_FORMAT == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper()),
    )

    # Set specific loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger"""
    return structlog.get_logger(name)


def log_security_event(
    event_type: str,
    severity: str,
    ip_address: str = None,
    details: Dict[str, Any] = None,
    **kwargs: Any,
) -> None:
    """Log security event"""
    logger = get_logger("security")

    log_data = {
        "event_type": event_type,
        "severity": severity,
        "ip_address": ip_address,
        "details": details or {},
        **kwargs,
    }

    if severity == "CRITICAL":
        logger.error("Security event", **log_data)
    else:
        logger.warning("Security event", **log_data)


def log_system_event(
    message: str,
    level: int = logging.ERROR,
    **kwargs: Any,
) -> None:
    """Log an operator-facing [SYSTEM] line (never a SecurityEvent)"""
    logger = get_logger("system")
    logger.log(level, f"[SYSTEM] {message}", **kwargs)
