"""
Structured logging configuration using structlog.

Provides JSON-formatted structured logs for production use.
Known secret fields are masked before rendering.
"""
import logging
import sys
import structlog
from typing import Any

# Event keys whose values must never reach the log output
SENSITIVE_KEYS = frozenset({
    "password",
    "passkey",
    "access_token",
    "authorization",
    "consumer_secret",
    "signature",
})


def mask_phone(phone: Any) -> str:
    """Keep only the last 3 digits of a phone number (2547******89 -> *********789)."""
    digits = str(phone or "")
    if len(digits) <= 3:
        return digits
    return "*" * (len(digits) - 3) + digits[-3:]


def mask_sensitive_fields(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor: hide secrets and shorten phone numbers."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS:
            event_dict[key] = "[HIDDEN]"
        elif lowered in ("phone", "phone_number") and event_dict[key]:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure structlog for structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON format (for production).
                     If False, output human-readable format (for development).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        mask_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors = shared_processors + [
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
