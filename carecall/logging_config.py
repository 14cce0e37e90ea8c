"""
Structured logging for the call lifecycle.

Uses structlog to produce machine-parseable JSON logs in production
and human-readable colored output in development. Entries emitted while
a request or a scheduled call is being handled carry ``trace_id`` and
``call_id`` so webhook deliveries and timer firings for the same call can
be followed across components.

Phone numbers passed as ``phone`` / ``to`` / ``from_number`` keys are
masked down to their last four digits before rendering.

Usage:
    from carecall.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("call_scheduled", call_id="call_42_1700000000000", delay_minutes=120)
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from carecall.config import get_settings

# Set at the start of an API request / call execution so every entry in
# that context includes the IDs.
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
call_id_var: ContextVar[str] = ContextVar("call_id", default="")

_PHONE_KEYS = ("phone", "to", "from_number", "phone_number")


def _inject_context_vars(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Inject trace_id and call_id from context vars into every log entry."""
    trace_id = trace_id_var.get("")
    if trace_id:
        event_dict["trace_id"] = trace_id

    call_id = call_id_var.get("")
    if call_id and "call_id" not in event_dict:
        event_dict["call_id"] = call_id

    return event_dict


def mask_phone(value: Any) -> Any:
    """Keep only the last four digits of a phone-like string."""
    if not isinstance(value, str):
        return value
    digits = [c for c in value if c.isdigit()]
    if len(digits) <= 4:
        return value
    return "*" * (len(digits) - 4) + "".join(digits[-4:])


def _mask_phone_numbers(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key in _PHONE_KEYS:
        if key in event_dict:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def generate_trace_id() -> str:
    """Generate a short, unique trace ID for request/call correlation."""
    return uuid.uuid4().hex[:12]


def setup_logging() -> None:
    """
    Configure structlog and stdlib logging.

    - **Production**: JSON output to stdout (for log aggregators).
    - **Development**: Colored, human-readable console output.
    """
    settings = get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        _mask_phone_numbers,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib loggers (uvicorn, httpx, supabase) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for noisy in ("httpx", "httpcore", "hpack", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Return a named, structured logger.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A bound structlog logger with all shared processors attached.
    """
    return structlog.get_logger(name)
