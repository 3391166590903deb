"""
Structured Logging with Structlog.

Every entry is one JSON object. Webhook handlers bind platform and
notification id through contextvars so log lines from the verifier,
normalizer and reconciler of one delivery can be joined. Store secrets
(purchase tokens, signed payloads, bearer tokens) are masked before
rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from app.config import settings

# Keys whose values grant access to a purchase or a user session
SENSITIVE_KEYS = frozenset(
    {
        "purchase_token",
        "signed_payload",
        "signed_transaction",
        "receipt_data",
        "signature",
        "authorization",
        "token",
    }
)

VISIBLE_SUFFIX = 6


def mask(value: str) -> str:
    """Keep only the tail of a secret, enough to correlate with store consoles."""
    if len(value) <= VISIBLE_SUFFIX:
        return "***"
    return f"***{value[-VISIBLE_SUFFIX:]}"


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask(value)
    return event_dict


def add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def setup_logging() -> None:
    """
    Route structlog through stdlib logging with a JSON (or console) renderer.

    Example entry:
    {
        "event": "subscription_transition_applied",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "app.services.reconciler",
        "service": "subscription-reconciler",
        "platform": "google_play",
        "notification_id": "136969346945",
        "purchase_token": "***abcdef",
        ...
    }
    """
    level = logging.getLevelName(settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """
    Bind values to every log entry emitted inside the block. None values
    are skipped; previously bound values are restored on exit.

    Usage:
        with log_context(platform="google_play", notification_id=message.message_id):
            logger.info("google_play_webhook_received")
    """
    bound = {key: value for key, value in values.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
