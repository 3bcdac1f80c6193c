from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

_MASKED_KEYS = ("password", "secret", "token", "authorization", "email", "jti", "cookie")

_TRUTHY = {"1", "true", "yes", "on"}


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Attach a correlation id to every log line emitted in this context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def current_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-bearing fields.

    Tokens, passwords and email addresses keep their first and last two
    characters so an operator can still line up related events.
    """
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _MASKED_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline; JSON lines unless ``json_output`` is off."""
    renderer = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer(colors=True)]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_credentials,
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# LOG_DEV_MODE forces console output regardless of LOG_JSON
configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
