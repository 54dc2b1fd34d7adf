from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

_CONFIGURED_LEVEL: str | None = None


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def configure_logging(force: bool = False) -> None:
    """Set up JSON structlog output; repeated calls are no-ops unless LOG_LEVEL changed."""

    global _CONFIGURED_LEVEL
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if _CONFIGURED_LEVEL == level and not force:
        return
    numeric = getattr(logging, level, logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric)

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED_LEVEL = level


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name)


def bind_turn_context(**fields: Any) -> None:
    """Attach conversation/turn identifiers to every log line emitted by the current task."""

    bind_contextvars(**{key: value for key, value in fields.items() if value is not None})


def clear_turn_context() -> None:
    clear_contextvars()
