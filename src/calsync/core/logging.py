"""Log formatting for calsync.

Every module logs through ``logging.getLogger(__name__)``; ``configure_logging``
routes those records through a structlog ``ProcessorFormatter`` so each line
carries the connected account, the provider being called and the current
OpenTelemetry trace ids. Credential values that slip into a message are masked
before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from opentelemetry import trace

from calsync.config import LoggingConfig
from calsync.errors import redact_credential_values

_account_context: ContextVar[str | None] = ContextVar("calsync_account", default=None)
_provider_context: ContextVar[str | None] = ContextVar("calsync_provider", default=None)

# Client libraries that log every request at INFO.
_NOISE_LOGGERS = ("httpx", "httpcore")

_FORMATS = ("text", "json")


def set_account_context(account_address: str | None) -> None:
    _account_context.set(account_address)


def get_account_context() -> str | None:
    return _account_context.get()


@contextmanager
def calendar_context(account_address: str | None, provider: str | None = None) -> Iterator[None]:
    """Tag log lines emitted inside the block with an account and provider."""
    account_token = _account_context.set(account_address)
    provider_token = _provider_context.set(provider)
    try:
        yield
    finally:
        _provider_context.reset(provider_token)
        _account_context.reset(account_token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_account_context(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["account"] = _account_context.get()
    provider = _provider_context.get()
    if provider is not None:
        event_dict.setdefault("provider", provider)
    return event_dict


def add_otel_context(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    span_context = trace.get_current_span().get_span_context()
    trace_id = span_context.trace_id if span_context else 0
    span_id = span_context.span_id if span_context and trace_id else 0
    event_dict["trace_id"] = f"{trace_id:032x}"
    event_dict["span_id"] = f"{span_id:016x}"
    return event_dict


def redact_event(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Mask token and password values in the rendered message."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credential_values(event)
    return event_dict


def _shared_processors(*, json_output: bool) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso" if json_output else "%H:%M:%S", utc=json_output),
        add_account_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_event,
    ]


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install one stderr handler on the root logger.

    ``fmt`` is ``"text"`` (console renderer) or ``"json"`` (one JSON object
    per line). Calling this again replaces the previous handler.
    """
    if fmt not in _FORMATS:
        raise ValueError(f"Unknown log format {fmt!r}; expected one of {_FORMATS}")
    json_output = fmt == "json"
    shared = _shared_processors(json_output=json_output)
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging_from(config: LoggingConfig) -> None:
    configure_logging(level=config.level, fmt=config.format)
