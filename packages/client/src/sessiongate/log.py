"""structlog setup.

Learn: library modules only ever do `logger = structlog.get_logger()` and
log `component.event` names with keyword context. Applications (the CLI,
or whatever embeds the client) call configure_logging() once.

Contextvars are merged into every event, so the gateway's request_id shows
up on every line logged while a request is in flight. Credential-looking
keys are masked before rendering.
"""

import logging
import sys

import structlog

_SENSITIVE_KEYS = {
    "access",
    "access_credential",
    "access_token",
    "authorization",
    "password",
    "refresh",
    "refresh_credential",
    "refresh_token",
    "refreshtoken",
    "token",
}


def redact_credentials(_logger, _method, event_dict: dict) -> dict:
    for key in list(event_dict):
        if key.lower() in _SENSITIVE_KEYS and event_dict[key] is not None:
            event_dict[key] = "***"
    return event_dict


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Route structlog through stdlib logging with a console or JSON renderer."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared,
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            *([structlog.processors.format_exc_info] if json else []),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
