"""structlog setup for the chat service.

Every record, including uvicorn/httpx/SQLAlchemy records routed through the
stdlib bridge, carries the request's correlation id and the service name.
Credentials that end up in event fields (session tokens, provider keys,
cookies) are masked before rendering.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "agent-vendor-backend"

REDACTED = "[redacted]"
_SECRET_KEYS = frozenset({
    "authorization",
    "cookie",
    "session_token",
    "token",
    "api_key",
    "password",
})


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def add_service_name(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(logger, method, event_dict):
    """Mask credential-looking fields, one level into dict values."""
    for key, value in event_dict.items():
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in _SECRET_KEYS else v for k, v in value.items()
            }
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain. Must run before other app modules log.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, ConsoleRenderer when False (dev)
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        add_service_name,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        # Provider SDKs log every HTTP request at INFO
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "anthropic": {"level": "WARNING"},
            "openai": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
