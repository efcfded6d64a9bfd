"""structlog setup: JSON lines on stdout in production, console output in dev."""

import logging
import sys

import structlog

SERVICE_NAME = "mefit-gateway"

# Libraries whose INFO output repeats what the gateway already logs
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _gateway_fields(logger, method_name: str, event_dict: dict) -> dict:
    """Expose the logger name as ``module`` and tag the entry with the service."""
    name = event_dict.pop("logger", None)
    if name is not None:
        event_dict["module"] = name
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _pre_chain(json_format: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _gateway_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        # The console renderer prints tracebacks itself
        chain.append(structlog.processors.format_exc_info)
    chain.append(structlog.processors.UnicodeDecoder())
    return chain


def setup_logging(log_level: str = "info", json_format: bool = True) -> None:
    """Send structlog and plain stdlib records through one stdout handler."""
    pre_chain = _pre_chain(json_format)
    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
