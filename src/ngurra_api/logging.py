"""Structured logging.

structlog renders every entry, including records from stdlib loggers such as
uvicorn and SQLAlchemy, through one ProcessorFormatter on stdout. Entries
carry the level, logger name, an ISO 8601 UTC timestamp, the service name,
and the request-scoped fields RequestIDMiddleware binds via
``structlog.contextvars`` (request_id, path, method).

LOG_FORMAT=json (default) for log shipping, LOG_FORMAT=console for local work.
"""

import logging.config
import sys
from typing import Any, Literal

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.stdlib import BoundLogger
from structlog.typing import EventDict, Processor, WrappedLogger

# Noisy stdlib loggers and the level they are capped at
QUIET_LOGGERS = {
    "uvicorn.access": "WARNING",  # request_completed covers every request
    "sqlalchemy.engine.Engine": "WARNING",
}


class LoggingSettings(BaseSettings):
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", alias="LOG_FORMAT")
    service_name: str = Field(default="ngurra-api", alias="SERVICE_NAME")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def service_tagger(service: str) -> Processor:
    def _tag(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return _tag


def _pre_chain(settings: LoggingSettings) -> list[Processor]:
    """Processors shared by structlog loggers and foreign stdlib records."""
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_tagger(settings.service_name),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.log_format == "json":
        # ConsoleRenderer prints exc_info itself
        chain.append(structlog.processors.format_exc_info)
    return chain


def _renderer(settings: LoggingSettings) -> Processor:
    if settings.log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _stdlib_config(settings: LoggingSettings, pre_chain: list[Processor]) -> dict[str, Any]:
    loggers: dict[str, Any] = {
        "": {"handlers": ["stdout"], "level": settings.log_level.upper()},
    }
    loggers.update({name: {"level": level} for name, level in QUIET_LOGGERS.items()})
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": _renderer(settings),
                "foreign_pre_chain": pre_chain,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": sys.stdout,
            },
        },
        "loggers": loggers,
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Wire structlog into stdlib logging. Runs once, when this module is imported."""
    pre_chain = _pre_chain(settings)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.config.dictConfig(_stdlib_config(settings, pre_chain))


configure_logging(LoggingSettings())


def get_logger(name: str) -> BoundLogger:
    """Structured logger for ``name``, normally ``__name__``.

        logger = get_logger(__name__)
        logger.warning("payload_too_large", limit=10240)
        # {"event": "payload_too_large", "limit": 10240, "request_id": "req_...", ...}
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
