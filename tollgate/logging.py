import logging
import re
import sys

import structlog

# Key shapes of the supported providers; matches are masked before anything is rendered
SECRET_PATTERN = re.compile(r"(sk-ant-[\w-]{8,}|sk-[\w-]{16,}|AIza[\w-]{20,})")

QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "google_genai", "aiosqlite")


def mask_secrets(text: str) -> str:
    return SECRET_PATTERN.sub(lambda m: f"{m.group(0)[:7]}***", text)


def redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = mask_secrets(value)
    return event_dict


renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

shared_processors = [
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
    redact_secrets,
]


def configure_logging(level: str = "INFO"):
    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelNamesMapping()[level.upper()]),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "tollgate")


def _handler(formatter: str) -> dict:
    return {"formatter": formatter, "class": "logging.StreamHandler", "stream": "ext://sys.stderr"}


# Routes uvicorn's stdlib logging through the same processors
UVICORN_LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        name: {
            "()": structlog.stdlib.ProcessorFormatter,
            "processor": renderer,
            "foreign_pre_chain": shared_processors,
        }
        for name in ("default", "access")
    },
    "handlers": {"default": _handler("default"), "access": _handler("access")},
    "loggers": {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"level": "INFO"},
        "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
    },
}
