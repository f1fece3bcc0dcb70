import inspect
import json
import logging
import sys
from typing import Any

import httpx
from fastapi import status
from loguru import logger

from src.config.settings import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level> <dim>{extra}</dim>"
)

# Standard-library loggers routed through Loguru
INTERCEPTED_LOGGERS = ["uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "sqlalchemy.engine", "authlib"]

# Libraries whose INFO chatter is dropped
NOISY_LOGGERS = ["httpx", "httpcore", "aiosqlite"]


def _sanitize_value(val: Any) -> Any:
    """Recursively replaces callables and default object reprs with stable names."""
    if isinstance(val, dict):
        return {k: _sanitize_value(v) for k, v in val.items()}
    if isinstance(val, list | tuple | set | frozenset):
        return type(val)(_sanitize_value(v) for v in val)

    if callable(val) or inspect.iscoroutinefunction(val):
        module = getattr(val, "__module__", "")
        qualname = getattr(val, "__qualname__", type(val).__name__)
        return f"{module}.{qualname}()" if module else f"{qualname}()"

    # e.g. <sqlalchemy.engine.Connection object at 0x...>
    val_repr = repr(val)
    if "<" in val_repr and " at 0x" in val_repr:
        return f"[{val.__class__.__module__}.{val.__class__.__name__}]"

    return val


def log_patcher(record: dict[str, Any]) -> None:
    """Sanitizes bound context before the record reaches any sink."""
    if "extra" in record:
        record["extra"] = _sanitize_value(record["extra"])


class InterceptHandler(logging.Handler):
    """Routes standard logging records to Loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class SeqSink:
    """Synchronous sink posting serialized Loguru records to Seq's raw events API."""

    def __init__(self, server_url: str, api_key: str | None = None, application: str | None = None):
        self.server_url = f"{server_url.rstrip('/')}/api/events/raw"
        self.api_key = api_key
        self.application = application or settings.APP_NAME
        self.client = httpx.Client(timeout=4.0)

    def build_event(self, record: dict[str, Any]) -> dict[str, Any]:
        event = {
            "Timestamp": record["time"]["repr"],
            "Level": record["level"]["name"],
            "MessageTemplate": record["message"],
            "Properties": {
                **record["extra"],
                "Application": self.application,
                "Function": record["function"],
                "Module": record["module"],
                "Line": record["line"],
            },
        }
        if record.get("exception"):
            event["Exception"] = str(record["exception"])
        return event

    def write(self, message: str) -> None:
        """Writes one serialized log record to Seq. Failures go to stderr, never raise."""
        try:
            record = json.loads(message)["record"]
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-Seq-ApiKey"] = self.api_key

            resp = self.client.post(self.server_url, json={"Events": [self.build_event(record)]}, headers=headers)
            if resp.status_code >= status.HTTP_400_BAD_REQUEST:
                sys.stderr.write(f"Seq API Error {resp.status_code}: {resp.text}\n")
        except (httpx.HTTPError, ValueError, KeyError) as e:
            sys.stderr.write(f"Failed to send log to Seq: {e}\n")


def configure_logging(level: str | None = None) -> None:
    """Configures Loguru with a console sink, an optional Seq sink and stdlib interception.

    Args:
        level: Minimum level for all sinks. Defaults to ``settings.LOG_LEVEL``.
    """
    level = (level or settings.LOG_LEVEL).upper()

    logger.remove()
    logger.configure(patcher=log_patcher, extra={"app": settings.APP_NAME})

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if settings.SEQ_URL:
        logger.add(
            SeqSink(settings.SEQ_URL, api_key=settings.SEQ_API_KEY),
            level=level,
            format="{message}",
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name in INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    for name in NOISY_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.setLevel(logging.WARNING)
        std_logger.propagate = False
        std_logger.handlers = []

    logger.info("Logging configured at {} (Seq: {})", level, settings.SEQ_URL or "disabled")
