"""Structured logging configuration with JSON formatting and correlation IDs."""

import contextvars
import logging
import re
import sys
import traceback
import uuid
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

# Hey future me, the correlation id ties together every log line of ONE logical operation
# (a library sync, a playlist reorder with its retries). contextvars keeps it per asyncio task,
# so two concurrent syncs never mix their ids. default="" covers startup and ad-hoc scripts.
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

# user:password@ inside any URL-looking string
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@\s]*):[^@/\s]+@", re.I)

_PACKAGE_MARKER = "spotify_assistant"

_NOISY_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "aiosqlite",
    "asyncpg",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "pymongo",
    "redis",
)


def get_correlation_id() -> str:
    """Correlation id of the current task, "" outside any operation."""
    return correlation_id_var.get()


# Yo, pass None to mint a fresh id. Call it once at the start of an operation, not per step,
# or every line gets a different id and grepping becomes useless.
def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id (new uuid4 when None) to the current task and return it."""
    bound = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(bound)
    return bound


def redact_credentials(text: str) -> str:
    """Mask passwords embedded in connection URLs."""
    return _URL_CREDENTIALS.sub(r"\g<scheme>\g<user>:***@", text)


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation_id to record if available."""
        record.correlation_id = get_correlation_id()
        return True


# Listen, driver errors love to echo the DSN back ("could not connect to
# postgresql://app:hunter2@db/..."). This filter scrubs the final message of every record
# before any formatter sees it. Must never return False - that would drop the record.
class CredentialRedactionFilter(logging.Filter):
    """Strip URL credentials from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Replace the record message with its redacted rendering."""
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class CompactExceptionFormatter(logging.Formatter):
    """Formatter that renders exception chains compactly, root cause first.

    Only frames from this package are shown; library and stdlib frames are
    skipped. Example output:

    ERROR │ spotify_assistant.application.services.playlist_service:88 │ Reorder failed
    ╰─► ConnectionRefusedError: [Errno 111] Connection refused
    ╰─► BackendUnavailableError: [postgres] connection failed
        File "base.py", line 97, in guard
          raise BackendUnavailableError(self.backend_name, str(exc)) from exc
    """

    def formatException(self, ei: Any) -> str:
        """Format exception chain in a compact, readable way."""
        _, exc_value, _ = ei
        if exc_value is None:
            return ""

        chain: list[BaseException] = []
        current: BaseException | None = exc_value
        while current is not None and current not in chain:
            chain.append(current)
            current = current.__cause__ or current.__context__
        chain.reverse()

        lines: list[str] = []
        for exc in chain:
            lines.append(
                f"╰─► {exc.__class__.__name__}: {redact_credentials(str(exc))}"
            )
            if exc.__traceback__ is None:
                continue
            for frame in traceback.extract_tb(exc.__traceback__):
                if "/site-packages/" in frame.filename:
                    continue
                if _PACKAGE_MARKER not in frame.filename:
                    continue
                lines.append(
                    f'    File "{Path(frame.filename).name}", line {frame.lineno}, in {frame.name}'
                )
                if frame.line:
                    lines.append(f"      {frame.line.strip()}")

        return "\n".join(lines)


class StorageJsonFormatter(jsonlogger.JsonFormatter):  # type: ignore[name-defined,misc]
    """One JSON object per line: timestamp, level, logger, message, app and extras."""

    def __init__(self, app_name: str = "spotify-assistant", **kwargs: Any) -> None:
        kwargs.setdefault("fmt", "%(asctime)s %(levelname)s %(name)s %(message)s")
        kwargs.setdefault(
            "rename_fields", {"asctime": "timestamp", "levelname": "level", "name": "logger"}
        )
        kwargs.setdefault("static_fields", {"app": app_name})
        super().__init__(**kwargs)

    def formatException(self, ei: Any) -> str:
        return redact_credentials(super().formatException(ei))

    def process_log_record(self, log_record: dict[str, Any]) -> dict[str, Any]:
        # Records logged outside any operation carry an empty id
        if not log_record.get("correlation_id"):
            log_record.pop("correlation_id", None)
        return super().process_log_record(log_record)


# Hey future me - call this ONCE at startup (storage_lifespan does it when asked). It replaces
# the root handlers, so calling it again in tests is safe. Driver loggers are pinned to WARNING;
# SQL echo goes through settings.*.echo instead of this level.
def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    app_name: str = "spotify-assistant",
) -> None:
    """Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format for logs (recommended for production)
        app_name: Application name to include in logs
    """
    level = logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for stale in list(root_logger.handlers):
        root_logger.removeHandler(stale)
    root_logger.setLevel(level)
    root_logger.addHandler(_build_handler(level, json_format, app_name))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured (level=%s, json=%s)", logging.getLevelName(level), json_format
    )


def _build_handler(level: int, json_format: bool, app_name: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    # Order matters: redaction needs the final message, correlation adds a field
    handler.addFilter(CredentialRedactionFilter())
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StorageJsonFormatter(app_name=app_name))
    else:
        handler.setFormatter(
            CompactExceptionFormatter(
                fmt="%(asctime)s │ %(levelname)-7s │ %(name)s:%(lineno)d │ %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    return handler
