"""Logging configuration for the registration service.

Configures log filters and handlers to:
- Label backing-store failures so they stand out from client rejections
- Keep store errors at WARNING (they are already mapped to client responses)
- Mask e-mail addresses that would otherwise land in log output
- Silence SQLAlchemy engine and pool chatter
"""
from __future__ import annotations

import logging as std_logging
import re
import sys
import warnings

from jengahacks.shared.log_colors import LogColors

_EMAIL_IN_TEXT = re.compile(r"([A-Za-z0-9._%+-]{1,3})[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


class StoreErrorFilter(std_logging.Filter):
    """Filter that labels and downgrades backing-store connectivity errors.

    A store outage during a block or rate check is reported to the client as
    an internal error (or skipped under a fail-open policy), so the log line
    is informational for operators rather than an unhandled failure.
    """

    STORE_ERROR_PATTERNS = (
        "StoreError",
        "OperationalError",
        "InterfaceError",
        "ConnectionRefusedError",
        "ConnectionDoesNotExistError",
        "CannotConnectNowError",
        "TimeoutError",
    )

    def filter(self, record: std_logging.LogRecord) -> bool:
        if record.levelno < std_logging.ERROR:
            return True

        msg = str(getattr(record, "msg", ""))
        if any(pattern in msg for pattern in self.STORE_ERROR_PATTERNS):
            if isinstance(record.msg, str) and LogColors.STORE_LABEL not in record.msg:
                record.msg = f"{LogColors.STORE_LABEL} {record.msg}"
            record.levelno = std_logging.WARNING
            record.levelname = "WARNING"

        return True


class IdentifierMaskingFilter(std_logging.Filter):
    """Mask e-mail addresses in string log messages (``abc***@domain``)."""

    def filter(self, record: std_logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _EMAIL_IN_TEXT.sub(r"\1***@\2", record.msg)
        elif isinstance(record.msg, dict):
            record.msg = _mask_values(record.msg)
        return True


def _mask_values(data):
    if isinstance(data, dict):
        return {k: _mask_values(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return type(data)(_mask_values(v) for v in data)
    if isinstance(data, str):
        return _EMAIL_IN_TEXT.sub(r"\1***@\2", data)
    return data


def configure_logging(level: str = "INFO", *, mask_emails: bool = True) -> None:
    """Configure logging for the service and admin CLI.

    Should be called once, early, by each entrypoint.
    """
    root = std_logging.getLogger()
    root.setLevel(level.upper())

    handler = next((h for h in root.handlers if getattr(h, "_jengahacks", False)), None)
    if handler is None:
        handler = std_logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            std_logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handler._jengahacks = True  # type: ignore[attr-defined]
        handler.addFilter(StoreErrorFilter())
        if mask_emails:
            handler.addFilter(IdentifierMaskingFilter())
        root.addHandler(handler)

    # Suppress verbose SQLAlchemy logging
    for sqla_logger_name in [
        "sqlalchemy",
        "sqlalchemy.engine",
        "sqlalchemy.pool",
        "sqlalchemy.engine.Engine",
    ]:
        sqla_logger = std_logging.getLogger(sqla_logger_name)
        sqla_logger.setLevel(std_logging.WARNING)
        sqla_logger.propagate = True

    # Known harmless: queries cancelled by asyncio.wait_for on request timeout
    warnings.filterwarnings(
        "ignore",
        message=r"coroutine 'Connection\._cancel' was never awaited",
        category=RuntimeWarning,
    )
