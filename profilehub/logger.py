"""
Structured JSON Logging Module.

Every repository and service receives a ``StructuredLogger`` through its
constructor.  Records are emitted as one JSON object per line to stdout
and, when ``LOG_FILE`` is set, to a rotating log file.

A logger can be narrowed to one account or profile with :meth:`bind`;
the bound fields appear under ``context`` in every record it emits::

    log = get_logger("profilehub.migration").bind(account_id="a-1")
    log.info("Backfilled %d rows", 12)
    # {"ts": "...", "level": "INFO", "logger": "profilehub.migration",
    #  "msg": "Backfilled 12 rows", "context": {"account_id": "a-1"}}
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO

from profilehub.config import get_config

_CONTEXT_ATTR = "profilehub_context"

_RESERVED_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName", _CONTEXT_ATTR}


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``ts`` (UTC, ISO-8601), ``level``, ``logger``, ``msg``, then
    ``context`` (bound fields), ``extra`` (``extra=`` fields) and
    ``exception`` when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        context = getattr(record, _CONTEXT_ATTR, None)
        if context:
            entry["context"] = dict(context)

        extra = {
            key: str(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False, default=str)


def _attach_handlers(
    logger: logging.Logger,
    level: int,
    stream: Optional[TextIO],
    log_file: str,
    max_bytes: int,
    backup_count: int,
) -> None:
    formatter = JSONFormatter()

    console = logging.StreamHandler(stream or sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if not log_file:
        return
    try:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            filename=str(path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        logger.warning("Log file %s unavailable (%s); logging to console only.", log_file, exc)
        return
    rotating.setLevel(level)
    rotating.setFormatter(formatter)
    logger.addHandler(rotating)


class StructuredLogger:
    """Injectable logger wrapper.

    Parameters
    ----------
    name:
        ``logging`` logger name.  Handlers are attached once per name.
    log_file:
        Rotating file target; defaults to ``AppConfig.LOG_FILE``.  ``""``
        disables the file handler (the test suite does this).
    context:
        Fields attached to every record; see :meth:`bind`.
    """

    def __init__(
        self,
        name: str = "profilehub",
        level: int = logging.INFO,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._logger: logging.Logger = logging.getLogger(name)
        self._context: dict[str, str] = dict(context or {})

        if self._logger.handlers:
            return

        cfg = get_config()
        self._logger.setLevel(level)
        _attach_handlers(
            self._logger,
            level,
            stream,
            cfg.LOG_FILE if log_file is None else log_file,
            cfg.LOG_MAX_BYTES if max_bytes is None else max_bytes,
            cfg.LOG_BACKUP_COUNT if backup_count is None else backup_count,
        )

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def context(self) -> dict[str, str]:
        return dict(self._context)

    def bind(self, **fields: object) -> "StructuredLogger":
        """Return a logger sharing this one's handlers with extra context."""
        merged = {**self._context, **{k: str(v) for k, v in fields.items() if v is not None}}
        return StructuredLogger(name=self._logger.name, context=merged)

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._log(logging.CRITICAL, msg, args, kwargs)

    def _log(self, level: int, msg: str, args: tuple[object, ...], kwargs: dict[str, object]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        if self._context:
            extra = dict(kwargs.pop("extra", None) or {})
            extra[_CONTEXT_ATTR] = self._context
            kwargs["extra"] = extra
        # stacklevel=3 attributes the record to the caller, not this wrapper.
        kwargs.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, **kwargs)


def get_logger(name: str = "profilehub") -> StructuredLogger:
    """Return a ``StructuredLogger`` named *name* with configured defaults."""
    return StructuredLogger(name=name)
