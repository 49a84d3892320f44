"""Structured JSON logger writing one object per line."""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, TextIO


class Level(IntEnum):
    DEBUG = -4
    INFO = 0
    WARN = 4
    ERROR = 8


_WRITE_LOCK = threading.Lock()


class Logger:
    """A leveled logger that carries fixed fields into every record."""

    def __init__(
        self,
        level: Level = Level.INFO,
        stream: TextIO | None = None,
        fields: dict[str, Any] | None = None,
    ) -> None:
        self.level = Level(level)
        self._stream = stream
        self.fields: dict[str, Any] = dict(fields or {})

    def _with(self, **extra: Any) -> Logger:
        return Logger(self.level, self._stream, {**self.fields, **extra})

    def with_component(self, component: str) -> Logger:
        """Return a new logger that tags records with a component."""
        return self._with(component=component)

    def with_request_id(self, request_id: str) -> Logger:
        """Return a new logger that tags records with a request id."""
        return self._with(request_id=request_id)

    def enabled(self, level: Level) -> bool:
        return level >= self.level

    def _log(self, level: Level, msg: str, attrs: dict[str, Any]) -> None:
        if not self.enabled(level):
            return
        record = {
            "time": datetime.now(timezone.utc).astimezone().isoformat(),
            "level": level.name,
            "msg": msg,
            **self.fields,
            **attrs,
        }
        line = json.dumps(record, default=str, ensure_ascii=False)
        stream = self._stream if self._stream is not None else sys.stdout
        with _WRITE_LOCK:
            stream.write(line + "\n")
            stream.flush()

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(Level.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(Level.INFO, msg, kwargs)

    def warn(self, msg: str, **kwargs: Any) -> None:
        self._log(Level.WARN, msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(Level.ERROR, msg, kwargs)