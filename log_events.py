"""Log and event routing for the data client.

Four levels exist: ``info``, ``query``, ``warn`` and ``error``. Each one is
either printed to stdout through a ``logging`` handler or delivered to
callbacks registered with :meth:`EventEmitter.on`. Levels that are not
configured are dropped.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from sqlalchemy import event
from sqlalchemy.engine import Engine

from errors import QueryValidationError

LOG_LEVELS = ("info", "query", "warn", "error")
EMIT_TARGETS = ("stdout", "event")

PY_LEVELS = {
    "info": logging.INFO,
    "query": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

LogDefinition = Union[str, dict]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogEvent:
    message: str
    target: str = "assetdb"
    timestamp: datetime = field(default_factory=_now)


@dataclass
class QueryEvent:
    query: str
    params: Any
    duration_ms: float
    target: str = "assetdb.query"
    timestamp: datetime = field(default_factory=_now)


def parse_log_definitions(definitions: Optional[Iterable[LogDefinition]]) -> dict[str, str]:
    routes: dict[str, str] = {}
    for d in definitions or ():
        if isinstance(d, str):
            level, emit = d, "stdout"
        elif isinstance(d, dict):
            level, emit = d.get("level"), d.get("emit", "stdout")
        else:
            raise QueryValidationError(f"invalid log definition: {d!r}")
        if level not in LOG_LEVELS:
            raise QueryValidationError(f"unknown log level {level!r}, expected one of {LOG_LEVELS}")
        if emit not in EMIT_TARGETS:
            raise QueryValidationError(f"unknown log target {emit!r}, expected one of {EMIT_TARGETS}")
        routes[level] = emit
    return routes


def stdout_logger(level: str) -> logging.Logger:
    logger = logging.getLogger(f"assetdb.{level}")
    if not any(getattr(h, "_assetdb_stdout", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._assetdb_stdout = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


class EventEmitter:
    def __init__(self, log: Optional[Iterable[LogDefinition]] = None):
        self.routes = parse_log_definitions(log)
        self._callbacks: dict[str, list[Callable[[Any], None]]] = {level: [] for level in LOG_LEVELS}
        self._engines: list[Engine] = []

    def enabled(self, level: str) -> bool:
        return level in self.routes

    def on(self, level: str, callback: Callable[[Any], None]) -> None:
        if level not in LOG_LEVELS:
            raise QueryValidationError(f"unknown log level {level!r}")
        if self.routes.get(level) != "event":
            raise QueryValidationError(f"log level {level!r} is not configured to emit events")
        self._callbacks[level].append(callback)

    def emit(self, level: str, payload: Any) -> None:
        route = self.routes.get(level)
        if route is None:
            return
        if route == "event":
            for callback in list(self._callbacks[level]):
                callback(payload)
            return

        logger = stdout_logger(level)
        if isinstance(payload, QueryEvent):
            logger.log(
                PY_LEVELS[level],
                "query=%s params=%s duration_ms=%.2f",
                payload.query,
                payload.params,
                payload.duration_ms,
            )
        else:
            logger.log(PY_LEVELS[level], "%s", payload.message)

    def info(self, message: str) -> None:
        self.emit("info", LogEvent(message=message))

    def warn(self, message: str) -> None:
        self.emit("warn", LogEvent(message=message))

    def error(self, message: str, target: str = "assetdb") -> None:
        self.emit("error", LogEvent(message=message, target=target))

    # ---------- query timing ----------
    def attach(self, engine: Engine) -> None:
        if not self.enabled("query") or engine in self._engines:
            return
        event.listen(engine, "before_cursor_execute", self._before_cursor_execute)
        event.listen(engine, "after_cursor_execute", self._after_cursor_execute)
        event.listen(engine, "handle_error", self._handle_error)
        self._engines.append(engine)

    def detach(self) -> None:
        for engine in self._engines:
            event.remove(engine, "before_cursor_execute", self._before_cursor_execute)
            event.remove(engine, "after_cursor_execute", self._after_cursor_execute)
            event.remove(engine, "handle_error", self._handle_error)
        self._engines.clear()

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("assetdb_query_start", []).append(time.perf_counter())

    def _after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        started = conn.info["assetdb_query_start"].pop()
        elapsed_ms = (time.perf_counter() - started) * 1000
        try:
            self.emit("query", QueryEvent(query=statement, params=parameters, duration_ms=elapsed_ms))
        except Exception:
            # the statement already succeeded
            logging.getLogger("assetdb").exception("query event callback failed")

    def _handle_error(self, ctx) -> None:
        # a failed statement never reaches after_cursor_execute
        if ctx.connection is None or ctx.cursor is None:
            return
        starts = ctx.connection.info.get("assetdb_query_start")
        if starts:
            starts.pop()
