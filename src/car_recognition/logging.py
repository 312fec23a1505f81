from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "car_recognition"
_EVT_PREFIX: Final[str] = "EVT "

# Structured fields accepted by log_event, keyed by the type each must carry
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"latency_ms", "size_bytes", "original_bytes", "attempt", "status", "cars", "width", "height"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"quality", "confidence", "size_mb", "ratio"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"media_type", "code", "make", "model"})
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"within_budget", "resized"})

_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LogStyle = Literal["json", "pretty", "auto"]


class _JsonFormatter(logging.Formatter):
    """One JSON object per record; `EVT` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        event = fields.pop("event", None)
        if event is not None:
            payload["message"] = str(event)
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line output for terminals."""

    _RESET = "\x1b[0m"
    _DIM = "\x1b[2m"
    _BOLD = "\x1b[1m"
    _KEY = "\x1b[36m"
    _EVENT = "\x1b[94m"
    _ERR = "\x1b[91m"
    _LEVEL_STYLE: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", "\x1b[95m"),
        (logging.ERROR, "ERROR", "\x1b[91m"),
        (logging.WARNING, "WARN", "\x1b[93m"),
        (logging.INFO, "INFO", "\x1b[36m"),
    )

    def format(self, record: logging.LogRecord) -> str:
        name, color = "DEBUG", "\x1b[90m"
        for threshold, tag, tag_color in self._LEVEL_STYLE:
            if record.levelno >= threshold:
                name, color = tag, tag_color
                break
        head = f"{self._DIM}{datetime.now(UTC):%H:%M:%S}{self._RESET} {color}{name:<5}{self._RESET}"

        msg = record.getMessage()
        fields = _parse_evt_fields(msg)
        if fields:
            event = str(fields.pop("event", "event"))
            pairs = " ".join(f"{self._KEY}{k}{self._RESET}={v}" for k, v in fields.items())
            body = f"{self._BOLD}{self._EVENT}{event}{self._RESET} {pairs}".rstrip()
        else:
            body = msg

        line = f"{head} {body}"
        rid = request_id_var.get()
        if rid:
            line += f" {self._DIM}rid={rid}{self._RESET}"
        if record.exc_info:
            line += f"\n{self._ERR}{self.formatException(record.exc_info)}{self._RESET}"
        return line


def log_event(
    event: str, fields: Mapping[str, object] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit an `EVT` line; unknown keys and mistyped values are dropped."""
    rendered = [f"event={event}"]
    for key, val in (fields or {}).items():
        text = _render_field(key, val)
        if text is not None:
            rendered.append(f"{key}={text}")
    get_logger().log(level, _EVT_PREFIX + " ".join(rendered))


def _render_field(key: str, val: object) -> str | None:
    if isinstance(val, bool):
        return ("true" if val else "false") if key in _BOOL_FIELDS else None
    if key in _INT_FIELDS and isinstance(val, int):
        return str(val)
    if key in _FLOAT_FIELDS and isinstance(val, float):
        return f"{val:.4f}"
    if key in _STR_FIELDS and isinstance(val, str) and val:
        # Values are space separated on the wire
        return val.replace(" ", "_")
    return None


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if not sep or not key:
            continue
        out[key] = _coerce(key, raw)
    return out


def _coerce(key: str, raw: str) -> object:
    try:
        if key in _INT_FIELDS:
            return int(raw)
        if key in _FLOAT_FIELDS:
            return float(raw)
    except ValueError:
        return raw
    if key in _BOOL_FIELDS:
        return raw.lower() in {"1", "true", "yes"}
    return raw


def _env_flag(*names: str) -> bool:
    for name in names:
        v = os.environ.get(name, "").strip().lower()
        if v in {"1", "true", "yes", "on", "y"}:
            return True
    return False


def _env_level() -> int:
    raw = os.environ.get("CAR_RECOGNITION_LOG_LEVEL", "")
    return _LEVELS.get(raw.strip().upper(), logging.INFO)


def _choose_formatter(style: LogStyle) -> logging.Formatter:
    if style == "auto":
        if _env_flag("CAR_RECOGNITION_LOG_JSON", "LOG_JSON"):
            style = "json"
        elif _env_flag("CAR_RECOGNITION_LOG_PRETTY", "LOG_PRETTY"):
            style = "pretty"
        else:
            isatty = getattr(sys.stdout, "isatty", None)
            style = "pretty" if callable(isatty) and bool(isatty()) else "json"
    return _ConsoleFormatter() if style == "pretty" else _JsonFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Configure the `car_recognition` logger with one stdout handler.

    Safe to call repeatedly: earlier stream handlers are replaced, and the
    new one binds to whatever `sys.stdout` is at call time.
    """
    logger = get_logger()
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_flag("CAR_RECOGNITION_LOG_PROPAGATE", "LOG_PROPAGATE")

    for h in [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]:
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
