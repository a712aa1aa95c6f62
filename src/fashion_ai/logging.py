from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, TypedDict

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "fashion_ai"
_EVT_PREFIX: Final[str] = "EVT "
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on", "y"})

# Structured event fields, in emission order, with the type each one is decoded to.
_EVENT_FIELDS: Final[tuple[tuple[str, type], ...]] = (
    ("latency_ms", int),
    ("label", str),
    ("class_index", int),
    ("confidence", float),
    ("model_id", str),
    ("uncertain", bool),
    ("history_size", int),
)
_FIELD_TYPES: Final[dict[str, type]] = dict(_EVENT_FIELDS)

LogStyle = Literal["json", "pretty", "auto"]


class LogEvent(TypedDict, total=False):
    latency_ms: int
    label: str
    class_index: int
    confidence: float
    model_id: str
    uncertain: bool
    history_size: int


def _encode_value(kind: type, value: object) -> str | None:
    # bool is an int subclass; keep the two apart
    if kind is bool:
        return ("true" if value else "false") if isinstance(value, bool) else None
    if kind is int:
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else None
    if kind is float:
        return f"{float(value):.6f}" if isinstance(value, int | float) else None
    return "_".join(value.split()) if isinstance(value, str) else None


def _decode_value(key: str, raw: str) -> object:
    kind = _FIELD_TYPES.get(key)
    if kind is bool:
        return raw.lower() in _TRUTHY
    if kind is int and raw.isdigit():
        return int(raw)
    if kind is float and _is_float_str(raw):
        return float(raw)
    return raw


def log_event(event: str, fields: LogEvent | Mapping[str, object] | None = None) -> None:
    """Emit one ``EVT event=<name> key=value ...`` line at INFO.

    Only known keys with values of the expected type are written; whitespace
    inside string values is folded to underscores so every pair stays one token.
    """
    tokens = [f"event={event}"]
    given: Mapping[str, object] = fields or {}
    for key, kind in _EVENT_FIELDS:
        if key in given:
            encoded = _encode_value(kind, given[key])
            if encoded is not None:
                tokens.append(f"{key}={encoded}")
    get_logger().info(_EVT_PREFIX + " ".join(tokens))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if sep and key:
            out[key] = _decode_value(key, raw)
    return out


def _is_float_str(s: str) -> bool:
    return bool(s) and s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


def _split_message(msg: str) -> tuple[str, list[tuple[str, str]]]:
    """Split a log line into its leading event word and trailing key=value pairs."""
    if msg.startswith(_EVT_PREFIX):
        fields = _parse_evt_fields(msg)
        event = str(fields.pop("event", "event"))
        return event, [(k, str(v)) for k, v in fields.items()]
    words = msg.split()
    event = words[0] if words and "=" not in words[0] else ""
    pairs: list[tuple[str, str]] = []
    for w in words[1:] if event else words:
        k, _, v = w.partition("=")
        pairs.append((k, v))
    return event, pairs


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        fields = _parse_evt_fields(msg)
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": str(fields.pop("event", msg)),
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colored one-line output for terminals: ``[time] [LEVEL] event k=v ... rid=...``."""

    _RESET: Final[str] = "\x1b[0m"
    _BOLD: Final[str] = "\x1b[1m"
    _DIM: Final[str] = "\x1b[2m"
    _KEY: Final[str] = "\x1b[36m"
    _EVENT: Final[str] = "\x1b[94m"
    _NUMBER: Final[str] = "\x1b[92m"
    _TRACE: Final[str] = "\x1b[91m"
    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "\x1b[95m", "CRIT"),
        (logging.ERROR, "\x1b[91m", "ERROR"),
        (logging.WARNING, "\x1b[93m", "WARN"),
        (logging.INFO, "\x1b[36m", "INFO"),
        (logging.NOTSET, "\x1b[90m", "DEBUG"),
    )

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now(UTC).strftime("%H:%M:%S")
        out = [self._paint(f"[{stamp}]", self._DIM), self._level(record.levelno)]
        if record.name != _LOGGER_NAME:
            out.append(self._paint(record.name, self._DIM))
        event, pairs = _split_message(record.getMessage())
        if event:
            out.append(self._paint(event, self._BOLD + self._EVENT))
        for k, v in pairs:
            if not v and not k:
                continue
            shown = self._paint(v, self._NUMBER) if _is_float_str(v) else v
            out.append(f"{self._paint(k, self._DIM + self._KEY)}={shown}" if v else k)
        rid = request_id_var.get()
        if rid:
            out.append(self._paint(f"rid={rid}", self._DIM))
        text = " ".join(out)
        if record.exc_info:
            text += "\n" + self._paint(self.formatException(record.exc_info), self._TRACE)
        return text

    def _paint(self, text: str, style: str) -> str:
        return f"{style}{text}{self._RESET}"

    def _level(self, levelno: int) -> str:
        color, name = next((c, n) for lvl, c, n in self._LEVELS if levelno >= lvl)
        return self._paint(f"[{name}]", self._BOLD + color)


def _env_flag(*names: str) -> bool:
    return any((os.environ.get(n) or "").strip().lower() in _TRUTHY for n in names)


def _env_level() -> int:
    name = (os.environ.get("FASHION_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelNamesMapping().get(name, logging.INFO)
    return level if level != logging.NOTSET else logging.INFO


def _choose_formatter(style: LogStyle) -> logging.Formatter:
    if style == "auto":
        if _env_flag("FASHION_LOG_JSON", "LOG_JSON"):
            style = "json"
        elif _env_flag("FASHION_LOG_PRETTY", "LOG_PRETTY") or sys.stdout.isatty():
            style = "pretty"
        else:
            style = "json"
    return _ConsoleFormatter() if style == "pretty" else _JsonFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Configure the ``fashion_ai`` logger with exactly one stdout handler.

    Safe to call repeatedly: the previous stream handler is replaced so the
    handler always writes to the current ``sys.stdout``.
    """
    logger = get_logger()
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_flag("FASHION_LOG_PROPAGATE", "LOG_PROPAGATE")
    for h in [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]:
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
