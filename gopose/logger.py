"""Structured logging: plain message output, or key=value / JSON records."""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TextIO

from .models import LogConfig

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
}

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def parse_log_level(level: str) -> int:
    """Map a level name to a logging level; unknown names mean info."""
    return _LEVELS.get(level, logging.INFO)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return int(value / timedelta(microseconds=1)) * 1000
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, BaseException):
        return str(value)
    raise TypeError(f"cannot encode {type(value).__name__}")


def format_json(value: Any) -> str:
    """Compact JSON for a value, or its plain text form when it cannot be encoded."""
    try:
        return json.dumps(
            value, default=_json_default, ensure_ascii=False, separators=(",", ":")
        )
    except (TypeError, ValueError):
        return str(value)


def _text_value(value: Any) -> str:
    if isinstance(value, str):
        text = value
    elif isinstance(value, Enum):
        text = str(value.value)
    elif isinstance(value, datetime):
        text = value.isoformat()
    else:
        text = str(value)
    if text == "" or any(ch.isspace() or ch in '"=' for ch in text):
        return json.dumps(text, ensure_ascii=False)
    return text


class Logger:
    """A structured logger.

    When not detailed, every call just prints the message to standard output.
    When detailed, records at or above the level are written to the stream,
    as key=value text or as JSON.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        level: int = logging.INFO,
        output_format: str = "text",
        name: str = "gopose",
        detailed: bool = False,
        fields: tuple[tuple[str, Any], ...] = (),
        err: BaseException | None = None,
    ) -> None:
        self.stream = stream
        self.level = level
        self.output_format = output_format
        self.name = name
        self.detailed = detailed
        self.fields = tuple(fields)
        self.err = err

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log at debug level."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log at info level."""
        self._log(logging.INFO, message, kwargs)

    def warn(self, message: str, **kwargs: Any) -> None:
        """Log at warning level."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, err: BaseException, **kwargs: Any) -> None:
        """Log at error level with the error attached."""
        self._log(logging.ERROR, message, {**kwargs, "error": str(err)})

    def fatal(self, message: str, err: BaseException, **kwargs: Any) -> None:
        """Log at error level, then exit with status 1."""
        self._log(logging.ERROR, message, {**kwargs, "error": str(err)})
        raise SystemExit(1)

    def with_field(self, key: str, value: Any) -> Logger:
        """A new logger carrying one more field."""
        return self._derive(self.fields + ((key, value),), self.err)

    def with_fields(self, **kwargs: Any) -> Logger:
        """A new logger carrying the given fields as well."""
        return self._derive(self.fields + tuple(kwargs.items()), self.err)

    def with_error(self, err: BaseException) -> Logger:
        """A new logger that attaches the error to every record."""
        return self._derive(self.fields, err)

    def _derive(self, fields: tuple[tuple[str, Any], ...], err: BaseException | None) -> Logger:
        return Logger(
            self.stream,
            level=self.level,
            output_format=self.output_format,
            name=self.name,
            detailed=self.detailed,
            fields=fields,
            err=err,
        )

    def _log(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self.detailed:
            print(message)
            return
        if level < self.level:
            return

        now = datetime.now().astimezone()
        record: list[tuple[str, Any]] = [
            ("time", now.isoformat(timespec="milliseconds")),
            ("level", _LEVEL_NAMES.get(level, "INFO")),
            ("msg", message),
            ("component", self.name),
            ("timestamp", now.isoformat()),
        ]
        record.extend(self.fields)
        record.extend(fields.items())
        if self.err is not None:
            record.append(("error", str(self.err)))

        if self.output_format == "json":
            line = format_json(dict(record))
        else:
            line = " ".join(f"{key}={_text_value(value)}" for key, value in record)

        stream = self.stream if self.stream is not None else sys.stdout
        stream.write(line + "\n")
        stream.flush()


class NopLogger(Logger):
    """A logger that discards everything."""

    def _log(self, level: int, message: str, fields: dict[str, Any]) -> None:
        return None

    def fatal(self, message: str, err: BaseException, **kwargs: Any) -> None:
        return None

    def with_field(self, key: str, value: Any) -> Logger:
        return self

    def with_fields(self, **kwargs: Any) -> Logger:
        return self

    def with_error(self, err: BaseException) -> Logger:
        return self


class LoggerFactory:
    """Builds loggers from a log configuration."""

    def __init__(self, detailed: bool = False) -> None:
        self.detailed = detailed

    def create(self, config: LogConfig) -> Logger:
        """A logger named after the application."""
        return self.create_with_name("gopose", config)

    def create_with_name(self, name: str, config: LogConfig) -> Logger:
        """A logger whose records carry the given component name."""
        stream: TextIO | None = None
        if config.file:
            try:
                stream = open(config.file, "a", encoding="utf-8")
            except OSError as exc:
                raise OSError(
                    exc.errno, f"ログファイルのオープンに失敗しました: {exc}"
                ) from exc
        return Logger(
            stream,
            level=parse_log_level(config.level),
            output_format="json" if config.format == "json" else "text",
            name=name,
            detailed=self.detailed,
        )