# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/core/logger.py
"""
Console and file logging for liveswap.

Per-disk work runs on worker threads, so every line from a worker carries
its thread name (clone_0, delta_1, ...). Structured fields go through
`extra={"ctx": {...}}` and are rendered as key=value after the message, or
as a "ctx" object in JSON mode.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from termcolor import colored as _colored

TRACE = 5
if logging.getLevelName(TRACE) != "TRACE":
    logging.addLevelName(TRACE, "TRACE")


def _logger_trace(self: logging.Logger, msg: str, *args, **kwargs) -> None:
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, args, **kwargs)


if not hasattr(logging.Logger, "trace"):
    logging.Logger.trace = _logger_trace  # type: ignore[attr-defined]

# levelname -> (emoji, termcolor color)
_LEVELS = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}


def is_tty(stream=None) -> bool:
    stream = sys.stdout if stream is None else stream
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _can_encode_emoji(stream=None) -> bool:
    enc = getattr(stream or sys.stderr, "encoding", None) or "utf-8"
    try:
        "✅".encode(enc)
    except (LookupError, UnicodeEncodeError):
        return False
    return True


def c(
    text: str,
    color: Optional[str] = None,
    attrs: Optional[List[str]] = None,
    *,
    enable: bool = True,
) -> str:
    """Colorize text with termcolor when enabled."""
    if not enable or not color:
        return text
    return _colored(text, color=color, attrs=attrs or [])


def _clip(value: Any, limit: int = 240) -> str:
    text = str(value).replace("\r", "\\r").replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _render_ctx(ctx: Optional[Mapping[str, Any]]) -> str:
    if not ctx:
        return ""
    return " " + " ".join(f"{k}={_clip(ctx[k])}" for k in sorted(ctx, key=str))


@dataclass(frozen=True)
class LogStyle:
    color: bool = True
    show_ms: bool = False
    show_src: bool = False
    show_pid: bool = False
    show_thread: bool = True
    show_logger: bool = False
    utc: bool = False
    unicode: bool = True


class EmojiFormatter(logging.Formatter):
    def __init__(self, style: LogStyle):
        super().__init__()
        self._style = style

    def _timestamp(self, created: float) -> str:
        tz = _dt.timezone.utc if self._style.utc else None
        stamp = _dt.datetime.fromtimestamp(created, tz=tz)
        if self._style.show_ms:
            return stamp.strftime("%H:%M:%S.%f")[:-3]
        return stamp.strftime("%H:%M:%S")

    def _tags(self, record: logging.LogRecord) -> str:
        tags: List[str] = []
        if self._style.show_pid:
            tags.append(f"pid={os.getpid()}")
        # the engine itself runs on MainThread; only workers are tagged
        if self._style.show_thread and record.threadName not in (None, "MainThread"):
            tags.append(f"thr={record.threadName}")
        if self._style.show_logger:
            tags.append(record.name)
        if self._style.show_src:
            tags.append(f"{record.module}:{record.lineno}")
        return f" [{' '.join(tags)}]" if tags else ""

    def format(self, record: logging.LogRecord) -> str:
        emoji, color = _LEVELS.get(record.levelname, ("•", None))
        if not self._style.unicode:
            emoji = "·"
        colored = bool(self._style.color and is_tty(sys.stderr))

        level = c(f"{record.levelname:<8}", color, enable=colored)
        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            msg = c(msg, color, ["bold"], enable=colored)

        line = (
            f"{self._timestamp(record.created)} {emoji} {level}{self._tags(record)} "
            f"{msg}{_render_ctx(getattr(record, 'ctx', None))}"
        )
        if record.exc_info:
            trace = "\n".join("  " + ln for ln in self.formatException(record.exc_info).splitlines())
            line += "\n" + c(trace, "red", enable=colored)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def __init__(self, *, utc: bool = True, include_src: bool = True):
        super().__init__()
        self._utc = utc
        self._include_src = include_src

    def format(self, record: logging.LogRecord) -> str:
        tz = _dt.timezone.utc if self._utc else None
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=tz).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if self._include_src:
            obj["src"] = f"{record.module}:{record.lineno}"
        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = {str(k): _clip(v) for k, v in ctx.items()}
        if record.exc_info:
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False, default=str)


def _extra(ctx: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return {"ctx": ctx} if ctx else None


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        """-q WARNING, -qq ERROR, -vv DEBUG, -vvv TRACE; quiet wins over verbose."""
        if quiet:
            return logging.ERROR if quiet >= 2 else logging.WARNING
        if verbose >= 3:
            return TRACE
        return logging.DEBUG if verbose >= 2 else logging.INFO

    @staticmethod
    def step(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("➡️  %s", msg, extra=_extra(ctx))

    @staticmethod
    def ok(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("✅ %s", msg, extra=_extra(ctx))

    @staticmethod
    def warn(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.warning("⚠️  %s", msg, extra=_extra(ctx))

    @staticmethod
    def fail(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.error("💥 %s", msg, extra=_extra(ctx))

    @staticmethod
    def trace(logger: logging.Logger, msg: str, *args: Any, **ctx: Any) -> None:
        fn = getattr(logger, "trace", None)
        if fn is None:
            logger.debug(msg, *args)
        else:
            fn(msg, *args, extra=_extra(ctx))

    @staticmethod
    def _console_formatter(verbose: int, color: bool, unicode: bool, json_logs: bool) -> logging.Formatter:
        if json_logs:
            return JsonFormatter()
        return EmojiFormatter(
            LogStyle(
                color=color,
                show_ms=verbose >= 3,
                show_src=verbose >= 3,
                show_pid=verbose >= 2,
                unicode=unicode,
            )
        )

    @staticmethod
    def _file_handler(log_file: str, unicode: bool, json_logs: bool) -> logging.Handler:
        path = Path(log_file).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        # files are read after the fact: full timestamps, origin, no colour
        detailed = LogStyle(color=False, show_ms=True, show_src=True, show_pid=True, show_logger=True, unicode=unicode)
        handler.setFormatter(JsonFormatter() if json_logs else EmojiFormatter(detailed))
        return handler

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: Optional[bool] = None,
        json_logs: bool = False,
        logger_name: str = "liveswap",
    ) -> logging.Logger:
        """
        (Re)configure the named logger: stderr always, plus `log_file` when
        given. Handlers from an earlier call are closed first.
        """
        logger = logging.getLogger(logger_name)
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()

        level = Log._level_from_flags(verbose, quiet)
        unicode = _can_encode_emoji()
        console = logging.StreamHandler(stream=sys.stderr)
        console.setFormatter(Log._console_formatter(verbose, color is not False, unicode, json_logs))
        handlers: List[logging.Handler] = [console]
        if log_file:
            handlers.append(Log._file_handler(log_file, unicode, json_logs))

        logger.setLevel(level)
        logger.propagate = False
        for handler in handlers:
            handler.setLevel(level)
            logger.addHandler(handler)

        logger.debug("Log level %s", logging.getLevelName(level))
        Log.trace(logger, "TRACE enabled")
        return logger
