# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import json
import logging

import pytest

from liveswap.core.logger import TRACE, EmojiFormatter, JsonFormatter, Log, LogStyle


def _record(msg="hello", level=logging.INFO, thread="MainThread", ctx=None):
    rec = logging.LogRecord("liveswap", level, __file__, 10, msg, None, None)
    rec.threadName = thread
    if ctx is not None:
        rec.ctx = ctx
    return rec


@pytest.mark.unit
class TestLevels:
    @pytest.mark.parametrize(
        "verbose, quiet, level",
        [
            (0, 0, logging.INFO),
            (2, 0, logging.DEBUG),
            (3, 0, TRACE),
            (0, 1, logging.WARNING),
            (3, 2, logging.ERROR),
        ],
    )
    def test_level_from_flags(self, verbose, quiet, level):
        assert Log._level_from_flags(verbose, quiet) == level


@pytest.mark.unit
class TestFormatters:
    def test_emoji_formatter_tags_worker_threads(self):
        fmt = EmojiFormatter(LogStyle(color=False))
        assert "thr=clone_0" in fmt.format(_record(thread="clone_0"))
        assert "thr=" not in fmt.format(_record())

    def test_emoji_formatter_renders_context(self):
        fmt = EmojiFormatter(LogStyle(color=False))
        line = fmt.format(_record(ctx={"disk": "web01.vmdk", "vm": "web01"}))
        assert line.endswith("hello disk=web01.vmdk vm=web01")

    def test_json_formatter(self):
        obj = json.loads(JsonFormatter().format(_record(thread="delta_1", ctx={"disk": "d.vmdk"})))
        assert obj["msg"] == "hello"
        assert obj["level"] == "INFO"
        assert obj["thread"] == "delta_1"
        assert obj["ctx"] == {"disk": "d.vmdk"}


@pytest.mark.unit
class TestSetup:
    def test_setup_with_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "liveswap.log"
        logger = Log.setup(2, str(log_file), color=False, logger_name="liveswap-test")
        Log.step(logger, "Cloning", disk="web01.vmdk")
        for h in logger.handlers:
            h.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "Cloning" in text
        assert "disk=web01.vmdk" in text
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    def test_setup_replaces_handlers(self):
        logger = Log.setup(0, logger_name="liveswap-twice")
        logger = Log.setup(0, logger_name="liveswap-twice", quiet=1)
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    def test_trace_falls_back_to_debug(self):
        class DebugOnly:
            def __init__(self):
                self.seen = []

            def debug(self, msg, *args):
                self.seen.append(msg % args)

        logger = DebugOnly()
        Log.trace(logger, "chain %s", "a -> b")
        assert logger.seen == ["chain a -> b"]


@pytest.mark.unit
class TestFormatterDetails:
    def test_plain_marker_without_unicode(self):
        fmt = EmojiFormatter(LogStyle(color=False, unicode=False))
        assert " · INFO" in fmt.format(_record())

    def test_long_context_values_are_clipped(self):
        fmt = EmojiFormatter(LogStyle(color=False))
        line = fmt.format(_record(ctx={"out": "x" * 500}))
        assert line.endswith("…")
        assert "\n" not in fmt.format(_record(ctx={"out": "a\nb"}))
