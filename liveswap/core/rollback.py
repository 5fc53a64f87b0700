# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/core/rollback.py
"""
Rollback registry for multi-step operations.

Each step that creates something registers a callback that undoes it. When
the guarded block fails, the callbacks run in LIFO order. A failing callback
is logged and skipped so the remaining ones still run, and the original error
is never replaced by a cleanup error.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

from .logger import Log


class Rollback:
    """
    Usage:

        with Rollback(logger) as rb:
            make_dir(path)
            rb.on_rollback("remove dir", remove_dir, path)
            ...          # any exception here triggers remove_dir(path)
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._actions: List[Tuple[str, Callable[..., Any], tuple, dict]] = []

    def __enter__(self) -> "Rollback":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.run(reason=exc)
        return False

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def pending(self) -> List[str]:
        return [name for (name, _fn, _a, _kw) in self._actions]

    def on_rollback(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if not callable(fn):
            raise TypeError(f"rollback action {name!r} is not callable")
        Log.trace(self.logger, "🧷 registered rollback action: %s", name)
        self._actions.append((name, fn, args, kwargs))

    def run(self, reason: Optional[BaseException] = None) -> List[str]:
        """
        Run all registered actions in reverse order. Returns the names of the
        actions that failed.
        """
        failed: List[str] = []
        if not self._actions:
            return failed

        if reason is not None:
            Log.warn(self.logger, f"Rolling back: {reason}")
        else:
            Log.warn(self.logger, "Rolling back")

        for (name, fn, args, kwargs) in reversed(self._actions):
            self.logger.debug("Running rollback action %r", name)
            try:
                fn(*args, **kwargs)
            except Exception as e:
                failed.append(name)
                self.logger.warning("Rollback action %r failed: %s", name, e)

        self._actions = []
        return failed

    def checkpoint(self) -> None:
        """Everything registered so far becomes permanent."""
        self.logger.debug("Checkpoint reached, %d rollback action(s) dropped", len(self._actions))
        self._actions = []
