# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/core/utils.py
from __future__ import annotations

import datetime as _dt
import json
import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any, List, Optional

_BYTE_UNITS = ("KiB", "MiB", "GiB", "TiB", "PiB")


class U:
    """Small helpers shared by the engine, the gateway and the disk tool."""

    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        return shutil.which(prog)

    @staticmethod
    def now_ts() -> str:
        """Local timestamp used to name result directories."""
        return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def json_dump(obj: Any) -> str:
        # Paths, enums and datetimes fall back to str()
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return repr(obj)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        if n < 1024:
            return f"{int(n)} B"
        size = float(n)
        unit = _BYTE_UNITS[0]
        for unit in _BYTE_UNITS:
            size /= 1024
            if size < 1024:
                break
        return f"{size:.2f} {unit}"

    @staticmethod
    def format_duration(seconds: float) -> str:
        """
        Wall-clock duration as MM:SS, or H:MM:SS from one hour on.

        >>> U.format_duration(47)
        '00:47'
        >>> U.format_duration(3725)
        '1:02:05'
        """
        total = max(0, int(round(float(seconds))))
        hours, rem = divmod(total, 3600)
        minutes, secs = divmod(rem, 60)
        if hours:
            return f"{hours}:{minutes:02d}:{secs:02d}"
        return f"{minutes:02d}:{secs:02d}"

    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        rule = "─" * max(10, len(title) + 2)
        for line in (rule, f" {title}", rule):
            logger.info(line)

    @staticmethod
    def _pretty_cmd(cmd: List[str]) -> str:
        return " ".join(shlex.quote(x) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """
        subprocess.run with the command line logged at debug.

        Failures (check=True) and timeouts are logged with whatever the
        command printed, then re-raised.
        """
        pretty = U._pretty_cmd(cmd)
        logger.debug("Running: %s", pretty)
        try:
            return subprocess.run(cmd, check=check, capture_output=capture, text=True, timeout=timeout)
        except subprocess.CalledProcessError as e:
            output = "\n".join(
                f"{name}:\n{text.strip()}"
                for name, text in (("stdout", e.stdout or e.output or ""), ("stderr", e.stderr or ""))
                if text.strip()
            )
            logger.error("Command failed (rc=%d): %s\n%s", e.returncode, pretty, output or "(no output)")
            raise
        except subprocess.TimeoutExpired:
            logger.error("Command timed out after %ss: %s", timeout, pretty)
            raise
