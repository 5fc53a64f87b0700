# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/converters/disk_tool.py
"""
Local disk tooling used by the migration engine.

  - qemu-img convert    VMDK base disk -> raw, patched raw -> qcow2
  - sesparse            apply a VMFS seSparse redo log onto a raw base
  - virt-v2v-in-place   make the guest OS bootable under KVM

All operations return True/False; the engine turns False into the error of
the phase it is running.
"""

from __future__ import annotations

import logging
import os
import re
import selectors
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable

from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from ..core.logger import is_tty
from ..core.utils import U

SOURCE_FORMATS = ("vmdk", "raw")
TARGET_FORMATS = ("qcow2", "raw")


@runtime_checkable
class DiskConversionTool(Protocol):
    def convert(self, source: Path, target: Path, target_format: str, *, source_format: str = "vmdk") -> bool: ...

    def apply_delta(self, delta_path: Path, base_path: Path) -> bool: ...

    def adapt_os(self, disk_path: Path) -> bool: ...

    def missing_tools(self, adapt: bool = True) -> List[str]: ...


class _ProgressBoard:
    """
    One rich Progress display shared by concurrent conversions.

    rich allows a single live display at a time, so the first conversion
    starts it and the last one to finish stops it.
    """

    def __init__(self, enabled: bool):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._users = 0
        self._progress: Optional[Progress] = None

    def acquire(self, description: str) -> Optional[int]:
        if not self.enabled:
            return None
        with self._lock:
            if self._progress is None:
                self._progress = Progress(
                    TextColumn("{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    TimeElapsedColumn(),
                    TimeRemainingColumn(),
                )
                self._progress.start()
            self._users += 1
            return self._progress.add_task(description, total=100.0)

    def update(self, task_id: Optional[int], pct: float) -> None:
        if task_id is None or self._progress is None:
            return
        self._progress.update(task_id, completed=pct)

    def release(self, task_id: Optional[int]) -> None:
        if task_id is None:
            return
        with self._lock:
            self._users -= 1
            if self._users <= 0 and self._progress is not None:
                self._progress.stop()
                self._progress = None
                self._users = 0


class DiskTool:
    _RE_PAREN = re.compile(r"\((\d+(?:\.\d+)?)/100%\)")

    def __init__(
        self,
        logger: logging.Logger,
        *,
        timeout: Optional[int] = None,
        compress: bool = False,
        show_progress: Optional[bool] = None,
        log_every_pct: float = 10.0,
        poll_interval: float = 0.5,
    ):
        self.logger = logger
        self.timeout = timeout
        self.compress = compress
        self.log_every_pct = log_every_pct
        self.poll_interval = poll_interval
        if show_progress is None:
            show_progress = is_tty(sys.stderr)
        self._board = _ProgressBoard(bool(show_progress))

    # ----------------------------
    # prerequisites
    # ----------------------------

    @staticmethod
    def required_tools(adapt: bool = True) -> List[str]:
        tools = ["qemu-img", "sesparse"]
        if adapt:
            tools.append("virt-v2v-in-place")
        return tools

    def missing_tools(self, adapt: bool = True) -> List[str]:
        return [t for t in self.required_tools(adapt) if U.which(t) is None]

    # ----------------------------
    # qemu-img convert
    # ----------------------------

    def _build_convert_cmd(
        self, source: Path, target: Path, target_format: str, source_format: str = "vmdk"
    ) -> List[str]:
        cmd = ["qemu-img", "convert", "-p", "-f", source_format, "-O", target_format]
        if self.compress and target_format == "qcow2":
            cmd.append("-c")
        cmd += [str(source), str(target)]
        return cmd

    def _parse_pct(self, text: str) -> Optional[float]:
        hits = self._RE_PAREN.findall(text or "")
        if not hits:
            return None
        return float(hits[-1])

    def _run_with_progress(self, cmd: List[str], label: str) -> tuple:
        """
        Run qemu-img, feeding its -p output into the progress board (TTY)
        or into periodic log lines. Returns (rc, output tail).

        The timeout covers the whole run, including stretches where
        qemu-img prints nothing; on expiry the child is killed and rc 124
        is returned.
        """
        self.logger.debug("Running: %s", U._pretty_cmd(cmd))
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, bufsize=0)
        assert proc.stdout is not None
        fd = proc.stdout.fileno()
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        task = self._board.acquire(f"Converting {label}")
        tail: List[str] = []
        buf = ""
        last_logged = 0.0
        try:
            with selectors.DefaultSelector() as sel:
                sel.register(fd, selectors.EVENT_READ)
                while True:
                    if deadline is not None and time.monotonic() >= deadline:
                        raise subprocess.TimeoutExpired(cmd, self.timeout)
                    if not sel.select(timeout=self.poll_interval):
                        continue
                    chunk = os.read(fd, 4096)
                    if not chunk:
                        break
                    buf += chunk.decode("utf-8", errors="replace")
                    # qemu-img redraws its progress with \r
                    parts = re.split(r"[\r\n]", buf)
                    buf = parts.pop()
                    for part in parts:
                        pct = self._parse_pct(part)
                        if pct is None:
                            if part.strip():
                                tail.append(part.strip())
                                del tail[:-50]
                            continue
                        self._board.update(task, pct)
                        if task is None and pct - last_logged >= self.log_every_pct:
                            self.logger.info("Converting %s: %.0f%%", label, pct)
                            last_logged = pct
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            rc = proc.wait(timeout=remaining)
        except KeyboardInterrupt:
            proc.terminate()
            proc.wait()
            raise
        except subprocess.TimeoutExpired:
            self.logger.error("qemu-img timed out after %ss for %s", self.timeout, label)
            return 124, tail
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            self._board.release(task)

        if rc == 0:
            self._board.update(task, 100.0)
        return rc, tail

    def convert(self, source: Path, target: Path, target_format: str, *, source_format: str = "vmdk") -> bool:
        """
        Convert source (a VMDK descriptor, not the -flat data file, or a raw
        image) to target_format.

        Output is written to `<target>.part` and renamed on success.
        """
        source = Path(source)
        target = Path(target)
        if target_format not in TARGET_FORMATS:
            self.logger.error("Unsupported target format %r (expected one of %s)", target_format, TARGET_FORMATS)
            return False
        if source_format not in SOURCE_FORMATS:
            self.logger.error("Unsupported source format %r (expected one of %s)", source_format, SOURCE_FORMATS)
            return False
        if not source.is_file():
            self.logger.error("Conversion source not found: %s", source)
            return False

        U.ensure_dir(target.parent)
        part = target.with_name(target.name + ".part")
        if part.exists():
            part.unlink()

        self.logger.info("Converting %s -> %s (%s -> %s)", source.name, target.name, source_format, target_format)
        cmd = self._build_convert_cmd(source, part, target_format, source_format)
        rc, tail = self._run_with_progress(cmd, source.name)
        if rc != 0:
            self.logger.error("qemu-img convert failed (rc=%d) for %s: %s", rc, source, " | ".join(tail[-5:]))
            if part.exists():
                part.unlink()
            return False

        os.replace(part, target)
        self.logger.info("Converted %s (%s)", target, U.human_bytes(target.stat().st_size))
        return True

    # ----------------------------
    # sesparse / virt-v2v-in-place
    # ----------------------------

    def _run_tool(self, cmd: List[str], what: str) -> bool:
        try:
            cp = U.run_cmd(self.logger, cmd, check=False, capture=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self.logger.error("%s timed out after %ss", what, self.timeout)
            return False
        out = ((cp.stdout or "") + (cp.stderr or "")).strip()
        if cp.returncode != 0:
            self.logger.error("%s failed (rc=%d): %s", what, cp.returncode, out[-2000:] or "(no output)")
            return False
        if out:
            self.logger.debug("%s output:\n%s", what, out)
        return True

    def apply_delta(self, delta_path: Path, base_path: Path) -> bool:
        """Write the blocks of a seSparse redo log into a raw base image, in place."""
        delta_path = Path(delta_path)
        base_path = Path(base_path)
        for p in (delta_path, base_path):
            if not p.is_file():
                self.logger.error("apply_delta: missing %s", p)
                return False
        self.logger.info("Applying delta %s -> %s", delta_path.name, base_path.name)
        return self._run_tool(["sesparse", str(delta_path), str(base_path)], f"sesparse {delta_path.name}")

    def adapt_os(self, disk_path: Path) -> bool:
        disk_path = Path(disk_path)
        if not disk_path.is_file():
            self.logger.error("adapt_os: missing %s", disk_path)
            return False
        self.logger.info("Adapting guest OS on %s", disk_path.name)
        return self._run_tool(
            ["virt-v2v-in-place", "-i", "disk", str(disk_path)],
            f"virt-v2v-in-place {disk_path.name}",
        )
