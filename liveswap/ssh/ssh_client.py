# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/ssh/ssh_client.py
from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.utils import U
from .ssh_config import SSHConfig


@dataclass(frozen=True)
class SSHResult:
    rc: int
    stdout: str
    stderr: str
    argv: List[str]
    seconds: float

    @property
    def ok(self) -> bool:
        return self.rc == 0


# stderr fragments the OpenSSH client prints when the connection itself failed
_TRANSPORT_ERRORS = (
    "connection timed out",
    "connection refused",
    "connection reset by peer",
    "connection closed",
    "no route to host",
    "network is unreachable",
    "could not resolve hostname",
    "temporary failure in name resolution",
    "kex_exchange_identification",
    "broken pipe",
)


_CAT_SCRIPT = 'cat -- "$1"'


class SSHClient:
    """
    Runs commands on the ESXi host and copies files off it with the ssh and
    scp binaries.

    The ESXi shell is busybox sh; commands run under `sh -c` with no login
    shell, so no profile output can end up in stdout.
    """

    def __init__(self, logger: logging.Logger, cfg: SSHConfig):
        self.logger = logger
        self.cfg = cfg

    def _exec(self, argv: Sequence[str], *, capture: bool, timeout: Optional[int]) -> SSHResult:
        """Run ssh/scp locally. A non-zero rc is returned, TimeoutExpired propagates."""
        started = time.monotonic()
        cp = U.run_cmd(self.logger, list(argv), check=False, capture=capture, timeout=timeout)
        return SSHResult(
            rc=cp.returncode or 0,
            stdout=(cp.stdout or "") if capture else "",
            stderr=(cp.stderr or "") if capture else "",
            argv=list(argv),
            seconds=time.monotonic() - started,
        )

    @staticmethod
    def _looks_transient_ssh(res: Optional[SSHResult]) -> bool:
        """ssh exits 255 when it could not talk to the host at all."""
        if res is None:
            return False
        if res.rc == 255:
            return True
        err = res.stderr.lower()
        return any(marker in err for marker in _TRANSPORT_ERRORS)

    @staticmethod
    def _raise_on_failure(res: SSHResult, what: str) -> None:
        if res.ok:
            return
        detail = f"{what} failed (rc={res.rc}, {res.seconds:.2f}s): {res.stderr.strip()}"
        raise subprocess.CalledProcessError(res.rc, res.argv, output=res.stdout, stderr=detail)

    def run(
        self,
        cmd: str,
        *,
        capture: bool = True,
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> SSHResult:
        """
        Run `cmd` on the host.

        Transport failures are retried cfg.retries times; a command that
        ran and failed is not. With check=True a non-zero rc raises
        CalledProcessError.
        """
        argv = self.cfg.ssh_base_cmd() + [f"sh -c {shlex.quote(cmd)}"]
        attempts = 1 + self.cfg.retries
        attempt = 1
        res = self._exec(argv, capture=capture, timeout=timeout)
        while attempt < attempts and self._looks_transient_ssh(res):
            self.logger.warning(
                "SSH to %s failed (rc=%d, attempt %d/%d); retrying in %.1fs",
                self.cfg.host,
                res.rc,
                attempt,
                attempts,
                self.cfg.retry_sleep,
            )
            time.sleep(self.cfg.retry_sleep)
            attempt += 1
            res = self._exec(argv, capture=capture, timeout=timeout)

        if check:
            self._raise_on_failure(res, "ssh")
        return res

    def scp_from(self, remote: str, local: Path, *, timeout: Optional[int] = None) -> SSHResult:
        """Copy one remote file to `local`. A failed copy is returned, not raised."""
        U.ensure_dir(local.parent)
        argv = self.cfg.scp_base_cmd() + [self.cfg.scp_src(remote), str(local)]
        res = self._exec(argv, capture=True, timeout=timeout)
        if res.ok:
            self.logger.info("Copied %s -> %s", remote, local)
        return res

    def read_text(self, remote: str, *, timeout: int = 30) -> str:
        """
        Contents of a small remote text file (a .vmx or a VMDK descriptor).

        The path travels as $1 of a fixed script, never inside the script
        text. Raises CalledProcessError when the file cannot be read.
        """
        script = f"sh -c {shlex.quote(_CAT_SCRIPT)} -- {shlex.quote(remote)}"
        res = self.run(script, capture=True, timeout=timeout, check=False)
        self._raise_on_failure(res, f"read {remote}")
        return res.stdout
