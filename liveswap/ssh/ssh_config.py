# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/ssh/ssh_config.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


def _bracket_v6(host: str) -> str:
    # scp and user@host targets need [addr] for IPv6 literals
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


@dataclass(frozen=True)
class SSHConfig:
    """
    How to reach the ESXi source host with the OpenSSH client binaries.

    ESXi offers key-based root login and nothing interactive, so every
    invocation runs with BatchMode. Host keys are checked strictly against
    `known_hosts` when one is configured; without it the host key is not
    verified and nothing is recorded.
    """
    host: str
    user: str = "root"
    port: int = 22
    identity: Optional[Path] = None
    known_hosts: Optional[Path] = None
    ssh_opts: List[str] = field(default_factory=list)

    connect_timeout: int = 10
    keepalive_interval: int = 30

    # retried only for transport failures (ssh rc 255), never for remote commands
    retries: int = 0
    retry_sleep: float = 1.0

    # one descriptor fetch per chain hop, so connections are shared
    control_master: bool = False
    control_path: Optional[Path] = None

    def __post_init__(self) -> None:
        for name in ("host", "user"):
            value = (getattr(self, name) or "").strip()
            if not value:
                raise ValueError(f"SSH {name} must not be empty")
            object.__setattr__(self, name, value)

        if not 0 < self.port <= 65535:
            raise ValueError(f"Invalid SSH port: {self.port}")
        for name in ("connect_timeout", "keepalive_interval", "retries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0 (got {getattr(self, name)})")

        for name in ("identity", "known_hosts"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, Path(value).expanduser())

        opts: List[str] = []
        for opt in self.ssh_opts:
            flat = " ".join(str(opt).split())
            if flat and flat not in opts:
                opts.append(flat)
        object.__setattr__(self, "ssh_opts", opts)

    def target(self) -> str:
        return f"{self.user}@{_bracket_v6(self.host)}"

    def _options(self) -> List[str]:
        opts = [
            "BatchMode=yes",
            f"ConnectTimeout={self.connect_timeout}",
            f"ServerAliveInterval={self.keepalive_interval}",
        ]
        if self.known_hosts is not None:
            opts += ["StrictHostKeyChecking=yes", f"UserKnownHostsFile={self.known_hosts}"]
        else:
            opts += ["StrictHostKeyChecking=no", "UserKnownHostsFile=/dev/null"]
        if self.control_master:
            # %C hashes host, port and user, keeping the socket path short
            opts += ["ControlMaster=auto", "ControlPersist=60s", f"ControlPath={self.control_path or '~/.ssh/cm-%C'}"]
        opts += self.ssh_opts

        argv: List[str] = []
        for opt in opts:
            argv += ["-o", opt]
        if self.identity is not None:
            argv += ["-i", str(self.identity)]
        return argv

    def ssh_base_cmd(self) -> List[str]:
        return ["ssh", "-p", str(self.port)] + self._options() + [self.target()]

    def scp_base_cmd(self) -> List[str]:
        # -p keeps modification times of the copied disk files
        return ["scp", "-P", str(self.port), "-p"] + self._options()

    def scp_src(self, remote_path: str) -> str:
        return f"{self.target()}:{remote_path}"
