# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/vmware/gateway.py
"""
Interface the migration engine uses to reach the source host.

The engine only talks to the source through this protocol so tests (and
other transports) can stand in for the SSH-based ESXi implementation.
Implementations may raise GatewayError/GatewayTimeout; the engine treats
those exactly like a False result.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

POWERED_ON = "Powered on"
POWERED_OFF = "Powered off"


@dataclass(frozen=True)
class RemoteResult:
    stdout: str
    stderr: str
    success: bool


@dataclass(frozen=True)
class SnapshotSpec:
    name: str
    description: str = ""
    memory: bool = False
    quiesce: bool = False


@runtime_checkable
class RemoteHostGateway(Protocol):
    def run_remote(self, command: str) -> RemoteResult: ...

    def fetch_file(self, remote_path: str, local_path: Path) -> bool: ...

    def clone_disk(self, source_path: str, target_path: str) -> bool: ...

    def remove_path(self, path: str) -> bool: ...

    def make_dir(self, path: str) -> bool: ...

    def path_exists(self, path: str) -> bool: ...

    def read_text(self, path: str) -> str: ...

    def power_state(self, vm_id: str) -> str: ...

    def tools_running(self, vm_id: str) -> bool: ...

    def create_snapshot(self, vm_id: str, spec: SnapshotSpec) -> bool: ...

    def shutdown(self, vm_id: str, *, graceful: bool = True) -> bool: ...

    def disable_autostart(self, vm_id: str) -> bool: ...
