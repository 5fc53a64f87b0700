# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/orchestrator/session.py
from __future__ import annotations

import posixpath
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.utils import U
from ..vmware.vm import VMInfo, safe_vm_name

DiskChain = Tuple[str, ...]


def unique_stems(names: Sequence[str]) -> List[str]:
    """
    File stems of remote disk names, in order. Stems shared by disks from
    different directories get a -N suffix so local files cannot collide.
    """
    stems = [posixpath.splitext(posixpath.basename(n))[0] for n in names]
    counts = Counter(stems)
    taken = {s for s in stems if counts[s] == 1}
    out: List[str] = []
    for stem in stems:
        if counts[stem] == 1:
            out.append(stem)
            continue
        n = 1
        while f"{stem}-{n}" in taken:
            n += 1
        taken.add(f"{stem}-{n}")
        out.append(f"{stem}-{n}")
    return out


class Phase(str, Enum):
    PRECHECK = "precheck"
    SNAPSHOTTING = "snapshotting"
    STAGING_SETUP = "staging_setup"
    BASE_DISK_CLONE = "base_disk_clone"
    BASE_DISK_TRANSFER = "base_disk_transfer"
    CUTOVER = "cutover"
    DELTA_APPLY = "delta_apply"
    OS_ADAPT = "os_adapt"
    FINALIZE = "finalize"

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass
class MigrationSession:
    """
    Mutable state of one migration attempt, passed to every phase.

    Remote paths are POSIX strings on the ESXi host; local paths are Path.
    """
    vm: VMInfo
    staging_dir: str
    transfer_dir: Path
    output_dir: Path
    target_format: str = "qcow2"

    phase: Optional[Phase] = None
    completed: List[Phase] = field(default_factory=list)

    active_disks: List[str] = field(default_factory=list)
    base_chains: Dict[str, DiskChain] = field(default_factory=dict)
    chains: Dict[str, DiskChain] = field(default_factory=dict)

    # keyed by post-snapshot active disk (the redo log that carries the delta)
    clones: Dict[str, str] = field(default_factory=dict)
    # raw images the deltas are applied to
    bases: Dict[str, Path] = field(default_factory=dict)
    converted: Dict[str, Path] = field(default_factory=dict)

    tools_running: bool = False
    cutover_started: Optional[float] = None
    delta_completed: Optional[float] = None
    os_disk: Optional[Path] = None
    result_path: Optional[Path] = None

    @classmethod
    def create(
        cls,
        vm: VMInfo,
        *,
        work_dir: Path,
        output_dir: Path,
        target_format: str = "qcow2",
        staging_dirname: str = ".liveswap-staging",
    ) -> "MigrationSession":
        return cls(
            vm=vm,
            staging_dir=posixpath.join(vm.datastore_path, staging_dirname),
            transfer_dir=Path(work_dir) / f"{safe_vm_name(vm.name)}-{vm.vmid}-transfer",
            output_dir=Path(output_dir),
            target_format=target_format,
        )

    @property
    def vm_dir(self) -> str:
        return self.vm.datastore_path

    @property
    def base_dir(self) -> Path:
        return self.transfer_dir / "base"

    @property
    def delta_dir(self) -> Path:
        return self.transfer_dir / "delta"

    @property
    def raw_dir(self) -> Path:
        return self.transfer_dir / "raw"

    @property
    def converted_dir(self) -> Path:
        return self.transfer_dir / "converted"

    def remote_path(self, name: str) -> str:
        if name.startswith("/"):
            return posixpath.normpath(name)
        return posixpath.join(self.vm_dir, name)

    def enter(self, phase: Phase) -> None:
        self.phase = phase

    def complete(self, phase: Phase) -> None:
        if phase not in self.completed:
            self.completed.append(phase)

    @property
    def downtime_seconds(self) -> Optional[float]:
        if self.cutover_started is None or self.delta_completed is None:
            return None
        return max(0.0, self.delta_completed - self.cutover_started)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm": {"id": self.vm.vmid, "name": self.vm.name, "dir": self.vm_dir},
            "staging_dir": self.staging_dir,
            "transfer_dir": str(self.transfer_dir),
            "output_dir": str(self.output_dir),
            "target_format": self.target_format,
            "phase": self.phase.value if self.phase else None,
            "completed": [p.value for p in self.completed],
            "base_chains": {k: list(v) for k, v in self.base_chains.items()},
            "chains": {k: list(v) for k, v in self.chains.items()},
            "bases": {k: str(v) for k, v in self.bases.items()},
            "converted": {k: str(v) for k, v in self.converted.items()},
            "os_disk": str(self.os_disk) if self.os_disk else None,
            "result_path": str(self.result_path) if self.result_path else None,
            "downtime_seconds": self.downtime_seconds,
        }


@dataclass(frozen=True)
class MigrationResult:
    result_path: Path
    downtime_seconds: float
    disks: List[Path]
    os_disk: Optional[Path] = None
    phases: List[str] = field(default_factory=list)

    @property
    def downtime(self) -> str:
        return U.format_duration(self.downtime_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_path": str(self.result_path),
            "downtime_seconds": self.downtime_seconds,
            "downtime": self.downtime,
            "disks": [str(d) for d in self.disks],
            "os_disk": str(self.os_disk) if self.os_disk else None,
            "phases": list(self.phases),
        }
