# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/orchestrator/chain_resolver.py
"""
Snapshot chain resolution.

Each attached disk is walked from its active leaf down to its base by
following parentFileNameHint, one descriptor fetch per hop:

    web01-000002.vmdk -> web01-000001.vmdk -> web01.vmdk

The walk is an explicit loop with a visited set, so corrupt metadata
(a disk that names itself or a descendant as parent) fails with
CycleDetected instead of looping.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Dict, List, Optional, Sequence

from ..core.exceptions import CycleDetected
from ..core.logger import Log
from ..vmware.descriptor import parent_of, parse_descriptor
from ..vmware.gateway import RemoteHostGateway
from .session import DiskChain
from .workers import run_per_disk

# VMDK redo logs nest at most 255 deep
MAX_CHAIN_DEPTH = 255


class DiskChainResolver:
    def __init__(
        self,
        logger: logging.Logger,
        gateway: RemoteHostGateway,
        vm_dir: str,
        *,
        parallel: bool = True,
        max_workers: Optional[int] = None,
        max_depth: int = MAX_CHAIN_DEPTH,
    ):
        self.logger = logger
        self.gateway = gateway
        self.vm_dir = posixpath.normpath(vm_dir)
        self.parallel = parallel
        self.max_workers = max_workers
        self.max_depth = max_depth

    def _remote(self, name: str) -> str:
        if name.startswith("/"):
            return posixpath.normpath(name)
        return posixpath.normpath(posixpath.join(self.vm_dir, name))

    def _normalize(self, name: Optional[str]) -> Optional[str]:
        """Disks under the VM directory are named relative to it, all others by absolute path."""
        if name is None:
            return None
        norm = self._remote(name)
        if norm.startswith(self.vm_dir + "/"):
            return norm[len(self.vm_dir) + 1:]
        return norm

    def parent(self, disk: str) -> Optional[str]:
        """
        Parent of disk, or None for a base disk.

        A relative parentFileNameHint is relative to the directory of the
        descriptor that carries it, which is not always the VM directory.
        """
        remote = self._remote(disk)
        hint = parent_of(parse_descriptor(self.gateway.read_text(remote)))
        if hint is None:
            return None
        if not hint.startswith("/"):
            hint = posixpath.join(posixpath.dirname(remote), hint)
        return self._normalize(hint)

    def chain(self, disk: str) -> DiskChain:
        head = self._normalize(disk)
        assert head is not None
        chain: List[str] = []
        seen = set()
        name: Optional[str] = head
        while name is not None:
            if name in seen:
                raise CycleDetected(
                    msg=f"disk chain of {head} loops back to {name} after {len(chain)} hop(s)",
                    disk=name,
                )
            if len(chain) >= self.max_depth:
                raise CycleDetected(
                    msg=f"disk chain of {head} exceeds {self.max_depth} levels",
                    disk=head,
                )
            seen.add(name)
            chain.append(name)
            name = self.parent(name)

        Log.trace(self.logger, "🔗 %s", " -> ".join(chain))
        return tuple(chain)

    def resolve(self, disks: Sequence[str]) -> Dict[str, DiskChain]:
        """
        Chains for every distinct disk, keyed by disk, in input order.
        """
        unique: List[str] = []
        for d in disks:
            if d not in unique:
                unique.append(d)
        if not unique:
            return {}

        chains = run_per_disk(
            self.logger,
            unique,
            self.chain,
            parallel=self.parallel,
            max_workers=self.max_workers,
            label="chain",
        )
        out = dict(zip(unique, chains))
        for d, ch in out.items():
            self.logger.debug("Chain for %s: %d level(s)", d, len(ch))
        return out
