# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/orchestrator/live_migration.py
"""
Live storage migration of one ESXi VM to local KVM disk images.

The VM keeps running while its disks are cloned, transferred and
converted. Only the redo log written since the migration snapshot is
moved during downtime:

    Precheck -> Snapshotting -> StagingSetup -> BaseDiskClone
      -> BaseDiskTransfer -> Cutover (VM off, downtime starts)
      -> DeltaApply (downtime ends) -> OSAdapt -> Finalize

From StagingSetup on every failure removes the remote staging directory
and then the local transfer directory before the error propagates. The VM
is never powered back on automatically.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Type

from ..cli.config import MigrationConfig
from ..converters.disk_tool import DiskConversionTool
from ..core.exceptions import (
    AdaptFailed,
    CloneFailed,
    ConvertFailed,
    DeltaApplyFailed,
    GatewayError,
    MigrationError,
    PrecheckFailed,
    ShutdownFailed,
    SnapshotFailed,
    StagingFailed,
)
from ..core.logger import Log
from ..core.rollback import Rollback
from ..core.utils import U
from ..vmware.descriptor import (
    active_disks,
    default_delta_file,
    extents,
    is_data_sidecar,
    parse_descriptor,
)
from ..vmware.esxi_gateway import is_safe_remote_path
from ..vmware.gateway import POWERED_ON, RemoteHostGateway, SnapshotSpec
from ..vmware.vm import VMInfo, default_snapshot_name, safe_vm_name
from .chain_resolver import DiskChainResolver
from .session import MigrationResult, MigrationSession, Phase, unique_stems
from .workers import run_per_disk

_PHASE_ERRORS: Dict[Phase, Type[MigrationError]] = {
    Phase.PRECHECK: PrecheckFailed,
    Phase.SNAPSHOTTING: SnapshotFailed,
    Phase.STAGING_SETUP: StagingFailed,
    Phase.BASE_DISK_CLONE: CloneFailed,
    Phase.BASE_DISK_TRANSFER: ConvertFailed,
    Phase.CUTOVER: ShutdownFailed,
    Phase.DELTA_APPLY: DeltaApplyFailed,
    Phase.OS_ADAPT: AdaptFailed,
    Phase.FINALIZE: MigrationError,
}


class LiveMigration:
    def __init__(
        self,
        logger: logging.Logger,
        gateway: RemoteHostGateway,
        disk_tool: DiskConversionTool,
        config: MigrationConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.gateway = gateway
        self.disk_tool = disk_tool
        self.config = config
        self.clock = clock
        self.session: Optional[MigrationSession] = None

    # ----------------------------
    # plumbing
    # ----------------------------

    def _phases(self) -> List[Phase]:
        phases = list(Phase)
        if not self.config.adapt_os:
            phases.remove(Phase.OS_ADAPT)
        return phases

    @contextmanager
    def _phase(self, session: MigrationSession, phase: Phase) -> Iterator[None]:
        phases = self._phases()
        session.enter(phase)
        U.banner(self.logger, f"Phase {phases.index(phase) + 1}/{len(phases)}: {phase.title}")
        t0 = self.clock()
        try:
            yield
        except MigrationError as e:
            if e.phase is None:
                e.phase = phase.value
            Log.fail(self.logger, e.user_message())
            self.logger.debug("Session state: %s", U.json_dump(session.to_dict()))
            raise
        except (GatewayError, OSError, subprocess.SubprocessError) as e:
            err = _PHASE_ERRORS[phase](msg=str(e) or type(e).__name__, cause=e, phase=phase.value)
            Log.fail(self.logger, err.user_message())
            self.logger.debug("Session state: %s", U.json_dump(session.to_dict()))
            raise err from e
        else:
            session.complete(phase)
            Log.ok(self.logger, f"{phase.title} done in {U.format_duration(self.clock() - t0)}")

    def _resolver(self, session: MigrationSession) -> DiskChainResolver:
        return DiskChainResolver(
            self.logger,
            self.gateway,
            session.vm_dir,
            parallel=self.config.parallel_disks,
            max_workers=self.config.max_workers,
        )

    def _for_each_disk(self, items, fn, label: str):
        return run_per_disk(
            self.logger,
            items,
            fn,
            parallel=self.config.parallel_disks,
            max_workers=self.config.max_workers,
            label=label,
        )

    def _read_active_disks(self, session: MigrationSession) -> List[str]:
        vmx = parse_descriptor(self.gateway.read_text(session.vm.vmx_path))
        return active_disks(vmx)

    def _remove_remote(self, path: str) -> None:
        if self.gateway.path_exists(path):
            if not self.gateway.remove_path(path):
                raise GatewayError(msg=f"could not remove remote {path}")

    def _remove_local(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)
            self.logger.info("Removed local %s", path)

    def snapshot_spec(self, tools_running: bool) -> SnapshotSpec:
        """Guest memory is captured when VMware Tools works, otherwise the filesystems are quiesced."""
        return SnapshotSpec(
            name=self.config.snapshot_name or default_snapshot_name(),
            description=self.config.snapshot_description or "",
            memory=tools_running,
            quiesce=not tools_running,
        )

    # ----------------------------
    # phases
    # ----------------------------

    def precheck(self, session: MigrationSession) -> None:
        vm = session.vm
        state = self.gateway.power_state(vm.vmid)
        if state != POWERED_ON:
            raise PrecheckFailed(msg=f"VM {vm.name} is not running (state: {state or 'unknown'})")

        missing = self.disk_tool.missing_tools(adapt=self.config.adapt_os)
        if missing:
            raise PrecheckFailed(msg=f"missing local tool(s): {', '.join(missing)}")

        if not is_safe_remote_path(session.staging_dir) or posixpath.dirname(session.staging_dir) != session.vm_dir:
            raise PrecheckFailed(msg=f"staging directory {session.staging_dir} is not inside {session.vm_dir}")

        disks = self._read_active_disks(session)
        if not disks:
            raise PrecheckFailed(msg=f"VM {vm.name} has no attached disks")
        session.base_chains = self._resolver(session).resolve(disks)
        session.tools_running = self.gateway.tools_running(vm.vmid)

        self.logger.info(
            "VM %s: %d disk(s), VMware Tools %s",
            vm.name,
            len(disks),
            "running" if session.tools_running else "not running",
        )

    def snapshot(self, session: MigrationSession) -> None:
        spec = self.snapshot_spec(session.tools_running)
        Log.step(self.logger, f"Creating snapshot {spec.name!r} (memory={spec.memory}, quiesce={spec.quiesce})")
        if not self.gateway.create_snapshot(session.vm.vmid, spec):
            raise SnapshotFailed(msg=f"snapshot {spec.name!r} of VM {session.vm.name} failed")

    def staging_setup(self, session: MigrationSession, rollback: Rollback) -> None:
        # LIFO: remote staging is removed before the local transfer dir
        rollback.on_rollback("remove local transfer dir", self._remove_local, session.transfer_dir)
        rollback.on_rollback("remove remote staging dir", self._remove_remote, session.staging_dir)

        if self.gateway.path_exists(session.staging_dir):
            Log.warn(self.logger, f"Removing stale staging directory {session.staging_dir}")
            if not self.gateway.remove_path(session.staging_dir):
                raise StagingFailed(msg=f"stale staging directory {session.staging_dir} could not be removed")
        if not self.gateway.make_dir(session.staging_dir):
            raise StagingFailed(msg=f"cannot create staging directory {session.staging_dir}")

        if session.transfer_dir.exists():
            Log.warn(self.logger, f"Removing stale transfer directory {session.transfer_dir}")
            shutil.rmtree(session.transfer_dir)
        for d in (session.base_dir, session.raw_dir, session.delta_dir, session.converted_dir):
            U.ensure_dir(d)

    def base_disk_clone(self, session: MigrationSession) -> None:
        disks = self._read_active_disks(session)
        session.chains = self._resolver(session).resolve(disks)
        session.active_disks = disks
        attached = {chain[0] for chain in session.base_chains.values()}

        def _check(disk: str) -> str:
            chain = session.chains[disk]
            if len(chain) < 2:
                raise CloneFailed(msg=f"{disk} has no parent after the snapshot", disk=disk)
            parent = chain[1]
            if attached and parent not in attached:
                raise CloneFailed(
                    msg=f"parent {parent} of {disk} was not an attached disk before the snapshot",
                    disk=disk,
                )
            return parent

        parents = [_check(d) for d in disks]
        targets = {
            d: posixpath.join(session.staging_dir, f"{stem}.vmdk")
            for d, stem in zip(disks, unique_stems(parents))
        }

        def _clone(item) -> str:
            disk, parent = item
            target = targets[disk]
            Log.step(self.logger, f"Cloning {parent} -> {target}", disk=disk)
            try:
                ok = self.gateway.clone_disk(session.remote_path(parent), target)
            except GatewayError as e:
                raise CloneFailed(msg=f"clone of {parent} failed: {e}", disk=disk, cause=e) from e
            if not ok:
                raise CloneFailed(msg=f"clone of {parent} failed", disk=disk)
            return target

        clones = self._for_each_disk(list(zip(disks, parents)), _clone, "clone")
        session.clones = dict(zip(disks, clones))

    def _fetch(self, remote: str, local: Path) -> bool:
        try:
            return self.gateway.fetch_file(remote, local)
        except GatewayError as e:
            self.logger.error("Transfer of %s failed: %s", remote, e)
            return False

    def base_disk_transfer(self, session: MigrationSession) -> None:
        """
        Pull every clone and convert it to a raw image in raw_dir.

        Deltas are applied to raw images only; a qcow2 target is produced
        from the patched raw image during DeltaApply.
        """
        transfer = Phase.BASE_DISK_TRANSFER.value

        def _pull(disk: str) -> List[Path]:
            clone = session.clones[disk]
            try:
                text = self.gateway.read_text(clone)
            except GatewayError as e:
                raise CloneFailed(msg=f"cannot read cloned descriptor {clone}", disk=disk, cause=e, phase=transfer) from e
            names = [posixpath.basename(clone)] + [x.filename for x in extents(text)]
            local: List[Path] = []
            for name in names:
                dst = session.base_dir / name
                if not self._fetch(posixpath.join(session.staging_dir, name), dst):
                    raise CloneFailed(msg=f"transfer of {name} failed", disk=disk, phase=transfer)
                local.append(dst)
            return local

        pulled = self._for_each_disk(session.active_disks, _pull, "pull")
        stems = dict(zip(session.active_disks, unique_stems([session.chains[d][-1] for d in session.active_disks])))

        def _convert(item) -> Path:
            disk, files = item
            sources = [p for p in files if not is_data_sidecar(p.name)]
            if not sources:
                raise ConvertFailed(msg=f"no descriptor among {[p.name for p in files]}", disk=disk)
            target = session.raw_dir / f"{stems[disk]}.raw"
            if not self.disk_tool.convert(sources[0], target, "raw"):
                raise ConvertFailed(msg=f"conversion of {sources[0].name} failed", disk=disk)
            for p in files:
                p.unlink(missing_ok=True)
            return target

        bases = self._for_each_disk(list(zip(session.active_disks, pulled)), _convert, "convert")
        session.bases = dict(zip(session.active_disks, bases))

    def cutover(self, session: MigrationSession) -> None:
        vm = session.vm
        session.cutover_started = self.clock()
        try:
            if not self.gateway.disable_autostart(vm.vmid):
                Log.warn(self.logger, f"Could not disable autostart of {vm.name}")
        except GatewayError as e:
            Log.warn(self.logger, f"Could not disable autostart of {vm.name}: {e}")

        Log.step(self.logger, f"Shutting down {vm.name}; downtime starts")
        try:
            ok = self.gateway.shutdown(vm.vmid, graceful=session.tools_running)
        except GatewayError as e:
            raise ShutdownFailed(msg=f"shutdown of VM {vm.name} failed: {e}", cause=e) from e
        if not ok:
            raise ShutdownFailed(msg=f"VM {vm.name} did not power off")

    def delta_apply(self, session: MigrationSession) -> None:
        local_dirs = dict(zip(session.active_disks, unique_stems(session.active_disks)))

        def _apply(disk: str) -> Path:
            base = session.bases.get(disk)
            if base is None:
                raise DeltaApplyFailed(msg=f"no raw base disk for {disk}", disk=disk)
            remote = session.remote_path(disk)
            try:
                text = self.gateway.read_text(remote)
            except GatewayError as e:
                raise DeltaApplyFailed(msg=f"cannot read delta descriptor {disk}", disk=disk, cause=e) from e

            # extents are named relative to the descriptor that lists them
            remote_dir = posixpath.dirname(remote)
            local_dir = session.delta_dir / local_dirs[disk]
            sparse = [x.filename for x in extents(text)] or [default_delta_file(posixpath.basename(disk))]
            for name in [posixpath.basename(disk)] + sparse:
                if not self._fetch(posixpath.join(remote_dir, name), local_dir / posixpath.basename(name)):
                    raise DeltaApplyFailed(msg=f"transfer of {name} failed", disk=disk)

            delta = local_dir / posixpath.basename(sparse[0])
            if not self.disk_tool.apply_delta(delta, base):
                raise DeltaApplyFailed(msg=f"applying {delta.name} onto {base.name} failed", disk=disk)

            target = session.converted_dir / f"{base.stem}.{session.target_format}"
            if session.target_format == "raw":
                os.replace(base, target)
                return target
            if not self.disk_tool.convert(base, target, session.target_format, source_format="raw"):
                raise DeltaApplyFailed(msg=f"conversion of {base.name} to {session.target_format} failed", disk=disk)
            base.unlink(missing_ok=True)
            return target

        converted = self._for_each_disk(session.active_disks, _apply, "delta")
        session.converted = dict(zip(session.active_disks, converted))
        session.delta_completed = self.clock()
        Log.ok(self.logger, f"All deltas applied; downtime so far {U.format_duration(session.downtime_seconds or 0)}")

    def os_adapt(self, session: MigrationSession) -> None:
        candidates = [session.converted[d] for d in session.active_disks]
        for i, disk in enumerate(candidates):
            if self.disk_tool.adapt_os(disk):
                session.os_disk = disk
                Log.ok(self.logger, f"Guest OS adapted on {disk.name}")
                return
            if i == len(candidates) - 1:
                raise AdaptFailed(msg=f"guest OS adaptation failed on all {len(candidates)} disk(s)", disk=disk.name)
            Log.warn(self.logger, f"Adaptation failed on {disk.name}; trying next disk")

    def finalize(self, session: MigrationSession, rollback: Rollback) -> None:
        U.ensure_dir(session.output_dir)
        result = session.output_dir / f"{safe_vm_name(session.vm.name)}-{U.now_ts()}"
        if result.exists():
            raise MigrationError(msg=f"result directory {result} already exists", phase=Phase.FINALIZE.value)

        shutil.move(str(session.converted_dir), str(result))
        session.result_path = result
        session.converted = {d: result / p.name for d, p in session.converted.items()}
        if session.os_disk is not None:
            session.os_disk = result / session.os_disk.name
        rollback.checkpoint()

        for name, fn, arg in (
            ("remote staging dir", self._remove_remote, session.staging_dir),
            ("local transfer dir", self._remove_local, session.transfer_dir),
        ):
            try:
                fn(arg)
            except (GatewayError, OSError) as e:
                Log.warn(self.logger, f"Could not remove {name} {arg}: {e}")

    # ----------------------------
    # entry point
    # ----------------------------

    def run(self, vm: VMInfo) -> MigrationResult:
        session = MigrationSession.create(
            vm,
            work_dir=self.config.work_dir,
            output_dir=self.config.output_dir,
            target_format=self.config.target_format,
            staging_dirname=self.config.staging_dirname,
        )
        self.session = session
        Log.step(self.logger, f"Live migration of {vm.name} (id {vm.vmid}) from {vm.datastore_path}")

        with self._phase(session, Phase.PRECHECK):
            self.precheck(session)
        with self._phase(session, Phase.SNAPSHOTTING):
            self.snapshot(session)

        with Rollback(self.logger) as rollback:
            with self._phase(session, Phase.STAGING_SETUP):
                self.staging_setup(session, rollback)
            with self._phase(session, Phase.BASE_DISK_CLONE):
                self.base_disk_clone(session)
            with self._phase(session, Phase.BASE_DISK_TRANSFER):
                self.base_disk_transfer(session)
            with self._phase(session, Phase.CUTOVER):
                self.cutover(session)
            with self._phase(session, Phase.DELTA_APPLY):
                self.delta_apply(session)
            if self.config.adapt_os:
                with self._phase(session, Phase.OS_ADAPT):
                    self.os_adapt(session)
            with self._phase(session, Phase.FINALIZE):
                self.finalize(session, rollback)

        assert session.result_path is not None
        result = MigrationResult(
            result_path=session.result_path,
            downtime_seconds=session.downtime_seconds or 0.0,
            disks=[session.converted[d] for d in session.active_disks],
            os_disk=session.os_disk,
            phases=[p.value for p in session.completed],
        )
        Log.ok(self.logger, f"Migration complete: {result.result_path} (downtime {result.downtime})")
        return result
