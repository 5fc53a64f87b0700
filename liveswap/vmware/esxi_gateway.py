# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/vmware/esxi_gateway.py
"""
ESXi implementation of RemoteHostGateway.

Everything runs over SSH using the tools the hypervisor ships:
vim-cmd for VM state and snapshots, vmkfstools for disk clones and
busybox utilities for the filesystem.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from ..core.exceptions import GatewayError, GatewayTimeout, UnsafePathError
from ..ssh.ssh_client import SSHClient, SSHResult
from .gateway import POWERED_OFF, POWERED_ON, RemoteResult, SnapshotSpec
from .vm import DATASTORE_ROOT, VMInfo, parse_getallvms


def is_safe_remote_path(path: str, prefix: str = DATASTORE_ROOT, *, min_depth: int = 2) -> bool:
    """
    True if `path` lies strictly inside `prefix` and at least `min_depth`
    components below it.

    With the default prefix this accepts /vmfs/volumes/<ds>/<dir> but
    rejects a bare datastore root, relative paths and `..` escapes.
    """
    p = (path or "").strip()
    if not p.startswith("/"):
        return False
    norm = posixpath.normpath(p)
    root = posixpath.normpath(prefix)
    if norm == root or not norm.startswith(root.rstrip("/") + "/"):
        return False
    rel = norm[len(root.rstrip("/")) + 1:]
    return len([x for x in rel.split("/") if x]) >= min_depth


class ESXiGateway:
    def __init__(
        self,
        logger: logging.Logger,
        ssh: SSHClient,
        *,
        safe_prefix: str = DATASTORE_ROOT,
        command_timeout: Optional[int] = 300,
        clone_timeout: Optional[int] = None,
        transfer_timeout: Optional[int] = None,
        shutdown_timeout: int = 300,
        poll_interval: float = 5.0,
    ):
        self.logger = logger
        self.ssh = ssh
        self.safe_prefix = safe_prefix
        self.command_timeout = command_timeout
        self.clone_timeout = clone_timeout
        self.transfer_timeout = transfer_timeout
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval

    # ----------------------------
    # transport
    # ----------------------------

    def _ssh(self, command: str, *, timeout: Optional[int] = None) -> SSHResult:
        t = self.command_timeout if timeout is None else timeout
        try:
            return self.ssh.run(command, capture=True, timeout=t, check=False)
        except subprocess.TimeoutExpired as e:
            raise GatewayTimeout(msg=f"remote command timed out after {t}s: {command}", cause=e) from e

    def run_remote(self, command: str) -> RemoteResult:
        res = self._ssh(command)
        if not res.ok:
            self.logger.debug("Remote command failed (rc=%d): %s: %s", res.rc, command, res.stderr.strip())
        return RemoteResult(stdout=res.stdout, stderr=res.stderr, success=res.ok)

    def _guard(self, path: str) -> str:
        if not is_safe_remote_path(path, self.safe_prefix):
            raise UnsafePathError(
                msg=f"refusing to modify {path!r}: not inside {self.safe_prefix}",
                context={"path": path, "prefix": self.safe_prefix},
            )
        return posixpath.normpath(path)

    # ----------------------------
    # filesystem
    # ----------------------------

    def fetch_file(self, remote_path: str, local_path: Path) -> bool:
        try:
            res = self.ssh.scp_from(remote_path, Path(local_path), timeout=self.transfer_timeout)
        except subprocess.TimeoutExpired as e:
            raise GatewayTimeout(msg=f"transfer of {remote_path} timed out", cause=e) from e
        if not res.ok:
            self.logger.error("scp %s failed (rc=%d): %s", remote_path, res.rc, res.stderr.strip())
        return res.ok

    def read_text(self, path: str) -> str:
        try:
            return self.ssh.read_text(path, timeout=self.command_timeout or 30)
        except subprocess.TimeoutExpired as e:
            raise GatewayTimeout(msg=f"reading {path} timed out", cause=e) from e
        except subprocess.CalledProcessError as e:
            raise GatewayError(msg=f"cannot read remote file {path}", cause=e) from e

    def path_exists(self, path: str) -> bool:
        res = self._ssh(f"test -e {shlex.quote(path)}")
        return res.ok

    def make_dir(self, path: str) -> bool:
        safe = self._guard(path)
        return self._ssh(f"mkdir -p {shlex.quote(safe)}").ok

    def remove_path(self, path: str) -> bool:
        safe = self._guard(path)
        res = self._ssh(f"rm -rf {shlex.quote(safe)}")
        if res.ok:
            self.logger.info("Removed remote %s", safe)
        else:
            self.logger.error("Failed to remove remote %s: %s", safe, res.stderr.strip())
        return res.ok

    def clone_disk(self, source_path: str, target_path: str) -> bool:
        target = self._guard(target_path)
        cmd = (
            f"vmkfstools --clonevirtualdisk {shlex.quote(source_path)} "
            f"{shlex.quote(target)} -d thin"
        )
        res = self._ssh(cmd, timeout=self.clone_timeout)
        if not res.ok:
            self.logger.error(
                "vmkfstools clone %s -> %s failed (rc=%d): %s",
                source_path,
                target,
                res.rc,
                (res.stderr or res.stdout).strip(),
            )
        return res.ok

    # ----------------------------
    # VM inventory / state
    # ----------------------------

    def list_vms(self) -> List[VMInfo]:
        res = self._ssh("vim-cmd vmsvc/getallvms")
        if not res.ok:
            raise GatewayError(msg=f"vim-cmd vmsvc/getallvms failed: {res.stderr.strip()}")
        return parse_getallvms(res.stdout)

    def find_vm(self, name_or_id: str) -> Optional[VMInfo]:
        key = (name_or_id or "").strip()
        for vm in self.list_vms():
            if vm.name == key or vm.vmid == key:
                return vm
        return None

    def power_state(self, vm_id: str) -> str:
        res = self._ssh(f"vim-cmd vmsvc/power.getstate {shlex.quote(str(vm_id))}")
        if not res.ok:
            raise GatewayError(msg=f"cannot query power state of VM {vm_id}: {res.stderr.strip()}")
        # "Retrieved runtime info\nPowered on"
        lines = [ln.strip() for ln in res.stdout.splitlines() if ln.strip()]
        return lines[-1] if lines else ""

    def tools_running(self, vm_id: str) -> bool:
        res = self._ssh(f"vim-cmd vmsvc/get.guest {shlex.quote(str(vm_id))}")
        if not res.ok:
            self.logger.debug("get.guest failed for VM %s; assuming tools are not running", vm_id)
            return False
        for line in res.stdout.splitlines():
            if "toolsRunningStatus" in line:
                return "guestToolsRunning" in line
        return False

    def create_snapshot(self, vm_id: str, spec: SnapshotSpec) -> bool:
        cmd = " ".join(
            [
                "vim-cmd vmsvc/snapshot.create",
                shlex.quote(str(vm_id)),
                shlex.quote(spec.name),
                shlex.quote(spec.description or ""),
                "1" if spec.memory else "0",
                "1" if spec.quiesce else "0",
            ]
        )
        res = self._ssh(cmd, timeout=self.clone_timeout)
        if not res.ok:
            self.logger.error("snapshot.create failed for VM %s: %s", vm_id, (res.stderr or res.stdout).strip())
        return res.ok

    def _wait_powered_off(self, vm_id: str, timeout: int) -> bool:
        deadline = time.monotonic() + max(0, timeout)
        while True:
            if self.power_state(vm_id) == POWERED_OFF:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def shutdown(self, vm_id: str, *, graceful: bool = True) -> bool:
        """
        Stop the guest and wait until the host reports it powered off.

        A guest shutdown needs running VMware Tools; if it does not finish
        within shutdown_timeout the VM is powered off hard.
        """
        vid = shlex.quote(str(vm_id))
        if graceful:
            res = self._ssh(f"vim-cmd vmsvc/power.shutdown {vid}")
            if res.ok and self._wait_powered_off(vm_id, self.shutdown_timeout):
                return True
            self.logger.warning("Guest shutdown of VM %s did not complete; powering off", vm_id)

        if self.power_state(vm_id) == POWERED_ON:
            res = self._ssh(f"vim-cmd vmsvc/power.off {vid}")
            if not res.ok:
                self.logger.error("power.off failed for VM %s: %s", vm_id, (res.stderr or res.stdout).strip())
                return False
        return self._wait_powered_off(vm_id, 60)

    def disable_autostart(self, vm_id: str) -> bool:
        """Keep the host from powering the source VM back on after a host restart."""
        res = self._ssh(
            "vim-cmd hostsvc/autostartmanager/update_autostartentry "
            f"{shlex.quote(str(vm_id))} none 0 0 none 0 yes"
        )
        if not res.ok:
            self.logger.error("Disabling autostart of VM %s failed: %s", vm_id, (res.stderr or res.stdout).strip())
        return res.ok
