# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/vmware/vm.py
from __future__ import annotations

import datetime as _dt
import posixpath
import re
from dataclasses import dataclass
from typing import List, Optional

DATASTORE_ROOT = "/vmfs/volumes"

# Vmid   Name    File                        Guest OS        Version   Annotation
# 12     web01   [datastore1] web01/web01.vmx   centos8_64Guest vmx-19    frontend
_RE_GETALLVMS = re.compile(
    r"^(?P<vmid>\d+)\s+(?P<name>.+?)\s+(?P<file>\[[^\]]+\]\s+\S.*?\.vmx)\s+"
    r"(?P<guest_os>\S+)\s+(?P<version>vmx-\d+)\s*(?P<annotation>.*)$"
)
_RE_DS_FILE = re.compile(r"^\[(?P<datastore>[^\]]+)\]\s+(?P<path>.+)$")


def safe_vm_name(name: Optional[str]) -> str:
    """
    Sanitize a VM name for use in local file and directory names.

    >>> safe_vm_name("My VM (test)")
    'My_VM_test_'
    """
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", (name or "vm").strip()) or "vm"


def default_snapshot_name(now: Optional[_dt.datetime] = None) -> str:
    """Name in the style the vSphere client suggests: 'VM Snapshot 3/7/2025, 4:05:09 PM'."""
    now = now or _dt.datetime.now()
    hour = now.hour % 12 or 12
    ampm = "AM" if now.hour < 12 else "PM"
    return f"VM Snapshot {now.month}/{now.day}/{now.year}, {hour}:{now.minute:02d}:{now.second:02d} {ampm}"


@dataclass(frozen=True)
class VMInfo:
    """One row of `vim-cmd vmsvc/getallvms`."""
    vmid: str
    name: str
    file: str
    guest_os: str = ""
    version: str = ""
    annotation: str = ""

    def _split_file(self):
        m = _RE_DS_FILE.match(self.file.strip())
        if not m:
            raise ValueError(f"unrecognized datastore path: {self.file!r}")
        return m.group("datastore"), m.group("path").strip()

    @property
    def datastore(self) -> str:
        return self._split_file()[0]

    @property
    def datastore_root(self) -> str:
        return posixpath.join(DATASTORE_ROOT, self.datastore)

    @property
    def vmx_path(self) -> str:
        return posixpath.normpath(posixpath.join(self.datastore_root, self._split_file()[1]))

    @property
    def datastore_path(self) -> str:
        """Directory holding the VM's .vmx and disks."""
        return posixpath.dirname(self.vmx_path)


def parse_getallvms(output: str) -> List[VMInfo]:
    vms: List[VMInfo] = []
    for raw in (output or "").splitlines():
        m = _RE_GETALLVMS.match(raw.strip())
        if not m:
            continue
        vms.append(
            VMInfo(
                vmid=m.group("vmid"),
                name=m.group("name").strip(),
                file=m.group("file").strip(),
                guest_os=m.group("guest_os"),
                version=m.group("version"),
                annotation=m.group("annotation").strip(),
            )
        )
    return vms
