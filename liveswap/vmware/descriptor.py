# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/vmware/descriptor.py
"""
Parser for VMware key = "value" descriptor files.

The same format is used by .vmx VM configuration files and by text VMDK
disk descriptors. Parsing is permissive: lines that are not quoted
key/value directives (VMDK extent lines, `version=1`, unknown directives)
are skipped without error.

Example:

    # Disk DescriptorFile
    parentFileNameHint="web01.vmdk"
    RW 41943040 SESPARSE "web01-000001-sesparse.vmdk"
    ddb.adapterType = "lsilogic"

parses to {"parentFileNameHint": "web01.vmdk", "ddb.adapterType": "lsilogic"}.
A key that appears more than once maps to a tuple of its values in file order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

DescriptorValue = Union[str, Tuple[str, ...]]
Descriptor = Mapping[str, DescriptorValue]

PARENT_KEY = "parentFileNameHint"

_RE_DIRECTIVE = re.compile(r'^(?P<key>[^\s=]+)\s*=\s*"(?P<value>[^"]*)"')

# scsi0:0.fileName = "web01-000001.vmdk"
_RE_DISK_KEY = re.compile(r"^(scsi|ide|sata)\d+:\d+\.fileName$")

# RW 41943040 SESPARSE "web01-000001-sesparse.vmdk"
_RE_EXTENT = re.compile(
    r'^(?P<access>RW|RDONLY|NOACCESS)\s+(?P<sectors>\d+)\s+(?P<kind>[A-Z]+)\s+"(?P<file>[^"]+)"'
)


def _is_comment(line: str) -> bool:
    return line.startswith("#") or line.startswith("//")


def parse_descriptor(text: str) -> Descriptor:
    """
    Parse descriptor text into a read-only mapping.

    Pure: the same text always yields an equal mapping.
    """
    out: Dict[str, DescriptorValue] = {}
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line or _is_comment(line):
            continue

        m = _RE_DIRECTIVE.match(line)
        if not m:
            continue

        key, value = m.group("key"), m.group("value")
        prev = out.get(key)
        if prev is None:
            out[key] = value
        elif isinstance(prev, tuple):
            out[key] = prev + (value,)
        else:
            out[key] = (prev, value)

    return MappingProxyType(out)


def parse_descriptor_file(path: Path) -> Descriptor:
    return parse_descriptor(Path(path).read_text(encoding="utf-8", errors="replace"))


def as_list(value: Optional[DescriptorValue]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, tuple):
        return list(value)
    return [value]


def active_disks(vmx: Descriptor) -> List[str]:
    """
    Disk image files attached to controllers, in order of first appearance,
    de-duplicated across controllers. CD-ROM backings are skipped.
    """
    disks: List[str] = []
    seen = set()
    for key, value in vmx.items():
        if not _RE_DISK_KEY.match(key):
            continue
        device_type = as_list(vmx.get(key[: -len("fileName")] + "deviceType"))
        if any("cdrom" in t.lower() for t in device_type):
            continue
        for name in as_list(value):
            if name and name not in seen:
                seen.add(name)
                disks.append(name)
    return disks


def parent_of(disk: Descriptor) -> Optional[str]:
    """Immediate parent disk file, or None for a base disk."""
    values = as_list(disk.get(PARENT_KEY))
    if not values or not values[0].strip():
        return None
    return values[0]


@dataclass(frozen=True)
class Extent:
    access: str
    sectors: int
    kind: str
    filename: str

    @property
    def size_bytes(self) -> int:
        return self.sectors * 512


def extents(text: str) -> List[Extent]:
    """Extent lines of a VMDK descriptor (the data files backing the disk)."""
    out: List[Extent] = []
    for raw in (text or "").splitlines():
        m = _RE_EXTENT.match(raw.strip())
        if m:
            out.append(
                Extent(
                    access=m.group("access"),
                    sectors=int(m.group("sectors")),
                    kind=m.group("kind"),
                    filename=m.group("file"),
                )
            )
    return out


_DATA_SUFFIXES = ("-flat", "-sesparse", "-delta", "-ctk")


def is_data_sidecar(filename: str) -> bool:
    """
    True for data-only files that accompany a descriptor-format image
    (web01-flat.vmdk, web01-000001-sesparse.vmdk, ...).
    """
    stem = Path(filename).stem
    return any(stem.endswith(sfx) for sfx in _DATA_SUFFIXES)


def default_delta_file(descriptor_name: str) -> str:
    """Naming convention for a snapshot's sparse data file when no extent line is found."""
    stem = Path(descriptor_name).stem
    return f"{stem}-sesparse.vmdk"
