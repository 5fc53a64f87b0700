# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/vmware/__init__.py
"""ESXi host access and VMware descriptor handling."""

from .esxi_gateway import ESXiGateway
from .gateway import RemoteHostGateway, RemoteResult, SnapshotSpec
from .vm import VMInfo

__all__ = ["ESXiGateway", "RemoteHostGateway", "RemoteResult", "SnapshotSpec", "VMInfo"]
