# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/__init__.py
"""
liveswap - live storage migration from VMware ESXi to KVM

The VM keeps running while its disks are cloned on the ESXi host, copied
and converted locally. Downtime covers only the shutdown and the transfer
of the changes written after the migration snapshot.

Usage as a library:

    from liveswap import DiskTool, ESXiGateway, LiveMigration, SSHClient, SSHConfig

    gateway = ESXiGateway(logger, SSHClient(logger, SSHConfig(host="esxi01")))
    vm = gateway.find_vm("web01")
    result = LiveMigration(logger, gateway, DiskTool(logger), config).run(vm)
    print(result.result_path, result.downtime)
"""

__version__ = "0.1.0"

from .cli.config import MigrationConfig
from .converters import DiskConversionTool, DiskTool
from .orchestrator import DiskChainResolver, LiveMigration, MigrationResult, MigrationSession, Phase
from .ssh import SSHClient, SSHConfig
from .vmware import ESXiGateway, RemoteHostGateway, VMInfo

__all__ = [
    "__version__",
    "MigrationConfig",
    "DiskConversionTool",
    "DiskTool",
    "DiskChainResolver",
    "LiveMigration",
    "MigrationResult",
    "MigrationSession",
    "Phase",
    "SSHClient",
    "SSHConfig",
    "ESXiGateway",
    "RemoteHostGateway",
    "VMInfo",
]
