# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/orchestrator/__init__.py
"""
Orchestrator package.

Drives one live migration through its phases.
"""

from .chain_resolver import DiskChainResolver
from .live_migration import LiveMigration
from .session import MigrationResult, MigrationSession, Phase

__all__ = [
    "LiveMigration",
    "DiskChainResolver",
    "MigrationSession",
    "MigrationResult",
    "Phase",
]
