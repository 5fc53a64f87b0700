# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/core/__init__.py
from .exceptions import LiveSwapError, MigrationError
from .logger import Log
from .rollback import Rollback
from .utils import U

__all__ = ["LiveSwapError", "MigrationError", "Log", "Rollback", "U"]
