# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/ssh/__init__.py
from .ssh_client import SSHClient, SSHResult
from .ssh_config import SSHConfig

__all__ = ["SSHClient", "SSHResult", "SSHConfig"]
