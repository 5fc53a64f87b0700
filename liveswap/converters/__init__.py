# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/converters/__init__.py
"""Local disk conversion, delta apply and guest OS adaptation."""

from .disk_tool import DiskConversionTool, DiskTool

__all__ = ["DiskConversionTool", "DiskTool"]
