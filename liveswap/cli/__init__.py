# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/cli/__init__.py
