# SPDX-License-Identifier: LGPL-3.0-or-later
#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# liveswap/__main__.py
from __future__ import annotations

import logging
import sys
import traceback
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from .cli.config import MigrationConfig
from .cli.parser import parse_args_with_config
from .converters.disk_tool import DiskTool
from .core.exceptions import ConfigError, LiveSwapError, format_exception_for_cli
from .core.utils import U
from .orchestrator.live_migration import LiveMigration
from .orchestrator.session import MigrationResult
from .ssh.ssh_client import SSHClient
from .ssh.ssh_config import SSHConfig
from .vmware.esxi_gateway import ESXiGateway


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def build_gateway(logger: logging.Logger, cfg: MigrationConfig) -> ESXiGateway:
    try:
        ssh_cfg = SSHConfig(
            host=cfg.esxi_host,
            user=cfg.esxi_user,
            port=cfg.ssh_port,
            identity=cfg.identity,
            known_hosts=cfg.known_hosts,
            ssh_opts=list(cfg.ssh_opts),
            control_master=True,
        )
    except ValueError as e:
        raise ConfigError(msg=str(e), cause=e) from e
    return ESXiGateway(logger, SSHClient(logger, ssh_cfg), command_timeout=cfg.command_timeout)


def summary_table(result: MigrationResult, vm_name: str) -> Table:
    t = Table(title=f"liveswap: {vm_name}", show_header=False)
    t.add_column("key", style="cyan")
    t.add_column("value")
    t.add_row("Result", str(result.result_path))
    t.add_row("Downtime", result.downtime)
    for i, d in enumerate(result.disks):
        mark = "  (OS)" if result.os_disk is not None and d == result.os_disk else ""
        t.add_row(f"Disk {i}", f"{d.name}{mark}")
    t.add_row("Phases", ", ".join(result.phases))
    return t


def run(cfg: MigrationConfig, logger: logging.Logger) -> int:
    gateway = build_gateway(logger, cfg)
    vm = gateway.find_vm(cfg.vm)
    if vm is None:
        raise ConfigError(msg=f"VM {cfg.vm!r} not found on {cfg.esxi_host}")

    result = LiveMigration(logger, gateway, DiskTool(logger), cfg).run(vm)
    logger.debug("Result: %s", U.json_dump(result.to_dict()))
    Console(stderr=True).print(summary_table(result, vm.name))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    logger: Optional[logging.Logger] = None
    args_verbose = 0

    # Phase 1: parse
    try:
        cfg, args, logger = parse_args_with_config(argv)
        args_verbose = int(getattr(args, "verbose", 0) or 0)
    except LiveSwapError as e:
        msg = f"💥 ERROR    {format_exception_for_cli(e)}"
        if logger is None:
            _print_stderr(msg)
        else:
            logger.error(msg)
        raise SystemExit(e.code)
    except KeyboardInterrupt:
        _print_stderr("Interrupted by user (Ctrl+C).")
        raise SystemExit(130)

    # Phase 2: migrate
    try:
        rc = run(cfg, logger)
    except LiveSwapError as e:
        logger.error(format_exception_for_cli(e, verbose=args_verbose))
        rc = e.code
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C).")
        rc = 130
    except Exception as e:
        logger.error(f"💥 UNHANDLED {type(e).__name__}: {e}")
        logger.debug(traceback.format_exc())
        rc = 1

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
