# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/cli/parser.py
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from ..converters.disk_tool import TARGET_FORMATS
from ..core.logger import Log, c
from ..core.utils import U
from .config import Config, MigrationConfig

YAML_EXAMPLE = """\
  esxi_host: esxi01.lab
  identity: ~/.ssh/esxi_ed25519
  vm: web01
  work_dir: /var/tmp/liveswap
  output_dir: /var/lib/libvirt/images
  target_format: qcow2
  adapt_os: true
"""


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Combines raw description formatting with default value display in help."""


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    from .. import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print the merged config and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv (trace)")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q, -qq")
    p.add_argument("--log-file", dest="log_file", default=None, help="Write logs to file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON logs on stderr.")
    p.add_argument("--no-color", dest="no_color", action="store_true", help="Disable coloured output.")


def _add_source_host(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Source ESXi host")
    g.add_argument("--esxi-host", dest="esxi_host", default=None, help="ESXi hostname or address.")
    g.add_argument("--esxi-user", dest="esxi_user", default="root", help="SSH user on the ESXi host.")
    g.add_argument("--ssh-port", dest="ssh_port", type=int, default=22, help="SSH port.")
    g.add_argument("--identity", "-i", dest="identity", default=None, help="SSH private key.")
    g.add_argument(
        "--known-hosts",
        dest="known_hosts",
        default=None,
        help="known_hosts file holding the ESXi host key; enables strict host key checking.",
    )
    g.add_argument(
        "--ssh-opt",
        dest="ssh_opts",
        action="append",
        default=[],
        help="Extra ssh -o option (repeatable), e.g. --ssh-opt 'Ciphers=aes128-ctr'.",
    )
    g.add_argument(
        "--command-timeout",
        dest="command_timeout",
        type=int,
        default=300,
        help="Timeout in seconds for short remote commands.",
    )


def _add_migration(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Migration")
    g.add_argument("--vm", dest="vm", default=None, help="VM name or numeric id (vim-cmd vmsvc/getallvms).")
    g.add_argument("--work-dir", dest="work_dir", default=None, help="Local directory for transfer files.")
    g.add_argument("--output-dir", dest="output_dir", default=None, help="Directory receiving the converted VM.")
    g.add_argument(
        "--target-format",
        dest="target_format",
        default="qcow2",
        choices=list(TARGET_FORMATS),
        help="Format of the converted disks.",
    )
    g.add_argument(
        "--adapt-os",
        dest="adapt_os",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run virt-v2v-in-place on the converted disks.",
    )
    g.add_argument("--snapshot-name", dest="snapshot_name", default=None, help="Snapshot name (default: vSphere style).")
    g.add_argument(
        "--snapshot-description",
        dest="snapshot_description",
        default="liveswap live migration",
        help="Snapshot description.",
    )
    g.add_argument(
        "--parallel-disks",
        dest="parallel_disks",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Process disks concurrently.",
    )
    g.add_argument("--max-workers", dest="max_workers", type=int, default=None, help="Upper bound on per-disk workers.")
    g.add_argument(
        "--staging-dirname",
        dest="staging_dirname",
        default=".liveswap-staging",
        help="Name of the clone staging directory created inside the VM directory.",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="liveswap",
        description=c("liveswap: live ESXi → KVM storage migration with minimal downtime", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=c("YAML example:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan"),
    )
    _add_global_config_logging(p)
    _add_source_host(p)
    _add_migration(p)
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--no-color", dest="no_color", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    return pre


_CONFIG_DESTS = (
    "esxi_host",
    "esxi_user",
    "ssh_port",
    "identity",
    "known_hosts",
    "ssh_opts",
    "command_timeout",
    "vm",
    "work_dir",
    "output_dir",
    "target_format",
    "adapt_os",
    "snapshot_name",
    "snapshot_description",
    "parallel_disks",
    "max_workers",
    "staging_dirname",
)


def config_from_args(args: argparse.Namespace) -> MigrationConfig:
    return MigrationConfig.from_mapping({k: getattr(args, k, None) for k in _CONFIG_DESTS})


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None,
) -> Tuple[MigrationConfig, argparse.Namespace, logging.Logger]:
    """
    Flow:
      Phase 0: parse only the flags needed to locate config and set up logging
      Phase 1: load and merge config files
      Phase 2: apply config as parser defaults
      Phase 3: full parse, CLI wins
      Phase 4: build and validate MigrationConfig (ConfigError on bad input)
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()
    args0, _rest = _build_preparser().parse_known_args(argv)

    if logger is None:
        logger = Log.setup(
            args0.verbose,
            args0.log_file,
            quiet=args0.quiet,
            color=False if args0.no_color else None,
            json_logs=args0.json_logs,
        )

    conf: Dict[str, Any] = Config.load_many(logger, [Path(p) for p in args0.config]) if args0.config else {}

    if args0.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)

    Config.apply_as_defaults(logger, parser, conf)
    args = parser.parse_args(argv)
    return config_from_args(args), args, logger
