# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# liveswap/cli/config.py
"""
Migration configuration.

YAML files are merged left to right (later files win, nested mappings are
merged recursively) and then applied as argparse defaults, so command-line
flags always override file values.

    esxi_host: esxi01.lab
    identity: ~/.ssh/esxi_ed25519
    vm: web01
    work_dir: /var/tmp/liveswap
    output_dir: /var/lib/libvirt/images
    target_format: qcow2
    adapt_os: true
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from ..converters.disk_tool import TARGET_FORMATS
from ..core.exceptions import ConfigError


def _norm_key(k: Any) -> str:
    return str(k).strip().replace("-", "_")


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        k = _norm_key(k)
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


class Config:
    @staticmethod
    def load_yaml(path: Path) -> Dict[str, Any]:
        p = Path(path).expanduser()
        try:
            raw = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(msg=f"cannot read config {p}: {e}", cause=e) from e
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(msg=f"invalid YAML in {p}: {e}", cause=e) from e
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise ConfigError(msg=f"config {p} must be a mapping, got {type(data).__name__}")
        return {_norm_key(k): v for k, v in data.items()}

    @staticmethod
    def load_many(logger: logging.Logger, paths: Sequence[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            logger.debug("Loading config %s", p)
            merged = _deep_merge(merged, Config.load_yaml(Path(p)))
        return merged

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Mapping[str, Any]) -> None:
        known = {a.dest for a in parser._actions}
        defaults = {}
        for k, v in conf.items():
            if k in known:
                defaults[k] = v
            else:
                logger.warning("Ignoring unknown config key: %s", k)
        parser.set_defaults(**defaults)


def _as_bool(name: str, v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, str) and v.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(v, str) and v.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(msg=f"{name} must be a boolean, got {v!r}")


def _as_opt_int(name: str, v: Any, *, minimum: int = 1) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        n = int(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(msg=f"{name} must be an integer, got {v!r}", cause=e) from e
    if n < minimum:
        raise ConfigError(msg=f"{name} must be >= {minimum}, got {n}")
    return n


@dataclass
class MigrationConfig:
    esxi_host: str
    vm: str
    work_dir: Path
    output_dir: Path
    esxi_user: str = "root"
    ssh_port: int = 22
    identity: Optional[Path] = None
    known_hosts: Optional[Path] = None
    ssh_opts: List[str] = field(default_factory=list)
    target_format: str = "qcow2"
    adapt_os: bool = True
    snapshot_name: Optional[str] = None
    snapshot_description: str = "liveswap live migration"
    parallel_disks: bool = True
    max_workers: Optional[int] = None
    staging_dirname: str = ".liveswap-staging"
    command_timeout: Optional[int] = 300

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not (self.esxi_host or "").strip():
            raise ConfigError(msg="esxi_host is required")
        if not str(self.vm or "").strip():
            raise ConfigError(msg="vm (name or id) is required")
        if not self.work_dir:
            raise ConfigError(msg="work_dir is required")
        if not self.output_dir:
            raise ConfigError(msg="output_dir is required")

        self.vm = str(self.vm).strip()
        self.work_dir = Path(self.work_dir).expanduser()
        self.output_dir = Path(self.output_dir).expanduser()
        if self.identity:
            self.identity = Path(self.identity).expanduser()
        if self.known_hosts:
            self.known_hosts = Path(self.known_hosts).expanduser()

        if self.target_format not in TARGET_FORMATS:
            raise ConfigError(msg=f"target_format must be one of {', '.join(TARGET_FORMATS)}, got {self.target_format!r}")

        port = _as_opt_int("ssh_port", self.ssh_port)
        if port is None or port > 65535:
            raise ConfigError(msg=f"invalid ssh_port: {self.ssh_port!r}")
        self.ssh_port = port

        self.adapt_os = _as_bool("adapt_os", self.adapt_os)
        self.parallel_disks = _as_bool("parallel_disks", self.parallel_disks)
        self.max_workers = _as_opt_int("max_workers", self.max_workers)
        self.command_timeout = _as_opt_int("command_timeout", self.command_timeout)

        if isinstance(self.ssh_opts, str):
            self.ssh_opts = [self.ssh_opts]
        self.ssh_opts = [str(o) for o in (self.ssh_opts or [])]

        name = (self.staging_dirname or "").strip()
        if not name or "/" in name or name in (".", ".."):
            raise ConfigError(msg=f"staging_dirname must be a plain directory name, got {self.staging_dirname!r}")
        self.staging_dirname = name

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MigrationConfig":
        names = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in names and v is not None}
        missing = [n for n in ("esxi_host", "vm", "work_dir", "output_dir") if n not in kwargs]
        if missing:
            raise ConfigError(msg=f"missing required setting(s): {', '.join(missing)}")
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {k: (str(v) if isinstance(v, Path) else v) for k, v in asdict(self).items()}
