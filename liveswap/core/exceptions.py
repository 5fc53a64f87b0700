# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/core/exceptions.py
"""
Error taxonomy. Every error carries a process exit code:

    1        unexpected
    2        configuration
    10..17   one per migration phase
    20       disk chain cycle
    30..32   remote host gateway
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

# context keys whose values never reach a message
_SECRET_MARKERS = ("pass", "secret", "token", "auth", "private", "key")


def _exit_code(value: Any) -> int:
    try:
        code = int(value)
    except (TypeError, ValueError):
        return 1
    if code < 0:
        return 1
    return min(code, 255)


def _flatten(text: str, limit: int = 600) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _describe_context(ctx: Dict[str, Any]) -> str:
    parts = []
    for key in sorted(ctx):
        if any(m in str(key).lower() for m in _SECRET_MARKERS):
            parts.append(f"{key}=<redacted>")
        else:
            parts.append(f"{key}={ctx[key]!r}")
    return _flatten(", ".join(parts))


@dataclass(eq=False)
class LiveSwapError(Exception):
    """Base error: exit code, one-line message, optional cause and context."""
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _exit_code(self.code)
        self.msg = _flatten(self.msg) or type(self).__name__
        super().__init__(self.msg)

    def _details(self, include_context: bool, include_cause: bool) -> list:
        parts = []
        if include_context and self.context:
            parts.append(f"[{_describe_context(self.context)}]")
        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_flatten(str(self.cause))})")
        return parts

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        return " ".join([self.msg] + self._details(include_context, include_cause))

    def __str__(self) -> str:
        return self.user_message()

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.msg,
            "context": dict(self.context or {}),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _flatten(str(self.cause))}
        return d


@dataclass(eq=False)
class ConfigError(LiveSwapError):
    """Invalid or incomplete migration configuration."""
    code: int = 2
    msg: str = "invalid configuration"


# ---------------------------------------------------------------------------
# Remote host gateway
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class GatewayError(LiveSwapError):
    """A remote host operation could not be carried out."""
    code: int = 30
    msg: str = "remote operation failed"


@dataclass(eq=False)
class GatewayTimeout(GatewayError):
    """The remote host did not answer in time. Treated like a failed result."""
    code: int = 31
    msg: str = "remote operation timed out"


@dataclass(eq=False)
class UnsafePathError(GatewayError):
    """Refused to touch a remote path outside the datastore-scoped prefix."""
    code: int = 32
    msg: str = "refusing to operate on unsafe remote path"


# ---------------------------------------------------------------------------
# Migration phases
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class MigrationError(LiveSwapError):
    """
    A migration phase failed.

    Carries the phase identity and, for per-disk loops, the disk or file
    that triggered the failure. Both are part of the user-facing message.
    """
    code: int = 10
    msg: str = "migration failed"
    phase: Optional[str] = None
    disk: Optional[str] = None

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        parts = [f"[{self.phase}]"] if self.phase else []
        parts.append(self.msg)
        if self.disk and self.disk not in self.msg:
            parts.append(f"(disk: {self.disk})")
        return " ".join(parts + self._details(include_context, include_cause))

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d = super().to_dict(include_cause=include_cause)
        d["phase"] = self.phase
        d["disk"] = self.disk
        return d


@dataclass(eq=False)
class PrecheckFailed(MigrationError):
    """VM not running or a required tool is missing."""
    code: int = 10
    msg: str = "precheck failed"
    phase: Optional[str] = "precheck"


@dataclass(eq=False)
class SnapshotFailed(MigrationError):
    code: int = 11
    msg: str = "snapshot creation failed"
    phase: Optional[str] = "snapshotting"


@dataclass(eq=False)
class StagingFailed(MigrationError):
    code: int = 12
    msg: str = "staging setup failed"
    phase: Optional[str] = "staging_setup"


@dataclass(eq=False)
class CloneFailed(MigrationError):
    code: int = 13
    msg: str = "disk clone failed"
    phase: Optional[str] = "base_disk_clone"


@dataclass(eq=False)
class ConvertFailed(MigrationError):
    code: int = 14
    msg: str = "disk conversion failed"
    phase: Optional[str] = "base_disk_transfer"


@dataclass(eq=False)
class ShutdownFailed(MigrationError):
    code: int = 15
    msg: str = "guest shutdown failed"
    phase: Optional[str] = "cutover"


@dataclass(eq=False)
class DeltaApplyFailed(MigrationError):
    code: int = 16
    msg: str = "delta apply failed"
    phase: Optional[str] = "delta_apply"


@dataclass(eq=False)
class AdaptFailed(MigrationError):
    """Raised only once every candidate disk has been tried."""
    code: int = 17
    msg: str = "OS adaptation failed"
    phase: Optional[str] = "os_adapt"


@dataclass(eq=False)
class CycleDetected(MigrationError):
    """
    A disk chain points back to itself (or exceeds the redo-log depth limit).

    Corrupt metadata, never transient: always fatal, never retried.
    """
    code: int = 20
    msg: str = "disk chain cycle detected"


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """One line for the terminal: -v adds context, -vv adds the cause."""
    if isinstance(e, LiveSwapError):
        return e.user_message(include_context=verbose >= 1, include_cause=verbose >= 2)
    text = _flatten(str(e))
    if verbose >= 2:
        return f"{type(e).__name__}: {text}"
    return text or type(e).__name__
