"""Failure taxonomy shared by the daemon client and the workflow engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class FailureKind(enum.Enum):
    """Why a daemon call or a workflow did not succeed."""

    DAEMON_UNREACHABLE = "daemon unreachable"
    OBJECT_NOT_FOUND = "object not found"
    NOT_SUPPORTED = "operation not supported"
    TIMEOUT = "timed out"
    PERMISSION_DENIED = "permission denied"
    PROTOCOL_REJECTED = "rejected by daemon"
    HARDWARE_DISABLED = "hardware disabled"
    BUSY = "busy"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Failure:
    """A terminal failure attached to an operation.

    ``reason`` is the daemon-supplied text (shown verbatim) or a short
    local explanation.  ``fatal`` marks partial failures the user has to
    resolve by retrying, such as a mode switch whose new role never
    appeared.
    """

    kind: FailureKind
    reason: str = ""
    fatal: bool = False

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind.value}: {self.reason}"
        return self.kind.value


class DaemonError(Exception):
    """A daemon query or command failed."""

    def __init__(self, kind: FailureKind, reason: str = "") -> None:
        super().__init__(f"{kind.value}: {reason}" if reason else kind.value)
        self.kind = kind
        self.reason = reason

    def to_failure(self) -> Failure:
        return Failure(self.kind, self.reason)


class NoAdapterError(Exception):
    """The daemon is reachable but exposes no wireless adapter."""
