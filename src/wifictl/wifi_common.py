"""Shared helpers for wifictl: the busctl subprocess seam, colors, validation."""

from __future__ import annotations

import os
import subprocess
from typing import Any, IO, Protocol

# -- Colors (RGB tuples; mapped to Rich color names by the display layer) --
GREEN = (0, 255, 0)
YELLOW = (255, 255, 0)
RED = (255, 0, 0)

COLOR_TO_RICH: dict[tuple, str] = {
    GREEN: "green",
    YELLOW: "yellow",
    RED: "red",
}


# ---------------------------------------------------------------------------
# Command runner protocol (subprocess injection seam)
# ---------------------------------------------------------------------------

class CommandRunner(Protocol):
    """How the daemon client starts ``busctl``.

    Tests pass a ``MagicMock`` here instead of patching ``subprocess``.
    """

    def run(
        self,
        cmd: list[str],
        *,
        capture_output: bool = True,
        text: bool = True,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[Any]:
        """One-shot call: wait for *cmd* and return its CompletedProcess."""
        ...  # pragma: no cover

    def popen(
        self,
        cmd: list[str],
        *,
        stdout: int | None = None,
        stderr: int | None | IO[Any] = None,
        text: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.Popen[Any]:
        """Long-running stream (``busctl monitor``)."""
        ...  # pragma: no cover


class SubprocessRunner:
    """CommandRunner backed by the real ``subprocess`` module."""

    def run(
        self,
        cmd: list[str],
        *,
        capture_output: bool = True,
        text: bool = True,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[Any]:
        return subprocess.run(cmd, capture_output=capture_output, text=text, timeout=timeout, env=env)

    def popen(
        self,
        cmd: list[str],
        *,
        stdout: int | None = None,
        stderr: int | None | IO[Any] = None,
        text: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.Popen[Any]:
        return subprocess.Popen(cmd, stdout=stdout, stderr=stderr, text=text, env=env)


def _minimal_env() -> dict[str, str]:
    """Environment for busctl: PATH, C locale, HOME and the system bus override.

    busctl output is parsed, so the locale is pinned; nothing else from the
    user's environment reaches the child.
    """
    env = {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "LC_ALL": "C",
        "HOME": os.environ.get("HOME", ""),
    }
    bus = os.environ.get("DBUS_SYSTEM_BUS_ADDRESS")
    if bus:
        env["DBUS_SYSTEM_BUS_ADDRESS"] = bus
    return env


# ---------------------------------------------------------------------------
# Signal / security helpers
# ---------------------------------------------------------------------------

def signal_to_bars(signal_dbm: int) -> int:
    """Bars (0-4) for a signal in dBm."""
    for bars, floor in ((4, -50), (3, -60), (2, -70), (1, -80)):
        if signal_dbm >= floor:
            return bars
    return 0


def signal_color(signal_dbm: int) -> tuple:
    if signal_dbm >= -50:
        return GREEN
    if signal_dbm >= -65:
        return YELLOW
    return RED


def security_color(security: str) -> tuple:
    """Open networks red, WEP yellow, everything WPA green (iwd labels)."""
    return {"open": RED, "wep": YELLOW}.get(security, GREEN)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def is_valid_ssid(ssid: str) -> bool:
    """True if *ssid* is 1-32 bytes once UTF-8 encoded."""
    return 0 < len(ssid.encode("utf-8")) <= 32


def is_valid_passphrase(passphrase: str) -> bool:
    """True if *passphrase* is a usable WPA passphrase (8-63 printable ASCII chars)."""
    return 8 <= len(passphrase) <= 63 and all(" " <= c <= "~" for c in passphrase)
