"""Radio kill-switch state from sysfs.

Reads ``/sys/class/rfkill/*/{type,name,soft,hard}`` for ``wlan`` entries.
The rfkill ``name`` is the phy name (``phy0``), which is also the iwd
Adapter name, so results translate directly into
:class:`~wifictl.model.BlockChanged` notifications.

The sysfs root is injectable for testing.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from wifictl.model import BlockChanged

logger = logging.getLogger(__name__)

SYSFS_RFKILL = "/sys/class/rfkill"


@dataclass(frozen=True)
class RfkillEntry:
    index: str
    name: str
    soft: bool
    hard: bool


def _read(path: str) -> str | None:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError:
        return None


def read_rfkill(*, sysfs_rfkill: str = SYSFS_RFKILL) -> list[RfkillEntry]:
    """Return every ``wlan`` rfkill entry.  Unreadable entries are skipped."""
    try:
        names = sorted(os.listdir(sysfs_rfkill))
    except OSError:
        logger.debug("rfkill: %s not readable", sysfs_rfkill)
        return []

    entries: list[RfkillEntry] = []
    for index in names:
        base = os.path.join(sysfs_rfkill, index)
        if _read(os.path.join(base, "type")) != "wlan":
            continue
        name = _read(os.path.join(base, "name"))
        soft = _read(os.path.join(base, "soft"))
        hard = _read(os.path.join(base, "hard"))
        if name is None or soft is None or hard is None:
            continue
        entries.append(RfkillEntry(index, name, soft == "1", hard == "1"))
    return entries


def block_notifications(*, sysfs_rfkill: str = SYSFS_RFKILL) -> list[BlockChanged]:
    """Current block state of every wireless phy as notifications."""
    return [
        BlockChanged(adapter_name=e.name, soft=e.soft, hard=e.hard)
        for e in read_rfkill(sysfs_rfkill=sysfs_rfkill)
    ]
