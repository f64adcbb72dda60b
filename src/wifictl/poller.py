"""Periodic refresh of state iwd does not signal on its own.

Every tick reads rfkill, refreshes ordered networks (signal strength) of
each Station, connected-BSS diagnostics of connected Stations and the
client list of started access points.  Results are posted to the
reconciler like any other notification.  Failures are logged at debug
level and skipped; a device whose previous refresh is still outstanding
is skipped too, so a slow daemon never piles up requests.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable

from wifictl.daemon.client import DaemonClient
from wifictl.errors import DaemonError, FailureKind
from wifictl.model import (
    ApClientsChanged,
    DiagnosticsUpdated,
    Notification,
    ScanResults,
    StationState,
)
from wifictl.reconciler import Reconciler
from wifictl.rfkill import SYSFS_RFKILL, block_notifications

logger = logging.getLogger(__name__)


class Poller:
    """Background refresh loop.

    Args:
        client: Daemon client used for the refresh queries.
        reconciler: Where results are posted.
        interval: Seconds between ticks.
        sysfs_rfkill: rfkill sysfs root (for testing).
        on_unreachable: Called when a refresh finds the daemon gone.
    """

    def __init__(
        self,
        client: DaemonClient,
        reconciler: Reconciler,
        *,
        interval: float = 2.0,
        sysfs_rfkill: str = SYSFS_RFKILL,
        on_unreachable: Callable[[], None] | None = None,
    ) -> None:
        self._client = client
        self._reconciler = reconciler
        self.interval = interval
        self._sysfs_rfkill = sysfs_rfkill
        self.on_unreachable = on_unreachable
        self._outstanding: set[tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("poll tick failed")

    def tick(self) -> None:
        """Run one refresh cycle."""
        for notification in block_notifications(sysfs_rfkill=self._sysfs_rfkill):
            self._reconciler.post(notification)

        snap = self._reconciler.snapshot()
        for device, station in snap.stations.items():
            dev = snap.devices.get(device)
            if dev is None or not dev.powered or dev.blocked:
                continue
            self._refresh(
                "networks", device,
                lambda d=device: self._client.ordered_networks(d),
                lambda result, d=device: ScanResults(d, result),
            )
            if station.state is StationState.CONNECTED:
                self._refresh(
                    "diagnostics", device,
                    lambda d=device: self._client.station_diagnostics(d),
                    lambda result, d=device: DiagnosticsUpdated(d, *result),
                )
        for device, ap in snap.access_points.items():
            if not ap.started:
                continue
            self._refresh(
                "clients", device,
                lambda d=device: self._client.ap_clients(d),
                lambda result, d=device: ApClientsChanged(d, result),
            )

    def _refresh(
        self,
        what: str,
        device: str,
        request: Callable[[], Future],
        build: Callable[[Any], Notification],
    ) -> None:
        key = (what, device)
        with self._lock:
            if key in self._outstanding:
                logger.debug("poll: %s for %s still outstanding, skipped", what, device)
                return
            self._outstanding.add(key)

        def _done(future: Future) -> None:
            with self._lock:
                self._outstanding.discard(key)
            try:
                result = future.result()
            except DaemonError as e:
                logger.debug("poll: %s for %s failed: %s", what, device, e)
                if e.kind is FailureKind.DAEMON_UNREACHABLE and self.on_unreachable is not None:
                    self.on_unreachable()
                return
            except Exception as e:
                logger.debug("poll: %s for %s failed: %s", what, device, e)
                return
            self._reconciler.post(build(result))

        try:
            future = request()
        except RuntimeError as e:
            # Pools already shut down.
            with self._lock:
                self._outstanding.discard(key)
            logger.debug("poll: %s for %s not issued: %s", what, device, e)
            return
        future.add_done_callback(_done)
