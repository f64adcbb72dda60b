"""Component wiring and lifecycle.

A :class:`Session` owns the daemon client, the reconciler (and with it the
object cache), the workflow engine and the poller.  ``start`` is the only
place where the daemon being unreachable is fatal; afterwards a lost
monitor stream or an unreachable refresh triggers a full resync, retried
every poll interval until it works.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeout

from wifictl.config import Settings
from wifictl.daemon.client import DEFAULT_CALL_TIMEOUT, DaemonClient
from wifictl.errors import DaemonError, FailureKind, NoAdapterError
from wifictl.model import Device, DeviceMode, Notification, OwnerChanged, Snapshot
from wifictl.poller import Poller
from wifictl.reconciler import Reconciler, Scheduler
from wifictl.rfkill import SYSFS_RFKILL, block_notifications
from wifictl.workflows import WorkflowEngine

logger = logging.getLogger(__name__)

# Outlasts the client's own bound on a busctl call.
STARTUP_TIMEOUT = DEFAULT_CALL_TIMEOUT + 5.0


def pick_device(snap: Snapshot, interface: str | None = None) -> Device:
    """Choose the device to drive: *interface* if given, else the first one.

    Raises NoAdapterError when nothing suitable exists.
    """
    if not snap.adapters or not snap.devices:
        raise NoAdapterError("no wireless adapter found")
    devices = sorted(snap.devices.values(), key=lambda d: d.name)
    if interface:
        for dev in devices:
            if dev.name == interface:
                return dev
        raise NoAdapterError(f"no wireless device named {interface!r}")
    for dev in devices:
        if dev.mode is not DeviceMode.DISABLED:
            return dev
    return devices[0]


class Session:
    """Owns the component graph.

    Args:
        settings: Resolved user settings.
        client: Daemon client (injectable for testing).
        scheduler: Timer source for the reconciler (injectable for testing).
        sysfs_rfkill: rfkill sysfs root (for testing).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: DaemonClient | None = None,
        *,
        scheduler: Scheduler | None = None,
        sysfs_rfkill: str = SYSFS_RFKILL,
    ) -> None:
        self.settings = settings or Settings()
        self.client = client or DaemonClient()
        self.reconciler = Reconciler(scheduler=scheduler)
        self.engine = WorkflowEngine(self.client, self.reconciler, self.settings.timeouts)
        self.poller = Poller(
            self.client,
            self.reconciler,
            interval=self.settings.poll_interval,
            sysfs_rfkill=sysfs_rfkill,
            on_unreachable=self.request_resync,
        )
        self._sysfs_rfkill = sysfs_rfkill
        self.client.on_stream_lost = self._on_stream_lost
        self.device: str | None = None
        self.daemon_lost = False
        self._stream_lost = False
        self._resyncing = False
        self._closing = False
        self._lock = threading.Lock()

    def snapshot(self) -> Snapshot:
        return self.reconciler.snapshot()

    # -- lifecycle -----------------------------------------------------------

    def start(self, *, threads: bool = True) -> None:
        """Connect to iwd, load the object tree and start background work.

        Raises DaemonError when iwd is unreachable and NoAdapterError when
        it exposes no usable device.  With ``threads=False`` nothing runs
        in the background and callers drive the reconciler with ``drain``.
        """
        # Subscribe before the snapshot so no change falls in between.
        self.client.subscribe(self._on_notification)
        try:
            resync = self.client.managed_objects().result(timeout=STARTUP_TIMEOUT)
            self.reconciler.post(resync)
            for notification in block_notifications(sysfs_rfkill=self._sysfs_rfkill):
                self.reconciler.post(notification)
            self.reconciler.drain()
            device = pick_device(self.snapshot(), self.settings.interface)
        except FutureTimeout as e:
            self.client.close()
            raise DaemonError(FailureKind.TIMEOUT, f"no reply from iwd within {STARTUP_TIMEOUT:g}s") from e
        except (DaemonError, NoAdapterError):
            self.client.close()
            raise
        self.device = device.path
        logger.info("using %s (%s mode)", device.name, device.mode.value)

        if threads:
            self.reconciler.start()
            self.poller.start()

        wanted = DeviceMode.AP if self.settings.mode == "ap" else DeviceMode.STATION
        if device.mode is not wanted:
            self.engine.switch_mode(device.path, wanted)
        elif self.settings.auto_scan and wanted is DeviceMode.STATION and not device.blocked:
            self.engine.scan(device.path)

    def stop(self) -> None:
        """Cancel outstanding operations, then stop every thread."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
        self.poller.stop()
        self.engine.cancel_all()
        self.client.close()
        self.reconciler.stop()
        self.reconciler.drain()

    # -- recovery ------------------------------------------------------------

    def _on_notification(self, notification: Notification) -> None:
        # Monitor reader thread.
        self.reconciler.post(notification)
        if not isinstance(notification, OwnerChanged):
            return
        if notification.owner is None:
            logger.warning("iwd left the bus")
            self.daemon_lost = True
        else:
            logger.info("iwd is back on the bus as %s", notification.owner)
            self.reconciler.submit(self.request_resync)

    def _on_stream_lost(self) -> None:
        # Runs on the dead stream's reader thread; resubscribe from elsewhere.
        self._stream_lost = True
        self.daemon_lost = True
        self.reconciler.submit(self.request_resync)

    def request_resync(self) -> None:
        """Rebuild the cache from a fresh object tree (non-blocking)."""
        with self._lock:
            if self._closing or self._resyncing:
                return
            self._resyncing = True
        self.daemon_lost = True
        logger.info("resyncing with iwd")
        if self._stream_lost:
            try:
                self.client.subscribe(self._on_notification)
            except DaemonError as e:
                self._retry(e)
                return
            self._stream_lost = False
        try:
            future = self.client.managed_objects()
        except RuntimeError as e:
            logger.debug("resync not issued: %s", e)
            with self._lock:
                self._resyncing = False
            return
        future.add_done_callback(self._resync_done)

    def _resync_done(self, future) -> None:
        try:
            resync = future.result()
        except DaemonError as e:
            self._retry(e)
            return
        except Exception as e:
            logger.debug("resync abandoned: %s", e)
            with self._lock:
                self._resyncing = False
            return
        self.reconciler.post(resync)
        with self._lock:
            self._resyncing = False
        self.daemon_lost = False
        logger.info("resync complete")

    def _retry(self, error: DaemonError) -> None:
        logger.warning("resync failed: %s", error)
        with self._lock:
            self._resyncing = False
            if self._closing:
                return
        self.reconciler.call_later(self.settings.poll_interval, self.request_resync)
