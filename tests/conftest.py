"""Shared fixtures: a scripted daemon client, manual timers and object builders."""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

import pytest

from wifictl.config import Timeouts
from wifictl.errors import DaemonError, FailureKind
from wifictl.model import (
    BlockChanged,
    DeviceMode,
    EntityKind,
    InterfacesAdded,
    InterfacesRemoved,
    Patch,
    PropertiesChanged,
    ScanResults,
    Security,
    StationState,
)
from wifictl.reconciler import Reconciler
from wifictl.workflows import WorkflowEngine

ADAPTER = "/net/connman/iwd/0"
DEVICE = "/net/connman/iwd/0/3"


def network_path(ssid: str, security: Security, device: str = DEVICE) -> str:
    return f"{device}/{ssid.encode().hex()}_{security.value}"


def known_path(ssid: str, security: Security) -> str:
    return f"/net/connman/iwd/{ssid.encode().hex()}_{security.value}"


# ---------------------------------------------------------------------------
# Manual scheduler
# ---------------------------------------------------------------------------

class _Handle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls :meth:`advance`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._pending: list[tuple[float, Any, _Handle]] = []

    def call_later(self, delay, fn):
        handle = _Handle()
        self._pending.append((self.now + delay, fn, handle))
        return handle

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [p for p in self._pending if p[0] <= self.now]
        self._pending = [p for p in self._pending if p[0] > self.now]
        for _deadline, fn, handle in sorted(due, key=lambda p: p[0]):
            if not handle.cancelled:
                fn()

    @property
    def active(self) -> int:
        return sum(1 for _d, _fn, h in self._pending if not h.cancelled)


# ---------------------------------------------------------------------------
# Scripted daemon client
# ---------------------------------------------------------------------------

@dataclass
class Call:
    name: str
    args: tuple
    kwargs: dict
    future: Future = field(repr=False)


_REQUESTS = frozenset({
    "managed_objects", "get_property", "ordered_networks", "ap_clients",
    "station_diagnostics", "set_adapter_powered", "set_device_powered",
    "set_mode", "set_autoconnect", "scan", "disconnect", "connect",
    "connect_hidden", "start_ap", "stop_ap", "forget", "register_psk",
    "register_enterprise",
})


class FakeClient:
    """Stands in for DaemonClient; every request returns a pending Future.

    ``auto[name]`` resolves requests of that name immediately (an exception
    instance fails them).
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.auto: dict[str, Any] = {}
        self.subscribed: list[Any] = []
        self.subscribe_error: DaemonError | None = None
        self.closed = False
        self.on_stream_lost = None

    def __getattr__(self, name: str):
        if name not in _REQUESTS:
            raise AttributeError(name)

        def _request(*args, **kwargs):
            future: Future = Future()
            self.calls.append(Call(name, args, kwargs, future))
            if name in self.auto:
                value = self.auto[name]
                if isinstance(value, Exception):
                    future.set_exception(value)
                else:
                    future.set_result(value)
            return future
        return _request

    def subscribe(self, callback) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribed.append(callback)

    def close(self) -> None:
        self.closed = True

    # -- test helpers ------------------------------------------------------

    def names(self) -> list[str]:
        return [c.name for c in self.calls]

    def last(self, name: str) -> Call:
        for call in reversed(self.calls):
            if call.name == name:
                return call
        raise AssertionError(f"no {name} call in {self.names()}")

    def resolve(self, name: str, value: Any = None) -> None:
        self.last(name).future.set_result(value)

    def reject(self, name: str, kind: FailureKind, reason: str = "") -> None:
        self.last(name).future.set_exception(DaemonError(kind, reason))


# ---------------------------------------------------------------------------
# Engine harness
# ---------------------------------------------------------------------------

def _patch(kind: EntityKind, **fields: Any) -> Patch:
    return Patch(kind, tuple(fields.items()))


class FakeIwd:
    """A reconciler, an engine and builders for daemon notifications."""

    def __init__(self, timeouts: Timeouts | None = None) -> None:
        self.scheduler = ManualScheduler()
        self.client = FakeClient()
        self.reconciler = Reconciler(scheduler=self.scheduler)
        self.engine = WorkflowEngine(self.client, self.reconciler, timeouts or Timeouts())
        self._seq = 0

    def seq(self) -> int:
        self._seq += 1
        return self._seq

    def drain(self) -> None:
        self.reconciler.drain()

    def post(self, notification) -> None:
        self.reconciler.post(notification)
        self.drain()

    def snapshot(self):
        return self.reconciler.snapshot()

    def advance(self, seconds: float) -> None:
        self.scheduler.advance(seconds)
        self.drain()

    # -- builders ----------------------------------------------------------

    def add_device(self, mode: DeviceMode = DeviceMode.STATION, *, name: str = "wlan0") -> None:
        self.post(InterfacesAdded(ADAPTER, (
            _patch(EntityKind.ADAPTER, name="phy0", powered=True, supported_modes=("station", "ap")),
        ), self.seq()))
        patches = [_patch(
            EntityKind.DEVICE, name=name, adapter=ADAPTER,
            address="aa:bb:cc:dd:ee:ff", powered=True, mode=mode,
        )]
        if mode is DeviceMode.STATION:
            patches.append(_patch(EntityKind.STATION, state=StationState.DISCONNECTED))
        elif mode is DeviceMode.AP:
            patches.append(_patch(EntityKind.ACCESS_POINT, started=False))
        self.post(InterfacesAdded(DEVICE, tuple(patches), self.seq()))

    def add_network(self, ssid: str, security: Security, signal: int = -50) -> str:
        path = network_path(ssid, security)
        self.post(InterfacesAdded(path, (
            _patch(EntityKind.NETWORK, ssid=ssid, security=security, device=DEVICE),
        ), self.seq()))
        nets = [(n.path, n.signal) for n in self.snapshot().networks_of(DEVICE) if n.path != path]
        self.post(ScanResults(DEVICE, tuple(nets) + ((path, signal),)))
        return path

    def add_known(self, ssid: str, security: Security, **fields: Any) -> str:
        path = known_path(ssid, security)
        self.post(InterfacesAdded(path, (
            _patch(EntityKind.KNOWN_NETWORK, ssid=ssid, security=security, **fields),
        ), self.seq()))
        return path

    def remove(self, path: str, *kinds: EntityKind) -> None:
        self.post(InterfacesRemoved(path, kinds, self.seq()))

    def station(self, **fields: Any) -> None:
        self.post(PropertiesChanged(DEVICE, _patch(EntityKind.STATION, **fields), self.seq()))

    def device(self, **fields: Any) -> None:
        self.post(PropertiesChanged(DEVICE, _patch(EntityKind.DEVICE, **fields), self.seq()))

    def access_point(self, **fields: Any) -> None:
        self.post(PropertiesChanged(DEVICE, _patch(EntityKind.ACCESS_POINT, **fields), self.seq()))

    def block(self, *, soft: bool = False, hard: bool = False) -> None:
        self.post(BlockChanged("phy0", soft=soft, hard=hard))

    def connected_to(self, ssid: str, security: Security) -> None:
        self.station(state=StationState.CONNECTED, connected_network=network_path(ssid, security))


@pytest.fixture
def iwd() -> FakeIwd:
    return FakeIwd()


@pytest.fixture
def station(iwd) -> FakeIwd:
    """An iwd world with one powered device in station mode."""
    iwd.add_device(DeviceMode.STATION)
    return iwd


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
