"""Connection workflow engine.

Each user intent becomes an :class:`Operation`, a small state machine
driven entirely on the reconciler thread:

- public methods only create the handle and queue the first step;
- daemon replies come back as reconciler tasks;
- confirmations come from cache changes seen by :meth:`_on_change`;
- bounded waits are reconciler timers.

So no lock is ever held across a daemon call, and a handle is never
advanced by two threads at once.  At most one connect, disconnect or
mode-switch operation runs per device; another one is rejected as busy.
A blocked radio fails everything in flight on that device, and a late
success for an operation that already failed is ignored.
"""

from __future__ import annotations

import enum
import itertools
import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable

from wifictl.config import Timeouts
from wifictl.daemon.client import DaemonClient
from wifictl.daemon.provisioning import EnterpriseCredentials
from wifictl.errors import DaemonError, Failure, FailureKind
from wifictl.model import (
    Delta,
    DeviceMode,
    EntityKind,
    Notification,
    ScanResults,
    Security,
    Snapshot,
    StationState,
)
from wifictl.reconciler import Cancellable, Reconciler
from wifictl.wifi_common import is_valid_passphrase, is_valid_ssid

logger = logging.getLogger(__name__)


class OpKind(enum.Enum):
    SCAN = "scan"
    CONNECT = "connect"
    CONNECT_HIDDEN = "connect hidden"
    DISCONNECT = "disconnect"
    SWITCH_MODE = "switch mode"
    POWER = "power"
    START_AP = "start access point"
    STOP_AP = "stop access point"
    FORGET = "forget"
    AUTOCONNECT = "auto-connect"


class OpState(enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    AWAITING_CREDENTIALS = "awaiting credentials"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    SCANNED = "scanned"
    STATION_ACTIVE = "station active"
    SWITCHING_TO_AP = "switching to ap"
    SWITCHING_TO_STATION = "switching to station"
    AP_ACTIVE = "ap active"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# Device slot: one of these per device at a time.
_SLOT_KINDS = frozenset({OpKind.CONNECT, OpKind.CONNECT_HIDDEN, OpKind.DISCONNECT, OpKind.SWITCH_MODE})

# Failed station machines settle back in Idle.
_RETURNS_TO_IDLE = frozenset({OpKind.CONNECT, OpKind.CONNECT_HIDDEN, OpKind.DISCONNECT})


class OperationFailed(Exception):
    def __init__(self, failure: Failure) -> None:
        super().__init__(str(failure))
        self.failure = failure


@dataclass(eq=False)
class Operation:
    """Handle for one user-triggered operation.

    Read it from any thread; only the engine advances it.
    """

    id: int
    kind: OpKind
    device: str | None = None
    target: str = ""
    state: OpState = OpState.IDLE
    history: list[OpState] = field(default_factory=lambda: [OpState.IDLE])
    failure: Failure | None = None
    # target identity
    ssid: str | None = None
    security: Security | None = None
    known_path: str | None = None
    mode: DeviceMode | None = None
    # engine bookkeeping
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _timers: list[Cancellable] = field(default_factory=list, repr=False)
    _confirm: Callable[[Snapshot], bool] | None = field(default=None, repr=False)
    _on_confirm: Callable[[Snapshot], None] | None = field(default=None, repr=False)
    _issued: bool = field(default=False, repr=False)
    _saw_connecting: bool = field(default=False, repr=False)
    _completed_early: bool = field(default=False, repr=False)
    _cancelling: bool = field(default=False, repr=False)
    _cancels: "Operation | None" = field(default=None, repr=False)
    _on_finish: Callable[["Operation"], None] | None = field(default=None, repr=False)
    _hidden: bool = field(default=False, repr=False)
    # Set on a disconnect that cancels an issued connect while the station
    # still looks idle: only a reply plus a later station change confirms it.
    _needs_fresh_state: bool = field(default=False, repr=False)
    _replied: bool = field(default=False, repr=False)
    _station_moved: bool = field(default=False, repr=False)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def result(self, timeout: float | None = None) -> OpState:
        """Block until the operation ends; raise OperationFailed on failure."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"{self.kind.value} still {self.state.value}")
        if self.failure is not None:
            raise OperationFailed(self.failure)
        return self.state


@dataclass(frozen=True)
class OperationEvent:
    """Terminal outcome of an operation, for the status line."""

    op_id: int
    kind: OpKind
    device: str | None
    message: str
    failure: Failure | None = None

    @property
    def is_error(self) -> bool:
        return self.failure is not None and self.failure.kind is not FailureKind.CANCELLED


class WorkflowEngine:
    """Drives operations against the daemon client.

    Args:
        client: Daemon client (anything with the same methods).
        reconciler: The single writer; every step runs on its thread.
        timeouts: Bounded waits per workflow step.
    """

    def __init__(
        self,
        client: DaemonClient,
        reconciler: Reconciler,
        timeouts: Timeouts | None = None,
    ) -> None:
        self._client = client
        self._reconciler = reconciler
        self.timeouts = timeouts or Timeouts()
        self._ids = itertools.count(1)
        self._slots: dict[str, Operation] = {}
        self._scans: dict[str, Operation] = {}
        self._active: dict[int, Operation] = {}
        self._events: queue.Queue[OperationEvent] = queue.Queue()
        self._banners: dict[str, str] = {}
        reconciler.add_listener(self._on_change)

    # ------------------------------------------------------------------
    # Read side (any thread)
    # ------------------------------------------------------------------

    def events(self) -> list[OperationEvent]:
        """Drain and return the events emitted since the last call."""
        out: list[OperationEvent] = []
        while True:
            try:
                out.append(self._events.get_nowait())
            except queue.Empty:
                return out

    def banners(self) -> dict[str, str]:
        """Persistent conditions per device path (e.g. a blocked radio)."""
        return dict(self._banners)

    def operations(self) -> list[Operation]:
        """Operations still in flight."""
        return list(self._active.values())

    def slot(self, device: str) -> Operation | None:
        return self._slots.get(device)

    # ------------------------------------------------------------------
    # Intents (any thread)
    # ------------------------------------------------------------------

    def scan(self, device: str) -> Operation:
        op = self._new(OpKind.SCAN, device)
        self._reconciler.submit(lambda: self._begin_scan(op))
        return op

    def connect(
        self,
        device: str,
        ssid: str,
        security: Security,
        *,
        passphrase: str | None = None,
        credentials: EnterpriseCredentials | None = None,
    ) -> Operation:
        """Connect *device* to a visible network (scanned or known)."""
        op = self._new(OpKind.CONNECT, device, target=ssid, ssid=ssid, security=security)
        self._reconciler.submit(lambda: self._begin_connect(op, passphrase, credentials))
        return op

    def connect_hidden(
        self,
        device: str,
        ssid: str,
        *,
        passphrase: str | None = None,
        credentials: EnterpriseCredentials | None = None,
    ) -> Operation:
        """Connect to a non-broadcasting SSID; no passphrase means open."""
        if not is_valid_ssid(ssid):
            raise ValueError("SSID must be 1-32 bytes")
        if passphrase is not None and not is_valid_passphrase(passphrase):
            raise ValueError("passphrase must be 8-63 printable ASCII characters")
        op = self._new(OpKind.CONNECT_HIDDEN, device, target=ssid, ssid=ssid)
        op._hidden = True
        self._reconciler.submit(lambda: self._begin_hidden(op, passphrase, credentials))
        return op

    def supply_credentials(
        self,
        op: Operation,
        *,
        passphrase: str | None = None,
        credentials: EnterpriseCredentials | None = None,
    ) -> None:
        """Resume a connect waiting in AWAITING_CREDENTIALS."""
        if passphrase is not None and not is_valid_passphrase(passphrase):
            raise ValueError("passphrase must be 8-63 printable ASCII characters")
        if credentials is not None:
            credentials.validate()
        self._reconciler.submit(lambda: self._resume_with_credentials(op, passphrase, credentials))

    def disconnect(self, device: str) -> Operation:
        op = self._new(OpKind.DISCONNECT, device)
        self._reconciler.submit(lambda: self._begin_disconnect(op))
        return op

    def switch_mode(self, device: str, mode: DeviceMode) -> Operation:
        op = self._new(OpKind.SWITCH_MODE, device, target=mode.value, mode=mode)
        self._reconciler.submit(lambda: self._begin_switch(op))
        return op

    def set_power(self, device: str, powered: bool) -> Operation:
        op = self._new(OpKind.POWER, device, target="on" if powered else "off")
        self._reconciler.submit(lambda: self._begin_power(op, powered, adapter=False))
        return op

    def set_adapter_power(self, adapter: str, powered: bool) -> Operation:
        op = self._new(OpKind.POWER, None, target="on" if powered else "off")
        self._reconciler.submit(lambda: self._begin_power(op, powered, adapter=True, path=adapter))
        return op

    def start_ap(self, device: str, ssid: str, passphrase: str) -> Operation:
        if not is_valid_ssid(ssid):
            raise ValueError("SSID must be 1-32 bytes")
        if not is_valid_passphrase(passphrase):
            raise ValueError("passphrase must be 8-63 printable ASCII characters")
        op = self._new(OpKind.START_AP, device, target=ssid, ssid=ssid)
        self._reconciler.submit(lambda: self._begin_start_ap(op, passphrase))
        return op

    def stop_ap(self, device: str) -> Operation:
        op = self._new(OpKind.STOP_AP, device)
        self._reconciler.submit(lambda: self._begin_stop_ap(op))
        return op

    def forget(self, known_path: str) -> Operation:
        op = self._new(OpKind.FORGET, None, known_path=known_path)
        self._reconciler.submit(lambda: self._begin_forget(op))
        return op

    def set_autoconnect(self, known_path: str, enabled: bool) -> Operation:
        op = self._new(OpKind.AUTOCONNECT, None, target="on" if enabled else "off", known_path=known_path)
        self._reconciler.submit(lambda: self._begin_autoconnect(op, enabled))
        return op

    def cancel_all(self, reason: str = "shutting down") -> None:
        """Fail every operation in flight with CANCELLED."""
        def _do() -> None:
            for op in list(self._active.values()):
                self._fail(op, Failure(FailureKind.CANCELLED, reason))
        self._reconciler.submit(_do)

    # ------------------------------------------------------------------
    # Bookkeeping (reconciler thread from here on)
    # ------------------------------------------------------------------

    def _new(self, kind: OpKind, device: str | None, **attrs: Any) -> Operation:
        op = Operation(id=next(self._ids), kind=kind, device=device, **attrs)
        logger.debug("op %d: %s %s requested", op.id, kind.value, device or "")
        return op

    def _snapshot(self) -> Snapshot:
        return self._reconciler.snapshot()

    def _to(self, op: Operation, state: OpState) -> None:
        if op.state is state:
            return
        logger.debug("op %d: %s -> %s", op.id, op.state.value, state.value)
        op.state = state
        op.history.append(state)

    def _activate(self, op: Operation) -> bool:
        """Register *op*; False (and the op failed) if its slot is taken."""
        if op.kind in _SLOT_KINDS and op.device is not None:
            holder = self._slots.get(op.device)
            if holder is not None:
                self._fail(op, Failure(FailureKind.BUSY, f"{holder.kind.value} in progress"))
                return False
            self._slots[op.device] = op
        elif op.kind is OpKind.SCAN and op.device is not None:
            if op.device in self._scans:
                self._fail(op, Failure(FailureKind.BUSY, "scan in progress"))
                return False
            self._scans[op.device] = op
        self._active[op.id] = op
        return True

    def _timer(self, op: Operation, seconds: float, expected: OpState | None = None) -> None:
        """Fail *op* with TIMEOUT after *seconds* unless it moved on."""
        def _fire() -> None:
            if op.finished or (expected is not None and op.state is not expected):
                return
            op_fatal = op.kind is OpKind.SWITCH_MODE and op._issued
            self._fail(op, Failure(
                FailureKind.TIMEOUT,
                f"no confirmation within {seconds:g}s",
                fatal=op_fatal,
            ))
        op._timers.append(self._reconciler.call_later(seconds, _fire))

    def _finish(self, op: Operation, message: str) -> None:
        for timer in op._timers:
            timer.cancel()
        op._timers.clear()
        op._confirm = None
        op._on_confirm = None
        self._active.pop(op.id, None)
        if op.device is not None:
            if self._slots.get(op.device) is op:
                del self._slots[op.device]
            if self._scans.get(op.device) is op:
                del self._scans[op.device]
        self._events.put(OperationEvent(op.id, op.kind, op.device, message, op.failure))
        op._done.set()
        if op._on_finish is not None:
            op._on_finish(op)

    def _succeed(self, op: Operation, state: OpState, message: str) -> None:
        if op.finished:
            return
        self._to(op, state)
        logger.info("%s", message)
        self._finish(op, message)

    def _fail(self, op: Operation, failure: Failure) -> None:
        if op.finished:
            return
        op.failure = failure
        self._to(op, OpState.FAILED)
        if op.kind in _RETURNS_TO_IDLE:
            self._to(op, OpState.IDLE)
        label = f"{op.kind.value} {op.target}".strip()
        message = f"{label} failed: {failure}"
        if failure.kind is FailureKind.CANCELLED:
            logger.info("%s", message)
        else:
            logger.warning("%s", message)
        self._finish(op, message)

    def _await(
        self,
        op: Operation,
        confirm: Callable[[Snapshot], bool],
        on_confirm: Callable[[Snapshot], None],
    ) -> None:
        """Complete via *on_confirm* once the cache satisfies *confirm*."""
        snap = self._snapshot()
        if confirm(snap):
            on_confirm(snap)
            return
        op._confirm = confirm
        op._on_confirm = on_confirm

    def _on_reply(
        self,
        op: Operation,
        future: Future,
        on_success: Callable[[Any], None],
    ) -> None:
        """Route a command future's outcome back onto the reconciler thread."""
        def _settle() -> None:
            if op.finished:
                return
            if op._cancelling:
                logger.debug("op %d: reply after cancel ignored", op.id)
                return
            try:
                value = future.result()
            except DaemonError as e:
                self._fail(op, e.to_failure())
                return
            except Exception as e:
                logger.exception("op %d: unexpected error", op.id)
                self._fail(op, Failure(FailureKind.PROTOCOL_REJECTED, str(e)))
                return
            on_success(value)

        future.add_done_callback(lambda _f: self._reconciler.submit(_settle))

    def _check_device(
        self, op: Operation, *, need: DeviceMode | None = None,
    ) -> bool:
        """Fail *op* unless its device exists, is unblocked and in mode *need*."""
        snap = self._snapshot()
        dev = snap.devices.get(op.device or "")
        if dev is None:
            self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "device not found"))
            return False
        if dev.blocked:
            self._fail(op, Failure(FailureKind.HARDWARE_DISABLED, _block_reason(dev.hard_blocked)))
            return False
        if need is DeviceMode.STATION and op.device not in snap.stations:
            self._fail(op, Failure(FailureKind.NOT_SUPPORTED, f"{dev.name} is not in station mode"))
            return False
        if need is DeviceMode.AP and op.device not in snap.access_points:
            self._fail(op, Failure(FailureKind.NOT_SUPPORTED, f"{dev.name} is not in access point mode"))
            return False
        return True

    def _device_name(self, device: str | None) -> str:
        dev = self._snapshot().devices.get(device or "")
        return dev.name if dev else (device or "")

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def _begin_scan(self, op: Operation) -> None:
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.STATION):
            return
        self._to(op, OpState.SCANNING)
        self._timer(op, self.timeouts.scan)
        self._on_reply(op, self._client.scan(op.device), lambda _v: self._scan_accepted(op))

    def _scan_accepted(self, op: Operation) -> None:
        op._issued = True
        # Completion is normally seen through delta.scan_completed in _on_change.
        if op._completed_early:
            self._refresh_networks(op.device or "", op)

    def _refresh_networks(self, device: str, op: Operation | None = None) -> None:
        """Replace *device*'s network set with the daemon's ordered list."""
        future = self._client.ordered_networks(device)

        def _done(f: Future) -> None:
            try:
                networks = f.result()
            except DaemonError as e:
                logger.debug("ordered networks for %s failed: %s", device, e)
                if op is not None:
                    failure = e.to_failure()
                    self._reconciler.submit(lambda: self._fail(op, failure))
                return
            except Exception as e:
                logger.debug("ordered networks for %s abandoned: %s", device, e)
                return
            self._reconciler.post(ScanResults(device, networks))
            if op is not None:
                count = len(networks)
                self._reconciler.submit(lambda: self._succeed(
                    op, OpState.SCANNED,
                    f"Scan on {self._device_name(device)} found {count} network(s)",
                ))

        future.add_done_callback(_done)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def _begin_connect(
        self,
        op: Operation,
        passphrase: str | None,
        credentials: EnterpriseCredentials | None,
    ) -> None:
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.STATION):
            return
        self._to(op, OpState.REQUESTING)
        snap = self._snapshot()
        network = next(
            (n for n in snap.networks_of(op.device or "")
             if n.ssid == op.ssid and n.security is op.security),
            None,
        )
        if network is None:
            self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, f"{op.ssid} is not in range"))
            return
        if self._connect_confirmed(op, snap):
            self._succeed(op, OpState.CONNECTED, f"Already connected to {op.ssid}")
            return

        known = snap.known_for(network)
        if known is not None or network.security in (Security.OPEN, Security.WEP):
            self._issue_connect(op)
            return
        if network.security is Security.PSK and passphrase is not None:
            self._register_then_connect(op, passphrase, None)
            return
        if network.security is Security.ENTERPRISE and credentials is not None:
            self._register_then_connect(op, None, credentials)
            return
        self._to(op, OpState.AWAITING_CREDENTIALS)
        self._timer(op, self.timeouts.credentials, expected=OpState.AWAITING_CREDENTIALS)

    def _resume_with_credentials(
        self,
        op: Operation,
        passphrase: str | None,
        credentials: EnterpriseCredentials | None,
    ) -> None:
        if op.finished or op.state is not OpState.AWAITING_CREDENTIALS:
            logger.debug("op %d: credentials arrived in state %s", op.id, op.state.value)
            return
        if op.security is Security.ENTERPRISE and credentials is None:
            self._fail(op, Failure(FailureKind.PROTOCOL_REJECTED, "enterprise credentials required"))
            return
        if op.security is Security.PSK and passphrase is None:
            self._fail(op, Failure(FailureKind.PROTOCOL_REJECTED, "passphrase required"))
            return
        self._register_then_connect(op, passphrase, credentials)

    def _register_then_connect(
        self,
        op: Operation,
        passphrase: str | None,
        credentials: EnterpriseCredentials | None,
    ) -> None:
        self._to(op, OpState.CONNECTING)
        assert op.ssid is not None
        if credentials is not None:
            future = self._client.register_enterprise(op.ssid, credentials, hidden=op._hidden)
        elif passphrase is not None:
            future = self._client.register_psk(op.ssid, passphrase, hidden=op._hidden)
        else:
            self._issue_connect(op)
            return
        self._on_reply(op, future, lambda _path: self._issue_connect(op))

    def _issue_connect(self, op: Operation) -> None:
        if op.finished:
            return
        self._to(op, OpState.CONNECTING)
        self._timer(op, self.timeouts.connect, expected=OpState.CONNECTING)
        op._issued = True
        if op._hidden:
            future = self._client.connect_hidden(op.device, op.ssid, timeout=self.timeouts.connect)
        else:
            network = next(
                (n for n in self._snapshot().networks_of(op.device or "")
                 if n.ssid == op.ssid and n.security is op.security),
                None,
            )
            if network is None:
                self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, f"{op.ssid} is not in range"))
                return
            future = self._client.connect(network.path, timeout=self.timeouts.connect)
        # The reply alone proves nothing; wait for ConnectedNetwork.
        self._on_reply(op, future, lambda _v: None)
        self._await(
            op,
            lambda snap: self._connect_confirmed(op, snap),
            lambda _snap: self._succeed(op, OpState.CONNECTED, f"Connected to {op.ssid}"),
        )

    def _connect_confirmed(self, op: Operation, snap: Snapshot) -> bool:
        station = snap.stations.get(op.device or "")
        if station is None or station.state is not StationState.CONNECTED:
            return False
        net = snap.network_by_path(station.connected_network)
        if net is None or net.ssid != op.ssid:
            return False
        return op.security is None or net.security is op.security

    def _begin_hidden(
        self,
        op: Operation,
        passphrase: str | None,
        credentials: EnterpriseCredentials | None,
    ) -> None:
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.STATION):
            return
        self._to(op, OpState.REQUESTING)
        if credentials is not None:
            op.security = Security.ENTERPRISE
        elif passphrase is not None:
            op.security = Security.PSK
        self._register_then_connect(op, passphrase, credentials)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def _begin_disconnect(self, op: Operation) -> None:
        holder = self._slots.get(op.device or "")
        if holder is not None and holder.kind in (OpKind.CONNECT, OpKind.CONNECT_HIDDEN) and holder.state in (
            OpState.REQUESTING, OpState.AWAITING_CREDENTIALS, OpState.CONNECTING,
        ):
            self._cancel_connect(holder, op)
            return
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.STATION):
            return
        station = self._snapshot().stations[op.device or ""]
        if station.connected_network is None and station.state is StationState.DISCONNECTED:
            self._succeed(op, OpState.DISCONNECTED, "Not connected")
            return
        self._issue_disconnect(op)

    def _cancel_connect(self, connect: Operation, op: Operation) -> None:
        """Hand the device slot from *connect* to the disconnect *op*."""
        logger.debug("op %d: cancelling op %d", op.id, connect.id)
        connect._cancelling = True
        connect._confirm = None
        connect._on_confirm = None
        for timer in connect._timers:
            timer.cancel()
        connect._timers.clear()
        del self._slots[op.device or ""]
        op._cancels = connect
        op._on_finish = self._settle_cancelled
        if not self._activate(op):
            return
        station = self._snapshot().stations.get(op.device or "")
        if not connect._issued and (
            station is None
            or (station.connected_network is None and station.state is StationState.DISCONNECTED)
        ):
            self._succeed(op, OpState.DISCONNECTED, f"Cancelled connecting to {connect.ssid}")
            return
        # Connect is already on its way to the daemon; an idle station proves nothing yet.
        idle = self._disconnect_confirmed(op.device or "")
        op._needs_fresh_state = connect._issued and idle(self._snapshot())
        self._issue_disconnect(op)

    def _settle_cancelled(self, op: Operation) -> None:
        connect = op._cancels
        if connect is None or connect.finished:
            return
        self._fail(connect, Failure(FailureKind.CANCELLED, "disconnect requested"))

    def _issue_disconnect(self, op: Operation) -> None:
        self._to(op, OpState.DISCONNECTING)
        self._timer(op, self.timeouts.disconnect, expected=OpState.DISCONNECTING)
        op._issued = True
        self._on_reply(op, self._client.disconnect(op.device), lambda _v: self._on_disconnect_reply(op))
        confirmed = self._disconnect_confirmed(op.device or "")
        if op._needs_fresh_state:
            def _confirm(snap: Snapshot) -> bool:
                return op._replied and op._station_moved and confirmed(snap)
        else:
            _confirm = confirmed
        self._await(
            op,
            _confirm,
            lambda _snap: self._succeed(
                op, OpState.DISCONNECTED, f"Disconnected {self._device_name(op.device)}",
            ),
        )

    def _on_disconnect_reply(self, op: Operation) -> None:
        op._replied = True
        # The station change may have been applied before the reply arrived.
        self._recheck(op, self._snapshot())

    def _recheck(self, op: Operation, snap: Snapshot) -> None:
        if op.finished or op._confirm is None or not op._confirm(snap):
            return
        on_confirm = op._on_confirm
        op._confirm = None
        op._on_confirm = None
        if on_confirm is not None:
            on_confirm(snap)

    def _disconnect_confirmed(self, device: str) -> Callable[[Snapshot], bool]:
        def _confirm(snap: Snapshot) -> bool:
            station = snap.stations.get(device)
            if station is None:
                return True
            return station.connected_network is None and station.state is StationState.DISCONNECTED
        return _confirm

    # ------------------------------------------------------------------
    # Mode switch
    # ------------------------------------------------------------------

    def _begin_switch(self, op: Operation) -> None:
        if not self._activate(op) or not self._check_device(op):
            return
        snap = self._snapshot()
        dev = snap.devices[op.device or ""]
        target = op.mode
        assert target is not None
        self._to(op, _role_state(dev.mode))
        if dev.mode is target and self._role_ready(op, snap):
            self._succeed(op, _role_state(target), f"{dev.name} already in {target.value} mode")
            return
        self._to(op, OpState.SWITCHING_TO_AP if target is DeviceMode.AP else OpState.SWITCHING_TO_STATION)
        self._timer(op, self.timeouts.mode_switch)

        station = snap.stations.get(op.device or "")
        ap = snap.access_points.get(op.device or "")
        if station is not None and station.connected_network is not None:
            self._on_reply(op, self._client.disconnect(op.device), lambda _v: None)
            self._await(op, self._disconnect_confirmed(op.device or ""), lambda _s: self._issue_mode(op))
        elif ap is not None and ap.started:
            self._on_reply(op, self._client.stop_ap(op.device), lambda _v: None)
            self._await(
                op,
                lambda s: not getattr(s.access_points.get(op.device or ""), "started", False),
                lambda _s: self._issue_mode(op),
            )
        else:
            self._issue_mode(op)

    def _issue_mode(self, op: Operation) -> None:
        if op.finished:
            return
        op._confirm = None
        op._on_confirm = None
        op._issued = True
        assert op.mode is not None
        self._on_reply(op, self._client.set_mode(op.device, op.mode), lambda _v: None)
        self._await(
            op,
            lambda snap: self._role_ready(op, snap),
            lambda _snap: self._succeed(
                op, _role_state(op.mode), f"{self._device_name(op.device)} switched to {op.mode.value} mode",
            ),
        )

    def _role_ready(self, op: Operation, snap: Snapshot) -> bool:
        dev = snap.devices.get(op.device or "")
        if dev is None or dev.mode is not op.mode:
            return False
        if op.mode is DeviceMode.STATION:
            return op.device in snap.stations
        if op.mode is DeviceMode.AP:
            return op.device in snap.access_points
        return True

    # ------------------------------------------------------------------
    # Single-command operations
    # ------------------------------------------------------------------

    def _begin_power(self, op: Operation, powered: bool, *, adapter: bool, path: str = "") -> None:
        self._activate(op)
        self._to(op, OpState.PENDING)
        snap = self._snapshot()
        if adapter:
            if path not in snap.adapters:
                self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "adapter not found"))
                return
            future = self._client.set_adapter_powered(path, powered)
            name = snap.adapters[path].name
        else:
            if op.device not in snap.devices:
                self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "device not found"))
                return
            future = self._client.set_device_powered(op.device, powered)
            name = snap.devices[op.device or ""].name
        state = "on" if powered else "off"
        self._on_reply(op, future, lambda _v: self._succeed(op, OpState.DONE, f"Powered {state} {name}"))

    def _begin_start_ap(self, op: Operation, passphrase: str) -> None:
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.AP):
            return
        self._to(op, OpState.PENDING)
        self._timer(op, self.timeouts.confirm)
        future = self._client.start_ap(op.device, op.ssid, passphrase)
        self._on_reply(op, future, lambda _v: self._await(
            op,
            lambda s: getattr(s.access_points.get(op.device or ""), "started", False),
            lambda _s: self._succeed(op, OpState.DONE, f"Access point {op.ssid} started"),
        ))

    def _begin_stop_ap(self, op: Operation) -> None:
        if not self._activate(op) or not self._check_device(op, need=DeviceMode.AP):
            return
        self._to(op, OpState.PENDING)
        self._timer(op, self.timeouts.confirm)
        self._on_reply(op, self._client.stop_ap(op.device), lambda _v: self._await(
            op,
            lambda s: not getattr(s.access_points.get(op.device or ""), "started", False),
            lambda _s: self._succeed(op, OpState.DONE, "Access point stopped"),
        ))

    def _begin_forget(self, op: Operation) -> None:
        self._activate(op)
        known = self._snapshot().known_networks.get(op.known_path or "")
        if known is None:
            self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "known network not found"))
            return
        op.target = known.ssid
        self._to(op, OpState.PENDING)
        self._timer(op, self.timeouts.confirm)
        self._on_reply(op, self._client.forget(op.known_path), lambda _v: self._await(
            op,
            lambda s: op.known_path not in s.known_networks,
            lambda _s: self._succeed(op, OpState.DONE, f"Forgot {known.ssid}"),
        ))

    def _begin_autoconnect(self, op: Operation, enabled: bool) -> None:
        self._activate(op)
        known = self._snapshot().known_networks.get(op.known_path or "")
        if known is None:
            self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "known network not found"))
            return
        state = "on" if enabled else "off"
        message = f"Auto-connect {state} for {known.ssid}"
        if known.autoconnect is enabled:
            self._succeed(op, OpState.DONE, message)
            return
        self._to(op, OpState.PENDING)
        self._timer(op, self.timeouts.confirm)

        def _confirmed(s: Snapshot) -> bool:
            current = s.known_networks.get(op.known_path or "")
            return current is not None and current.autoconnect is enabled

        self._on_reply(op, self._client.set_autoconnect(op.known_path, enabled), lambda _v: self._await(
            op, _confirmed, lambda _s: self._succeed(op, OpState.DONE, message),
        ))

    # ------------------------------------------------------------------
    # Cache changes
    # ------------------------------------------------------------------

    def _on_change(self, notification: Notification, delta: Delta, snap: Snapshot) -> None:
        self._track_blocks(delta, snap)
        for kind, path in delta.removed:
            if kind is EntityKind.DEVICE:
                self._fail_device(path, Failure(FailureKind.OBJECT_NOT_FOUND, "device removed"))
                self._banners.pop(path, None)
        for device in delta.scan_completed:
            scan_op = self._scans.get(device)
            if scan_op is not None and scan_op._issued:
                self._refresh_networks(device, scan_op)
            else:
                if scan_op is not None:
                    scan_op._completed_early = True
                self._refresh_networks(device)
        for op in list(self._active.values()):
            if op.finished:
                continue
            self._watch_station(op, snap)
            if op._needs_fresh_state and delta.touched(EntityKind.STATION, op.device or ""):
                op._station_moved = True
            self._recheck(op, snap)

    def _watch_station(self, op: Operation, snap: Snapshot) -> None:
        """Fail a connect the daemon dropped after it started associating."""
        if op.kind not in (OpKind.CONNECT, OpKind.CONNECT_HIDDEN) or op._cancelling:
            return
        if op.state is not OpState.CONNECTING or not op._issued:
            return
        station = snap.stations.get(op.device or "")
        if station is None:
            self._fail(op, Failure(FailureKind.OBJECT_NOT_FOUND, "station role disappeared"))
            return
        if station.state in (StationState.CONNECTING, StationState.CONNECTED):
            op._saw_connecting = True
        elif op._saw_connecting and station.state is StationState.DISCONNECTED:
            self._fail(op, Failure(FailureKind.PROTOCOL_REJECTED, "association failed"))

    def _track_blocks(self, delta: Delta, snap: Snapshot) -> None:
        for kind, path, attr in delta.changed:
            if kind is not EntityKind.DEVICE or attr not in ("soft_blocked", "hard_blocked"):
                continue
            self._update_block(path, snap)
        for kind, path in delta.added:
            if kind is EntityKind.DEVICE:
                self._update_block(path, snap)

    def _update_block(self, path: str, snap: Snapshot) -> None:
        dev = snap.devices.get(path)
        if dev is None:
            return
        if not dev.blocked:
            if self._banners.pop(path, None) is not None:
                logger.info("%s unblocked", dev.name)
            return
        reason = _block_reason(dev.hard_blocked)
        self._banners[path] = f"{dev.name}: {reason}"
        self._fail_device(path, Failure(FailureKind.HARDWARE_DISABLED, reason))

    def _fail_device(self, device: str, failure: Failure) -> None:
        for op in list(self._active.values()):
            if op.device == device:
                # The connect being cancelled fails first so it carries *failure*.
                if op._cancels is not None:
                    self._fail(op._cancels, failure)
                self._fail(op, failure)


def _block_reason(hard: bool) -> str:
    if hard:
        return "radio hard-blocked (hardware switch)"
    return "radio soft-blocked (rfkill)"


def _role_state(mode: DeviceMode | None) -> OpState:
    if mode is DeviceMode.STATION:
        return OpState.STATION_ACTIVE
    if mode is DeviceMode.AP:
        return OpState.AP_ACTIVE
    return OpState.IDLE
