"""In-memory object model of the wireless daemon.

The cache holds typed, immutable records for every daemon object the
dashboard cares about and is mutated only through :meth:`ObjectCache.apply`.
Readers call :meth:`ObjectCache.snapshot` and get a fully consistent,
read-only :class:`Snapshot`; a notification is either visible in its
entirety or not at all.

Notifications arrive already translated from the daemon's untyped property
maps into :class:`Patch` records (see :mod:`wifictl.daemon.busctl`), so no
raw property dictionaries exist past the daemon client boundary.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DeviceMode(enum.Enum):
    STATION = "station"
    AP = "ap"
    DISABLED = "disabled"

    @classmethod
    def from_daemon(cls, value: str) -> "DeviceMode":
        """Map the daemon's ``Mode`` string; anything unknown is DISABLED."""
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.DISABLED


class Security(enum.Enum):
    OPEN = "open"
    WEP = "wep"
    PSK = "psk"
    ENTERPRISE = "8021x"

    @classmethod
    def from_daemon(cls, value: str) -> "Security":
        for sec in cls:
            if sec.value == value:
                return sec
        raise ValueError(f"unknown security type {value!r}")

    @property
    def label(self) -> str:
        return {
            Security.OPEN: "open",
            Security.WEP: "wep",
            Security.PSK: "wpa-psk",
            Security.ENTERPRISE: "wpa-eap",
        }[self]


class StationState(enum.Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    DISCONNECTING = "disconnecting"
    ROAMING = "roaming"

    @classmethod
    def from_daemon(cls, value: str) -> "StationState":
        for state in cls:
            if state.value == value:
                return state
        return cls.DISCONNECTED


class EntityKind(enum.Enum):
    """Closed set of daemon object roles the cache understands.

    Declaration order is the order in which the parts of one
    ``InterfacesAdded`` are applied: owners before the objects they own.
    """

    ADAPTER = "adapter"
    DEVICE = "device"
    STATION = "station"
    ACCESS_POINT = "access_point"
    NETWORK = "network"
    KNOWN_NETWORK = "known_network"


_KIND_ORDER = {kind: i for i, kind in enumerate(EntityKind)}


# ---------------------------------------------------------------------------
# Entity records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Adapter:
    """A physical radio (``phy``)."""

    path: str
    name: str = ""
    vendor: str = ""
    model: str = ""
    powered: bool = False
    supported_modes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Device:
    """A radio interface bound to an Adapter (e.g. ``wlan0``)."""

    path: str
    adapter: str = ""            # adapter object path
    name: str = ""
    address: str = ""
    powered: bool = False
    mode: DeviceMode = DeviceMode.DISABLED
    soft_blocked: bool = False
    hard_blocked: bool = False

    @property
    def blocked(self) -> bool:
        return self.soft_blocked or self.hard_blocked


@dataclass(frozen=True)
class Station:
    """Client-mode role of a Device.  Keyed by the device path."""

    device: str
    scanning: bool = False
    state: StationState = StationState.DISCONNECTED
    connected_network: str | None = None   # network object path, weak
    rssi: int | None = None                 # dBm of the connected BSS
    frequency: int | None = None            # MHz of the connected BSS
    connected_bss: str | None = None


@dataclass(frozen=True)
class ApClient:
    """A station associated with our access point."""

    address: str
    ip: str | None = None


@dataclass(frozen=True)
class AccessPoint:
    """Access-point role of a Device.  Keyed by the device path."""

    device: str
    started: bool = False
    ssid: str | None = None
    frequency: int | None = None
    clients: tuple[ApClient, ...] = ()


class NetworkKey(NamedTuple):
    """Correlation key between a scanned Network and a KnownNetwork."""

    ssid: str
    security: Security


class NetworkId(NamedTuple):
    """Identity of a scanned network: the daemon may reuse or change paths."""

    device: str
    ssid: str
    security: Security


@dataclass(frozen=True)
class Network:
    """A network visible in the latest scan of a Station."""

    device: str
    ssid: str
    security: Security
    path: str = ""
    signal: int = -100           # dBm
    connected: bool = False

    @property
    def key(self) -> NetworkKey:
        return NetworkKey(self.ssid, self.security)

    @property
    def ident(self) -> NetworkId:
        return NetworkId(self.device, self.ssid, self.security)


@dataclass(frozen=True)
class KnownNetwork:
    """A persisted credential entry, independent of scan visibility."""

    path: str
    ssid: str
    security: Security
    autoconnect: bool = True
    hidden: bool = False
    last_connected: str | None = None

    @property
    def key(self) -> NetworkKey:
        return NetworkKey(self.ssid, self.security)


Entity = Union[Adapter, Device, Station, AccessPoint, Network, KnownNetwork]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Patch:
    """Typed field updates for one entity kind on one object path.

    ``fields`` holds ``(attribute, value)`` pairs using the record
    attribute names above; ``invalidated`` lists attributes the daemon
    dropped, which fall back to the record default.
    """

    kind: EntityKind
    fields: tuple[tuple[str, Any], ...] = ()
    invalidated: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return dict(self.fields)


@dataclass(frozen=True)
class InterfacesAdded:
    path: str
    patches: tuple[Patch, ...]
    seq: int | None = None


@dataclass(frozen=True)
class InterfacesRemoved:
    path: str
    kinds: tuple[EntityKind, ...]
    seq: int | None = None


@dataclass(frozen=True)
class PropertiesChanged:
    path: str
    patch: Patch
    seq: int | None = None


@dataclass(frozen=True)
class ScanResults:
    """Ordered networks of a Station after a scan: ``(path, dBm)`` pairs.

    Replaces the device's network set; entries missing from the list are
    dropped, unknown paths are ignored until their objects are announced.
    """

    device: str
    networks: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class ApClientsChanged:
    device: str
    clients: tuple[ApClient, ...]


@dataclass(frozen=True)
class DiagnosticsUpdated:
    device: str
    rssi: int | None = None
    frequency: int | None = None
    bss: str | None = None


@dataclass(frozen=True)
class BlockChanged:
    """rfkill state for the adapter named ``adapter_name`` (e.g. ``phy0``)."""

    adapter_name: str
    soft: bool
    hard: bool


@dataclass(frozen=True)
class OwnerChanged:
    """The daemon's bus name changed hands.  *owner* is None when it went away.

    Signal sequence numbers restart with every new owner.
    """

    owner: str | None


@dataclass(frozen=True)
class Resync:
    """Complete object tree from a fresh ``GetManagedObjects``."""

    objects: tuple[tuple[str, tuple[Patch, ...]], ...]


Notification = Union[
    InterfacesAdded,
    InterfacesRemoved,
    PropertiesChanged,
    ScanResults,
    ApClientsChanged,
    DiagnosticsUpdated,
    BlockChanged,
    OwnerChanged,
    Resync,
]


# ---------------------------------------------------------------------------
# Delta / Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Delta:
    """What one ``apply`` changed.  Empty when the notification was a no-op."""

    added: frozenset[tuple[EntityKind, str]] = frozenset()
    removed: frozenset[tuple[EntityKind, str]] = frozenset()
    changed: frozenset[tuple[EntityKind, str, str]] = frozenset()
    scan_completed: frozenset[str] = frozenset()
    dropped: int = 0

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed or self.scan_completed)

    def touched(self, kind: EntityKind, path: str, attr: str | None = None) -> bool:
        """Return True if *path* of *kind* was added, removed or changed."""
        if (kind, path) in self.added or (kind, path) in self.removed:
            return True
        if attr is None:
            return any(k == kind and p == path for k, p, _ in self.changed)
        return (kind, path, attr) in self.changed


def _empty() -> Mapping[Any, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class Snapshot:
    """Immutable, fully consistent view of the cache."""

    version: int = 0
    adapters: Mapping[str, Adapter] = field(default_factory=_empty)
    devices: Mapping[str, Device] = field(default_factory=_empty)
    stations: Mapping[str, Station] = field(default_factory=_empty)
    access_points: Mapping[str, AccessPoint] = field(default_factory=_empty)
    networks: Mapping[NetworkId, Network] = field(default_factory=_empty)
    known_networks: Mapping[str, KnownNetwork] = field(default_factory=_empty)

    # -- lookups ------------------------------------------------------------

    def devices_of(self, adapter_path: str) -> list[Device]:
        return [d for d in self.devices.values() if d.adapter == adapter_path]

    def adapter_of(self, device_path: str) -> Adapter | None:
        dev = self.devices.get(device_path)
        return self.adapters.get(dev.adapter) if dev else None

    def networks_of(self, device_path: str) -> list[Network]:
        """Networks seen by *device_path*, strongest first (display order)."""
        nets = [n for n in self.networks.values() if n.device == device_path]
        nets.sort(key=lambda n: (-n.signal, n.ssid))
        return nets

    def network_by_path(self, path: str | None) -> Network | None:
        if not path:
            return None
        for net in self.networks.values():
            if net.path == path:
                return net
        return None

    def connected_network(self, device_path: str) -> Network | None:
        station = self.stations.get(device_path)
        if station is None:
            return None
        return self.network_by_path(station.connected_network)

    def known_for(self, network: Network) -> KnownNetwork | None:
        """Known entry matching *network* by SSID and security, if any."""
        for known in self.known_networks.values():
            if known.key == network.key:
                return known
        return None

    def network_for(self, known: KnownNetwork, device_path: str) -> Network | None:
        """Visible network on *device_path* matching *known*, if in range."""
        return self.networks.get(NetworkId(device_path, known.ssid, known.security))

    def known_by_key(self, key: NetworkKey) -> KnownNetwork | None:
        for known in self.known_networks.values():
            if known.key == key:
                return known
        return None

    def role_of(self, device_path: str) -> Station | AccessPoint | None:
        return self.stations.get(device_path) or self.access_points.get(device_path)


# ---------------------------------------------------------------------------
# ObjectCache
# ---------------------------------------------------------------------------

_RECORD_TYPES: dict[EntityKind, type] = {
    EntityKind.ADAPTER: Adapter,
    EntityKind.DEVICE: Device,
    EntityKind.STATION: Station,
    EntityKind.ACCESS_POINT: AccessPoint,
    EntityKind.NETWORK: Network,
    EntityKind.KNOWN_NETWORK: KnownNetwork,
}

_DEFAULTS: dict[EntityKind, dict[str, Any]] = {
    kind: {
        f.name: f.default
        for f in dataclasses.fields(cls)
        if f.default is not dataclasses.MISSING
    }
    for kind, cls in _RECORD_TYPES.items()
}

# Attributes a patch may never rewrite: they are the record's identity.
_IDENTITY_FIELDS = frozenset({"path", "device"})

_ANY_FIELD = "*"


class _Changes:
    """Accumulates one apply()'s effects before they are published."""

    def __init__(self) -> None:
        self.added: set[tuple[EntityKind, str]] = set()
        self.removed: set[tuple[EntityKind, str]] = set()
        self.changed: set[tuple[EntityKind, str, str]] = set()
        self.scan_completed: set[str] = set()
        self.dropped = 0

    def freeze(self) -> Delta:
        return Delta(
            added=frozenset(self.added),
            removed=frozenset(self.removed),
            changed=frozenset(self.changed),
            scan_completed=frozenset(self.scan_completed),
            dropped=self.dropped,
        )


class ObjectCache:
    """Single-writer store of daemon objects.

    Not thread-safe for writers by itself: the reconciler is the only
    caller of :meth:`apply`.  :meth:`snapshot` may be called from any
    thread; it returns the last published immutable view.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, Adapter] = {}
        self._devices: dict[str, Device] = {}
        self._stations: dict[str, Station] = {}
        self._access_points: dict[str, AccessPoint] = {}
        self._networks: dict[NetworkId, Network] = {}
        self._network_paths: dict[str, NetworkId] = {}
        self._known: dict[str, KnownNetwork] = {}
        self._blocks: dict[str, tuple[bool, bool]] = {}
        self._last_seq: dict[tuple[str, EntityKind, str], int] = {}
        self._version = 0
        self._snapshot = Snapshot()

    # -- public API ---------------------------------------------------------

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def apply(self, notification: Notification) -> Delta:
        """Apply one notification and publish a new snapshot if it changed anything."""
        changes = _Changes()
        if isinstance(notification, InterfacesAdded):
            self._apply_added(notification, changes)
        elif isinstance(notification, InterfacesRemoved):
            self._apply_removed(notification, changes)
        elif isinstance(notification, PropertiesChanged):
            self._apply_properties(notification, changes)
        elif isinstance(notification, ScanResults):
            self._apply_scan_results(notification, changes)
        elif isinstance(notification, ApClientsChanged):
            self._apply_ap_clients(notification, changes)
        elif isinstance(notification, DiagnosticsUpdated):
            self._apply_diagnostics(notification, changes)
        elif isinstance(notification, BlockChanged):
            self._apply_block(notification, changes)
        elif isinstance(notification, Resync):
            self._apply_resync(notification, changes)
        elif isinstance(notification, OwnerChanged):
            self._last_seq.clear()
        else:
            raise TypeError(f"unsupported notification {type(notification).__name__}")

        delta = changes.freeze()
        if not delta.empty:
            self._publish()
        if delta.dropped:
            logger.debug("dropped %d stale update(s) from %r", delta.dropped, notification)
        return delta

    # -- sequence bookkeeping ----------------------------------------------

    def _is_stale(self, path: str, kind: EntityKind, attr: str, seq: int | None) -> bool:
        if seq is None:
            return False
        last = self._last_seq.get((path, kind, attr))
        return last is not None and seq <= last

    def _mark(self, path: str, kind: EntityKind, attr: str, seq: int | None) -> None:
        if seq is not None:
            self._last_seq[(path, kind, attr)] = seq

    # -- notification handlers ---------------------------------------------

    def _apply_added(self, n: InterfacesAdded, changes: _Changes) -> None:
        for patch in sorted(n.patches, key=lambda p: _KIND_ORDER[p.kind]):
            if self._is_stale(n.path, patch.kind, _ANY_FIELD, n.seq):
                changes.dropped += 1
                continue
            self._mark(n.path, patch.kind, _ANY_FIELD, n.seq)
            for attr, _ in patch.fields:
                self._mark(n.path, patch.kind, attr, n.seq)
            self._upsert(n.path, patch, changes, create=True)

    def _apply_removed(self, n: InterfacesRemoved, changes: _Changes) -> None:
        for kind in n.kinds:
            if self._is_stale(n.path, kind, _ANY_FIELD, n.seq):
                changes.dropped += 1
                continue
            self._mark(n.path, kind, _ANY_FIELD, n.seq)
            self._remove(kind, n.path, changes)

    def _apply_properties(self, n: PropertiesChanged, changes: _Changes) -> None:
        patch = n.patch
        fresh: list[tuple[str, Any]] = []
        for attr, value in patch.fields:
            if self._is_stale(n.path, patch.kind, attr, n.seq):
                changes.dropped += 1
                continue
            self._mark(n.path, patch.kind, attr, n.seq)
            fresh.append((attr, value))
        invalidated: list[str] = []
        for attr in patch.invalidated:
            if self._is_stale(n.path, patch.kind, attr, n.seq):
                changes.dropped += 1
                continue
            self._mark(n.path, patch.kind, attr, n.seq)
            invalidated.append(attr)
        if fresh or invalidated:
            self._upsert(
                n.path,
                Patch(patch.kind, tuple(fresh), tuple(invalidated)),
                changes,
                create=False,
            )

    def _apply_scan_results(self, n: ScanResults, changes: _Changes) -> None:
        if n.device not in self._stations:
            return
        signals = dict(n.networks)
        for ident, net in list(self._networks.items()):
            if net.device != n.device:
                continue
            if net.path not in signals:
                self._drop_network(ident, changes)
                continue
            signal = signals[net.path]
            if signal != net.signal:
                self._networks[ident] = dataclasses.replace(net, signal=signal)
                changes.changed.add((EntityKind.NETWORK, net.path, "signal"))

    def _apply_ap_clients(self, n: ApClientsChanged, changes: _Changes) -> None:
        ap = self._access_points.get(n.device)
        if ap is None or ap.clients == n.clients:
            return
        self._access_points[n.device] = dataclasses.replace(ap, clients=n.clients)
        changes.changed.add((EntityKind.ACCESS_POINT, n.device, "clients"))

    def _apply_diagnostics(self, n: DiagnosticsUpdated, changes: _Changes) -> None:
        station = self._stations.get(n.device)
        if station is None:
            return
        updated = dataclasses.replace(
            station, rssi=n.rssi, frequency=n.frequency, connected_bss=n.bss,
        )
        self._replace(EntityKind.STATION, n.device, station, updated, changes)

    def _apply_block(self, n: BlockChanged, changes: _Changes) -> None:
        self._blocks[n.adapter_name] = (n.soft, n.hard)
        for adapter in self._adapters.values():
            if adapter.name != n.adapter_name:
                continue
            for path, dev in list(self._devices.items()):
                if dev.adapter != adapter.path:
                    continue
                updated = dataclasses.replace(dev, soft_blocked=n.soft, hard_blocked=n.hard)
                self._replace(EntityKind.DEVICE, path, dev, updated, changes)

    def _apply_resync(self, n: Resync, changes: _Changes) -> None:
        before = self._snapshot
        # Signals are not part of the object tree; keep them until the
        # next ordered-network refresh replaces them.
        signals = {ident: net.signal for ident, net in self._networks.items()}
        self._adapters.clear()
        self._devices.clear()
        self._stations.clear()
        self._access_points.clear()
        self._networks.clear()
        self._network_paths.clear()
        self._known.clear()
        self._last_seq.clear()

        scratch = _Changes()
        ordered = sorted(
            ((path, patch) for path, patches in n.objects for patch in patches),
            key=lambda item: _KIND_ORDER[item[1].kind],
        )
        for path, patch in ordered:
            self._upsert(path, patch, scratch, create=True)
        for ident, net in list(self._networks.items()):
            if ident in signals:
                self._networks[ident] = dataclasses.replace(net, signal=signals[ident])

        self._diff_against(before, changes)

    # -- generic upsert / remove -------------------------------------------

    def _upsert(self, path: str, patch: Patch, changes: _Changes, *, create: bool) -> None:
        kind = patch.kind
        values = {k: v for k, v in patch.fields if k not in _IDENTITY_FIELDS}
        for attr in patch.invalidated:
            if attr in _DEFAULTS[kind]:
                values[attr] = _DEFAULTS[kind][attr]

        if kind is EntityKind.NETWORK:
            self._upsert_network(path, patch, values, changes, create=create)
            return

        store = self._store(kind)
        current = store.get(path)
        if current is None:
            if not create:
                logger.debug("update for unknown %s %s ignored", kind.value, path)
                return
            record = self._new_record(kind, path, values)
            if record is None:
                return
            self._insert(kind, path, record, changes)
            return

        try:
            updated = dataclasses.replace(current, **values)
        except TypeError:
            logger.debug("bad fields for %s %s: %r", kind.value, path, values)
            return
        self._replace(kind, path, current, updated, changes)
        if kind is EntityKind.DEVICE and "mode" in values:
            self._enforce_mode(path, changes)

    def _new_record(self, kind: EntityKind, path: str, values: dict[str, Any]) -> Entity | None:
        if kind in (EntityKind.STATION, EntityKind.ACCESS_POINT):
            if path not in self._devices:
                logger.debug("%s role for unknown device %s ignored", kind.value, path)
                return None
            return _RECORD_TYPES[kind](device=path, **values)
        if kind is EntityKind.DEVICE:
            soft, hard = self._block_for_adapter(values.get("adapter", ""))
            values.setdefault("soft_blocked", soft)
            values.setdefault("hard_blocked", hard)
        if kind is EntityKind.KNOWN_NETWORK and ("ssid" not in values or "security" not in values):
            logger.debug("incomplete known network %s ignored", path)
            return None
        return _RECORD_TYPES[kind](path=path, **values)

    def _insert(self, kind: EntityKind, path: str, record: Entity, changes: _Changes) -> None:
        # Exactly one role object per device: the newcomer evicts the other.
        if kind is EntityKind.STATION and path in self._access_points:
            self._remove(EntityKind.ACCESS_POINT, path, changes)
        elif kind is EntityKind.ACCESS_POINT and path in self._stations:
            self._remove(EntityKind.STATION, path, changes)
        self._store(kind)[path] = record
        changes.added.add((kind, path))

    def _replace(
        self,
        kind: EntityKind,
        path: str,
        current: Entity,
        updated: Entity,
        changes: _Changes,
    ) -> None:
        if updated == current:
            return
        for f in dataclasses.fields(updated):
            if getattr(updated, f.name) != getattr(current, f.name):
                changes.changed.add((kind, path, f.name))
        self._store(kind)[path] = updated
        if (
            kind is EntityKind.STATION
            and isinstance(current, Station)
            and isinstance(updated, Station)
            and current.scanning
            and not updated.scanning
        ):
            changes.scan_completed.add(path)

    def _upsert_network(
        self,
        path: str,
        patch: Patch,
        values: dict[str, Any],
        changes: _Changes,
        *,
        create: bool,
    ) -> None:
        ident = self._network_paths.get(path)
        if ident is not None:
            current = self._networks[ident]
            updated = dataclasses.replace(
                current, **{k: v for k, v in values.items() if k not in ("ssid", "security")}
            )
            self._replace_network(ident, current, updated, changes)
            return
        if not create:
            logger.debug("update for unknown network %s ignored", path)
            return
        fields = patch.as_dict()
        device = fields.get("device")
        ssid = values.get("ssid")
        security = values.get("security")
        if device is None or ssid is None or security is None:
            logger.debug("incomplete network %s ignored", path)
            return
        if device not in self._stations:
            logger.debug("network %s for device %s without a station ignored", path, device)
            return
        ident = NetworkId(device, ssid, security)
        previous = self._networks.get(ident)
        if previous is not None:
            # Same network re-announced under a new object path.
            self._network_paths.pop(previous.path, None)
            values.setdefault("signal", previous.signal)
        record = Network(device=device, path=path, **values)
        self._networks[ident] = record
        self._network_paths[path] = ident
        if previous is None:
            changes.added.add((EntityKind.NETWORK, path))
        elif previous != record:
            for f in dataclasses.fields(record):
                if getattr(record, f.name) != getattr(previous, f.name):
                    changes.changed.add((EntityKind.NETWORK, path, f.name))

    def _replace_network(
        self, ident: NetworkId, current: Network, updated: Network, changes: _Changes,
    ) -> None:
        if updated == current:
            return
        for f in dataclasses.fields(updated):
            if getattr(updated, f.name) != getattr(current, f.name):
                changes.changed.add((EntityKind.NETWORK, current.path, f.name))
        self._networks[ident] = updated

    def _remove(self, kind: EntityKind, path: str, changes: _Changes) -> None:
        if kind is EntityKind.NETWORK:
            ident = self._network_paths.get(path)
            if ident is not None:
                self._drop_network(ident, changes)
            return
        store = self._store(kind)
        if store.pop(path, None) is None:
            return
        changes.removed.add((kind, path))
        if kind is EntityKind.STATION:
            for ident, net in list(self._networks.items()):
                if net.device == path:
                    self._drop_network(ident, changes)
        elif kind is EntityKind.DEVICE:
            self._remove(EntityKind.STATION, path, changes)
            self._remove(EntityKind.ACCESS_POINT, path, changes)
            if not self._devices:
                for known_path in list(self._known):
                    self._remove(EntityKind.KNOWN_NETWORK, known_path, changes)
        elif kind is EntityKind.ADAPTER:
            for dev_path, dev in list(self._devices.items()):
                if dev.adapter == path:
                    self._remove(EntityKind.DEVICE, dev_path, changes)

    def _drop_network(self, ident: NetworkId, changes: _Changes) -> None:
        net = self._networks.pop(ident, None)
        if net is None:
            return
        self._network_paths.pop(net.path, None)
        changes.removed.add((EntityKind.NETWORK, net.path))

    def _enforce_mode(self, device_path: str, changes: _Changes) -> None:
        dev = self._devices[device_path]
        if dev.mode is not DeviceMode.STATION:
            self._remove(EntityKind.STATION, device_path, changes)
        if dev.mode is not DeviceMode.AP:
            self._remove(EntityKind.ACCESS_POINT, device_path, changes)

    # -- helpers --------------------------------------------------------------

    def _store(self, kind: EntityKind) -> dict[str, Any]:
        return {
            EntityKind.ADAPTER: self._adapters,
            EntityKind.DEVICE: self._devices,
            EntityKind.STATION: self._stations,
            EntityKind.ACCESS_POINT: self._access_points,
            EntityKind.KNOWN_NETWORK: self._known,
        }[kind]

    def _block_for_adapter(self, adapter_path: str) -> tuple[bool, bool]:
        adapter = self._adapters.get(adapter_path)
        if adapter is None:
            return (False, False)
        return self._blocks.get(adapter.name, (False, False))

    def _diff_against(self, before: Snapshot, changes: _Changes) -> None:
        pairs: list[tuple[EntityKind, Mapping[Any, Any], Mapping[Any, Any]]] = [
            (EntityKind.ADAPTER, before.adapters, self._adapters),
            (EntityKind.DEVICE, before.devices, self._devices),
            (EntityKind.STATION, before.stations, self._stations),
            (EntityKind.ACCESS_POINT, before.access_points, self._access_points),
            (EntityKind.KNOWN_NETWORK, before.known_networks, self._known),
        ]
        for kind, old, new in pairs:
            for key in old.keys() - new.keys():
                changes.removed.add((kind, key))
            for key in new.keys() - old.keys():
                changes.added.add((kind, key))
            for key in old.keys() & new.keys():
                if old[key] != new[key]:
                    for f in dataclasses.fields(new[key]):
                        if getattr(new[key], f.name) != getattr(old[key], f.name):
                            changes.changed.add((kind, key, f.name))
        for ident in before.networks.keys() - self._networks.keys():
            changes.removed.add((EntityKind.NETWORK, before.networks[ident].path))
        for ident in self._networks.keys() - before.networks.keys():
            changes.added.add((EntityKind.NETWORK, self._networks[ident].path))
        for ident in before.networks.keys() & self._networks.keys():
            if before.networks[ident] != self._networks[ident]:
                changes.changed.add((EntityKind.NETWORK, self._networks[ident].path, "*"))

    def _publish(self) -> None:
        self._version += 1
        self._snapshot = Snapshot(
            version=self._version,
            adapters=MappingProxyType(dict(self._adapters)),
            devices=MappingProxyType(dict(self._devices)),
            stations=MappingProxyType(dict(self._stations)),
            access_points=MappingProxyType(dict(self._access_points)),
            networks=MappingProxyType(dict(self._networks)),
            known_networks=MappingProxyType(dict(self._known)),
        )
