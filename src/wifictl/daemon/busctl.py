"""busctl JSON parsing and translation into typed model records.

``busctl --json=short`` wraps every D-Bus value as ``{"type": sig, "data":
value}``.  This module unwraps those variants and converts iwd property
maps into :class:`~wifictl.model.Patch` records, so nothing past the daemon
client ever sees an untyped property dictionary.

It can also be run standalone to decode a captured monitor stream::

    busctl monitor net.connman.iwd --json=short | python -m wifictl.daemon.busctl
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable

from wifictl.errors import DaemonError, FailureKind
from wifictl.model import (
    ApClient,
    DeviceMode,
    EntityKind,
    InterfacesAdded,
    InterfacesRemoved,
    Notification,
    OwnerChanged,
    Patch,
    PropertiesChanged,
    Resync,
    Security,
    StationState,
)

logger = logging.getLogger(__name__)

IWD_SERVICE = "net.connman.iwd"
OBJECT_MANAGER = "org.freedesktop.DBus.ObjectManager"
PROPERTIES = "org.freedesktop.DBus.Properties"
BUS_DRIVER = "org.freedesktop.DBus"

ADAPTER_IFACE = "net.connman.iwd.Adapter"
DEVICE_IFACE = "net.connman.iwd.Device"
STATION_IFACE = "net.connman.iwd.Station"
STATION_DIAGNOSTIC_IFACE = "net.connman.iwd.StationDiagnostic"
AP_IFACE = "net.connman.iwd.AccessPoint"
AP_DIAGNOSTIC_IFACE = "net.connman.iwd.AccessPointDiagnostic"
NETWORK_IFACE = "net.connman.iwd.Network"
KNOWN_NETWORK_IFACE = "net.connman.iwd.KnownNetwork"

INTERFACE_KINDS: dict[str, EntityKind] = {
    ADAPTER_IFACE: EntityKind.ADAPTER,
    DEVICE_IFACE: EntityKind.DEVICE,
    STATION_IFACE: EntityKind.STATION,
    AP_IFACE: EntityKind.ACCESS_POINT,
    NETWORK_IFACE: EntityKind.NETWORK,
    KNOWN_NETWORK_IFACE: EntityKind.KNOWN_NETWORK,
}


# ---------------------------------------------------------------------------
# Variant unwrapping
# ---------------------------------------------------------------------------

def _is_variant(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {"type", "data"}


def unwrap(value: Any) -> Any:
    """Recursively strip busctl ``{"type", "data"}`` wrappers."""
    if _is_variant(value):
        return unwrap(value["data"])
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


def parse_json_reply(output: str, *, call: bool = True) -> list[Any]:
    """Parse busctl ``--json=short`` stdout into a list of values.

    ``call`` wraps all out-arguments in one ``data`` list; ``get-property``
    (``call=False``) returns a single variant, which is returned as a
    one-element list.
    """
    output = output.strip()
    if not output:
        return []
    try:
        doc = json.loads(output)
    except json.JSONDecodeError as e:
        raise DaemonError(FailureKind.PROTOCOL_REJECTED, f"unreadable reply: {e}") from e
    if not _is_variant(doc):
        raise DaemonError(FailureKind.PROTOCOL_REJECTED, "unexpected reply shape")
    data = doc["data"]
    if call:
        if not isinstance(data, list):
            raise DaemonError(FailureKind.PROTOCOL_REJECTED, "unexpected reply shape")
        return [unwrap(v) for v in data]
    return [unwrap(data)]


# ---------------------------------------------------------------------------
# Property translation
# ---------------------------------------------------------------------------

def _str(v: Any) -> str:
    return str(v)


def _bool(v: Any) -> bool:
    return bool(v)


def _opt_path(v: Any) -> str | None:
    v = str(v) if v is not None else ""
    return v if v and v != "/" else None


def _opt_int(v: Any) -> int | None:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _str_tuple(v: Any) -> tuple[str, ...]:
    return tuple(str(x) for x in v or ())


_PROPERTY_MAP: dict[EntityKind, dict[str, tuple[str, Callable[[Any], Any]]]] = {
    EntityKind.ADAPTER: {
        "Powered": ("powered", _bool),
        "Name": ("name", _str),
        "Model": ("model", _str),
        "Vendor": ("vendor", _str),
        "SupportedModes": ("supported_modes", _str_tuple),
    },
    EntityKind.DEVICE: {
        "Name": ("name", _str),
        "Address": ("address", _str),
        "Powered": ("powered", _bool),
        "Adapter": ("adapter", _str),
        "Mode": ("mode", DeviceMode.from_daemon),
    },
    EntityKind.STATION: {
        "State": ("state", StationState.from_daemon),
        "ConnectedNetwork": ("connected_network", _opt_path),
        "Scanning": ("scanning", _bool),
    },
    EntityKind.ACCESS_POINT: {
        "Started": ("started", _bool),
        "Name": ("ssid", _str),
        "Frequency": ("frequency", _opt_int),
    },
    EntityKind.NETWORK: {
        "Name": ("ssid", _str),
        "Type": ("security", Security.from_daemon),
        "Connected": ("connected", _bool),
        "Device": ("device", _str),
    },
    EntityKind.KNOWN_NETWORK: {
        "Name": ("ssid", _str),
        "Type": ("security", Security.from_daemon),
        "Hidden": ("hidden", _bool),
        "AutoConnect": ("autoconnect", _bool),
        "LastConnectedTime": ("last_connected", _str),
    },
}


def translate_properties(
    interface: str,
    props: dict[str, Any],
    invalidated: list[str] | None = None,
) -> Patch | None:
    """Convert a raw iwd property map into a typed :class:`Patch`.

    Returns None for interfaces the model does not track.  Unknown
    properties and values that fail conversion are dropped.
    """
    kind = INTERFACE_KINDS.get(interface)
    if kind is None:
        return None
    mapping = _PROPERTY_MAP[kind]
    fields: list[tuple[str, Any]] = []
    for name, raw in props.items():
        entry = mapping.get(name)
        if entry is None:
            continue
        attr, convert = entry
        try:
            fields.append((attr, convert(unwrap(raw))))
        except (TypeError, ValueError) as e:
            logger.debug("dropping %s.%s=%r: %s", interface, name, raw, e)
    dropped = tuple(
        mapping[name][0] for name in (invalidated or ()) if name in mapping
    )
    return Patch(kind, tuple(fields), dropped)


def _patches(interfaces: dict[str, Any]) -> tuple[Patch, ...]:
    patches = []
    for iface, props in interfaces.items():
        patch = translate_properties(iface, props or {})
        if patch is not None:
            patches.append(patch)
    return tuple(patches)


# ---------------------------------------------------------------------------
# Query replies
# ---------------------------------------------------------------------------

def parse_managed_objects(output: str) -> Resync:
    """Parse a ``GetManagedObjects`` reply into a :class:`Resync`."""
    args = parse_json_reply(output)
    tree = args[0] if args else {}
    objects = []
    for path in sorted(tree):
        patches = _patches(tree[path])
        if patches:
            objects.append((path, patches))
    return Resync(tuple(objects))


def parse_ordered_networks(output: str) -> tuple[tuple[str, int], ...]:
    """Parse ``GetOrderedNetworks`` (``a(on)``, 100*dBm) into ``(path, dBm)``."""
    args = parse_json_reply(output)
    entries = args[0] if args else []
    result = []
    for entry in entries:
        try:
            path, strength = entry
            result.append((str(path), int(strength) // 100))
        except (TypeError, ValueError):
            logger.debug("skipping malformed ordered network entry %r", entry)
    return tuple(result)


def parse_ap_diagnostics(output: str) -> tuple[ApClient, ...]:
    """Parse ``AccessPointDiagnostic.GetDiagnostics`` into client records."""
    args = parse_json_reply(output)
    entries = args[0] if args else []
    clients = []
    for entry in entries:
        if not isinstance(entry, dict) or "Address" not in entry:
            continue
        address = str(entry["Address"]).strip('"').lower()
        ip = entry.get("IPv4Address") or entry.get("Address4")
        clients.append(ApClient(address=address, ip=str(ip) if ip else None))
    return tuple(clients)


def parse_station_diagnostics(output: str) -> tuple[int | None, int | None, str | None]:
    """Parse ``StationDiagnostic.GetDiagnostics`` into (rssi, frequency, bss)."""
    args = parse_json_reply(output)
    info = args[0] if args and isinstance(args[0], dict) else {}
    bss = info.get("ConnectedBss")
    return (
        _opt_int(info.get("RSSI")),
        _opt_int(info.get("Frequency")),
        str(bss).lower() if bss else None,
    )


# ---------------------------------------------------------------------------
# Monitor stream
# ---------------------------------------------------------------------------

def parse_monitor_line(line: str) -> Notification | None:
    """Translate one ``busctl monitor --json=short`` line into a notification.

    Returns None for anything that is not an iwd object-tree or property
    signal, or a change of owner of iwd's bus name (method calls, replies,
    other interfaces, blank lines).
    """
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("unparseable monitor line: %.120s", line)
        return None
    if msg.get("type") != "signal":
        return None
    seq = _opt_int(msg.get("cookie"))
    member = msg.get("member")
    interface = msg.get("interface")
    payload = msg.get("payload") or {}
    data = unwrap(payload.get("data") or [])

    try:
        if interface == BUS_DRIVER and member == "NameOwnerChanged":
            name, new_owner = data[0], data[2]
            if name != IWD_SERVICE:
                return None
            return OwnerChanged(str(new_owner) or None)
        if interface == OBJECT_MANAGER and member == "InterfacesAdded":
            path, interfaces = data[0], data[1]
            patches = _patches(interfaces)
            return InterfacesAdded(str(path), patches, seq) if patches else None
        if interface == OBJECT_MANAGER and member == "InterfacesRemoved":
            path, ifaces = data[0], data[1]
            kinds = tuple(INTERFACE_KINDS[i] for i in ifaces if i in INTERFACE_KINDS)
            return InterfacesRemoved(str(path), kinds, seq) if kinds else None
        if interface == PROPERTIES and member == "PropertiesChanged":
            iface, changed = data[0], data[1]
            invalidated = data[2] if len(data) > 2 else []
            patch = translate_properties(iface, changed or {}, invalidated)
            if patch is None or not (patch.fields or patch.invalidated):
                return None
            return PropertiesChanged(str(msg.get("path", "")), patch, seq)
    except (IndexError, TypeError, KeyError) as e:
        logger.debug("malformed %s signal: %s", member, e)
    return None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

# Ordered: the first matching fragment wins.
_ERROR_PATTERNS: list[tuple[str, FailureKind]] = [
    ("failed to connect to bus", FailureKind.DAEMON_UNREACHABLE),
    ("was not provided by any .service", FailureKind.DAEMON_UNREACHABLE),
    ("serviceunknown", FailureKind.DAEMON_UNREACHABLE),
    ("name has no owner", FailureKind.DAEMON_UNREACHABLE),
    ("could not activate remote peer", FailureKind.DAEMON_UNREACHABLE),
    ("access denied", FailureKind.PERMISSION_DENIED),
    ("permission denied", FailureKind.PERMISSION_DENIED),
    ("not authorized", FailureKind.PERMISSION_DENIED),
    ("operation not permitted", FailureKind.PERMISSION_DENIED),
    ("unknown object", FailureKind.OBJECT_NOT_FOUND),
    ("unknown interface", FailureKind.OBJECT_NOT_FOUND),
    ("no such object", FailureKind.OBJECT_NOT_FOUND),
    ("no such interface", FailureKind.OBJECT_NOT_FOUND),
    ("object not found", FailureKind.OBJECT_NOT_FOUND),
    ("not found", FailureKind.OBJECT_NOT_FOUND),
    ("not supported", FailureKind.NOT_SUPPORTED),
    ("not available", FailureKind.NOT_SUPPORTED),
    ("operation already in progress", FailureKind.BUSY),
    ("busy", FailureKind.BUSY),
    ("timed out", FailureKind.TIMEOUT),
    ("timeout", FailureKind.TIMEOUT),
]


def classify_error(returncode: int | None, stderr: str) -> DaemonError:
    """Map a failed busctl invocation to a typed :class:`DaemonError`.

    The daemon's own text (after ``Call failed:``) is kept verbatim as the
    reason.
    """
    text = (stderr or "").strip()
    reason = text
    for prefix in ("Call failed:", "Failed to get property", "Failed to set property"):
        if reason.startswith(prefix):
            reason = reason[len(prefix):].lstrip(" :")
            break
    lowered = text.lower()
    for fragment, kind in _ERROR_PATTERNS:
        if fragment in lowered:
            return DaemonError(kind, reason)
    if not text:
        reason = f"busctl exited with status {returncode}"
    return DaemonError(FailureKind.PROTOCOL_REJECTED, reason)


# ---------------------------------------------------------------------------
# Standalone CLI
# ---------------------------------------------------------------------------

def main() -> None:
    """Decode a monitor stream from stdin and print the notifications."""
    for line in sys.stdin:
        notification = parse_monitor_line(line)
        if notification is not None:
            print(notification)


if __name__ == "__main__":
    main()
