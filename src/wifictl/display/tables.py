"""Rich table builders for the wifictl dashboard.

Every builder is a pure function of an immutable
:class:`~wifictl.model.Snapshot`, so rendering never touches the daemon.
Can be used standalone for checking table rendering::

    python -m wifictl.display.tables          # render demo tables
"""

from __future__ import annotations

from rich.markup import escape
from rich.table import Table
from rich.text import Text

from wifictl.model import (
    KnownNetwork,
    Network,
    Snapshot,
)
from wifictl.wifi_common import (
    COLOR_TO_RICH,
    signal_color,
    signal_to_bars,
    security_color,
)
from wifictl.workflows import Operation, OperationEvent


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _rich_color(rgb: tuple) -> str:  # type: ignore[type-arg]
    """Convert an RGB tuple to a Rich color name."""
    return COLOR_TO_RICH.get(rgb, "white")


def _bar_string(bars: int, unicode: bool = True) -> str:
    """Build a signal-bar string like '▂▄▆█' (or '####' in ASCII mode)."""
    chars = ["▂", "▄", "▆", "█"] if unicode else ["#"] * 4
    return "".join(chars[i] if i < bars else " " for i in range(4))


def _flag(value: bool, unicode: bool = True) -> str:
    if unicode:
        return "[green]✔[/green]" if value else "[red]✘[/red]"
    return "[green]yes[/green]" if value else "[red]no[/red]"


def _connected_mark(unicode: bool) -> str:
    return "[green]●[/green]" if unicode else "[green]*[/green]"


def _signal_cells(signal: int, unicode: bool) -> tuple[str, str]:
    color = _rich_color(signal_color(signal))
    bars = _bar_string(signal_to_bars(signal), unicode)
    return f"[{color}]{signal}[/{color}]", f"[{color}]{bars}[/{color}]"


def _panel_table(title: str, focused: bool, caption: str | None = None) -> Table:
    return Table(
        title=title,
        title_style="bold cyan" if focused else "cyan",
        caption=caption,
        caption_style="grey50",
        expand=True,
        show_lines=False,
        padding=(0, 1),
        border_style="cyan" if focused else "grey50",
    )


# ---------------------------------------------------------------------------
# Row selection (shared with the key dispatcher)
# ---------------------------------------------------------------------------

def known_rows(snap: Snapshot, device: str | None) -> list[KnownNetwork]:
    """Known networks: in-range ones first (strongest first), then by name."""
    def _key(known: KnownNetwork) -> tuple[int, int, str]:
        net = snap.network_for(known, device) if device else None
        return (0 if net else 1, -(net.signal if net else -200), known.ssid.lower())
    return sorted(snap.known_networks.values(), key=_key)


def new_rows(snap: Snapshot, device: str | None) -> list[Network]:
    """Visible networks without a known entry, strongest first."""
    if not device:
        return []
    return [n for n in snap.networks_of(device) if snap.known_for(n) is None]


# ---------------------------------------------------------------------------
# Device table
# ---------------------------------------------------------------------------

def build_device_table(
    snap: Snapshot,
    selected: str | None = None,
    *,
    focused: bool = False,
    unicode: bool = True,
) -> Table:
    """Adapters and their devices, one row per device."""
    table = _panel_table("Device", focused)
    table.add_column("Name", style="white", min_width=6)
    table.add_column("Mode", width=8)
    table.add_column("Powered", justify="center", width=7)
    table.add_column("Address", style="grey50", width=17)
    table.add_column("Adapter", style="grey50", min_width=10, max_width=30)
    table.add_column("Radio", width=12)

    for dev in sorted(snap.devices.values(), key=lambda d: d.name):
        adapter = snap.adapter_of(dev.path)
        adapter_label = ""
        if adapter is not None:
            adapter_label = " ".join(p for p in (adapter.name, adapter.vendor, adapter.model) if p)
        if dev.hard_blocked:
            radio = "[bold red]hard-blocked[/bold red]"
        elif dev.soft_blocked:
            radio = "[yellow]soft-blocked[/yellow]"
        else:
            radio = "[green]on[/green]"
        table.add_row(
            escape(dev.name),
            dev.mode.value,
            _flag(dev.powered, unicode),
            escape(dev.address),
            escape(adapter_label),
            radio,
            style="bold" if dev.path == selected else "",
        )
    return table


def build_adapter_table(snap: Snapshot) -> Table:
    """Adapter details (vendor, model, supported modes)."""
    table = _panel_table("Adapter", False)
    table.add_column("Name", style="white", width=8)
    table.add_column("Powered", justify="center", width=7)
    table.add_column("Vendor", min_width=10, max_width=30)
    table.add_column("Model", min_width=10, max_width=30)
    table.add_column("Modes", style="grey50", min_width=10)
    for adapter in sorted(snap.adapters.values(), key=lambda a: a.name):
        table.add_row(
            escape(adapter.name),
            "yes" if adapter.powered else "no",
            escape(adapter.vendor),
            escape(adapter.model),
            escape(", ".join(adapter.supported_modes)),
        )
    return table


# ---------------------------------------------------------------------------
# Station status
# ---------------------------------------------------------------------------

def build_station_table(
    snap: Snapshot,
    device: str | None,
    slot: Operation | None = None,
) -> Table:
    """State of the Station role: connection, scanning, link quality."""
    table = _panel_table("Station", False)
    table.add_column("State", width=14)
    table.add_column("Network", style="white", min_width=10, max_width=32)
    table.add_column("Scanning", justify="center", width=8)
    table.add_column("dBm", justify="right", width=5)
    table.add_column("MHz", justify="right", width=5)
    table.add_column("BSS", style="grey50", width=17)

    station = snap.stations.get(device or "")
    if station is None:
        return table
    state = station.state.value
    if slot is not None and not slot.finished:
        state = f"[yellow]{slot.state.value}[/yellow]"
    net = snap.connected_network(station.device)
    table.add_row(
        state,
        escape(net.ssid) if net else "",
        "yes" if station.scanning else "",
        str(station.rssi) if station.rssi is not None else "",
        str(station.frequency) if station.frequency is not None else "",
        escape((station.connected_bss or "").upper()),
    )
    return table


# ---------------------------------------------------------------------------
# Known networks
# ---------------------------------------------------------------------------

def build_known_table(
    snap: Snapshot,
    device: str | None,
    selected: int | None = None,
    *,
    focused: bool = False,
    unicode: bool = True,
) -> Table:
    """Saved networks, with signal when in range."""
    rows = known_rows(snap, device)
    table = _panel_table("Known Networks", focused, caption=f"{len(rows)} saved")
    table.add_column("#", style="grey50", width=3, justify="right")
    table.add_column("Con", justify="center", width=3)
    table.add_column("SSID", style="white", min_width=15, max_width=30)
    table.add_column("Security", width=8)
    table.add_column("Hidden", justify="center", width=6)
    table.add_column("Auto", justify="center", width=5)
    table.add_column("Last connected", style="grey50", width=20)
    table.add_column("dBm", justify="right", width=5)
    table.add_column("Sig", width=5)

    connected = snap.connected_network(device) if device else None
    for i, known in enumerate(rows, 1):
        net = snap.network_for(known, device) if device else None
        is_connected = connected is not None and connected.key == known.key
        sec_c = _rich_color(security_color(known.security.value))
        dbm, bars = _signal_cells(net.signal, unicode) if net else ("", "")
        style = "bold" if is_connected else ("" if net else "grey50")
        if focused and selected == i - 1:
            style = "reverse " + style
        table.add_row(
            str(i),
            _connected_mark(unicode) if is_connected else "",
            escape(known.ssid),
            f"[{sec_c}]{known.security.label}[/{sec_c}]",
            _flag(known.hidden, unicode) if known.hidden else "",
            _flag(known.autoconnect, unicode),
            escape(known.last_connected or ""),
            dbm,
            bars,
            style=style.strip(),
        )
    return table


# ---------------------------------------------------------------------------
# New networks
# ---------------------------------------------------------------------------

def build_new_networks_table(
    snap: Snapshot,
    device: str | None,
    selected: int | None = None,
    *,
    focused: bool = False,
    unicode: bool = True,
) -> Table:
    """Visible networks without saved credentials, strongest first."""
    rows = new_rows(snap, device)
    table = _panel_table("New Networks", focused, caption=f"{len(rows)} networks found")
    table.add_column("#", style="grey50", width=3, justify="right")
    table.add_column("SSID", style="white", min_width=15, max_width=30)
    table.add_column("Security", width=8)
    table.add_column("dBm", justify="right", width=5)
    table.add_column("Sig", width=5)

    for i, net in enumerate(rows, 1):
        sec_c = _rich_color(security_color(net.security.value))
        dbm, bars = _signal_cells(net.signal, unicode)
        table.add_row(
            str(i),
            escape(net.ssid) if net.ssid else "[dim]<hidden>[/dim]",
            f"[{sec_c}]{net.security.label}[/{sec_c}]",
            dbm,
            bars,
            style="reverse" if focused and selected == i - 1 else "",
        )
    return table


# ---------------------------------------------------------------------------
# Access point
# ---------------------------------------------------------------------------

def build_ap_table(snap: Snapshot, device: str | None) -> Table:
    """Access point status and its associated clients."""
    ap = snap.access_points.get(device or "")
    clients = ap.clients if ap else ()
    table = _panel_table("Access Point", False, caption=f"{len(clients)} client(s)")
    table.add_column("Started", justify="center", width=7)
    table.add_column("SSID", style="white", min_width=10, max_width=32)
    table.add_column("MHz", justify="right", width=5)
    table.add_column("Client", style="grey50", width=17)
    table.add_column("IP", style="grey50", width=15)

    if ap is None:
        return table
    table.add_row(
        "[green]yes[/green]" if ap.started else "[red]no[/red]",
        escape(ap.ssid or ""),
        str(ap.frequency) if ap.frequency else "",
        "",
        "",
    )
    for client in clients:
        table.add_row("", "", "", escape(client.address.upper()), escape(client.ip or ""))
    return table


# ---------------------------------------------------------------------------
# Status line
# ---------------------------------------------------------------------------

def build_status_line(
    banners: dict[str, str],
    last_event: OperationEvent | None,
    operations: list[Operation],
    *,
    daemon_lost: bool = False,
    help_text: str = "",
) -> Text:
    """One-line status: blocked radios first, then progress, then the last outcome."""
    parts: list[Text] = []
    if daemon_lost:
        parts.append(Text("iwd connection lost, resyncing… ", style="bold red"))
    for message in banners.values():
        parts.append(Text(f"{message} ", style="bold red"))
    for op in operations:
        label = f"{op.kind.value} {op.target}".strip()
        parts.append(Text(f"{label}: {op.state.value}… ", style="yellow"))
    if last_event is not None:
        parts.append(Text(last_event.message, style="red" if last_event.is_error else "green"))
    if not parts and help_text:
        parts.append(Text(help_text, style="grey50"))
    return Text.assemble(*parts)


# ---------------------------------------------------------------------------
# Standalone CLI (demo)
# ---------------------------------------------------------------------------

def main() -> None:
    """Render demo tables with sample data for visual checking."""
    from rich.console import Console

    from wifictl.model import (
        InterfacesAdded,
        ObjectCache,
        Patch,
        EntityKind,
        ScanResults,
        Security,
        DeviceMode,
    )

    cache = ObjectCache()
    cache.apply(InterfacesAdded("/phy0", (Patch(EntityKind.ADAPTER, (
        ("name", "phy0"), ("vendor", "Intel"), ("model", "AX200"), ("powered", True),
    )),)))
    cache.apply(InterfacesAdded("/phy0/wlan0", (
        Patch(EntityKind.DEVICE, (
            ("name", "wlan0"), ("adapter", "/phy0"), ("address", "aa:bb:cc:dd:ee:ff"),
            ("powered", True), ("mode", DeviceMode.STATION),
        )),
        Patch(EntityKind.STATION, ()),
    )))
    for i, (ssid, sec) in enumerate([("HomeNet", Security.PSK), ("Cafe", Security.OPEN)]):
        cache.apply(InterfacesAdded(f"/phy0/wlan0/n{i}", (Patch(EntityKind.NETWORK, (
            ("ssid", ssid), ("security", sec), ("device", "/phy0/wlan0"),
        )),)))
    cache.apply(ScanResults("/phy0/wlan0", (("/phy0/wlan0/n0", -45), ("/phy0/wlan0/n1", -72))))
    snap = cache.snapshot()

    console = Console()
    console.print(build_device_table(snap, "/phy0/wlan0"))
    console.print(build_new_networks_table(snap, "/phy0/wlan0", 0, focused=True))


if __name__ == "__main__":
    main()
