#!/usr/bin/env python3
"""wifictl: terminal dashboard for iwd.

Renders the object cache in a Rich ``Live`` screen and turns key presses
into workflow intents.  Text entry (passphrases, hidden SSIDs, enterprise
credentials, access point settings) pauses the screen and uses
``rich.prompt``.

Usage:
    wifictl                       # first device, station mode
    wifictl -i wlan1              # specific interface
    wifictl --mode ap             # start in access point mode
    wifictl --list-devices        # print adapters/devices and exit
    wifictl --debug               # debug log to stderr and /tmp/wifictl_debug.log
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import select
import sys
import termios
import tty
from pathlib import Path
from typing import Callable, Iterator, Protocol

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.prompt import Prompt

from wifictl.config import ConfigError, Settings, load_settings
from wifictl.daemon.client import DaemonClient
from wifictl.daemon.provisioning import (
    EapMethod,
    EnterpriseCredentials,
    read_passphrase,
    share_payload,
)
from wifictl.display.tables import (
    build_adapter_table,
    build_ap_table,
    build_device_table,
    build_known_table,
    build_new_networks_table,
    build_station_table,
    build_status_line,
    known_rows,
    new_rows,
)
from wifictl.errors import DaemonError, Failure, FailureKind, NoAdapterError
from wifictl.model import DeviceMode, ObjectCache, Security
from wifictl.session import Session
from wifictl.workflows import OpKind, OpState, Operation, OperationEvent

_LOGGER = logging.getLogger("wifictl")
DEBUG_LOG = "/tmp/wifictl_debug.log"
REFRESH_INTERVAL = 0.25  # seconds between frames / key polls

_ESCAPE_KEYS = {"\x1b[A": "k", "\x1b[B": "j"}


# ---------------------------------------------------------------------------
# Terminal input
# ---------------------------------------------------------------------------

class Terminal:
    """cbreak-mode key reader for stdin.  Always restore in ``finally``."""

    def __init__(self, fd: int | None = None) -> None:
        self._fd = sys.stdin.fileno() if fd is None else fd
        self._saved: list | None = None

    def enter(self) -> None:
        if self._saved is None:
            self._saved = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)

    def restore(self) -> None:
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)

    def read_keys(self, timeout: float) -> list[str]:
        """Return the keys pressed within *timeout* seconds."""
        ready, _, _ = select.select([self._fd], [], [], timeout)
        if not ready:
            return []
        data = os.read(self._fd, 32).decode("utf-8", errors="ignore")
        return split_keys(data)


def split_keys(data: str) -> list[str]:
    """Split raw terminal input into key names (``"tab"``, ``" "``, ``"q"``)."""
    keys: list[str] = []
    i = 0
    while i < len(data):
        if data[i] == "\x1b":
            seq = data[i:i + 3]
            if seq in _ESCAPE_KEYS:
                keys.append(_ESCAPE_KEYS[seq])
                i += 3
                continue
            # Drop other CSI sequences whole (ESC [ params final-byte).
            i += 1
            if i < len(data) and data[i] == "[":
                i += 1
                while i < len(data) and not "@" <= data[i] <= "~":
                    i += 1
                i += 1
            continue
        ch = data[i]
        keys.append("tab" if ch == "\t" else ch)
        i += 1
    return keys


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

class Prompter(Protocol):
    def ask(
        self,
        text: str,
        *,
        password: bool = False,
        default: str = "",
        choices: list[str] | None = None,
    ) -> str:
        ...  # pragma: no cover


class RichPrompter:
    """Prompter backed by :class:`rich.prompt.Prompt`."""

    def __init__(self, console: Console) -> None:
        self._console = console

    def ask(
        self,
        text: str,
        *,
        password: bool = False,
        default: str = "",
        choices: list[str] | None = None,
    ) -> str:
        return Prompt.ask(
            text,
            console=self._console,
            password=password,
            default=default,
            choices=choices,
            show_default=bool(default) and not password,
        )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

PANELS_STATION = ["known", "new", "device"]
PANELS_AP = ["device"]


class Dashboard:
    """Key dispatch and frame building over a running :class:`Session`.

    Args:
        session: The started session.
        prompter: Text-entry source (testing seam).
        pause: Context manager that suspends the live screen for prompts.
    """

    def __init__(
        self,
        session: Session,
        prompter: Prompter,
        pause: Callable[[], contextlib.AbstractContextManager] | None = None,
    ) -> None:
        self.session = session
        self.engine = session.engine
        self.settings: Settings = session.settings
        self.prompter = prompter
        self._pause = pause or contextlib.nullcontext
        self.focus = "known"
        self.selected: dict[str, int] = {"known": 0, "new": 0, "device": 0}
        self.show_info = False
        self.share_text: str | None = None
        self.last_event: OperationEvent | None = None
        self.running = True
        self._prompted: set[int] = set()

    # -- state helpers -------------------------------------------------------

    @property
    def device(self) -> str | None:
        return self.session.device

    def _panels(self) -> list[str]:
        snap = self.session.snapshot()
        return PANELS_STATION if self.device in snap.stations else PANELS_AP

    def _rows(self, panel: str) -> list:
        snap = self.session.snapshot()
        if panel == "known":
            return known_rows(snap, self.device)
        if panel == "new":
            return new_rows(snap, self.device)
        return sorted(snap.devices.values(), key=lambda d: d.name)

    def _current(self, panel: str):
        rows = self._rows(panel)
        if not rows:
            return None
        index = min(self.selected[panel], len(rows) - 1)
        self.selected[panel] = index
        return rows[index]

    def _note(self, message: str, *, error: bool = True) -> None:
        failure = Failure(FailureKind.PROTOCOL_REJECTED, message) if error else None
        self.last_event = OperationEvent(0, OpKind.CONNECT, self.device, message, failure)

    # -- frame ---------------------------------------------------------------

    def poll_events(self) -> None:
        """Pick up finished operations and pending credential requests."""
        for event in self.engine.events():
            self.last_event = event
        for op in self.engine.operations():
            if op.state is OpState.AWAITING_CREDENTIALS and op.id not in self._prompted:
                self._prompted.add(op.id)
                self._ask_credentials(op)

    def render(self) -> Group:
        snap = self.session.snapshot()
        unicode = self.settings.unicode
        device = self.device
        panels = self._panels()
        if self.focus not in panels:
            self.focus = panels[0]
        parts: list = [
            build_device_table(snap, device, focused=self.focus == "device", unicode=unicode),
        ]
        if self.show_info:
            parts.append(build_adapter_table(snap))
        if device in snap.stations:
            parts.append(build_station_table(snap, device, self.engine.slot(device or "")))
            parts.append(build_known_table(
                snap, device, self.selected["known"], focused=self.focus == "known", unicode=unicode,
            ))
            parts.append(build_new_networks_table(
                snap, device, self.selected["new"], focused=self.focus == "new", unicode=unicode,
            ))
        elif device in snap.access_points:
            parts.append(build_ap_table(snap, device))
        if self.share_text:
            parts.append(Panel(self.share_text, title="Share", border_style="cyan"))
        keys = self.settings.keys
        help_text = (
            f"{keys.key_for('scan')} scan  {keys.key_for('toggle_connect')} connect  "
            f"{keys.key_for('switch_mode')} mode  {keys.key_for('quit')} quit"
        )
        parts.append(build_status_line(
            self.engine.banners(),
            self.last_event,
            self.engine.operations(),
            daemon_lost=self.session.daemon_lost,
            help_text=help_text,
        ))
        return Group(*parts)

    # -- key dispatch --------------------------------------------------------

    def handle_key(self, key: str) -> None:
        action = self.settings.keys.action_for(key)
        if action is None:
            return
        self.share_text = None
        handler = getattr(self, f"_do_{action}", None)
        if handler is None:
            return
        try:
            handler()
        except ValueError as e:
            self._note(str(e))

    def _do_quit(self) -> None:
        self.running = False

    def _do_down(self) -> None:
        rows = self._rows(self.focus)
        if rows:
            self.selected[self.focus] = min(self.selected[self.focus] + 1, len(rows) - 1)

    def _do_up(self) -> None:
        self.selected[self.focus] = max(self.selected[self.focus] - 1, 0)

    def _do_next_panel(self) -> None:
        panels = self._panels()
        index = panels.index(self.focus) if self.focus in panels else -1
        self.focus = panels[(index + 1) % len(panels)]

    def _do_info(self) -> None:
        self.show_info = not self.show_info

    def _do_scan(self) -> None:
        if self.device:
            self.engine.scan(self.device)

    def _do_toggle_connect(self) -> None:
        if not self.device or self.focus not in ("known", "new"):
            return
        snap = self.session.snapshot()
        item = self._current(self.focus)
        if item is None:
            return
        connected = snap.connected_network(self.device)
        if connected is not None and connected.ssid == item.ssid and connected.security is item.security:
            self.engine.disconnect(self.device)
            return
        self.engine.connect(self.device, item.ssid, item.security)

    def _do_connect_hidden(self) -> None:
        if not self.device:
            return
        with self._pause():
            ssid = self.prompter.ask("Hidden network SSID").strip()
            if not ssid:
                return
            passphrase = self.prompter.ask("Passphrase (empty for open)", password=True)
        self.engine.connect_hidden(self.device, ssid, passphrase=passphrase or None)

    def _do_forget(self) -> None:
        if self.focus != "known":
            return
        known = self._current("known")
        if known is not None:
            self.engine.forget(known.path)

    def _do_toggle_autoconnect(self) -> None:
        if self.focus != "known":
            return
        known = self._current("known")
        if known is not None:
            self.engine.set_autoconnect(known.path, not known.autoconnect)

    def _do_toggle_power(self) -> None:
        dev = self.session.snapshot().devices.get(self.device or "")
        if dev is not None:
            self.engine.set_power(dev.path, not dev.powered)

    def _do_switch_mode(self) -> None:
        dev = self.session.snapshot().devices.get(self.device or "")
        if dev is None:
            return
        target = DeviceMode.STATION if dev.mode is DeviceMode.AP else DeviceMode.AP
        self.engine.switch_mode(dev.path, target)

    def _do_start_ap(self) -> None:
        if not self.device:
            return
        with self._pause():
            ssid = self.prompter.ask("Access point SSID").strip()
            if not ssid:
                return
            passphrase = self.prompter.ask("Access point passphrase", password=True)
        self.engine.start_ap(self.device, ssid, passphrase)

    def _do_stop_ap(self) -> None:
        if self.device:
            self.engine.stop_ap(self.device)

    def _do_share(self) -> None:
        if self.focus != "known":
            return
        known = self._current("known")
        if known is None:
            return
        passphrase = None
        if known.security is not Security.OPEN:
            passphrase = read_passphrase(known.ssid, known.security)
            if passphrase is None:
                self._note(f"no stored passphrase for {known.ssid}")
                return
        self.share_text = share_payload(known.ssid, known.security, passphrase)

    # -- credentials ---------------------------------------------------------

    def _ask_credentials(self, op: Operation) -> None:
        with self._pause():
            if op.security is Security.ENTERPRISE:
                creds = self._ask_enterprise(op.ssid or "")
                if creds is None:
                    self.engine.disconnect(op.device or "")
                    return
                try:
                    self.engine.supply_credentials(op, credentials=creds)
                except ValueError as e:
                    self._note(str(e))
                    self.engine.disconnect(op.device or "")
                return
            passphrase = self.prompter.ask(f"Passphrase for {op.ssid}", password=True)
        if not passphrase:
            self.engine.disconnect(op.device or "")
            return
        try:
            self.engine.supply_credentials(op, passphrase=passphrase)
        except ValueError as e:
            self._note(str(e))
            self.engine.disconnect(op.device or "")

    def _ask_enterprise(self, ssid: str) -> EnterpriseCredentials | None:
        ask = self.prompter.ask
        method_name = ask(
            f"EAP method for {ssid}",
            default="eduroam" if ssid == "eduroam" else "PEAP",
            choices=[m.value for m in EapMethod],
        )
        method = EapMethod(method_name)
        identity = ask("Identity").strip()
        if not identity:
            return None
        if method is EapMethod.TLS:
            return EnterpriseCredentials(
                method=method,
                identity=identity,
                client_cert=ask("Client certificate path").strip(),
                client_key=ask("Client key path").strip(),
                key_passphrase=ask("Key passphrase (optional)", password=True),
                ca_cert=ask("CA certificate path (optional)").strip(),
                server_domain_mask=ask("Server domain mask (optional)").strip(),
            )
        password = ask("Password", password=True)
        if method in (EapMethod.PWD, EapMethod.EDUROAM):
            return EnterpriseCredentials(method=method, identity=identity, password=password)
        return EnterpriseCredentials(
            method=method,
            identity=identity,
            password=password,
            phase2_method=ask("Phase 2 method", default="MSCHAPV2"),
            ca_cert=ask("CA certificate path (optional)").strip(),
            server_domain_mask=ask("Server domain mask (optional)").strip(),
        )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Terminal dashboard for iwd-managed wireless devices.",
    )
    parser.add_argument(
        "-i", "--interface",
        help="wireless interface name (e.g. wlan0)",
    )
    parser.add_argument(
        "--mode",
        choices=["station", "ap"],
        help="startup mode for the device (default from config: station)",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="configuration file (default: $XDG_CONFIG_HOME/wifictl/config.toml)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        metavar="SECS",
        help="seconds between background refreshes",
    )
    parser.add_argument(
        "--no-auto-scan",
        action="store_true",
        help="do not scan on startup",
    )
    parser.add_argument(
        "--ascii",
        action="store_true",
        help="use ASCII instead of Unicode symbols",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colors",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help=f"enable debug logging (stderr and {DEBUG_LOG})",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="list adapters and devices known to iwd and exit",
    )
    return parser.parse_args(argv)


def _setup_logging(debug: bool) -> None:
    log_format = "%(asctime)s %(name)s: %(levelname)s: %(message)s"
    if debug:
        logging.basicConfig(level=logging.DEBUG, format=log_format, stream=sys.stderr)
    else:
        logging.getLogger().setLevel(logging.WARNING)
    try:
        file_handler = logging.FileHandler(DEBUG_LOG, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)
    except OSError:
        pass  # Log file optional; stderr still works with --debug


def _resolve_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(Path(args.config) if args.config else None)
    return settings.with_overrides(
        interface=args.interface,
        mode=args.mode,
        poll_interval=args.poll_interval,
        auto_scan=False if args.no_auto_scan else None,
        unicode=False if args.ascii else None,
        color=False if args.no_color else None,
    )


def _list_devices(console: Console, client: DaemonClient) -> int:
    try:
        resync = client.managed_objects().result()
    finally:
        client.close()
    cache = ObjectCache()
    cache.apply(resync)
    snap = cache.snapshot()
    if not snap.devices:
        console.print("[yellow]No wireless devices found.[/yellow]")
        return 0
    console.print(build_device_table(snap))
    return 0


@contextlib.contextmanager
def _paused(live: Live, terminal: Terminal) -> Iterator[None]:
    live.stop()
    terminal.restore()
    try:
        yield
    finally:
        terminal.enter()
        live.start()


def run(session: Session, console: Console, terminal: Terminal) -> None:
    """Drive the Live screen until the user quits."""
    live = Live(console=console, refresh_per_second=4, screen=True, auto_refresh=False)
    dashboard = Dashboard(
        session,
        RichPrompter(console),
        pause=lambda: _paused(live, terminal),
    )
    terminal.enter()
    try:
        with live:
            while dashboard.running:
                try:
                    dashboard.poll_events()
                except (KeyboardInterrupt, EOFError):
                    pass
                live.update(dashboard.render(), refresh=True)
                for key in terminal.read_keys(REFRESH_INTERVAL):
                    dashboard.handle_key(key)
                    if not dashboard.running:
                        break
    finally:
        terminal.restore()


def main(argv: list[str] | None = None) -> None:
    """Run the dashboard.  Exit status 0 on clean exit, 1 on startup failure."""
    args = _parse_args(argv)
    _setup_logging(args.debug)
    try:
        settings = _resolve_settings(args)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    console = Console(no_color=not settings.color)

    if args.list_devices:
        try:
            sys.exit(_list_devices(console, DaemonClient()))
        except DaemonError as e:
            console.print(f"[red]iwd unreachable:[/red] {e}")
            sys.exit(1)

    if not sys.stdin.isatty():
        print("ERROR: wifictl needs an interactive terminal", file=sys.stderr)
        sys.exit(1)

    session = Session(settings)
    try:
        session.start()
    except DaemonError as e:
        console.print(f"[red]iwd unreachable:[/red] {e}")
        sys.exit(1)
    except NoAdapterError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    _LOGGER.debug("settings: %s", settings)
    code = 0
    try:
        run(session, console, Terminal())
    except KeyboardInterrupt:
        pass
    except Exception:
        _LOGGER.exception("fatal error")
        code = 1
    finally:
        session.stop()
    if code:
        console.print(f"[red]wifictl stopped on an internal error, see {DEBUG_LOG}[/red]")
    sys.exit(code)


if __name__ == "__main__":
    main()
