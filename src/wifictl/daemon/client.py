"""iwd daemon client over ``busctl``.

Every query and command runs ``busctl --system --json=short`` through a
:class:`~wifictl.wifi_common.CommandRunner` on a worker pool and returns a
:class:`concurrent.futures.Future`.  Queries and commands use separate
pools so periodic refreshes never queue ahead of user commands.  Failures
resolve the future with :class:`~wifictl.errors.DaemonError`; nothing is
retried.

Change notifications come from a ``busctl monitor`` process read line by
line on a background thread.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from wifictl.daemon import busctl
from wifictl.daemon.busctl import (
    ADAPTER_IFACE,
    AP_DIAGNOSTIC_IFACE,
    AP_IFACE,
    DEVICE_IFACE,
    IWD_SERVICE,
    KNOWN_NETWORK_IFACE,
    NETWORK_IFACE,
    OBJECT_MANAGER,
    STATION_DIAGNOSTIC_IFACE,
    STATION_IFACE,
)
from wifictl.daemon.provisioning import (
    IWD_STATE_DIR,
    EnterpriseCredentials,
    write_enterprise,
    write_psk,
)
from wifictl.errors import DaemonError, FailureKind
from wifictl.model import ApClient, DeviceMode, Notification, Resync
from wifictl.wifi_common import CommandRunner, SubprocessRunner, _minimal_env

logger = logging.getLogger(__name__)

_DEFAULT_RUNNER = SubprocessRunner()

DEFAULT_CALL_TIMEOUT = 10.0

T = TypeVar("T")


class DaemonClient:
    """Typed, asynchronous access to iwd.

    Args:
        runner: CommandRunner for subprocess calls (testing seam).
        call_timeout: Default bound on a single busctl call, in seconds.
        state_dir: iwd state directory for credential registration.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        state_dir: str = IWD_STATE_DIR,
    ) -> None:
        self._runner = runner or _DEFAULT_RUNNER
        self._call_timeout = call_timeout
        self._state_dir = state_dir
        self._queries = ThreadPoolExecutor(max_workers=2, thread_name_prefix="iwd-query")
        self._commands = ThreadPoolExecutor(max_workers=2, thread_name_prefix="iwd-cmd")
        self._process: subprocess.Popen | None = None
        self._thread: threading.Thread | None = None
        self._closing = threading.Event()
        self.on_stream_lost: Callable[[], None] | None = None

    # -- low-level helpers -------------------------------------------------

    def _run(self, cmd: list[str], timeout: float) -> str:
        logger.debug("busctl: %s", " ".join(cmd[3:]))
        try:
            result = self._runner.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout + 1,
                env=_minimal_env(),
            )
        except subprocess.TimeoutExpired as e:
            raise DaemonError(FailureKind.TIMEOUT, f"no reply within {timeout:g}s") from e
        except FileNotFoundError as e:
            raise DaemonError(FailureKind.DAEMON_UNREACHABLE, "busctl not found") from e
        except OSError as e:
            raise DaemonError(FailureKind.DAEMON_UNREACHABLE, str(e)) from e
        if result.returncode != 0:
            err = busctl.classify_error(result.returncode, result.stderr)
            logger.debug("busctl failed (%d): %s", result.returncode, err)
            raise err
        return result.stdout or ""

    def _base(self, timeout: float) -> list[str]:
        return ["busctl", "--system", "--json=short", f"--timeout={timeout:g}"]

    def _call(
        self,
        path: str,
        interface: str,
        method: str,
        signature: str = "",
        *args: str,
        timeout: float | None = None,
    ) -> str:
        timeout = timeout or self._call_timeout
        cmd = self._base(timeout) + ["call", IWD_SERVICE, path, interface, method]
        if signature:
            cmd += [signature, *args]
        return self._run(cmd, timeout)

    def _set_property(self, path: str, interface: str, name: str, signature: str, value: str) -> None:
        timeout = self._call_timeout
        cmd = self._base(timeout) + [
            "set-property", IWD_SERVICE, path, interface, name, signature, value,
        ]
        self._run(cmd, timeout)

    def _submit(self, pool: ThreadPoolExecutor, fn: Callable[..., T], *args: Any) -> Future[T]:
        return pool.submit(fn, *args)

    def _query(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        return self._submit(self._queries, fn, *args)

    def _command(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        return self._submit(self._commands, fn, *args)

    # -- queries -----------------------------------------------------------

    def managed_objects(self) -> Future[Resync]:
        """Fetch the whole iwd object tree."""
        def _do() -> Resync:
            out = self._call("/", OBJECT_MANAGER, "GetManagedObjects")
            return busctl.parse_managed_objects(out)
        return self._query(_do)

    def get_property(self, path: str, interface: str, name: str) -> Future[Any]:
        def _do() -> Any:
            timeout = self._call_timeout
            cmd = self._base(timeout) + ["get-property", IWD_SERVICE, path, interface, name]
            values = busctl.parse_json_reply(self._run(cmd, timeout), call=False)
            return values[0] if values else None
        return self._query(_do)

    def ordered_networks(self, station_path: str) -> Future[tuple[tuple[str, int], ...]]:
        """``(network path, dBm)`` pairs, strongest first."""
        def _do() -> tuple[tuple[str, int], ...]:
            out = self._call(station_path, STATION_IFACE, "GetOrderedNetworks")
            return busctl.parse_ordered_networks(out)
        return self._query(_do)

    def ap_clients(self, device_path: str) -> Future[tuple[ApClient, ...]]:
        def _do() -> tuple[ApClient, ...]:
            out = self._call(device_path, AP_DIAGNOSTIC_IFACE, "GetDiagnostics")
            return busctl.parse_ap_diagnostics(out)
        return self._query(_do)

    def station_diagnostics(self, device_path: str) -> Future[tuple[int | None, int | None, str | None]]:
        def _do() -> tuple[int | None, int | None, str | None]:
            out = self._call(device_path, STATION_DIAGNOSTIC_IFACE, "GetDiagnostics")
            return busctl.parse_station_diagnostics(out)
        return self._query(_do)

    # -- commands ----------------------------------------------------------

    def set_adapter_powered(self, adapter_path: str, powered: bool) -> Future[None]:
        return self._command(
            self._set_property, adapter_path, ADAPTER_IFACE, "Powered", "b", _bool(powered),
        )

    def set_device_powered(self, device_path: str, powered: bool) -> Future[None]:
        return self._command(
            self._set_property, device_path, DEVICE_IFACE, "Powered", "b", _bool(powered),
        )

    def set_mode(self, device_path: str, mode: DeviceMode) -> Future[None]:
        return self._command(
            self._set_property, device_path, DEVICE_IFACE, "Mode", "s", mode.value,
        )

    def set_autoconnect(self, known_path: str, enabled: bool) -> Future[None]:
        return self._command(
            self._set_property, known_path, KNOWN_NETWORK_IFACE, "AutoConnect", "b", _bool(enabled),
        )

    def scan(self, station_path: str) -> Future[None]:
        return self._command(self._void_call, station_path, STATION_IFACE, "Scan")

    def disconnect(self, station_path: str) -> Future[None]:
        return self._command(self._void_call, station_path, STATION_IFACE, "Disconnect")

    def connect(self, network_path: str, timeout: float | None = None) -> Future[None]:
        """Ask iwd to connect to a scanned network object.

        The reply only means iwd accepted the request; association is
        confirmed by the Station's ``ConnectedNetwork`` notification.
        """
        return self._command(
            self._void_call, network_path, NETWORK_IFACE, "Connect", "", (), timeout,
        )

    def connect_hidden(self, station_path: str, ssid: str, timeout: float | None = None) -> Future[None]:
        return self._command(
            self._void_call, station_path, STATION_IFACE, "ConnectHiddenNetwork", "s", (ssid,), timeout,
        )

    def start_ap(self, device_path: str, ssid: str, passphrase: str) -> Future[None]:
        return self._command(
            self._void_call, device_path, AP_IFACE, "Start", "ss", (ssid, passphrase),
        )

    def stop_ap(self, device_path: str) -> Future[None]:
        return self._command(self._void_call, device_path, AP_IFACE, "Stop")

    def forget(self, known_path: str) -> Future[None]:
        return self._command(self._void_call, known_path, KNOWN_NETWORK_IFACE, "Forget")

    def register_psk(self, ssid: str, passphrase: str, *, hidden: bool = False) -> Future[str]:
        return self._command(self._register_psk, ssid, passphrase, hidden)

    def register_enterprise(
        self, ssid: str, creds: EnterpriseCredentials, *, hidden: bool = False,
    ) -> Future[str]:
        return self._command(self._register_enterprise, ssid, creds, hidden)

    def _void_call(
        self,
        path: str,
        interface: str,
        method: str,
        signature: str = "",
        args: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> None:
        self._call(path, interface, method, signature, *args, timeout=timeout)

    def _register_psk(self, ssid: str, passphrase: str, hidden: bool) -> str:
        try:
            return write_psk(ssid, passphrase, hidden=hidden, state_dir=self._state_dir)
        except ValueError as e:
            raise DaemonError(FailureKind.PROTOCOL_REJECTED, str(e)) from e

    def _register_enterprise(self, ssid: str, creds: EnterpriseCredentials, hidden: bool) -> str:
        try:
            return write_enterprise(ssid, creds, hidden=hidden, state_dir=self._state_dir)
        except ValueError as e:
            raise DaemonError(FailureKind.PROTOCOL_REJECTED, str(e)) from e

    # -- subscription ------------------------------------------------------

    def subscribe(self, callback: Callable[[Notification], None]) -> None:
        """Start the monitor stream; *callback* runs on the reader thread.

        Raises DaemonError if ``busctl monitor`` cannot be started.
        """
        self._stop_stream()
        self._closing.clear()
        cmd = ["busctl", "--system", "monitor", IWD_SERVICE, "--json=short"]
        try:
            self._process = self._runner.popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                env=_minimal_env(),
            )
        except FileNotFoundError as e:
            raise DaemonError(FailureKind.DAEMON_UNREACHABLE, "busctl not found") from e
        except OSError as e:
            raise DaemonError(FailureKind.DAEMON_UNREACHABLE, str(e)) from e
        if self._process.stdout is None:
            self._stop_stream()
            raise DaemonError(FailureKind.PROTOCOL_REJECTED, "busctl monitor has no output pipe")

        self._thread = threading.Thread(
            target=self._reader_loop, args=(self._process, callback),
            name="iwd-monitor", daemon=True,
        )
        self._thread.start()

    def _reader_loop(self, process: subprocess.Popen, callback: Callable[[Notification], None]) -> None:
        """Read signals from busctl monitor (runs in background thread)."""
        try:
            for line in process.stdout or ():
                notification = busctl.parse_monitor_line(line)
                if notification is not None:
                    callback(notification)
        except (ValueError, OSError):
            pass  # Process was terminated
        if not self._closing.is_set():
            logger.warning("iwd monitor stream ended")
            if self.on_stream_lost is not None:
                self.on_stream_lost()

    def _stop_stream(self) -> None:
        self._closing.set()
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
            self._process = None
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)
        self._thread = None

    def close(self) -> None:
        """Stop the monitor stream and the worker pools."""
        self._stop_stream()
        self._queries.shutdown(wait=False, cancel_futures=True)
        self._commands.shutdown(wait=False, cancel_futures=True)


def _bool(value: bool) -> str:
    return "true" if value else "false"
