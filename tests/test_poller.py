"""Tests for wifictl.poller — periodic refreshes posted to the reconciler."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from wifictl.errors import FailureKind
from wifictl.model import ApClient, DeviceMode, Security, StationState
from wifictl.poller import Poller

DEVICE = "/net/connman/iwd/0/3"


def _rfkill(root, name="phy0", soft="0", hard="0"):
    d = root / "rfkill0"
    d.mkdir()
    (d / "type").write_text("wlan\n")
    (d / "name").write_text(name + "\n")
    (d / "soft").write_text(soft + "\n")
    (d / "hard").write_text(hard + "\n")


@pytest.fixture
def poller(station, tmp_path):
    return Poller(station.client, station.reconciler, sysfs_rfkill=str(tmp_path))


class TestStationRefresh:
    def test_refreshes_ordered_networks(self, station, poller):
        path = station.add_network("Home", Security.PSK, signal=-70)
        poller.tick()
        assert station.client.names() == ["ordered_networks"]
        station.client.resolve("ordered_networks", ((path, -30),))
        station.drain()
        assert station.snapshot().networks_of(DEVICE)[0].signal == -30

    def test_connected_station_gets_diagnostics(self, station, poller):
        station.add_network("Home", Security.PSK)
        station.connected_to("Home", Security.PSK)
        poller.tick()
        assert "station_diagnostics" in station.client.names()
        station.client.resolve("station_diagnostics", (-45, 2412, "aa:bb:cc:00:00:01"))
        station.drain()
        st = station.snapshot().stations[DEVICE]
        assert (st.rssi, st.frequency, st.connected_bss) == (-45, 2412, "aa:bb:cc:00:00:01")

    def test_outstanding_refresh_is_skipped(self, station, poller):
        poller.tick()
        poller.tick()
        assert station.client.names() == ["ordered_networks"]
        station.client.resolve("ordered_networks", ())
        poller.tick()
        assert station.client.names() == ["ordered_networks", "ordered_networks"]

    def test_failure_is_skipped_and_retried(self, station, poller):
        poller.tick()
        station.client.reject("ordered_networks", FailureKind.TIMEOUT, "timed out")
        station.drain()
        poller.tick()
        assert station.client.names().count("ordered_networks") == 2

    def test_unreachable_daemon_reported(self, station, poller):
        poller.on_unreachable = MagicMock()
        poller.tick()
        station.client.reject("ordered_networks", FailureKind.DAEMON_UNREACHABLE)
        poller.on_unreachable.assert_called_once_with()

    def test_other_failures_do_not_report_unreachable(self, station, poller):
        poller.on_unreachable = MagicMock()
        poller.tick()
        station.client.reject("ordered_networks", FailureKind.PROTOCOL_REJECTED)
        poller.on_unreachable.assert_not_called()

    def test_blocked_device_skipped(self, station, poller):
        station.block(soft=True)
        poller.tick()
        assert station.client.names() == []

    def test_unpowered_device_skipped(self, station, poller):
        station.device(powered=False)
        poller.tick()
        assert station.client.names() == []

    def test_request_refused_after_shutdown(self, station, poller):
        station.client.ordered_networks = MagicMock(side_effect=RuntimeError("shut down"))
        poller.tick()
        poller.tick()
        assert station.client.ordered_networks.call_count == 2


class TestRfkill:
    def test_block_state_posted(self, station, tmp_path, poller):
        _rfkill(tmp_path, soft="1")
        poller.tick()
        station.drain()
        assert station.snapshot().devices[DEVICE].soft_blocked is True

    def test_missing_sysfs_is_harmless(self, station):
        poller = Poller(station.client, station.reconciler, sysfs_rfkill="/nonexistent/rfkill")
        poller.tick()
        assert station.snapshot().devices[DEVICE].blocked is False


class TestAccessPointRefresh:
    def test_started_ap_lists_clients(self, iwd, tmp_path):
        iwd.add_device(DeviceMode.AP)
        iwd.access_point(started=True, ssid="MyAP")
        poller = Poller(iwd.client, iwd.reconciler, sysfs_rfkill=str(tmp_path))
        poller.tick()
        assert iwd.client.names() == ["ap_clients"]
        client = ApClient("11:22:33:44:55:66", "192.168.80.2")
        iwd.client.resolve("ap_clients", (client,))
        iwd.drain()
        assert iwd.snapshot().access_points[DEVICE].clients == (client,)

    def test_stopped_ap_not_polled(self, iwd, tmp_path):
        iwd.add_device(DeviceMode.AP)
        poller = Poller(iwd.client, iwd.reconciler, sysfs_rfkill=str(tmp_path))
        poller.tick()
        assert iwd.client.names() == []


class TestThread:
    def test_start_stop(self, station, tmp_path):
        poller = Poller(station.client, station.reconciler, interval=0.01, sysfs_rfkill=str(tmp_path))
        poller.start()
        poller.stop()
        poller.stop()


def test_connecting_station_has_no_diagnostics(station, poller):
    station.station(state=StationState.CONNECTING)
    poller.tick()
    assert "station_diagnostics" not in station.client.names()
