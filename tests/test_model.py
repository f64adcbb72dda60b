"""Tests for wifictl.model — the object cache and its snapshots."""

from __future__ import annotations

import pytest

from wifictl.model import (
    ApClient,
    ApClientsChanged,
    BlockChanged,
    DeviceMode,
    DiagnosticsUpdated,
    EntityKind,
    InterfacesAdded,
    InterfacesRemoved,
    NetworkId,
    ObjectCache,
    OwnerChanged,
    Patch,
    PropertiesChanged,
    Resync,
    ScanResults,
    Security,
    StationState,
)

ADAPTER = "/net/connman/iwd/0"
DEVICE = "/net/connman/iwd/0/3"


def P(kind, **fields):
    return Patch(kind, tuple(fields.items()))


def net(ssid, security=Security.PSK):
    return f"{DEVICE}/{ssid.encode().hex()}_{security.value}"


@pytest.fixture
def cache():
    c = ObjectCache()
    c.apply(InterfacesAdded(ADAPTER, (P(EntityKind.ADAPTER, name="phy0", powered=True),), 1))
    c.apply(InterfacesAdded(DEVICE, (
        P(EntityKind.DEVICE, name="wlan0", adapter=ADAPTER, powered=True, mode=DeviceMode.STATION),
        P(EntityKind.STATION, state=StationState.DISCONNECTED),
    ), 2))
    return c


def add_network(cache, ssid, security=Security.PSK, seq=None):
    return cache.apply(InterfacesAdded(net(ssid, security), (
        P(EntityKind.NETWORK, ssid=ssid, security=security, device=DEVICE),
    ), seq))


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TestEnums:
    def test_unknown_mode_is_disabled(self):
        assert DeviceMode.from_daemon("p2p") is DeviceMode.DISABLED

    def test_security_labels(self):
        assert Security.from_daemon("8021x").label == "wpa-eap"
        assert Security.PSK.label == "wpa-psk"

    def test_unknown_security_raises(self):
        with pytest.raises(ValueError):
            Security.from_daemon("sae")

    def test_unknown_station_state_is_disconnected(self):
        assert StationState.from_daemon("weird") is StationState.DISCONNECTED


# ---------------------------------------------------------------------------
# Basic application
# ---------------------------------------------------------------------------

class TestApply:
    def test_objects_visible_in_snapshot(self, cache):
        snap = cache.snapshot()
        assert snap.devices[DEVICE].name == "wlan0"
        assert snap.adapter_of(DEVICE).name == "phy0"
        assert snap.devices_of(ADAPTER)[0].path == DEVICE
        assert DEVICE in snap.stations
        assert snap.role_of(DEVICE) is snap.stations[DEVICE]

    def test_version_increases_only_on_change(self, cache):
        before = cache.snapshot().version
        delta = cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=True), 10))
        assert delta.empty
        assert cache.snapshot().version == before
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 11))
        assert cache.snapshot().version == before + 1

    def test_snapshot_is_read_only(self, cache):
        snap = cache.snapshot()
        with pytest.raises(TypeError):
            snap.devices["x"] = None  # type: ignore[index]

    def test_old_snapshot_unchanged_by_later_apply(self, cache):
        snap = cache.snapshot()
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 10))
        assert snap.devices[DEVICE].powered is True

    def test_update_for_unknown_object_ignored(self, cache):
        delta = cache.apply(PropertiesChanged("/nope", P(EntityKind.DEVICE, powered=False), 10))
        assert delta.empty

    def test_invalidated_attribute_falls_back_to_default(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, connected_network="/x"), 10))
        cache.apply(PropertiesChanged(
            DEVICE, Patch(EntityKind.STATION, (), ("connected_network",)), 11,
        ))
        assert cache.snapshot().stations[DEVICE].connected_network is None

    def test_delta_reports_changed_attributes(self, cache):
        delta = cache.apply(PropertiesChanged(
            DEVICE, P(EntityKind.STATION, state=StationState.CONNECTING), 10,
        ))
        assert delta.touched(EntityKind.STATION, DEVICE, "state")
        assert not delta.touched(EntityKind.STATION, DEVICE, "scanning")

    def test_unsupported_notification(self, cache):
        with pytest.raises(TypeError):
            cache.apply(object())  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Duplicates and ordering
# ---------------------------------------------------------------------------

class TestSequence:
    def test_replayed_notification_is_idempotent(self, cache):
        n = PropertiesChanged(DEVICE, P(EntityKind.STATION, state=StationState.CONNECTING), 20)
        cache.apply(n)
        version = cache.snapshot().version
        delta = cache.apply(n)
        assert delta.empty
        assert delta.dropped == 1
        assert cache.snapshot().version == version

    def test_older_update_dropped(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, state=StationState.CONNECTED), 20))
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, state=StationState.CONNECTING), 19))
        assert cache.snapshot().stations[DEVICE].state is StationState.CONNECTED

    def test_sequence_tracked_per_property(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, state=StationState.CONNECTED), 20))
        delta = cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=True), 19))
        assert not delta.empty
        assert cache.snapshot().stations[DEVICE].scanning is True

    def test_replayed_add_does_not_resurrect_removed(self, cache):
        added = add_network(cache, "Home", seq=30)
        assert not added.empty
        cache.apply(InterfacesRemoved(net("Home"), (EntityKind.NETWORK,), 31))
        assert add_network(cache, "Home", seq=30).empty
        assert cache.snapshot().networks == {}

    def test_new_daemon_owner_restarts_sequence(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 900))
        assert cache.apply(OwnerChanged(":1.42")).empty
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=True), 7))
        assert cache.snapshot().devices[DEVICE].powered is True

    def test_updates_without_sequence_always_apply(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 50))
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=True)))
        assert cache.snapshot().devices[DEVICE].powered is True

    def test_scan_results_idempotent(self, cache):
        add_network(cache, "Home")
        first = cache.apply(ScanResults(DEVICE, ((net("Home"), -40),)))
        second = cache.apply(ScanResults(DEVICE, ((net("Home"), -40),)))
        assert not first.empty
        assert second.empty


# ---------------------------------------------------------------------------
# Scan scenario
# ---------------------------------------------------------------------------

class TestScan:
    def test_home_cafe_office_then_only_home(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=True), 10))
        for ssid in ("Home", "Cafe", "Office"):
            add_network(cache, ssid)
        delta = cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=False), 11))
        assert delta.scan_completed == frozenset({DEVICE})
        cache.apply(ScanResults(DEVICE, (
            (net("Home"), -20), (net("Cafe"), -55), (net("Office"), -90),
        )))
        snap = cache.snapshot()
        assert [n.ssid for n in snap.networks_of(DEVICE)] == ["Home", "Cafe", "Office"]
        assert snap.networks_of(DEVICE)[0].signal == -20

        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=True), 12))
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=False), 13))
        delta = cache.apply(ScanResults(DEVICE, ((net("Home"), -25),)))
        assert (EntityKind.NETWORK, net("Cafe")) in delta.removed
        assert (EntityKind.NETWORK, net("Office")) in delta.removed
        assert [n.ssid for n in cache.snapshot().networks_of(DEVICE)] == ["Home"]

    def test_scan_start_is_not_completion(self, cache):
        delta = cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, scanning=True), 10))
        assert delta.scan_completed == frozenset()

    def test_scan_results_for_unknown_device_ignored(self, cache):
        assert cache.apply(ScanResults("/other", (("/x", -40),))).empty

    def test_network_identity_survives_new_path(self, cache):
        add_network(cache, "Home")
        cache.apply(ScanResults(DEVICE, ((net("Home"), -30),)))
        cache.apply(InterfacesAdded(f"{DEVICE}/renamed", (
            P(EntityKind.NETWORK, ssid="Home", security=Security.PSK, device=DEVICE),
        )))
        snap = cache.snapshot()
        network = snap.networks[NetworkId(DEVICE, "Home", Security.PSK)]
        assert network.path == f"{DEVICE}/renamed"
        assert network.signal == -30
        assert len(snap.networks) == 1

    def test_network_without_station_ignored(self):
        c = ObjectCache()
        delta = c.apply(InterfacesAdded(net("Home"), (
            P(EntityKind.NETWORK, ssid="Home", security=Security.PSK, device=DEVICE),
        )))
        assert delta.empty


# ---------------------------------------------------------------------------
# Roles and ownership
# ---------------------------------------------------------------------------

class TestRoles:
    def test_access_point_evicts_station(self, cache):
        add_network(cache, "Home")
        delta = cache.apply(InterfacesAdded(DEVICE, (P(EntityKind.ACCESS_POINT, started=False),), 10))
        snap = cache.snapshot()
        assert DEVICE not in snap.stations
        assert DEVICE in snap.access_points
        assert snap.networks == {}
        assert (EntityKind.STATION, DEVICE) in delta.removed

    def test_station_evicts_access_point(self, cache):
        cache.apply(InterfacesAdded(DEVICE, (P(EntityKind.ACCESS_POINT),), 10))
        cache.apply(InterfacesAdded(DEVICE, (P(EntityKind.STATION),), 11))
        snap = cache.snapshot()
        assert DEVICE in snap.stations
        assert DEVICE not in snap.access_points

    def test_mode_change_drops_mismatched_role(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, mode=DeviceMode.AP), 10))
        assert DEVICE not in cache.snapshot().stations

    def test_role_for_unknown_device_ignored(self, cache):
        assert cache.apply(InterfacesAdded("/other", (P(EntityKind.STATION),))).empty

    def test_removing_adapter_cascades(self, cache):
        add_network(cache, "Home")
        cache.apply(InterfacesAdded("/net/connman/iwd/Home_psk", (
            P(EntityKind.KNOWN_NETWORK, ssid="Home", security=Security.PSK),
        )))
        delta = cache.apply(InterfacesRemoved(ADAPTER, (EntityKind.ADAPTER,), 10))
        snap = cache.snapshot()
        assert snap.adapters == {} and snap.devices == {} and snap.stations == {}
        assert snap.networks == {}
        assert snap.known_networks == {}
        assert (EntityKind.DEVICE, DEVICE) in delta.removed

    def test_known_networks_kept_while_a_device_remains(self, cache):
        cache.apply(InterfacesAdded("/net/connman/iwd/Home_psk", (
            P(EntityKind.KNOWN_NETWORK, ssid="Home", security=Security.PSK),
        )))
        cache.apply(InterfacesAdded("/net/connman/iwd/0/4", (
            P(EntityKind.DEVICE, name="wlan1", adapter=ADAPTER, mode=DeviceMode.STATION),
        )))
        cache.apply(InterfacesRemoved(DEVICE, (EntityKind.DEVICE,), 10))
        assert "/net/connman/iwd/Home_psk" in cache.snapshot().known_networks

    def test_incomplete_known_network_ignored(self, cache):
        assert cache.apply(InterfacesAdded("/k", (P(EntityKind.KNOWN_NETWORK, ssid="X"),))).empty


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class TestLookups:
    def test_known_and_connected_correlation(self, cache):
        add_network(cache, "Home")
        add_network(cache, "Home", Security.OPEN)
        cache.apply(InterfacesAdded("/k/home", (
            P(EntityKind.KNOWN_NETWORK, ssid="Home", security=Security.PSK),
        )))
        cache.apply(PropertiesChanged(DEVICE, P(
            EntityKind.STATION, state=StationState.CONNECTED, connected_network=net("Home"),
        ), 10))
        snap = cache.snapshot()
        psk = snap.networks[NetworkId(DEVICE, "Home", Security.PSK)]
        open_ = snap.networks[NetworkId(DEVICE, "Home", Security.OPEN)]
        known = snap.known_networks["/k/home"]
        assert snap.known_for(psk) is known
        assert snap.known_for(open_) is None
        assert snap.network_for(known, DEVICE) is psk
        assert snap.connected_network(DEVICE) is psk
        assert snap.known_by_key(psk.key) is known

    def test_connected_network_unknown_path(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.STATION, connected_network="/gone"), 10))
        assert cache.snapshot().connected_network(DEVICE) is None


# ---------------------------------------------------------------------------
# Query-derived notifications
# ---------------------------------------------------------------------------

class TestRefreshes:
    def test_diagnostics(self, cache):
        cache.apply(DiagnosticsUpdated(DEVICE, rssi=-48, frequency=5180, bss="aa:bb:cc:dd:ee:01"))
        station = cache.snapshot().stations[DEVICE]
        assert (station.rssi, station.frequency, station.connected_bss) == (-48, 5180, "aa:bb:cc:dd:ee:01")

    def test_ap_clients(self, cache):
        cache.apply(InterfacesAdded(DEVICE, (P(EntityKind.ACCESS_POINT, started=True),), 10))
        clients = (ApClient("aa:bb:cc:00:00:01", "192.168.80.2"),)
        delta = cache.apply(ApClientsChanged(DEVICE, clients))
        assert delta.touched(EntityKind.ACCESS_POINT, DEVICE, "clients")
        assert cache.snapshot().access_points[DEVICE].clients == clients
        assert cache.apply(ApClientsChanged(DEVICE, clients)).empty

    def test_block_applies_to_adapter_devices(self, cache):
        delta = cache.apply(BlockChanged("phy0", soft=False, hard=True))
        dev = cache.snapshot().devices[DEVICE]
        assert dev.hard_blocked and dev.blocked
        assert delta.touched(EntityKind.DEVICE, DEVICE, "hard_blocked")

    def test_block_remembered_for_new_devices(self):
        c = ObjectCache()
        c.apply(BlockChanged("phy0", soft=True, hard=False))
        c.apply(InterfacesAdded(ADAPTER, (P(EntityKind.ADAPTER, name="phy0"),)))
        c.apply(InterfacesAdded(DEVICE, (P(EntityKind.DEVICE, name="wlan0", adapter=ADAPTER),)))
        assert c.snapshot().devices[DEVICE].soft_blocked is True


class TestResync:
    def _tree(self, *extra):
        return Resync((
            (ADAPTER, (P(EntityKind.ADAPTER, name="phy0", powered=True),)),
            (DEVICE, (
                P(EntityKind.DEVICE, name="wlan0", adapter=ADAPTER, powered=True, mode=DeviceMode.STATION),
                P(EntityKind.STATION, state=StationState.DISCONNECTED),
            )),
        ) + extra)

    def test_identical_tree_is_empty_delta(self, cache):
        assert cache.apply(self._tree()).empty

    def test_diff_reports_removed_and_added(self, cache):
        add_network(cache, "Cafe")
        home = (net("Home"), (P(EntityKind.NETWORK, ssid="Home", security=Security.PSK, device=DEVICE),))
        delta = cache.apply(self._tree(home))
        assert (EntityKind.NETWORK, net("Cafe")) in delta.removed
        assert (EntityKind.NETWORK, net("Home")) in delta.added

    def test_keeps_known_signal(self, cache):
        add_network(cache, "Home")
        cache.apply(ScanResults(DEVICE, ((net("Home"), -33),)))
        home = (net("Home"), (P(EntityKind.NETWORK, ssid="Home", security=Security.PSK, device=DEVICE),))
        cache.apply(self._tree(home))
        assert cache.snapshot().networks_of(DEVICE)[0].signal == -33

    def test_clears_sequence_table(self, cache):
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 500))
        cache.apply(self._tree())
        cache.apply(PropertiesChanged(DEVICE, P(EntityKind.DEVICE, powered=False), 3))
        assert cache.snapshot().devices[DEVICE].powered is False

    def test_empty_tree_removes_everything(self, cache):
        delta = cache.apply(Resync(()))
        assert (EntityKind.DEVICE, DEVICE) in delta.removed
        assert cache.snapshot().devices == {}
