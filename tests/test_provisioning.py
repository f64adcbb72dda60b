"""Tests for wifictl.daemon.provisioning — iwd credential files."""

from __future__ import annotations

import os
import stat

import pytest

from wifictl.daemon.provisioning import (
    EapMethod,
    EnterpriseCredentials,
    main as provisioning_main,
    provisioning_filename,
    provisioning_path,
    read_passphrase,
    render_enterprise,
    render_psk,
    share_payload,
    write_enterprise,
    write_psk,
)
from wifictl.errors import DaemonError, FailureKind
from wifictl.model import Security


class TestFilename:
    def test_plain_name_kept(self):
        assert provisioning_filename("Home Net_5-G") == "Home Net_5-G"

    def test_special_characters_hex_encoded(self):
        assert provisioning_filename("café") == "=" + "café".encode().hex()
        assert provisioning_filename("a.b") == "=612e62"

    def test_path_suffix_by_security(self, tmp_path):
        assert provisioning_path("X", Security.PSK, str(tmp_path)).endswith("X.psk")
        assert provisioning_path("X", Security.ENTERPRISE, str(tmp_path)).endswith("X.8021x")
        assert provisioning_path("X", Security.OPEN, str(tmp_path)).endswith("X.open")


class TestRender:
    def test_psk(self):
        assert render_psk("password123") == "[Security]\nPassphrase=password123\n"

    def test_psk_hidden(self):
        assert render_psk("password123", hidden=True).endswith("[Settings]\nHidden=true\n")

    def test_peap_with_optional_fields(self):
        creds = EnterpriseCredentials(
            EapMethod.PEAP, "alice", "s3cret",
            ca_cert="/etc/ssl/ca.pem", server_domain_mask="radius.example.com",
        )
        text = render_enterprise(creds)
        assert "EAP-Method=PEAP" in text
        assert "EAP-PEAP-CACert=/etc/ssl/ca.pem" in text
        assert "EAP-PEAP-ServerDomainMask=radius.example.com" in text
        assert "EAP-PEAP-Phase2-Method=MSCHAPV2" in text
        assert "EAP-PEAP-Phase2-Identity=alice" in text
        assert "EAP-PEAP-Phase2-Password=s3cret" in text

    def test_ttls_omits_unset_optional_fields(self):
        text = render_enterprise(EnterpriseCredentials(EapMethod.TTLS, "bob", "pw", phase2_method="PAP"))
        assert "CACert" not in text
        assert "ServerDomainMask" not in text
        assert "EAP-TTLS-Phase2-Method=PAP" in text

    def test_eduroam_preset(self):
        text = render_enterprise(EnterpriseCredentials(EapMethod.EDUROAM, "me@uni.edu", "pw"))
        assert "EAP-Method=PEAP" in text
        assert "EAP-PEAP-Phase2-Method=MSCHAPV2" in text

    def test_pwd(self):
        text = render_enterprise(EnterpriseCredentials(EapMethod.PWD, "carol", "pw"))
        assert "EAP-Method=PWD" in text
        assert "EAP-Password=pw" in text

    def test_tls(self):
        creds = EnterpriseCredentials(
            EapMethod.TLS, "dave", client_cert="/c.pem", client_key="/k.pem", key_passphrase="kp",
        )
        text = render_enterprise(creds)
        assert "EAP-TLS-ClientCert=/c.pem" in text
        assert "EAP-TLS-ClientKey=/k.pem" in text
        assert "EAP-TLS-ClientKeyPassphrase=kp" in text

    def test_tls_without_key_invalid(self):
        with pytest.raises(ValueError):
            render_enterprise(EnterpriseCredentials(EapMethod.TLS, "dave", client_cert="/c.pem"))

    def test_missing_password_invalid(self):
        with pytest.raises(ValueError):
            render_enterprise(EnterpriseCredentials(EapMethod.PEAP, "alice"))


class TestWrite:
    def test_write_psk_mode_0600(self, tmp_path):
        path = write_psk("Home", "password123", state_dir=str(tmp_path))
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert not [p for p in os.listdir(tmp_path) if p.startswith(".wifictl-")]

    def test_write_psk_rejects_short_passphrase(self, tmp_path):
        with pytest.raises(ValueError):
            write_psk("Home", "short", state_dir=str(tmp_path))
        assert os.listdir(tmp_path) == []

    @pytest.mark.parametrize("passphrase", [
        "abcdefgh\n[Settings]\nAutoConnect=false",
        "abcdefgh\rxyz",
        "pässwörd123",
    ])
    def test_write_psk_rejects_non_printable_ascii(self, tmp_path, passphrase):
        with pytest.raises(ValueError):
            write_psk("Home", passphrase, state_dir=str(tmp_path))
        assert os.listdir(tmp_path) == []

    @pytest.mark.parametrize("field_name", [
        "identity", "password", "phase2_identity", "ca_cert", "client_key",
    ])
    def test_write_enterprise_rejects_line_breaks(self, tmp_path, field_name):
        values = {"identity": "alice", "password": "secret", field_name: "x\n[Settings]\nHidden=true"}
        creds = EnterpriseCredentials(EapMethod.PEAP, **values)
        with pytest.raises(ValueError, match=field_name):
            write_enterprise("Corp", creds, state_dir=str(tmp_path))
        assert os.listdir(tmp_path) == []

    def test_write_enterprise(self, tmp_path):
        path = write_enterprise(
            "Corp", EnterpriseCredentials(EapMethod.PEAP, "a", "b"), hidden=True, state_dir=str(tmp_path),
        )
        assert path.endswith("Corp.8021x")
        assert "Hidden=true" in open(path).read()

    def test_missing_directory_is_rejected(self, tmp_path):
        with pytest.raises(DaemonError) as exc_info:
            write_psk("Home", "password123", state_dir=str(tmp_path / "missing"))
        assert exc_info.value.kind is FailureKind.PROTOCOL_REJECTED

    def test_read_back_passphrase(self, tmp_path):
        write_psk("Home", "password123", state_dir=str(tmp_path))
        assert read_passphrase("Home", Security.PSK, state_dir=str(tmp_path)) == "password123"

    def test_read_missing_returns_none(self, tmp_path):
        assert read_passphrase("Nope", Security.PSK, state_dir=str(tmp_path)) is None

    def test_read_enterprise_returns_none(self, tmp_path):
        assert read_passphrase("Corp", Security.ENTERPRISE, state_dir=str(tmp_path)) is None


class TestShare:
    def test_wpa(self):
        assert share_payload("Home", Security.PSK, "pw123456") == "WIFI:T:WPA;S:Home;P:pw123456;;"

    def test_open(self):
        assert share_payload("Cafe", Security.OPEN, None) == "WIFI:T:nopass;S:Cafe;P:;;"

    def test_wep(self):
        assert share_payload("Old", Security.WEP, "abcde").startswith("WIFI:T:WEP;")

    def test_main_prints_payload(self, tmp_path, capsys):
        write_psk("Home", "password123", state_dir=str(tmp_path))
        provisioning_main(["-s", "Home", "-d", str(tmp_path)])
        assert capsys.readouterr().out.strip() == "WIFI:T:WPA;S:Home;P:password123;;"

    def test_main_missing_exits_1(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            provisioning_main(["-s", "Nope", "-d", str(tmp_path)])
        assert exc_info.value.code == 1
