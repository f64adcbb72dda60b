"""iwd provisioning files: credential registration and sharing.

iwd picks up network credentials from ``<name>.psk`` / ``<name>.8021x``
files in its state directory.  Registering a credential therefore means
writing one of those files; iwd notices it and exposes a KnownNetwork.
Can be used standalone to print the sharing payload of a saved network::

    python -m wifictl.daemon.provisioning -s MyNetwork
"""

from __future__ import annotations

import argparse
import enum
import logging
import os
import re
import stat
import sys
import tempfile
from dataclasses import dataclass, fields

from wifictl.errors import DaemonError, FailureKind
from wifictl.model import Security
from wifictl.wifi_common import is_valid_passphrase

logger = logging.getLogger(__name__)

IWD_STATE_DIR = "/var/lib/iwd"

_PLAIN_NAME_RE = re.compile(r"^[A-Za-z0-9_\- ]+$")


class EapMethod(enum.Enum):
    PEAP = "PEAP"
    TTLS = "TTLS"
    PWD = "PWD"
    TLS = "TLS"
    EDUROAM = "eduroam"


@dataclass(frozen=True)
class EnterpriseCredentials:
    """Identity and secrets for an 802.1X network.

    Which fields are required depends on ``method``:

    - PEAP / TTLS / eduroam: ``identity``, ``password`` (phase-2),
      optional ``phase2_identity`` (defaults to ``identity``)
    - PWD: ``identity``, ``password``
    - TLS: ``identity``, ``client_cert``, ``client_key``, optional
      ``key_passphrase``
    """

    method: EapMethod
    identity: str
    password: str = ""
    phase2_method: str = "MSCHAPV2"
    phase2_identity: str = ""
    ca_cert: str = ""
    server_domain_mask: str = ""
    client_cert: str = ""
    client_key: str = ""
    key_passphrase: str = ""

    def validate(self) -> None:
        """Raise ValueError if a field the method needs is missing or unsafe."""
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str) and ("\n" in value or "\r" in value):
                raise ValueError(f"{f.name} must be a single line")
        if not self.identity:
            raise ValueError("identity is required")
        if self.method is EapMethod.TLS:
            if not self.client_cert or not self.client_key:
                raise ValueError("TLS needs a client certificate and key")
        elif not self.password:
            raise ValueError("password is required")


# ---------------------------------------------------------------------------
# File naming and rendering
# ---------------------------------------------------------------------------

def provisioning_filename(ssid: str) -> str:
    """Return iwd's file stem for *ssid*.

    Plain names (letters, digits, ``-``, ``_``, space) are used as-is;
    anything else is ``=`` followed by the hex of the UTF-8 bytes.
    """
    if _PLAIN_NAME_RE.match(ssid):
        return ssid
    return "=" + ssid.encode("utf-8").hex()


def _suffix(security: Security) -> str:
    return {
        Security.OPEN: "open",
        Security.WEP: "wep",
        Security.PSK: "psk",
        Security.ENTERPRISE: "8021x",
    }[security]


def provisioning_path(ssid: str, security: Security, state_dir: str = IWD_STATE_DIR) -> str:
    return os.path.join(state_dir, f"{provisioning_filename(ssid)}.{_suffix(security)}")


def render_psk(passphrase: str, *, hidden: bool = False) -> str:
    text = f"[Security]\nPassphrase={passphrase}\n"
    if hidden:
        text += "\n[Settings]\nHidden=true\n"
    return text


def render_enterprise(creds: EnterpriseCredentials, *, hidden: bool = False) -> str:
    """Render the ``.8021x`` file body for *creds*."""
    creds.validate()
    lines = ["[Security]"]
    method = creds.method
    phase2_identity = creds.phase2_identity or creds.identity

    if method is EapMethod.EDUROAM:
        lines += [
            "EAP-Method=PEAP",
            f"EAP-Identity={creds.identity}",
            "EAP-PEAP-Phase2-Method=MSCHAPV2",
            f"EAP-PEAP-Phase2-Identity={phase2_identity}",
            f"EAP-PEAP-Phase2-Password={creds.password}",
        ]
    elif method in (EapMethod.PEAP, EapMethod.TTLS):
        prefix = f"EAP-{method.value}"
        lines += [f"EAP-Method={method.value}", f"EAP-Identity={creds.identity}"]
        if creds.ca_cert:
            lines.append(f"{prefix}-CACert={creds.ca_cert}")
        if creds.server_domain_mask:
            lines.append(f"{prefix}-ServerDomainMask={creds.server_domain_mask}")
        lines += [
            f"{prefix}-Phase2-Method={creds.phase2_method}",
            f"{prefix}-Phase2-Identity={phase2_identity}",
            f"{prefix}-Phase2-Password={creds.password}",
        ]
    elif method is EapMethod.PWD:
        lines += [
            "EAP-Method=PWD",
            f"EAP-Identity={creds.identity}",
            f"EAP-Password={creds.password}",
        ]
    else:
        lines += ["EAP-Method=TLS", f"EAP-Identity={creds.identity}"]
        if creds.ca_cert:
            lines.append(f"EAP-TLS-CACert={creds.ca_cert}")
        if creds.server_domain_mask:
            lines.append(f"EAP-TLS-ServerDomainMask={creds.server_domain_mask}")
        lines += [
            f"EAP-TLS-ClientCert={creds.client_cert}",
            f"EAP-TLS-ClientKey={creds.client_key}",
        ]
        if creds.key_passphrase:
            lines.append(f"EAP-TLS-ClientKeyPassphrase={creds.key_passphrase}")

    text = "\n".join(lines) + "\n"
    if hidden:
        text += "\n[Settings]\nHidden=true\n"
    return text


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------

def _write_atomic(path: str, text: str) -> None:
    """Write *text* to *path* via a 0600 temp file and rename."""
    directory = os.path.dirname(path) or "."
    try:
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".wifictl-")
    except PermissionError as e:
        raise DaemonError(FailureKind.PERMISSION_DENIED, f"cannot write to {directory}") from e
    except OSError as e:
        raise DaemonError(FailureKind.PROTOCOL_REJECTED, str(e)) from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
        os.replace(tmp, path)
    except OSError as e:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise DaemonError(FailureKind.PROTOCOL_REJECTED, str(e)) from e
    logger.debug("provisioning: wrote %s", path)


def write_psk(
    ssid: str,
    passphrase: str,
    *,
    hidden: bool = False,
    state_dir: str = IWD_STATE_DIR,
) -> str:
    """Register a WPA-PSK passphrase for *ssid*.  Returns the file path."""
    if not is_valid_passphrase(passphrase):
        raise ValueError("passphrase must be 8-63 printable ASCII characters")
    path = provisioning_path(ssid, Security.PSK, state_dir)
    _write_atomic(path, render_psk(passphrase, hidden=hidden))
    return path


def write_enterprise(
    ssid: str,
    creds: EnterpriseCredentials,
    *,
    hidden: bool = False,
    state_dir: str = IWD_STATE_DIR,
) -> str:
    """Register 802.1X credentials for *ssid*.  Returns the file path."""
    text = render_enterprise(creds, hidden=hidden)
    path = provisioning_path(ssid, Security.ENTERPRISE, state_dir)
    _write_atomic(path, text)
    return path


def read_passphrase(
    ssid: str,
    security: Security,
    *,
    state_dir: str = IWD_STATE_DIR,
) -> str | None:
    """Return the stored passphrase for *ssid*, or None if there is none."""
    if security not in (Security.PSK, Security.WEP):
        return None
    path = provisioning_path(ssid, security, state_dir)
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                key, sep, value = line.strip().partition("=")
                if sep and key == "Passphrase":
                    return value
    except OSError as exc:
        logger.debug("provisioning: cannot read %s: %s", path, exc)
    return None


def share_payload(ssid: str, security: Security, passphrase: str | None) -> str:
    """Build the ``WIFI:`` text encoded in credential-sharing QR codes."""
    kind = {
        Security.OPEN: "nopass",
        Security.WEP: "WEP",
    }.get(security, "WPA")
    return f"WIFI:T:{kind};S:{ssid};P:{passphrase or ''};;"


# ---------------------------------------------------------------------------
# Standalone CLI
# ---------------------------------------------------------------------------

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for standalone invocation."""
    parser = argparse.ArgumentParser(
        description="Print the sharing payload of a saved WPA-PSK network.",
    )
    parser.add_argument("-s", "--ssid", required=True, help="network SSID")
    parser.add_argument(
        "-d", "--state-dir", default=IWD_STATE_DIR,
        help=f"iwd state directory (default: {IWD_STATE_DIR})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    passphrase = read_passphrase(args.ssid, Security.PSK, state_dir=args.state_dir)
    if passphrase is None:
        print(f"ERROR: no stored passphrase for {args.ssid!r}", file=sys.stderr)
        sys.exit(1)
    print(share_payload(args.ssid, Security.PSK, passphrase))


if __name__ == "__main__":
    main()
