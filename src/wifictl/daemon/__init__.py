"""iwd daemon binding (busctl transport, provisioning files)."""

from wifictl.daemon.client import DaemonClient  # noqa: F401
from wifictl.daemon.provisioning import EapMethod, EnterpriseCredentials  # noqa: F401
