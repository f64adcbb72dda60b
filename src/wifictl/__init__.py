"""wifictl: terminal dashboard for iwd-managed wireless hardware."""

__version__ = "0.1.0"
