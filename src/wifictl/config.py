"""User settings: TOML file merged with command-line overrides.

The file lives at ``$XDG_CONFIG_HOME/wifictl/config.toml`` (falling back
to ``~/.config``); a missing file means defaults.  Example::

    mode = "station"
    unicode = true
    color = true
    auto_scan = true
    poll_interval = 2.0

    [timeouts]
    connect = 20

    [keys]
    scan = "r"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0


class ConfigError(Exception):
    """The configuration file exists but cannot be used."""


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(base) / "wifictl" / "config.toml"


@dataclass(frozen=True)
class Timeouts:
    """Bounded waits for workflow steps, in seconds."""

    connect: float = 20.0
    disconnect: float = 5.0
    scan: float = 15.0
    mode_switch: float = 10.0
    confirm: float = 5.0
    credentials: float = 120.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Timeouts":
        known = {f.name for f in fields(cls)}
        values: Dict[str, float] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("config: unknown timeout %r ignored", key)
                continue
            try:
                seconds = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"timeouts.{key} must be a number") from None
            if seconds <= 0:
                raise ConfigError(f"timeouts.{key} must be positive")
            values[key] = seconds
        return cls(**values)


# Action name -> key.  Space is spelled " ", tab "tab".
DEFAULT_KEYS: Dict[str, str] = {
    "scan": "s",
    "toggle_connect": " ",
    "connect_hidden": "h",
    "forget": "d",
    "toggle_autoconnect": "a",
    "toggle_power": "o",
    "switch_mode": "m",
    "start_ap": "n",
    "stop_ap": "x",
    "down": "j",
    "up": "k",
    "next_panel": "tab",
    "info": "i",
    "share": "p",
    "quit": "q",
}


@dataclass(frozen=True)
class KeyBindings:
    actions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_KEYS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyBindings":
        """Merge user bindings over the defaults; clashing keys are rejected."""
        actions = dict(DEFAULT_KEYS)
        for action, key in data.items():
            if action not in DEFAULT_KEYS:
                logger.warning("config: unknown key action %r ignored", action)
                continue
            key = str(key)
            if key.lower() == "space":
                key = " "
            if not key:
                raise ConfigError(f"keys.{action} must not be empty")
            actions[action] = key
        by_key: Dict[str, str] = {}
        for action, key in actions.items():
            if key in by_key:
                raise ConfigError(f"key {key!r} bound to both {by_key[key]} and {action}")
            by_key[key] = action
        return cls(actions=actions)

    def action_for(self, key: str) -> str | None:
        for action, bound in self.actions.items():
            if bound == key:
                return action
        return None

    def key_for(self, action: str) -> str:
        key = self.actions.get(action, "")
        return {" ": "space"}.get(key, key)


@dataclass(frozen=True)
class Settings:
    mode: str = "station"
    unicode: bool = True
    color: bool = True
    auto_scan: bool = True
    poll_interval: float = DEFAULT_POLL_INTERVAL
    interface: str | None = None
    timeouts: Timeouts = field(default_factory=Timeouts)
    keys: KeyBindings = field(default_factory=KeyBindings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        mode = str(data.get("mode", "station"))
        if mode not in ("station", "ap"):
            raise ConfigError(f"mode must be 'station' or 'ap', not {mode!r}")
        return cls(
            mode=mode,
            unicode=_flag(data, "unicode"),
            color=_flag(data, "color"),
            auto_scan=_flag(data, "auto_scan"),
            poll_interval=_poll_interval(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            interface=str(data["interface"]) if data.get("interface") else None,
            timeouts=Timeouts.from_dict(data.get("timeouts", {})),
            keys=KeyBindings.from_dict(data.get("keys", {})),
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if "poll_interval" in values:
            values["poll_interval"] = _poll_interval(values["poll_interval"])
        return replace(self, **values)


def _flag(data: Dict[str, Any], key: str, default: bool = True) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false")
    return value


def _poll_interval(value: Any) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ConfigError("poll_interval must be a number") from None
    if seconds <= 0:
        raise ConfigError("poll_interval must be positive")
    return seconds


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from *path* (default location when None)."""
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        logger.debug("config: %s not found, using defaults", path)
        return Settings()
    try:
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: {e.strerror}") from e
    logger.debug("config: loaded %s", path)
    return Settings.from_dict(payload)
