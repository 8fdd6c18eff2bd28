"""
Configuration file support for nixhist.

Loads settings from ``~/.config/nixhist/config.yaml`` (or
``$XDG_CONFIG_HOME/nixhist/config.yaml``) and exposes them as typed
dataclasses. Pinned generations live in the same file and are written back
whenever a pin changes.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import yaml

from nixhist.errors import ConfigUnreadable
from nixhist.registry import PinStore
from nixhist.source import ProfileKind

logger = logging.getLogger("nixhist.config")

THEMES = ("gruvbox", "nord", "transparent")
LAYOUTS = ("auto", "side-by-side", "tabs-only")

# Config keys of the pinned generation lists
PIN_KEYS = {ProfileKind.SYSTEM: "system", ProfileKind.HOME_MANAGER: "home_manager"}


def default_config_path() -> Path:
    """Return the default configuration file path.

    Uses ``$XDG_CONFIG_HOME/nixhist/config.yaml`` when set, otherwise
    falls back to ``~/.config/nixhist/config.yaml``.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "nixhist" / "config.yaml"
    return Path.home() / ".config" / "nixhist" / "config.yaml"


@dataclass
class DisplayOptions:
    """Which generation details the dashboard shows."""

    show_nixos_version: bool = True
    show_kernel_version: bool = True
    show_package_count: bool = True
    show_size: bool = True
    show_store_path: bool = False
    show_boot_entry: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> "DisplayOptions":
        options = cls()
        if not isinstance(data, dict):
            return options
        for key, value in data.items():
            if not hasattr(options, key):
                logger.warning("Ignoring unknown display option: %s", key)
                continue
            setattr(options, key, bool(value))
        return options


def _parse_ids(value: Any, key: str) -> List[int]:
    ids: List[int] = []
    for entry in value or []:
        if isinstance(entry, int) and not isinstance(entry, bool) and entry > 0:
            ids.append(entry)
        else:
            logger.warning("Skipping invalid pinned %s entry: %s", key, entry)
    return sorted(set(ids))


@dataclass
class NixhistConfig:
    """Top-level configuration loaded from the YAML file."""

    theme: str = "gruvbox"
    layout: str = "auto"
    display: DisplayOptions = field(default_factory=DisplayOptions)
    undo_seconds: int = 10
    pinned: Dict[ProfileKind, List[int]] = field(
        default_factory=lambda: {kind: [] for kind in ProfileKind}
    )
    # Set when the file exists but could not be read; it is then never saved over.
    load_error: Optional[str] = field(default=None, compare=False, repr=False)

    @property
    def undo_window(self) -> timedelta:
        return timedelta(seconds=self.undo_seconds)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NixhistConfig":
        """Construct a ``NixhistConfig`` from a parsed YAML dictionary."""
        if not isinstance(data, dict):
            return cls()

        theme = str(data.get("theme", "gruvbox")).lower()
        if theme not in THEMES:
            logger.warning("Unknown theme %r, using gruvbox", theme)
            theme = "gruvbox"

        layout = str(data.get("layout", "auto")).lower()
        if layout not in LAYOUTS:
            logger.warning("Unknown layout %r, using auto", layout)
            layout = "auto"

        undo_seconds = data.get("undo_seconds", 10)
        if not isinstance(undo_seconds, int) or undo_seconds < 0:
            logger.warning("Invalid undo_seconds %r, using 10", undo_seconds)
            undo_seconds = 10

        pinned_data = data.get("pinned") or {}
        if not isinstance(pinned_data, dict):
            logger.warning("Ignoring invalid pinned section: %s", pinned_data)
            pinned_data = {}

        return cls(
            theme=theme,
            layout=layout,
            display=DisplayOptions.from_dict(data.get("display")),
            undo_seconds=undo_seconds,
            pinned={
                kind: _parse_ids(pinned_data.get(key), key)
                for kind, key in PIN_KEYS.items()
            },
        )

    @classmethod
    def from_file(cls, path: Path) -> "NixhistConfig":
        """Read a YAML file and return a ``NixhistConfig``.

        Returns a default config on any error, with ``load_error`` set so that
        the unreadable file is left alone.
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f.read())
        except (IOError, yaml.YAMLError) as e:
            logger.error("Failed to load config from %s: %s", path, e)
            return cls(load_error=str(e))
        if data is None:
            return cls()
        if not isinstance(data, dict):
            logger.error("Config file %s does not contain a mapping", path)
            return cls(load_error="top level is not a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "NixhistConfig":
        """Main entry point: load config from *config_path* or the default location.

        Returns an empty config if the file does not exist.
        """
        path = config_path or default_config_path()
        if not path.exists():
            return cls()
        return cls.from_file(path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "layout": self.layout,
            "display": {
                "show_nixos_version": self.display.show_nixos_version,
                "show_kernel_version": self.display.show_kernel_version,
                "show_package_count": self.display.show_package_count,
                "show_size": self.display.show_size,
                "show_store_path": self.display.show_store_path,
                "show_boot_entry": self.display.show_boot_entry,
            },
            "undo_seconds": self.undo_seconds,
            "pinned": {
                key: sorted(self.pinned.get(kind, [])) for kind, key in PIN_KEYS.items()
            },
        }

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the configuration back, creating the directory if needed."""
        path = path or default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.debug("Saved config to %s", path)
        return path


class YamlPinStore(PinStore):
    """Keeps pinned generations in the configuration file."""

    def __init__(self, config: NixhistConfig, path: Optional[Path] = None):
        self.config = config
        self.path = path

    def load(self) -> Dict[ProfileKind, Set[int]]:
        return {kind: set(ids) for kind, ids in self.config.pinned.items()}

    def save(self, pins: Mapping[ProfileKind, Set[int]]) -> None:
        if self.config.load_error is not None:
            path = self.path or default_config_path()
            logger.error(
                "Not persisting pinned generations, %s could not be read: %s",
                path,
                self.config.load_error,
            )
            raise ConfigUnreadable(path, self.config.load_error)
        self.config.pinned = {kind: sorted(ids) for kind, ids in pins.items()}
        try:
            self.config.save(self.path)
        except OSError as e:
            logger.error("Failed to persist pinned generations: %s", e)
            raise
