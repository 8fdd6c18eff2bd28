"""
System detection for nixhist.

Finds the System and Home-Manager profiles of the running machine so the
rest of the codebase never has to probe the filesystem for them.
"""

import logging
import os
import shutil
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from nixhist.planner import ProfileLayout
from nixhist.source import ProfileKind

logger = logging.getLogger("nixhist.detect")

SYSTEM_PROFILE = Path("/nix/var/nix/profiles/system")
PER_USER_PROFILES = Path("/nix/var/nix/profiles/per-user")


@dataclass(frozen=True)
class HomeManagerInfo:
    profile: Path
    is_standalone: bool


@dataclass(frozen=True)
class SystemInfo:
    hostname: str
    username: str
    uses_flakes: bool
    system_profile: Path
    home_manager: Optional[HomeManagerInfo]
    home_manager_cli: bool = False


def command_exists(name: str) -> bool:
    """Return True when *name* is on PATH."""
    return shutil.which(name) is not None


def get_hostname() -> str:
    try:
        hostname = Path("/etc/hostname").read_text().strip()
        if hostname:
            return hostname
    except OSError:
        pass
    return socket.gethostname() or "unknown"


def get_username() -> str:
    return os.environ.get("USER") or os.environ.get("LOGNAME") or "unknown"


def detect_flakes(home: Path) -> bool:
    """Return True when a flake.nix exists in one of the usual places."""
    candidates = [
        Path("/etc/nixos/flake.nix"),
        home / ".config" / "nixos" / "flake.nix",
        home / "nixos" / "flake.nix",
        home / ".nixos" / "flake.nix",
    ]
    return any(p.exists() for p in candidates)


def has_generation_links(directory: Path) -> bool:
    try:
        return any(
            entry.name.startswith("home-manager-") and entry.name.endswith("-link")
            for entry in directory.iterdir()
        )
    except OSError:
        return False


def detect_home_manager(username: str, home: Path) -> Optional[HomeManagerInfo]:
    """
    Locate the Home-Manager profile.

    Standalone installations are checked first, then the NixOS module's
    per-user profile, then the older standalone location.
    """
    standalone_dir = home / ".local" / "state" / "home-manager" / "profiles"
    if has_generation_links(standalone_dir):
        return HomeManagerInfo(standalone_dir / "home-manager", is_standalone=True)

    module_profile = PER_USER_PROFILES / username / "home-manager"
    if module_profile.exists() or module_profile.is_symlink():
        return HomeManagerInfo(module_profile, is_standalone=False)

    legacy_profile = home / ".local" / "state" / "nix" / "profiles" / "home-manager"
    if os.path.lexists(legacy_profile):
        return HomeManagerInfo(legacy_profile, is_standalone=True)

    return None


def detect_system() -> SystemInfo:
    home = Path.home()
    username = get_username()
    info = SystemInfo(
        hostname=get_hostname(),
        username=username,
        uses_flakes=detect_flakes(home),
        system_profile=SYSTEM_PROFILE,
        home_manager=detect_home_manager(username, home),
        home_manager_cli=command_exists("home-manager"),
    )
    logger.debug(f"Detected system: {info}")
    return info


def profiles_for(info: SystemInfo) -> Dict[ProfileKind, Path]:
    """Profile symlink per available profile kind."""
    profiles = {ProfileKind.SYSTEM: info.system_profile}
    if info.home_manager is not None:
        profiles[ProfileKind.HOME_MANAGER] = info.home_manager.profile
    return profiles


def layouts_for(info: SystemInfo) -> Dict[ProfileKind, ProfileLayout]:
    layouts = {ProfileKind.SYSTEM: ProfileLayout(info.system_profile)}
    if info.home_manager is not None:
        layouts[ProfileKind.HOME_MANAGER] = ProfileLayout(
            info.home_manager.profile,
            home_manager_standalone=info.home_manager.is_standalone,
            home_manager_cli=info.home_manager_cli,
        )
    return layouts
