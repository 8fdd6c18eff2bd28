"""
nix-env generation source for nixhist.

This module reads generations straight from Nix profiles: it wraps
``nix-env --list-generations`` and ``nix path-info``, resolves the profile
symlinks and inspects the generation links for metadata.
"""

import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import orjson

from nixhist.errors import ManifestUnreadable, SourceUnavailable
from nixhist.source import GenerationSource, ProfileKind, RawPackage

logger = logging.getLogger("nixhist.source.nixenv")

# Store path basenames start with a 32 character hash and a dash.
STORE_HASH_LENGTH = 33

SKIP_PREFIXES = (
    "bootstrap-",
    "hook-",
    "wrap-",
    "setup-",
    "stdenv-",
    "builder-",
    "source-",
    "raw-",
    "manifest",
    "env-manifest",
    "nix-support",
)
SKIP_SUFFIXES = ("-info", "-man", "-doc", "-dev", "-debug", ".drv")
SKIP_NAMES = ("source", "builder", "hook", "wrapper", "nixos-system-")

_NAME_VERSION = re.compile(r"^(.+)-(\d.*)$")
_LINK_ID = re.compile(r"^.+-(\d+)-link$")
_GRUB_GENERATION = re.compile(r"Generation (\d+)")


def parse_store_path(path: str) -> Optional[Tuple[str, str]]:
    """
    Split a store path into package name and version.

    ``/nix/store/<hash>-firefox-122.0`` gives ``("firefox", "122.0")``. The
    version starts at the last dash that is followed by a digit; paths without
    one get an empty version.
    """
    filename = path.rstrip("/").rsplit("/", 1)[-1]
    if len(filename) <= STORE_HASH_LENGTH:
        return None
    name_version = filename[STORE_HASH_LENGTH:]
    match = _NAME_VERSION.match(name_version)
    if match:
        return match.group(1), match.group(2)
    return name_version, ""


def should_skip_package(name: str) -> bool:
    """Return True for build-time and internal store paths."""
    if name.startswith(SKIP_PREFIXES) or name.endswith(SKIP_SUFFIXES):
        return True
    return any(name == skip or name.startswith(skip) for skip in SKIP_NAMES)


def parse_generation_list(output: str) -> List[Dict[str, Any]]:
    """
    Parse ``nix-env --list-generations`` output.

    Example output::

          1   2024-01-15 08:44:32
          2   2024-01-18 11:03:15   (current)

    Every non-empty line becomes a record; lines that do not have the
    expected shape are passed on with ``timestamp`` set to None so that the
    registry reports them.
    """
    entries = []
    for line in output.splitlines():
        parts = line.split()
        if not parts:
            continue
        entries.append(
            {
                "id": parts[0],
                "timestamp": f"{parts[1]} {parts[2]}" if len(parts) >= 3 else None,
                "marked_current": "(current)" in parts[3:],
                "line": line.strip(),
            }
        )
    return entries


def parse_path_info_json(data: Any) -> List[RawPackage]:
    """
    Turn ``nix path-info -r -s --json`` output into packages.

    Newer Nix releases emit an object keyed by store path, older ones a list
    of objects with a ``path`` key. Several store paths with the same package
    name are folded into one, keeping the largest NAR size.
    """
    if isinstance(data, dict):
        items = list(data.items())
    elif isinstance(data, list):
        items = [(entry.get("path", ""), entry) for entry in data if entry]
    else:
        raise ValueError(f"unexpected path-info payload: {type(data).__name__}")

    packages: Dict[str, RawPackage] = {}
    for path, info in items:
        parsed = parse_store_path(path)
        if parsed is None:
            continue
        name, version = parsed
        if should_skip_package(name):
            continue
        size = 0
        if isinstance(info, dict):
            size = int(info.get("narSize") or 0)
        seen = packages.get(name)
        if seen is None or seen.size < size:
            packages[name] = RawPackage(name, version, size)

    return sorted(packages.values(), key=lambda p: p.name.lower())


def get_boot_entries(boot_dir: Path) -> Set[int]:
    """
    Return the system generation ids that have a bootloader entry.

    systemd-boot entries are preferred; GRUB's config is only consulted when
    no systemd-boot entry was found.
    """
    entries: Set[int] = set()

    loader_entries = boot_dir / "loader" / "entries"
    if loader_entries.is_dir():
        for entry in loader_entries.iterdir():
            name = entry.name
            if name.startswith("nixos-generation-") and name.endswith(".conf"):
                gen_id = name[len("nixos-generation-") : -len(".conf")]
                # Specialisations look like nixos-generation-42-specialisation-x
                if gen_id.isdigit():
                    entries.add(int(gen_id))

    grub_cfg = boot_dir / "grub" / "grub.cfg"
    if not entries and grub_cfg.is_file():
        try:
            content = grub_cfg.read_text()
        except OSError as e:
            logger.debug(f"Could not read {grub_cfg}: {e}")
            return entries
        for line in content.splitlines():
            if "NixOS" in line and "Generation" in line:
                match = _GRUB_GENERATION.search(line)
                if match:
                    entries.add(int(match.group(1)))

    return entries


def extract_generation_id(link: str) -> Optional[int]:
    """Extract 142 from names like ``system-142-link``."""
    match = _LINK_ID.match(os.path.basename(link))
    return int(match.group(1)) if match else None


class NixEnvSource(GenerationSource):
    """Generation source backed by Nix profiles on the local machine."""

    def __init__(
        self,
        profiles: Mapping[ProfileKind, Path],
        nix_env_binary: str = "nix-env",
        nix_binary: str = "nix",
        boot_dir: Path = Path("/boot"),
    ):
        """
        Initialize the source.

        Args:
            profiles: Profile symlink per kind, e.g.
                ``/nix/var/nix/profiles/system``
            nix_env_binary: Path to the nix-env binary
            nix_binary: Path to the nix binary
            boot_dir: Root of the boot partition
        """
        self.profiles = dict(profiles)
        self.nix_env_binary = nix_env_binary
        self.nix_binary = nix_binary
        self.boot_dir = boot_dir

    def _run_command(self, cmd: List[str], check: bool = True) -> Tuple[int, str, str]:
        """
        Run a Nix command.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        cmd_str = " ".join(shlex.quote(str(arg)) for arg in cmd)
        logger.debug(f"Running command: {cmd_str}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=check)
            return result.returncode, result.stdout or "", result.stderr or ""
        except subprocess.CalledProcessError as e:
            logger.debug(f"Command failed ({e.returncode}): {cmd_str}: {e.stderr}")
            raise

    def generation_link(self, profile_kind: ProfileKind, generation_id: int) -> Path:
        profile = self.profiles[profile_kind]
        return profile.parent / f"{profile_kind.link_prefix}-{generation_id}-link"

    def enumerate(self, profile_kind: ProfileKind) -> List[Dict[str, Any]]:
        profile = self.profiles.get(profile_kind)
        if profile is None:
            raise SourceUnavailable(f"No {profile_kind} profile configured")
        if not os.path.lexists(profile):
            raise SourceUnavailable(f"Profile {profile} does not exist")

        try:
            _, stdout, _ = self._run_command(
                [self.nix_env_binary, "--list-generations", "--profile", str(profile)]
            )
        except (subprocess.CalledProcessError, OSError) as e:
            raise SourceUnavailable(
                f"Failed to list generations of {profile}: {e}"
            ) from e

        current_id = self._current_generation_id(profile)
        boot_entries: Set[int] = set()
        if profile_kind is ProfileKind.SYSTEM:
            boot_entries = get_boot_entries(self.boot_dir)

        records = []
        for entry in parse_generation_list(stdout):
            record: Dict[str, Any] = {
                "id": entry["id"],
                "timestamp": entry["timestamp"],
                "manifest_path": None,
                "is_current": entry["marked_current"],
                "is_in_bootloader": False,
            }
            if not entry["id"].isdigit():
                records.append(record)
                continue

            gen_id = int(entry["id"])
            link = self.generation_link(profile_kind, gen_id)
            if not os.path.lexists(link):
                logger.debug(f"Skipping generation {gen_id}: {link} is gone")
                continue

            if current_id is not None:
                record["is_current"] = gen_id == current_id
            record["manifest_path"] = str(link)
            record["is_in_bootloader"] = gen_id in boot_entries
            record.update(self._read_metadata(profile_kind, link))
            records.append(record)

        return records

    def _current_generation_id(self, profile: Path) -> Optional[int]:
        """Resolve the profile symlink to the id of the current generation."""
        try:
            target = os.readlink(profile)
        except OSError as e:
            logger.warning(f"Failed to read profile symlink {profile}: {e}")
            return None
        gen_id = extract_generation_id(target)
        if gen_id is None:
            logger.warning(f"Could not extract generation id from {target}")
        return gen_id

    def _read_metadata(self, profile_kind: ProfileKind, link: Path) -> Dict[str, Any]:
        try:
            store_path = os.readlink(link)
        except OSError:
            store_path = ""

        version_file = "nixos-version" if profile_kind is ProfileKind.SYSTEM else "hm-version"
        nixos_version = None
        try:
            nixos_version = (link / version_file).read_text().strip() or None
        except OSError:
            marker = "-nixos-system-"
            if marker in store_path:
                rest = store_path.split(marker, 1)[1].split("-")
                nixos_version = rest[1] if len(rest) > 1 else None

        kernel_version = None
        if profile_kind is ProfileKind.SYSTEM:
            kernel_version = self._kernel_version(link)

        return {
            "store_path": store_path,
            "nixos_version": nixos_version,
            "kernel_version": kernel_version,
            "closure_size": self._closure_size(link),
        }

    def _kernel_version(self, link: Path) -> Optional[str]:
        try:
            kernel = os.readlink(link / "kernel")
        except OSError:
            modules = link / "kernel-modules" / "lib" / "modules"
            if modules.is_dir():
                for entry in sorted(modules.iterdir()):
                    return entry.name
            return None
        # /nix/store/<hash>-linux-6.6.52/bzImage
        parsed = parse_store_path("/".join(kernel.split("/")[:4]))
        if parsed and parsed[0] == "linux" and parsed[1]:
            return parsed[1].split("-")[0]
        return None

    def _closure_size(self, link: Path) -> int:
        try:
            returncode, stdout, _ = self._run_command(
                [self.nix_binary, "path-info", "-S", str(link)], check=False
            )
        except OSError:
            return 0
        if returncode != 0:
            return 0
        for line in stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1])
        return 0

    def read_manifest(self, manifest_path: str) -> List[RawPackage]:
        error: Optional[Exception] = None
        try:
            _, stdout, _ = self._run_command(
                [self.nix_binary, "path-info", "-r", "-s", "--json", manifest_path]
            )
            packages = parse_path_info_json(orjson.loads(stdout))
            if packages:
                return packages
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            # orjson.JSONDecodeError is a ValueError
            logger.warning(f"nix path-info failed for {manifest_path}: {e}")
            error = e

        packages = self._packages_from_sw(Path(manifest_path))
        if packages:
            return packages
        if error is not None:
            raise ManifestUnreadable(
                f"Failed to read packages of {manifest_path}: {error}"
            ) from error
        return []

    def _packages_from_sw(self, link: Path) -> List[RawPackage]:
        """Fall back to the store paths behind the generation's ``sw/bin``."""
        bin_path = link / "sw" / "bin"
        if not bin_path.is_dir():
            return []

        packages: Dict[str, RawPackage] = {}
        for entry in bin_path.iterdir():
            try:
                target = os.readlink(entry)
            except OSError:
                continue
            # /nix/store/<hash>-name-version/bin/tool
            store_dir = "/".join(target.split("/")[:4])
            parsed = parse_store_path(store_dir)
            if parsed and parsed[0] not in packages and not should_skip_package(parsed[0]):
                packages[parsed[0]] = RawPackage(parsed[0], parsed[1], 0)

        return sorted(packages.values(), key=lambda p: p.name.lower())
