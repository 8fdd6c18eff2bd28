"""
Package sets and generation diffs for nixhist.

This module normalizes generation manifests into sorted package sets, caches
them per generation and compares two sets in a single ordered pass.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)

from nixhist.errors import ManifestUnreadable
from nixhist.source import GenerationSource, ProfileKind

if TYPE_CHECKING:
    from nixhist.registry import Generation

logger = logging.getLogger("nixhist.packages")

SECURITY_PACKAGES = (
    "openssl",
    "openssh",
    "gnupg",
    "gpg",
    "sudo",
    "polkit",
    "pam",
    "shadow",
    "nss",
    "ca-certificates",
    "curl",
    "wget",
)


def format_bytes(size: int) -> str:
    """Format a byte count for display, e.g. ``1.4 MB``."""
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024

    if size >= gb:
        return f"{size / gb:.1f} GB"
    if size >= mb:
        return f"{size / mb:.1f} MB"
    if size >= kb:
        return f"{size / kb:.1f} KB"
    return f"{size} B"


@dataclass(frozen=True, order=True)
class PackageEntry:
    """A package of one generation. Compared by name, then version."""

    name: str
    version: str
    size: Optional[int] = field(default=None, compare=False)

    def formatted_size(self) -> str:
        return format_bytes(self.size) if self.size is not None else "-"

    def __str__(self) -> str:
        return f"{self.name}-{self.version}" if self.version else self.name


class PackageSet:
    """The packages of one generation, sorted by name.

    Package names are unique; a manifest listing a name twice is rejected
    rather than merged.
    """

    def __init__(self, entries: Iterable[PackageEntry] = ()):
        ordered = sorted(entries)
        for previous, entry in zip(ordered, ordered[1:]):
            if previous.name == entry.name:
                raise ManifestUnreadable(
                    f"duplicate package name {entry.name!r} "
                    f"({previous.version!r} and {entry.version!r})"
                )
        self._entries: Tuple[PackageEntry, ...] = tuple(ordered)
        self._names = [entry.name for entry in self._entries]

    @classmethod
    def from_raw(cls, rows: Iterable[Sequence]) -> "PackageSet":
        """Build a set from ``(name, version, size)`` rows of a manifest."""
        entries = []
        for row in rows:
            try:
                name, version, size = (tuple(row) + (None,))[:3]
                size = None if size is None else int(size)
            except (TypeError, ValueError):
                raise ManifestUnreadable(f"invalid manifest row {row!r}") from None
            if not isinstance(name, str) or not name:
                raise ManifestUnreadable(f"invalid package name in {row!r}")
            entries.append(PackageEntry(name, str(version or ""), size))
        return cls(entries)

    @property
    def entries(self) -> Tuple[PackageEntry, ...]:
        return self._entries

    @property
    def total_size(self) -> int:
        return sum(entry.size or 0 for entry in self._entries)

    def names(self) -> List[str]:
        return list(self._names)

    def get(self, name: str) -> Optional[PackageEntry]:
        index = bisect.bisect_left(self._names, name)
        if index < len(self._names) and self._names[index] == name:
            return self._entries[index]
        return None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[PackageEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageSet):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"PackageSet({len(self)} packages)"


@dataclass(frozen=True)
class PackageChange:
    """A package present in both generations with different versions."""

    name: str
    version_a: str
    version_b: str

    @property
    def is_kernel(self) -> bool:
        return self.name.startswith("linux-") or self.name == "linux"

    @property
    def is_security(self) -> bool:
        return any(pkg in self.name for pkg in SECURITY_PACKAGES)


@dataclass(frozen=True)
class DiffResult:
    """Differences between generation A and generation B, each sorted by name."""

    added: Tuple[PackageEntry, ...] = ()
    removed: Tuple[PackageEntry, ...] = ()
    changed: Tuple[PackageChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def summary(self) -> str:
        return (
            f"+{len(self.added)} added · -{len(self.removed)} removed · "
            f"~{len(self.changed)} updated"
        )


def diff(set_a: PackageSet, set_b: PackageSet) -> DiffResult:
    """
    Compare two package sets.

    Both sets are sorted by name, so one merge pass with a cursor on each side
    yields all three lists already in order.
    """
    a, b = set_a.entries, set_b.entries
    added: List[PackageEntry] = []
    removed: List[PackageEntry] = []
    changed: List[PackageChange] = []

    i = j = 0
    while i < len(a) and j < len(b):
        entry_a, entry_b = a[i], b[j]
        if entry_a.name < entry_b.name:
            removed.append(entry_a)
            i += 1
        elif entry_b.name < entry_a.name:
            added.append(entry_b)
            j += 1
        else:
            if entry_a.version != entry_b.version:
                changed.append(
                    PackageChange(entry_a.name, entry_a.version, entry_b.version)
                )
            i += 1
            j += 1

    removed.extend(a[i:])
    added.extend(b[j:])
    return DiffResult(tuple(added), tuple(removed), tuple(changed))


class PackageFilter:
    """Restartable view of the packages whose name contains some text."""

    def __init__(self, package_set: PackageSet, text: str):
        self.package_set = package_set
        self.text = text

    def __iter__(self) -> Iterator[PackageEntry]:
        needle = self.text.lower()
        return (entry for entry in self.package_set if needle in entry.name.lower())


def filter_packages(package_set: PackageSet, text: str) -> PackageFilter:
    """Case-insensitive substring filter on package names."""
    return PackageFilter(package_set, text)


class PackageCatalog:
    """Loads package sets on demand and keeps them for the session.

    Manifests never change once a generation exists, so cached sets are
    never invalidated. Failed loads are not cached.
    """

    def __init__(self, source: GenerationSource):
        self.source = source
        self._cache: Dict[Tuple[ProfileKind, int], PackageSet] = {}

    def is_cached(self, generation: "Generation") -> bool:
        return generation.key in self._cache

    def load_packages(self, generation: "Generation") -> PackageSet:
        """
        Return the package set of a generation.

        Raises:
            ManifestUnreadable: If the manifest cannot be read or parsed
        """
        cached = self._cache.get(generation.key)
        if cached is not None:
            return cached

        if not generation.manifest_ref:
            raise ManifestUnreadable(
                f"{generation.profile_kind} #{generation.id} has no manifest"
            )

        try:
            rows = self.source.read_manifest(generation.manifest_ref)
        except ManifestUnreadable:
            raise
        except OSError as e:
            raise ManifestUnreadable(
                f"Failed to read manifest of {generation.profile_kind} "
                f"#{generation.id}: {e}"
            ) from e

        package_set = PackageSet.from_raw(rows)
        self._cache[generation.key] = package_set
        logger.debug(
            f"Loaded {len(package_set)} packages for "
            f"{generation.profile_kind} #{generation.id}"
        )
        return package_set

    def diff_generations(
        self, generation_a: "Generation", generation_b: "Generation"
    ) -> DiffResult:
        return diff(self.load_packages(generation_a), self.load_packages(generation_b))
