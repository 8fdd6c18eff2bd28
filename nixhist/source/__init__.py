"""
Generation sources for nixhist.

This module provides the profile kinds and the interface that every
generation source implements. A source only enumerates raw records and reads
manifests; validation happens in the registry.
"""

import abc
from enum import Enum
from typing import Any, Dict, List, NamedTuple


class ProfileKind(Enum):
    """Profiles whose generations nixhist manages."""

    SYSTEM = "system"
    HOME_MANAGER = "home-manager"

    @property
    def label(self) -> str:
        return "System" if self is ProfileKind.SYSTEM else "Home-Manager"

    @property
    def link_prefix(self) -> str:
        """Prefix of the ``<prefix>-<id>-link`` generation symlinks."""
        return self.value

    def __str__(self) -> str:
        return self.label


class RawPackage(NamedTuple):
    """A package as reported by a manifest, before normalization."""

    name: str
    version: str
    size: int = 0


class GenerationSource(abc.ABC):
    """Base class for generation sources."""

    @abc.abstractmethod
    def enumerate(self, profile_kind: ProfileKind) -> List[Dict[str, Any]]:
        """
        List the raw generation records of a profile.

        Each record is a mapping with the keys ``id``, ``timestamp``,
        ``manifest_path``, ``is_current`` and ``is_in_bootloader``. Sources may
        add ``store_path``, ``nixos_version``, ``kernel_version`` and
        ``closure_size``.

        Raises:
            SourceUnavailable: If the profile cannot be enumerated at all
        """
        pass

    @abc.abstractmethod
    def read_manifest(self, manifest_path: str) -> List[RawPackage]:
        """
        Read the packages installed in a generation.

        Args:
            manifest_path: The ``manifest_path`` of a raw record

        Raises:
            ManifestUnreadable: On I/O or parse failure
        """
        pass
