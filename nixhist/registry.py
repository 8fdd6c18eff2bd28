"""
Generation registry for nixhist.

The registry owns every ``Generation`` of a session. It validates the raw
records of a generation source, tracks the current and pinned generations of
each profile kind and is the only place where those flags change.
"""

import abc
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from nixhist.errors import (
    MalformedRecord,
    NoCurrentGeneration,
    SourceUnavailable,
    UnknownGeneration,
)
from nixhist.packages import format_bytes
from nixhist.source import GenerationSource, ProfileKind

logger = logging.getLogger("nixhist.registry")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class Generation:
    """An immutable snapshot of a profile."""

    profile_kind: ProfileKind
    id: int
    created_at: datetime
    is_current: bool = False
    is_pinned: bool = False
    is_in_bootloader: bool = False
    manifest_ref: Optional[str] = None

    # Informational metadata
    store_path: str = ""
    nixos_version: Optional[str] = None
    kernel_version: Optional[str] = None
    closure_size: int = 0

    @property
    def key(self) -> Tuple[ProfileKind, int]:
        return self.profile_kind, self.id

    def formatted_date(self) -> str:
        return self.created_at.strftime("%d.%m.%y %H:%M")

    def formatted_size(self) -> str:
        return format_bytes(self.closure_size)


@dataclass
class LoadReport:
    """What a ``load`` call kept and what it skipped."""

    profile_kind: ProfileKind
    loaded: int = 0
    skipped: List[MalformedRecord] = field(default_factory=list)


class PinStore(abc.ABC):
    """Persistent storage for pinned generation ids."""

    @abc.abstractmethod
    def load(self) -> Dict[ProfileKind, Set[int]]:
        pass

    @abc.abstractmethod
    def save(self, pins: Mapping[ProfileKind, Set[int]]) -> None:
        pass


class MemoryPinStore(PinStore):
    """Pin store that keeps pins for the lifetime of the process only."""

    def __init__(self, pins: Optional[Mapping[ProfileKind, Iterable[int]]] = None):
        self.pins = {kind: set(ids) for kind, ids in (pins or {}).items()}
        self.saves = 0

    def load(self) -> Dict[ProfileKind, Set[int]]:
        return {kind: set(ids) for kind, ids in self.pins.items()}

    def save(self, pins: Mapping[ProfileKind, Set[int]]) -> None:
        self.pins = {kind: set(ids) for kind, ids in pins.items()}
        self.saves += 1


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value)
    if isinstance(value, str):
        try:
            return datetime.strptime(value, TIMESTAMP_FORMAT)
        except ValueError:
            return datetime.fromisoformat(value)
    raise ValueError(f"unsupported timestamp {value!r}")


def _parse_flag(record: Mapping[str, Any], key: str) -> bool:
    # Missing or null flags are false; anything but a real bool is rejected.
    value = record.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise MalformedRecord(record, f"invalid {key} {value!r}")
    return value


class GenerationRegistry:
    """In-memory catalog of generations per profile kind."""

    def __init__(self, source: GenerationSource, pin_store: Optional[PinStore] = None):
        """
        Initialize the registry.

        Args:
            source: Generation source used by ``load``
            pin_store: Where pins are read from at startup and written to on
                every change
        """
        self.source = source
        self.pin_store = pin_store or MemoryPinStore()
        self._pins: Dict[ProfileKind, Set[int]] = {
            kind: set(ids) for kind, ids in self.pin_store.load().items()
        }
        self._generations: Dict[ProfileKind, Dict[int, Generation]] = {}
        self._reports: Dict[ProfileKind, LoadReport] = {}

    def _parse_record(self, profile_kind: ProfileKind, record: Any) -> Generation:
        if not isinstance(record, Mapping):
            raise MalformedRecord(record, "record is not a mapping")

        raw_id = record.get("id")
        if isinstance(raw_id, bool):
            raise MalformedRecord(record, f"invalid id {raw_id!r}")
        try:
            gen_id = int(raw_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise MalformedRecord(record, f"invalid id {raw_id!r}") from None
        if gen_id <= 0:
            raise MalformedRecord(record, f"id must be positive, got {gen_id}")

        try:
            created_at = _parse_timestamp(record.get("timestamp"))
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedRecord(record, f"invalid timestamp: {e}") from None

        raw_size = record.get("closure_size") or 0
        if isinstance(raw_size, bool):
            raise MalformedRecord(record, f"invalid closure_size {raw_size!r}")
        try:
            closure_size = int(raw_size)
        except (TypeError, ValueError):
            raise MalformedRecord(
                record, f"invalid closure_size {raw_size!r}"
            ) from None

        return Generation(
            profile_kind=profile_kind,
            id=gen_id,
            created_at=created_at,
            is_current=_parse_flag(record, "is_current"),
            is_pinned=gen_id in self._pins.get(profile_kind, set()),
            is_in_bootloader=_parse_flag(record, "is_in_bootloader"),
            manifest_ref=record.get("manifest_path"),
            store_path=record.get("store_path") or "",
            nixos_version=record.get("nixos_version"),
            kernel_version=record.get("kernel_version"),
            closure_size=closure_size,
        )

    def load(self, profile_kind: ProfileKind) -> List[Generation]:
        """
        (Re)load the generations of a profile from the source.

        Malformed records are skipped, logged and kept in ``last_report``.

        Returns:
            Generations sorted by id, newest first

        Raises:
            SourceUnavailable: If the source cannot enumerate the profile
        """
        try:
            records = self.source.enumerate(profile_kind)
        except SourceUnavailable:
            raise
        except OSError as e:
            raise SourceUnavailable(f"{profile_kind}: {e}") from e

        report = LoadReport(profile_kind)
        generations: Dict[int, Generation] = {}
        for record in records:
            try:
                generation = self._parse_record(profile_kind, record)
                if generation.id in generations:
                    raise MalformedRecord(record, f"duplicate id {generation.id}")
            except MalformedRecord as e:
                logger.warning(f"Skipping {profile_kind} record: {e.reason} ({record!r})")
                report.skipped.append(e)
                continue
            generations[generation.id] = generation

        report.loaded = len(generations)
        self._generations[profile_kind] = generations
        self._reports[profile_kind] = report
        logger.debug(
            f"Loaded {report.loaded} {profile_kind} generations "
            f"({len(report.skipped)} skipped)"
        )
        return self.generations(profile_kind)

    def last_report(self, profile_kind: ProfileKind) -> Optional[LoadReport]:
        return self._reports.get(profile_kind)

    def is_loaded(self, profile_kind: ProfileKind) -> bool:
        return profile_kind in self._generations

    def generations(self, profile_kind: ProfileKind) -> List[Generation]:
        """Loaded generations of a profile, newest first."""
        loaded = self._generations.get(profile_kind, {})
        return sorted(loaded.values(), key=lambda g: g.id, reverse=True)

    def get(self, profile_kind: ProfileKind, generation_id: int) -> Generation:
        try:
            return self._generations.get(profile_kind, {})[generation_id]
        except KeyError:
            raise UnknownGeneration(profile_kind, generation_id) from None

    def current(self, profile_kind: ProfileKind) -> Generation:
        """
        Return the current generation of a profile.

        Raises:
            NoCurrentGeneration: If zero or several generations are current.
                Several current generations are never resolved by guessing.
        """
        candidates = [g for g in self.generations(profile_kind) if g.is_current]
        if len(candidates) != 1:
            raise NoCurrentGeneration(profile_kind, [g.id for g in candidates])
        return candidates[0]

    def set_pinned(
        self, profile_kind: ProfileKind, generation_id: int, pinned: bool
    ) -> Generation:
        """
        Pin or unpin a generation. Setting the state it already has is a no-op.

        Raises:
            UnknownGeneration: If the generation is not loaded
        """
        generation = self.get(profile_kind, generation_id)
        if generation.is_pinned == pinned:
            return generation

        pins = self._pins.setdefault(profile_kind, set())
        if pinned:
            pins.add(generation_id)
        else:
            pins.discard(generation_id)

        updated = replace(generation, is_pinned=pinned)
        self._generations[profile_kind][generation_id] = updated
        try:
            self.pin_store.save(self._pins)
        except Exception:
            # Pins only change in memory once they are persisted.
            if pinned:
                pins.discard(generation_id)
            else:
                pins.add(generation_id)
            self._generations[profile_kind][generation_id] = generation
            raise
        logger.info(f"{'Pinned' if pinned else 'Unpinned'} {profile_kind} #{generation_id}")
        return updated

    def is_deletable(self, profile_kind: ProfileKind, generation_id: int) -> bool:
        generation = self.get(profile_kind, generation_id)
        return not (generation.is_pinned or generation.is_current)

    def mark_current(self, profile_kind: ProfileKind, generation_id: int) -> Generation:
        """Make a generation the only current one of its profile."""
        self.get(profile_kind, generation_id)
        generations = self._generations[profile_kind]
        for gen_id, generation in generations.items():
            is_current = gen_id == generation_id
            if generation.is_current != is_current:
                generations[gen_id] = replace(generation, is_current=is_current)
        return generations[generation_id]

    def remove(
        self, profile_kind: ProfileKind, generation_ids: Iterable[int]
    ) -> List[Generation]:
        """
        Drop deleted generations from the catalog.

        Returns:
            The removed generations, newest first, so they can be reinserted
        """
        ids = list(dict.fromkeys(generation_ids))
        removed = [self.get(profile_kind, gen_id) for gen_id in ids]
        for gen_id in ids:
            del self._generations[profile_kind][gen_id]
        return sorted(removed, key=lambda g: g.id, reverse=True)

    def reinsert(self, profile_kind: ProfileKind, generations: Iterable[Generation]) -> None:
        """Put generations back after their deletion was undone."""
        catalog = self._generations.setdefault(profile_kind, {})
        pins = self._pins.get(profile_kind, set())
        for generation in generations:
            catalog[generation.id] = replace(
                generation, is_pinned=generation.id in pins
            )
