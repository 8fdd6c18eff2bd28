"""
Tests for the generation registry.
"""

from datetime import datetime

import pytest

from fakes import FakeSource, record
from nixhist.errors import (
    NoCurrentGeneration,
    SourceUnavailable,
    UnknownGeneration,
)
from nixhist.registry import GenerationRegistry, MemoryPinStore
from nixhist.source import ProfileKind

SYSTEM = ProfileKind.SYSTEM
HOME = ProfileKind.HOME_MANAGER


def make_registry(*records, pins=None) -> GenerationRegistry:
    source = FakeSource(records={SYSTEM: list(records)})
    return GenerationRegistry(source, MemoryPinStore(pins or {}))


def test_load_sorts_newest_first() -> None:
    registry = make_registry(record(138), record(140, current=True), record(139))

    generations = registry.load(SYSTEM)

    assert [g.id for g in generations] == [140, 139, 138]
    assert registry.is_loaded(SYSTEM)
    assert not registry.is_loaded(HOME)


def test_load_parses_record_fields() -> None:
    registry = make_registry(
        record(7, timestamp="2024-01-15 08:44:32", current=True, boot=True)
    )

    generation = registry.load(SYSTEM)[0]

    assert generation.created_at == datetime(2024, 1, 15, 8, 44, 32)
    assert generation.is_current
    assert generation.is_in_bootloader
    assert generation.manifest_ref == "manifest-7"
    assert generation.formatted_date() == "15.01.24 08:44"


def test_load_accepts_epoch_and_iso_timestamps() -> None:
    registry = make_registry(
        record(1, timestamp=datetime(2024, 1, 1).timestamp()),
        record(2, timestamp="2024-01-02T03:04:05"),
    )

    generations = {g.id: g for g in registry.load(SYSTEM)}

    assert generations[1].created_at == datetime(2024, 1, 1)
    assert generations[2].created_at == datetime(2024, 1, 2, 3, 4, 5)


def test_load_skips_malformed_records() -> None:
    registry = make_registry(
        record(3, current=True),
        record("abc"),
        record(0),
        record(4, timestamp="yesterday"),
        record(3),
        "not a record",
    )

    generations = registry.load(SYSTEM)

    assert [g.id for g in generations] == [3]
    report = registry.last_report(SYSTEM)
    assert report is not None
    assert report.loaded == 1
    assert len(report.skipped) == 5
    assert any("duplicate id 3" in e.reason for e in report.skipped)


def test_load_skips_records_with_bad_size_or_flags() -> None:
    bad_size = dict(record(2), closure_size="n/a")
    string_flag = dict(record(3), is_current="false")
    int_flag = dict(record(4), is_in_bootloader=1)

    registry = make_registry(record(1, current=True), bad_size, string_flag, int_flag)
    generations = registry.load(SYSTEM)

    assert [g.id for g in generations] == [1]
    assert registry.current(SYSTEM).id == 1
    report = registry.last_report(SYSTEM)
    assert report is not None
    assert len(report.skipped) == 3
    assert any("closure_size" in e.reason for e in report.skipped)
    assert any("is_current" in e.reason for e in report.skipped)


def test_load_accepts_missing_flags_and_size() -> None:
    raw = record(5)
    for key in ("is_current", "is_in_bootloader", "closure_size"):
        raw.pop(key, None)
    registry = make_registry(record(6, current=True), raw)

    generations = registry.load(SYSTEM)

    assert [g.id for g in generations] == [6, 5]
    assert not generations[1].is_current
    assert generations[1].closure_size == 0


def test_load_source_unavailable() -> None:
    source = FakeSource(unavailable={SYSTEM: SourceUnavailable("no profile")})
    registry = GenerationRegistry(source)

    with pytest.raises(SourceUnavailable):
        registry.load(SYSTEM)


def test_load_wraps_os_errors() -> None:
    source = FakeSource(unavailable={SYSTEM: FileNotFoundError("missing")})
    registry = GenerationRegistry(source)

    with pytest.raises(SourceUnavailable, match="missing"):
        registry.load(SYSTEM)


def test_reload_replaces_previous_generations() -> None:
    source = FakeSource(records={SYSTEM: [record(1, current=True), record(2)]})
    registry = GenerationRegistry(source)
    registry.load(SYSTEM)

    source.records[SYSTEM] = [record(2, current=True)]
    registry.load(SYSTEM)

    assert [g.id for g in registry.generations(SYSTEM)] == [2]


def test_get_unknown_generation() -> None:
    registry = make_registry(record(1, current=True))
    registry.load(SYSTEM)

    with pytest.raises(UnknownGeneration):
        registry.get(SYSTEM, 99)


def test_current_generation() -> None:
    registry = make_registry(record(1), record(2, current=True))
    registry.load(SYSTEM)

    assert registry.current(SYSTEM).id == 2


def test_no_current_generation() -> None:
    registry = make_registry(record(1), record(2))
    registry.load(SYSTEM)

    with pytest.raises(NoCurrentGeneration) as excinfo:
        registry.current(SYSTEM)
    assert excinfo.value.candidates == []


def test_several_current_generations_are_not_resolved() -> None:
    registry = make_registry(record(1, current=True), record(2, current=True))
    registry.load(SYSTEM)

    with pytest.raises(NoCurrentGeneration) as excinfo:
        registry.current(SYSTEM)
    assert excinfo.value.candidates == [2, 1]


def test_pins_are_applied_on_load() -> None:
    registry = make_registry(record(1), record(2, current=True), pins={SYSTEM: [1]})

    generations = {g.id: g for g in registry.load(SYSTEM)}

    assert generations[1].is_pinned
    assert not generations[2].is_pinned


def test_set_pinned_is_idempotent_and_persisted() -> None:
    store = MemoryPinStore()
    source = FakeSource(records={SYSTEM: [record(1), record(2, current=True)]})
    registry = GenerationRegistry(source, store)
    registry.load(SYSTEM)

    registry.set_pinned(SYSTEM, 1, True)
    registry.set_pinned(SYSTEM, 1, True)

    assert registry.get(SYSTEM, 1).is_pinned
    assert store.pins == {SYSTEM: {1}}
    assert store.saves == 1

    registry.set_pinned(SYSTEM, 1, False)
    assert not registry.get(SYSTEM, 1).is_pinned
    assert store.pins == {SYSTEM: set()}
    assert store.saves == 2


def test_pins_survive_reload() -> None:
    source = FakeSource(records={SYSTEM: [record(1), record(2, current=True)]})
    store = MemoryPinStore()
    registry = GenerationRegistry(source, store)
    registry.load(SYSTEM)
    registry.set_pinned(SYSTEM, 1, True)

    fresh = GenerationRegistry(source, store)
    fresh.load(SYSTEM)

    assert fresh.get(SYSTEM, 1).is_pinned


def test_is_deletable() -> None:
    registry = make_registry(
        record(3, current=True), record(2), record(1), pins={SYSTEM: [1]}
    )
    registry.load(SYSTEM)

    assert not registry.is_deletable(SYSTEM, 3)
    assert registry.is_deletable(SYSTEM, 2)
    assert not registry.is_deletable(SYSTEM, 1)


def test_mark_current_moves_the_flag() -> None:
    registry = make_registry(record(1), record(2, current=True))
    registry.load(SYSTEM)

    registry.mark_current(SYSTEM, 1)

    assert registry.current(SYSTEM).id == 1
    assert not registry.get(SYSTEM, 2).is_current


def test_remove_and_reinsert() -> None:
    registry = make_registry(record(3, current=True), record(2), record(1))
    registry.load(SYSTEM)

    removed = registry.remove(SYSTEM, [1, 2])

    assert [g.id for g in removed] == [2, 1]
    assert [g.id for g in registry.generations(SYSTEM)] == [3]

    registry.reinsert(SYSTEM, removed)
    assert [g.id for g in registry.generations(SYSTEM)] == [3, 2, 1]
