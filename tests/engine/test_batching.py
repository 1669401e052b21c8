from __future__ import annotations

import pytest

from celebwire.engine.batching import BatchPlanner, partition
from celebwire.models import Entity, RotationState


def test_partition_109_entities_into_five_batches(make_entities) -> None:
    chunks = partition(make_entities(109), 25)
    assert [len(chunk) for chunk in chunks] == [25, 25, 25, 25, 9]


def test_rotation_covers_every_entity_exactly_once(make_entities) -> None:
    entities = make_entities(109)
    planner = BatchPlanner(25)
    rotation = RotationState()
    seen: list[str] = []
    for _ in range(5):
        batch, rotation = planner.plan_cycle(entities, rotation)
        assert batch is not None
        seen.extend(entity.id for entity in batch.entities)
    assert sorted(seen) == sorted(entity.id for entity in entities)
    assert len(seen) == len(set(seen))
    assert rotation == RotationState(cursor=0, total_batches=5)


@pytest.mark.parametrize("size", [1, 7, 25, 26, 109])
def test_cursor_wraps_to_zero_after_last_batch(size: int, make_entities) -> None:
    planner = BatchPlanner(25)
    entities = make_entities(size)
    total = len(partition(entities, 25))
    batch, rotation = planner.plan_cycle(entities, RotationState(cursor=total - 1, total_batches=total))
    assert batch is not None and batch.index == total - 1
    assert rotation.cursor == 0


def test_partition_is_deterministic_and_ignores_input_order(make_entities) -> None:
    entities = make_entities(30)
    shuffled = list(reversed(entities))
    assert partition(entities, 25) == partition(shuffled, 25)


def test_inactive_entities_are_excluded(make_entities) -> None:
    entities = [*make_entities(3), Entity(id="c999", name="Retired", active=False)]
    batch, _ = BatchPlanner(25).plan_cycle(entities, RotationState())
    assert batch is not None
    assert "Retired" not in batch.names


def test_cursor_from_larger_roster_is_folded_into_range(make_entities) -> None:
    batch, rotation = BatchPlanner(25).plan_cycle(make_entities(30), RotationState(cursor=4, total_batches=5))
    assert batch is not None
    assert batch.index == 0
    assert rotation == RotationState(cursor=1, total_batches=2)


def test_empty_roster_yields_no_batch() -> None:
    batch, rotation = BatchPlanner().plan_cycle([], RotationState(cursor=3, total_batches=5))
    assert batch is None
    assert rotation == RotationState(0, 0)


def test_hold_keeps_cursor_on_batch(make_entities) -> None:
    batch, _ = BatchPlanner(25).plan_cycle(make_entities(60), RotationState(cursor=1))
    assert batch is not None
    assert BatchPlanner.hold(batch) == RotationState(cursor=1, total_batches=3)


def test_batch_size_override(make_entities) -> None:
    batch, rotation = BatchPlanner(25).plan_cycle(make_entities(10), RotationState(), batch_size=4)
    assert batch is not None and len(batch.entities) == 4
    assert rotation.total_batches == 3
