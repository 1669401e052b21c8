"""Roster partitioning and round-robin batch rotation."""

from __future__ import annotations

from typing import Sequence

from ..models import Batch, Entity, RotationState


def partition(entities: Sequence[Entity], batch_size: int) -> list[tuple[Entity, ...]]:
    """Split active entities, sorted by identifier, into fixed-size chunks.

    The last chunk may be smaller. The same roster always yields the same
    boundaries.
    """

    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    ordered = sorted((entity for entity in entities if entity.active), key=lambda entity: entity.id)
    return [tuple(ordered[start : start + batch_size]) for start in range(0, len(ordered), batch_size)]


class BatchPlanner:
    """Pick the batch for the next cycle and propose the advanced cursor."""

    def __init__(self, batch_size: int = 25) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    def plan_cycle(
        self,
        entities: Sequence[Entity],
        rotation: RotationState,
        batch_size: int | None = None,
    ) -> tuple[Batch | None, RotationState]:
        """Return the batch at the current cursor and the cursor to persist afterwards.

        A cursor left over from a larger roster is folded back into range with a
        modulo, so coverage may shift when the roster changes between cycles.
        An empty roster yields ``(None, RotationState(0, 0))``.
        """

        chunks = partition(entities, batch_size or self.batch_size)
        total = len(chunks)
        if total == 0:
            return None, RotationState(cursor=0, total_batches=0)
        cursor = rotation.cursor % total if rotation.cursor >= 0 else 0
        batch = Batch(index=cursor, total=total, entities=chunks[cursor])
        return batch, RotationState(cursor=(cursor + 1) % total, total_batches=total)

    @staticmethod
    def hold(batch: Batch) -> RotationState:
        """Cursor that retries ``batch`` next cycle (advance-on-failure disabled)."""

        return RotationState(cursor=batch.index, total_batches=batch.total)


__all__ = ["BatchPlanner", "partition"]
