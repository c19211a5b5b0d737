"""meter_etl.staging

In-memory state of one batch window.

StagingBatch keeps, per entity kind:
  - an arena of every entity the window has resolved (new or existing),
  - an index from natural key to arena position,
  - the entities waiting to be inserted and those waiting to be updated.

A row is staged between begin_row() and commit_row()/discard_row(); the
undo log lets a row that is skipped half-way (for example, a valid address
followed by an invalid meter) leave no trace in the batch.
"""

from __future__ import annotations

import itertools
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field

from meter_etl.models import DEPENDENCY_ORDER, Entity, EntityKind

NaturalKey = tuple[Hashable, ...]


@dataclass
class _RowMark:
    arena: dict[EntityKind, int]
    inserts: dict[EntityKind, int]
    updates: dict[EntityKind, int]
    keys: list[tuple[EntityKind, NaturalKey]] = field(default_factory=list)


def parent_token(parent: Entity) -> NaturalKey:
    """Identity of a parent inside the batch window.

    Persisted parents are identified by surrogate id, staged ones by the
    staging reference assigned in stage_new().
    """
    if parent.surrogate_id is not None:
        return ("id", parent.surrogate_id)
    return ("staged", parent.staging_ref)


class StagingBatch:
    def __init__(self) -> None:
        self._arena: dict[EntityKind, list[Entity]] = {k: [] for k in DEPENDENCY_ORDER}
        self._index: dict[EntityKind, dict[NaturalKey, int]] = {
            k: {} for k in DEPENDENCY_ORDER
        }
        self.pending_inserts: dict[EntityKind, list[Entity]] = {
            k: [] for k in DEPENDENCY_ORDER
        }
        self.pending_updates: dict[EntityKind, list[Entity]] = {
            k: [] for k in DEPENDENCY_ORDER
        }
        self._refs = itertools.count(1)
        self._mark: _RowMark | None = None

    # -- lookup ------------------------------------------------------------

    def find(self, kind: EntityKind, keys: Iterable[NaturalKey]) -> Entity | None:
        """Return the first entity indexed under any of ``keys``."""
        index = self._index[kind]
        for key in keys:
            pos = index.get(key)
            if pos is not None:
                return self._arena[kind][pos]
        return None

    # -- staging -----------------------------------------------------------

    def stage_new(self, entity: Entity, keys: Iterable[NaturalKey]) -> None:
        entity.staging_ref = next(self._refs)
        self._add(entity, keys)
        self.pending_inserts[entity.kind].append(entity)

    def stage_existing(
        self,
        entity: Entity,
        keys: Iterable[NaturalKey],
        updated: bool,
    ) -> None:
        self._add(entity, keys)
        if updated:
            self.pending_updates[entity.kind].append(entity)

    def _add(self, entity: Entity, keys: Iterable[NaturalKey]) -> None:
        kind = entity.kind
        arena = self._arena[kind]
        arena.append(entity)
        pos = len(arena) - 1
        index = self._index[kind]
        for key in keys:
            if key in index:
                continue
            index[key] = pos
            if self._mark is not None:
                self._mark.keys.append((kind, key))

    # -- row undo log ------------------------------------------------------

    def begin_row(self) -> None:
        self._mark = _RowMark(
            arena={k: len(v) for k, v in self._arena.items()},
            inserts={k: len(v) for k, v in self.pending_inserts.items()},
            updates={k: len(v) for k, v in self.pending_updates.items()},
        )

    def commit_row(self) -> None:
        self._mark = None

    def discard_row(self) -> None:
        """Forget everything staged since begin_row()."""
        mark = self._mark
        if mark is None:
            return
        for kind, key in mark.keys:
            self._index[kind].pop(key, None)
        for kind in DEPENDENCY_ORDER:
            del self._arena[kind][mark.arena[kind]:]
            del self.pending_inserts[kind][mark.inserts[kind]:]
            del self.pending_updates[kind][mark.updates[kind]:]
        self._mark = None

    # -- window ------------------------------------------------------------

    def is_empty(self) -> bool:
        return not any(self.pending_inserts.values()) and not any(
            self.pending_updates.values()
        )

    def pending_count(self) -> int:
        return sum(len(v) for v in self.pending_inserts.values()) + sum(
            len(v) for v in self.pending_updates.values()
        )

    def clear(self) -> None:
        for kind in DEPENDENCY_ORDER:
            self._arena[kind].clear()
            self._index[kind].clear()
            self.pending_inserts[kind].clear()
            self.pending_updates[kind].clear()
        self._mark = None
