"""meter_etl.writer

Transactional Writer: persists one staged batch.

Two strategies, tried in order by TransactionalWriter.flush():

  BatchTransactionStrategy  (strategy "batch")
    One transaction for the whole batch.  Per kind, in dependency order:
    pending updates first, then pending inserts.  Before each insert the
    natural key is re-checked against the store; a match adopts the stored
    id (and is merged onto the stored row only in update mode).

  RowByRowStrategy  (strategy "row_by_row")
    Runs only after the batch transaction failed on a unique-constraint
    violation and rolled back.  Every entity gets its own short
    transaction; a failure is logged and recorded in FlushResult.failures
    and the remaining entities are still attempted.

Any other StoreError propagates out of flush() after the rollback.
ImportCancelled propagates from both strategies.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from meter_etl.cancel import CancelToken, ImportCancelled
from meter_etl.models import DEPENDENCY_ORDER, Entity, EntityKind
from meter_etl.staging import StagingBatch
from meter_etl.store import DuplicateKeyError, RecordStore, StoreError, find_existing

log = logging.getLogger(__name__)

PARENT_UNRESOLVED = "parent_unresolved"
DUPLICATE_KEY = "duplicate_key"
STORE_ERROR = "store_error"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class EntityFailure:
    kind: EntityKind
    reason: str
    detail: str
    entity: Entity | None = field(default=None, repr=False)


@dataclass
class FlushResult:
    strategy: str
    inserted: Counter = field(default_factory=Counter)
    updated: Counter = field(default_factory=Counter)
    adopted: Counter = field(default_factory=Counter)
    failures: list[EntityFailure] = field(default_factory=list)
    recovered_from: str | None = None

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())

    @property
    def total_updated(self) -> int:
        return sum(self.updated.values())

    @property
    def total_adopted(self) -> int:
        return sum(self.adopted.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "inserted": {k.value: self.inserted[k] for k in DEPENDENCY_ORDER},
            "updated": {k.value: self.updated[k] for k in DEPENDENCY_ORDER},
            "adopted": {k.value: self.adopted[k] for k in DEPENDENCY_ORDER},
            "failures": [
                {"kind": f.kind.value, "reason": f.reason, "detail": f.detail}
                for f in self.failures
            ],
            "recovered_from": self.recovered_from,
        }


def _describe(entity: Entity) -> str:
    key = getattr(entity, "serial_number", None)
    if key is None:
        key = getattr(entity, "street_line1", None) or getattr(entity, "object_id", None)
    return f"{entity.kind.value} {key!r}"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class BatchTransactionStrategy:
    name = "batch"

    def __init__(self, store: RecordStore, update_existing: bool, cancel: CancelToken) -> None:
        self._store = store
        self._update_existing = update_existing
        self._cancel = cancel

    def run(self, batch: StagingBatch) -> FlushResult:
        result = FlushResult(self.name)
        assigned: list[Entity] = []
        try:
            with self._store.transaction():
                for kind in DEPENDENCY_ORDER:
                    for entity in batch.pending_updates[kind]:
                        self._cancel.raise_if_cancelled()
                        self._store.update(entity)
                        result.updated[kind] += 1
                    for entity in batch.pending_inserts[kind]:
                        self._write_new(entity, result, assigned)
                self._cancel.raise_if_cancelled()
        except BaseException:
            # Ids handed out inside the rolled-back transaction no longer exist.
            for entity in assigned:
                entity.surrogate_id = None
            raise
        return result

    def _write_new(self, entity: Entity, result: FlushResult, assigned: list[Entity]) -> None:
        kind = entity.kind
        if not entity.link_parent():
            raise StoreError(f"{_describe(entity)} has no resolved parent")
        self._cancel.raise_if_cancelled()
        existing = find_existing(self._store, entity)
        if existing is not None:
            entity.surrogate_id = existing.surrogate_id
            assigned.append(entity)
            result.adopted[kind] += 1
            if self._update_existing:
                self._cancel.raise_if_cancelled()
                self._store.update(entity)
                result.updated[kind] += 1
            return
        self._cancel.raise_if_cancelled()
        entity.surrogate_id = self._store.insert(entity)
        assigned.append(entity)
        result.inserted[kind] += 1


class RowByRowStrategy:
    name = "row_by_row"

    def __init__(self, store: RecordStore, update_existing: bool, cancel: CancelToken) -> None:
        self._store = store
        self._update_existing = update_existing
        self._cancel = cancel

    def run(self, batch: StagingBatch) -> FlushResult:
        result = FlushResult(self.name)
        for kind in DEPENDENCY_ORDER:
            for entity in batch.pending_updates[kind]:
                self._update_one(entity, result)
            for entity in batch.pending_inserts[kind]:
                self._insert_one(entity, result)
        return result

    def _fail(self, result: FlushResult, entity: Entity, reason: str, exc: Exception | None) -> None:
        detail = str(exc) if exc is not None else "parent entity was not persisted"
        log.warning("Failed to save %s: %s", _describe(entity), detail)
        result.failures.append(EntityFailure(entity.kind, reason, detail, entity))

    def _update_one(self, entity: Entity, result: FlushResult) -> None:
        self._cancel.raise_if_cancelled()
        try:
            with self._store.transaction():
                self._store.update(entity)
        except ImportCancelled:
            raise
        except DuplicateKeyError as exc:
            self._fail(result, entity, DUPLICATE_KEY, exc)
        except Exception as exc:
            self._fail(result, entity, STORE_ERROR, exc)
        else:
            result.updated[entity.kind] += 1

    def _insert_one(self, entity: Entity, result: FlushResult) -> None:
        self._cancel.raise_if_cancelled()
        if not entity.link_parent():
            self._fail(result, entity, PARENT_UNRESOLVED, None)
            return
        kind = entity.kind
        adopted = False
        try:
            with self._store.transaction():
                existing = find_existing(self._store, entity)
                if existing is not None:
                    entity.surrogate_id = existing.surrogate_id
                    adopted = True
                    if self._update_existing:
                        self._store.update(entity)
                else:
                    entity.surrogate_id = self._store.insert(entity)
                self._cancel.raise_if_cancelled()
        except ImportCancelled:
            entity.surrogate_id = None
            raise
        except DuplicateKeyError as exc:
            entity.surrogate_id = None
            self._fail(result, entity, DUPLICATE_KEY, exc)
            return
        except Exception as exc:
            entity.surrogate_id = None
            self._fail(result, entity, STORE_ERROR, exc)
            return
        if adopted:
            log.debug("%s already exists; adopted id %s", _describe(entity), entity.surrogate_id)
            result.adopted[kind] += 1
            if self._update_existing:
                result.updated[kind] += 1
        else:
            result.inserted[kind] += 1


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class TransactionalWriter:
    def __init__(
        self,
        store: RecordStore,
        update_existing: bool,
        cancel: CancelToken | None = None,
    ) -> None:
        self.cancel = cancel or CancelToken()
        self.batch_strategy = BatchTransactionStrategy(store, update_existing, self.cancel)
        self.fallback_strategy = RowByRowStrategy(store, update_existing, self.cancel)

    def flush(self, batch: StagingBatch) -> FlushResult:
        try:
            return self.batch_strategy.run(batch)
        except DuplicateKeyError as exc:
            log.warning(
                "Duplicate key detected; retrying %d staged entities individually: %s",
                batch.pending_count(), exc,
            )
            conflict = str(exc)
        result = self.fallback_strategy.run(batch)
        result.recovered_from = conflict
        log.info(
            "Individual processing completed. Inserted: %d, Adopted: %d, Updated: %d, Failures: %d",
            result.total_inserted, result.total_adopted, result.total_updated,
            len(result.failures),
        )
        return result
