"""meter_etl.pipeline

Batch Coordinator and Destructive Reset.

ImportPipeline drives one import run:

  Idle -> Streaming -> Flushing -> Streaming -> ... -> Draining -> Done

  Aborted  on cancellation, from any non-final state
  Failed   on a store failure during the reset or a flush

Per row: headers normalized, validate_record(), then the four reconcilers
in dependency order (address, meter, endpoint, GIS record).  A row that any
step rejects is skipped and everything it staged is discarded.  Every
batch_size processed rows the staged batch is flushed through the
TransactionalWriter; at end of stream one more flush runs if anything is
still staged.

Committed flushes are never rolled back by a later failure or cancel.
"""

from __future__ import annotations

import csv
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from meter_etl.cancel import CancelToken, ImportCancelled
from meter_etl.events import ImportEventSink, LoggingEventSink
from meter_etl.models import DEPENDENCY_ORDER, RESET_ORDER, ImportMode
from meter_etl.reconcile import (
    ReconcileContext,
    Resolution,
    reconcile_address,
    reconcile_endpoint,
    reconcile_gis_record,
    reconcile_meter,
)
from meter_etl.shared import RejectWriter, normalize_headers
from meter_etl.staging import StagingBatch
from meter_etl.store import RecordStore, StoreError
from meter_etl.validation import validate_record
from meter_etl.writer import FlushResult, TransactionalWriter

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
RECORD_INVALID = "record_invalid"
MALFORMED_ROW = "malformed_row"


class ImportFailed(Exception):
    """The import stopped on a store failure; earlier flushes stay committed."""


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class PipelineState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FLUSHING = "flushing"
    DRAINING = "draining"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset(
        {PipelineState.STREAMING, PipelineState.ABORTED, PipelineState.FAILED}
    ),
    PipelineState.STREAMING: frozenset({
        PipelineState.FLUSHING, PipelineState.DRAINING,
        PipelineState.ABORTED, PipelineState.FAILED,
    }),
    PipelineState.FLUSHING: frozenset(
        {PipelineState.STREAMING, PipelineState.ABORTED, PipelineState.FAILED}
    ),
    PipelineState.DRAINING: frozenset(
        {PipelineState.DONE, PipelineState.ABORTED, PipelineState.FAILED}
    ),
    PipelineState.DONE: frozenset(),
    PipelineState.ABORTED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class ImportSummary:
    mode: str
    total_rows: int = 0
    processed_rows: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    flushes: int = 0
    duplicate_recoveries: int = 0
    entity_failures: int = 0
    discarded_entities: int = 0
    expected_rows: int | None = None
    added_by_kind: Counter = field(default_factory=Counter)
    updated_by_kind: Counter = field(default_factory=Counter)
    skip_reasons: Counter = field(default_factory=Counter)
    warnings: list[str] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        if not self.expected_rows:
            return 0
        return min(100, self.processed_rows * 100 // self.expected_rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "added": self.added,
            "updated": self.updated,
            "skipped": self.skipped,
            "flushes": self.flushes,
            "duplicate_recoveries": self.duplicate_recoveries,
            "entity_failures": self.entity_failures,
            "discarded_entities": self.discarded_entities,
            "added_by_kind": {k.value: self.added_by_kind[k] for k in DEPENDENCY_ORDER},
            "updated_by_kind": {k.value: self.updated_by_kind[k] for k in DEPENDENCY_ORDER},
            "skip_reasons": dict(self.skip_reasons),
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Destructive Reset
# ---------------------------------------------------------------------------

def reset_store(store: RecordStore, cancel: CancelToken | None = None) -> None:
    """Empty the four tables, children first, in one transaction."""
    if cancel is not None:
        cancel.raise_if_cancelled()
    log.warning("Dropping all existing data as requested by DropAndReplace import mode")
    try:
        with store.transaction():
            store.suspend_integrity_checks()
            for kind in RESET_ORDER:
                store.delete_all(kind)
            store.resume_integrity_checks()
    except StoreError as exc:
        log.error("Error dropping existing data: %s", exc)
        raise ImportFailed("failed to drop existing data") from exc
    log.info("Successfully dropped all existing data")


# ---------------------------------------------------------------------------
# Batch Coordinator
# ---------------------------------------------------------------------------

class ImportPipeline:
    def __init__(
        self,
        store: RecordStore,
        mode: ImportMode = ImportMode.UPDATE_AND_ADD,
        batch_size: int = DEFAULT_BATCH_SIZE,
        sink: ImportEventSink | None = None,
        cancel: CancelToken | None = None,
        rejects: RejectWriter | None = None,
        writer: TransactionalWriter | None = None,
        expected_rows: int | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.mode = mode
        self.batch_size = batch_size
        self.sink = sink or LoggingEventSink()
        self.cancel = cancel or CancelToken()
        self.rejects = rejects
        self.writer = writer or TransactionalWriter(
            store, mode.updates_existing, self.cancel
        )
        self.batch = StagingBatch()
        self.summary = ImportSummary(mode=mode.value, expected_rows=expected_rows)
        self.state = PipelineState.IDLE
        self._ctx = ReconcileContext(
            store=store,
            batch=self.batch,
            update_existing=mode.updates_existing,
            cancel=self.cancel,
        )

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid pipeline transition {self.state.value} -> {new_state.value}")
        log.debug("pipeline %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    # -- driver ------------------------------------------------------------

    def run(self, rows: Iterable[Mapping[str, str | None]]) -> ImportSummary:
        try:
            if self.mode is ImportMode.DROP_AND_REPLACE:
                reset_store(self.store, self.cancel)
            self._transition(PipelineState.STREAMING)
            self._stream(rows)
            self._transition(PipelineState.DRAINING)
            if not self.batch.is_empty():
                self._flush()
            self._transition(PipelineState.DONE)
        except ImportCancelled:
            self.summary.discarded_entities = self.batch.pending_count()
            self.batch.clear()
            self._transition(PipelineState.ABORTED)
            self.sink.import_cancelled(self.summary)
            raise
        except ImportFailed:
            self._transition(PipelineState.FAILED)
            raise
        except StoreError as exc:
            self._transition(PipelineState.FAILED)
            log.error("Error saving data to the database: %s", exc)
            raise ImportFailed(f"error saving data to the database: {exc}") from exc

        if self.summary.expected_rows:
            self.sink.progress(100, "Import completed")
        self.sink.import_finished(self.summary)
        return self.summary

    def _stream(self, rows: Iterable[Mapping[str, str | None]]) -> None:
        iterator = iter(rows)
        row_number = 0
        while True:
            self.cancel.raise_if_cancelled()
            try:
                raw = next(iterator)
            except StopIteration:
                return
            except csv.Error as exc:
                # The reader resumes at the next line.
                row_number += 1
                self.summary.total_rows += 1
                self._skip(row_number, {}, MALFORMED_ROW, str(exc))
                continue
            row_number += 1
            self.summary.total_rows += 1
            if self._process_row(row_number, raw) and (
                self.summary.processed_rows % self.batch_size == 0
            ):
                self._transition(PipelineState.FLUSHING)
                if not self.batch.is_empty():
                    self._flush()
                else:
                    self.batch.clear()
                self._transition(PipelineState.STREAMING)

    # -- rows --------------------------------------------------------------

    def _skip(self, row_number: int, row: Mapping[str, str | None], reason: str, detail: str) -> bool:
        self.summary.skipped += 1
        self.summary.skip_reasons[reason] += 1
        self.sink.row_skipped(row_number, reason, row, detail)
        if self.rejects is not None and row:
            self.rejects.write(dict(row), reason)
        return False

    def _process_row(self, row_number: int, raw: Mapping[str, Any]) -> bool:
        row = normalize_headers(raw)
        violations = validate_record(row)
        if violations:
            return self._skip(row_number, row, RECORD_INVALID, "; ".join(violations))

        self.batch.begin_row()
        resolutions: list[Resolution] = []
        parent = None
        for step in (reconcile_address, reconcile_meter, reconcile_endpoint, reconcile_gis_record):
            res = step(self._ctx, row) if parent is None else step(self._ctx, row, parent)
            if res.skipped:
                self.batch.discard_row()
                return self._skip(row_number, row, res.skip_reason or "", res.detail)
            resolutions.append(res)
            parent = res.entity
        self.batch.commit_row()

        self.summary.processed_rows += 1
        for res in resolutions:
            kind = res.entity.kind
            if res.is_new:
                self.summary.added += 1
                self.summary.added_by_kind[kind] += 1
            elif self.mode.updates_existing:
                self.summary.updated += 1
                self.summary.updated_by_kind[kind] += 1
        return True

    # -- flush -------------------------------------------------------------

    def _flush(self) -> FlushResult:
        self.cancel.raise_if_cancelled()
        result = self.writer.flush(self.batch)
        self.summary.flushes += 1
        if result.recovered_from is not None:
            self.summary.duplicate_recoveries += 1
        if result.failures:
            self.summary.entity_failures += len(result.failures)
            self.summary.warnings.extend(
                f"{f.kind.value}: {f.reason}: {f.detail}" for f in result.failures
            )
        self.batch.clear()
        self.sink.batch_flushed(result)
        if self.summary.expected_rows:
            self.sink.progress(
                self.summary.percentage,
                f"Processed {self.summary.processed_rows} of {self.summary.expected_rows} records",
            )
        return result


def run_import(
    store: RecordStore,
    rows: Iterable[Mapping[str, str | None]],
    mode: ImportMode = ImportMode.UPDATE_AND_ADD,
    batch_size: int = DEFAULT_BATCH_SIZE,
    sink: ImportEventSink | None = None,
    cancel: CancelToken | None = None,
    rejects: RejectWriter | None = None,
    expected_rows: int | None = None,
) -> ImportSummary:
    """Build an ImportPipeline and run it over ``rows``."""
    pipeline = ImportPipeline(
        store,
        mode=mode,
        batch_size=batch_size,
        sink=sink,
        cancel=cancel,
        rejects=rejects,
        expected_rows=expected_rows,
    )
    return pipeline.run(rows)
