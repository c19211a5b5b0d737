"""Unit test fixtures.

FakeRecordStore is an in-memory RecordStore that enforces the same
natural-key unique constraints and foreign keys as
migrations/0001_meter_schema.sql, with nested transactions implemented as
snapshot/restore.  Failure hooks let tests inject commit, insert and
delete failures.
"""

from __future__ import annotations

import copy
import csv
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import pytest

from meter_etl.models import (
    ADDRESS_FIELDS,
    ENDPOINT_FIELDS,
    GIS_RECORD_FIELDS,
    METER_FIELDS,
    Address,
    Endpoint,
    EntityKind,
    Meter,
)
from meter_etl.store import DuplicateKeyError, StoreError

ALL_COLUMNS = [
    spec.column
    for specs in (ADDRESS_FIELDS, METER_FIELDS, ENDPOINT_FIELDS, GIS_RECORD_FIELDS)
    for spec in specs
]

_PARENT_KIND = {
    EntityKind.METER: EntityKind.ADDRESS,
    EntityKind.ENDPOINT: EntityKind.METER,
    EntityKind.GIS_RECORD: EntityKind.ENDPOINT,
}


class FakeRecordStore:
    def __init__(self) -> None:
        self.tables: dict[EntityKind, dict[int, Any]] = {k: {} for k in EntityKind}
        self._next_id = {k: 1 for k in EntityKind}
        self._depth = 0
        self._checks_deferred = False
        self.commits = 0
        self.rollbacks = 0
        self.lookups = 0
        # Each outermost commit pops one entry; None means succeed.
        self.commit_failures: list[Exception | None] = []
        # Called with every entity before it is inserted; may raise.
        self.insert_hook = None
        self.delete_failure: EntityKind | None = None

    # -- transactions ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        snapshot = copy.deepcopy(self.tables)
        deferred = self._checks_deferred
        self._depth += 1
        try:
            yield
            if self._depth == 1:
                self._check_foreign_keys()
                if self.commit_failures:
                    failure = self.commit_failures.pop(0)
                    if failure is not None:
                        raise failure
        except BaseException:
            self.tables = snapshot
            self._checks_deferred = deferred
            self.rollbacks += 1
            raise
        finally:
            self._depth -= 1
        if self._depth == 0:
            self._checks_deferred = False
            self.commits += 1

    @contextmanager
    def dry_run(self) -> Iterator[None]:
        snapshot = copy.deepcopy(self.tables)
        try:
            with self.transaction():
                yield
        finally:
            self.tables = snapshot

    def suspend_integrity_checks(self) -> None:
        self._checks_deferred = True

    def resume_integrity_checks(self) -> None:
        self._checks_deferred = False
        self._check_foreign_keys()

    def _check_foreign_keys(self) -> None:
        for kind, parent_kind in _PARENT_KIND.items():
            parent_ids = self.tables[parent_kind].keys()
            for row in self.tables[kind].values():
                if getattr(row, row.parent_field) not in parent_ids:
                    raise StoreError(f"foreign key violation on {kind.value}")

    # -- reset -------------------------------------------------------------

    def delete_all(self, kind: EntityKind) -> int:
        if self.delete_failure is kind:
            raise StoreError(f"cannot delete {kind.value}")
        if not self._checks_deferred:
            for child_kind, parent_kind in _PARENT_KIND.items():
                if parent_kind is kind and self.tables[child_kind]:
                    raise StoreError(f"{child_kind.value} still references {kind.value}")
        count = len(self.tables[kind])
        self.tables[kind] = {}
        return count

    # -- lookups -----------------------------------------------------------

    def _first(self, kind: EntityKind, predicate) -> Any:
        self.lookups += 1
        for key in sorted(self.tables[kind]):
            row = self.tables[kind][key]
            if predicate(row):
                return copy.copy(row)
        return None

    def find_address_by_icn(self, location_icn):
        return self._first(EntityKind.ADDRESS, lambda a: a.location_icn == location_icn)

    def find_address_by_location(self, street, city, zip_code):
        return self._first(
            EntityKind.ADDRESS,
            lambda a: (a.street_line1, a.city, a.zip) == (street, city, zip_code),
        )

    def find_meter(self, serial_number, address_id):
        return self._first(
            EntityKind.METER,
            lambda m: (m.serial_number, m.address_id) == (serial_number, address_id),
        )

    def find_endpoint(self, serial_number, meter_id):
        return self._first(
            EntityKind.ENDPOINT,
            lambda e: (e.serial_number, e.meter_id) == (serial_number, meter_id),
        )

    def find_gis_record_by_object_id(self, object_id):
        return self._first(EntityKind.GIS_RECORD, lambda g: g.object_id == object_id)

    def find_gis_record_by_endpoint(self, endpoint_id):
        return self._first(EntityKind.GIS_RECORD, lambda g: g.endpoint_id == endpoint_id)

    # -- writes ------------------------------------------------------------

    @staticmethod
    def _unique_keys(entity) -> list[tuple]:
        if isinstance(entity, Address):
            return [("icn", entity.location_icn)] if entity.location_icn is not None else []
        if isinstance(entity, (Meter, Endpoint)):
            return [("serial", entity.serial_number, getattr(entity, entity.parent_field))]
        keys = [("endpoint", entity.endpoint_id)]
        if entity.object_id is not None:
            keys.append(("object", entity.object_id))
        return keys

    def _check_unique(self, entity, exclude_id: int | None) -> None:
        wanted = set(self._unique_keys(entity))
        for row_id, row in self.tables[entity.kind].items():
            if row_id != exclude_id and wanted & set(self._unique_keys(row)):
                raise DuplicateKeyError(f"duplicate key value violates unique constraint on {entity.kind.value}")

    def _check_parent(self, entity) -> None:
        if entity.parent_field is None or self._checks_deferred:
            return
        parent_id = getattr(entity, entity.parent_field)
        if parent_id not in self.tables[_PARENT_KIND[entity.kind]]:
            raise StoreError(f"foreign key violation on {entity.kind.value}")

    @staticmethod
    def _stored_copy(entity):
        row = copy.copy(entity)
        if row.parent_link is not None:
            setattr(row, row.parent_link, None)
        row.staging_ref = None
        return row

    def insert(self, entity) -> int:
        if self.insert_hook is not None:
            self.insert_hook(entity)
        self._check_unique(entity, None)
        self._check_parent(entity)
        new_id = self._next_id[entity.kind]
        self._next_id[entity.kind] += 1
        row = self._stored_copy(entity)
        row.surrogate_id = new_id
        self.tables[entity.kind][new_id] = row
        return new_id

    def update(self, entity) -> None:
        if entity.surrogate_id not in self.tables[entity.kind]:
            raise StoreError(f"no {entity.kind.value} with id {entity.surrogate_id}")
        self._check_unique(entity, entity.surrogate_id)
        self._check_parent(entity)
        self.tables[entity.kind][entity.surrogate_id] = self._stored_copy(entity)

    def count(self, kind: EntityKind) -> int:
        return len(self.tables[kind])

    # -- test helpers ------------------------------------------------------

    def rows(self, kind: EntityKind) -> list[Any]:
        return [self.tables[kind][k] for k in sorted(self.tables[kind])]

    def counts(self) -> dict[str, int]:
        return {k.value: len(self.tables[k]) for k in EntityKind}


def build_row(**overrides: str) -> dict[str, str]:
    row = {column: "" for column in ALL_COLUMNS}
    row.update({
        "Location_Address_Line1": "100 Main St",
        "City": "Springfield",
        "Zip": "12345",
        "Meter_SN": "1001",
        "Meter_Manufacturer": "Badger",
        "Meter_Size_Desc": "5/8",
        "Endpoint_SN": "5001",
    })
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def make_store():
    return FakeRecordStore


@pytest.fixture
def make_row():
    return build_row


@pytest.fixture
def csv_field_limit():
    """Set the csv module's per-cell limit for one test, restoring it afterwards."""
    original = csv.field_size_limit()
    yield csv.field_size_limit
    csv.field_size_limit(original)
