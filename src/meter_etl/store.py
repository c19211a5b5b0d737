"""meter_etl.store

Record store boundary for the import pipeline.

RecordStore is the protocol the pipeline consumes: transactions, integrity
check suspension, table reset, natural-key lookups per entity kind, insert
and field-level update.  PostgresRecordStore implements it over a psycopg 3
connection.

Connection contract:
  - The connection must be opened with autocommit=True.  Each
    ``transaction()`` block is then a real BEGIN/COMMIT, and lookups made
    outside a block are not held open in an implicit transaction.
  - Inside an outer ``dry_run()`` block every ``transaction()`` becomes a
    savepoint, and the outer block always rolls back.

Errors:
  - psycopg.errors.UniqueViolation -> DuplicateKeyError
  - any other psycopg.Error        -> StoreError
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import psycopg
from psycopg import errors, sql
from psycopg.rows import class_row

from meter_etl.models import (
    Address,
    Endpoint,
    Entity,
    EntityKind,
    GisRecord,
    Meter,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Any persistence failure raised by a RecordStore."""


class DuplicateKeyError(StoreError):
    """A natural-key unique constraint rejected an insert or update."""


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except errors.UniqueViolation as exc:
        raise DuplicateKeyError(f"{action}: {exc}") from exc
    except psycopg.Error as exc:
        raise StoreError(f"{action}: {exc}") from exc


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class RecordStore(Protocol):
    def transaction(self) -> Any: ...

    def suspend_integrity_checks(self) -> None: ...

    def resume_integrity_checks(self) -> None: ...

    def delete_all(self, kind: EntityKind) -> int: ...

    def find_address_by_icn(self, location_icn: int) -> Address | None: ...

    def find_address_by_location(
        self, street: str | None, city: str | None, zip_code: str | None
    ) -> Address | None: ...

    def find_meter(self, serial_number: int, address_id: int) -> Meter | None: ...

    def find_endpoint(self, serial_number: int, meter_id: int) -> Endpoint | None: ...

    def find_gis_record_by_object_id(self, object_id: int) -> GisRecord | None: ...

    def find_gis_record_by_endpoint(self, endpoint_id: int) -> GisRecord | None: ...

    def insert(self, entity: Entity) -> int: ...

    def update(self, entity: Entity) -> None: ...

    def count(self, kind: EntityKind) -> int: ...


def find_existing(store: RecordStore, entity: Entity) -> Entity | None:
    """Look up the stored row sharing ``entity``'s natural key.

    Children are looked up by their foreign key, so link_parent() must have
    run first.
    """
    if isinstance(entity, Address):
        if entity.location_icn is not None:
            found = store.find_address_by_icn(entity.location_icn)
            if found is not None:
                return found
        return store.find_address_by_location(
            entity.street_line1, entity.city, entity.zip
        )
    if isinstance(entity, Meter):
        if entity.address_id is None:
            return None
        return store.find_meter(entity.serial_number, entity.address_id)
    if isinstance(entity, Endpoint):
        if entity.meter_id is None:
            return None
        return store.find_endpoint(entity.serial_number, entity.meter_id)
    if entity.object_id is not None:
        found = store.find_gis_record_by_object_id(entity.object_id)
        if found is not None:
            return found
    if entity.endpoint_id is None:
        return None
    return store.find_gis_record_by_endpoint(entity.endpoint_id)


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class PostgresRecordStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with _translate_errors("transaction"):
            with self._conn.transaction():
                yield

    @contextmanager
    def dry_run(self) -> Iterator[None]:
        """Run the enclosed work in a transaction that always rolls back."""
        with self._conn.transaction(force_rollback=True):
            yield

    # -- integrity checks ---------------------------------------------------

    def suspend_integrity_checks(self) -> None:
        # Foreign keys are DEFERRABLE; deferred checks run at commit.
        with _translate_errors("suspend integrity checks"):
            self._conn.execute("SET CONSTRAINTS ALL DEFERRED")

    def resume_integrity_checks(self) -> None:
        with _translate_errors("resume integrity checks"):
            self._conn.execute("SET CONSTRAINTS ALL IMMEDIATE")

    def delete_all(self, kind: EntityKind) -> int:
        # DELETE rather than TRUNCATE: TRUNCATE refuses tables referenced by a
        # foreign key even when the referencing table is emptied first.
        with _translate_errors(f"delete {kind.value}"):
            cur = self._conn.execute(
                sql.SQL("DELETE FROM {}").format(sql.Identifier(kind.value))
            )
        log.info("deleted %d rows from %s", cur.rowcount, kind.value)
        return cur.rowcount

    # -- lookups -------------------------------------------------------------

    def _fetch_one(self, cls: type, query: str, params: tuple) -> Any:
        with _translate_errors(f"lookup {cls.kind.value}"):
            cur = self._conn.cursor(row_factory=class_row(cls))
            return cur.execute(query, params).fetchone()

    def find_address_by_icn(self, location_icn: int) -> Address | None:
        return self._fetch_one(
            Address,
            "SELECT * FROM address WHERE location_icn = %s ORDER BY address_id LIMIT 1",
            (location_icn,),
        )

    def find_address_by_location(
        self, street: str | None, city: str | None, zip_code: str | None
    ) -> Address | None:
        return self._fetch_one(
            Address,
            """
            SELECT * FROM address
            WHERE street_line1 IS NOT DISTINCT FROM %s
              AND city IS NOT DISTINCT FROM %s
              AND zip IS NOT DISTINCT FROM %s
            ORDER BY address_id
            LIMIT 1
            """,
            (street, city, zip_code),
        )

    def find_meter(self, serial_number: int, address_id: int) -> Meter | None:
        return self._fetch_one(
            Meter,
            "SELECT * FROM meter WHERE serial_number = %s AND address_id = %s",
            (serial_number, address_id),
        )

    def find_endpoint(self, serial_number: int, meter_id: int) -> Endpoint | None:
        return self._fetch_one(
            Endpoint,
            "SELECT * FROM endpoint WHERE serial_number = %s AND meter_id = %s",
            (serial_number, meter_id),
        )

    def find_gis_record_by_object_id(self, object_id: int) -> GisRecord | None:
        return self._fetch_one(
            GisRecord,
            "SELECT * FROM gis_record WHERE object_id = %s",
            (object_id,),
        )

    def find_gis_record_by_endpoint(self, endpoint_id: int) -> GisRecord | None:
        return self._fetch_one(
            GisRecord,
            "SELECT * FROM gis_record WHERE endpoint_id = %s ORDER BY gis_record_id LIMIT 1",
            (endpoint_id,),
        )

    # -- writes --------------------------------------------------------------

    def insert(self, entity: Entity) -> int:
        values = entity.column_values()
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals}) RETURNING {id}").format(
            table=sql.Identifier(entity.kind.value),
            cols=sql.SQL(", ").join(map(sql.Identifier, values)),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(values)),
            id=sql.Identifier(entity.id_field),
        )
        with _translate_errors(f"insert {entity.kind.value}"):
            row = self._conn.execute(query, tuple(values.values())).fetchone()
        return int(row[0])

    def update(self, entity: Entity) -> None:
        if entity.surrogate_id is None:
            raise StoreError(f"update {entity.kind.value}: entity has no id")
        values = entity.column_values()
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE {id} = %s").format(
            table=sql.Identifier(entity.kind.value),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(col)) for col in values
            ),
            id=sql.Identifier(entity.id_field),
        )
        with _translate_errors(f"update {entity.kind.value}"):
            self._conn.execute(query, (*values.values(), entity.surrogate_id))

    def count(self, kind: EntityKind) -> int:
        with _translate_errors(f"count {kind.value}"):
            row = self._conn.execute(
                sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(kind.value))
            ).fetchone()
        return int(row[0])

