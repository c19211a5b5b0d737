"""Integration test fixtures.

Applies migrations/0001_meter_schema.sql against an ephemeral PostgreSQL
database provided by pytest-postgresql.  When no PostgreSQL server binaries
are installed the integration tests are not collected.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from meter_etl.models import (
    ADDRESS_FIELDS,
    ENDPOINT_FIELDS,
    GIS_RECORD_FIELDS,
    METER_FIELDS,
)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_meter_schema.sql",
]

if shutil.which("pg_ctl") is None and shutil.which("pg_config") is None:
    collect_ignore_glob = ["test_*.py"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return an autocommit psycopg connection with the schema applied, plus its DSN.

    PostgresRecordStore requires autocommit so each transaction() block is a
    real BEGIN/COMMIT.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# CSV rows
# ---------------------------------------------------------------------------

ALL_COLUMNS = [
    spec.column
    for specs in (ADDRESS_FIELDS, METER_FIELDS, ENDPOINT_FIELDS, GIS_RECORD_FIELDS)
    for spec in specs
]


@pytest.fixture
def csv_row():
    def _row(**overrides: str) -> dict[str, str]:
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
    return _row
