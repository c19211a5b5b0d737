"""meter_etl.validation

Declarative constraints for meter CSV rows.

Two layers:
  - Header contract: a file whose header lacks a required column is
    rejected before any row is read (CsvFormatError).
  - Row contract: validate_record() applies COLUMN_RULES to a row and
    returns human-readable violations; missing_required() reports which of
    an entity's required fields are blank.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from meter_etl.normalize import trim


class CsvFormatError(ValueError):
    """Raised when a CSV file does not satisfy the header contract."""


# ---------------------------------------------------------------------------
# Required fields per entity kind
# ---------------------------------------------------------------------------

ADDRESS_REQUIRED = ("Location_Address_Line1",)
METER_REQUIRED = ("Meter_SN", "Meter_Manufacturer", "Meter_Size_Desc")
ENDPOINT_REQUIRED = ("Endpoint_SN",)
GIS_RECORD_REQUIRED: tuple[str, ...] = ()

REQUIRED_HEADERS = frozenset(
    ADDRESS_REQUIRED + METER_REQUIRED + ENDPOINT_REQUIRED + GIS_RECORD_REQUIRED
)


# ---------------------------------------------------------------------------
# Column rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnRule:
    column: str
    max_length: int


# Lengths mirror the varchar widths in migrations/0001_meter_schema.sql.
COLUMN_RULES: tuple[ColumnRule, ...] = (
    ColumnRule("Location_Address_Line1", 255),
    ColumnRule("Mtr_Desc", 255),
    ColumnRule("Building_Status", 100),
    ColumnRule("City", 100),
    ColumnRule("Zip", 20),
    ColumnRule("SL_Material_US", 100),
    ColumnRule("SL_Material_Cust_Side", 100),
    ColumnRule("Meter_Manufacturer", 100),
    ColumnRule("Meter_Size_Desc", 100),
    ColumnRule("CollectedBy", 100),
    ColumnRule("DeviceType", 100),
    ColumnRule("DeviceID", 100),
    ColumnRule("CorrStatus", 100),
    ColumnRule("CorrSource", 100),
    ColumnRule("GeomCaptureType", 100),
    ColumnRule("TaskName", 255),
    ColumnRule("ProjectName", 255),
    ColumnRule("AccuracyReporting", 100),
    ColumnRule("AutoIncrementAlpha", 100),
    ColumnRule("SL_Size", 50),
    ColumnRule("Class_Source_Util", 100),
    ColumnRule("Class_Source_Cust", 100),
    ColumnRule("SL_Material_All", 100),
)


def missing_required(
    row: Mapping[str, str | None],
    required: Iterable[str],
) -> list[str]:
    """Return the required field names whose value is absent or blank."""
    return [name for name in required if trim(row.get(name)) is None]


def validate_record(row: Mapping[str, str | None]) -> list[str]:
    """Apply COLUMN_RULES to one row; an empty list means the row is valid."""
    violations: list[str] = []
    if all(trim(v) is None for v in row.values()):
        violations.append("row is empty")
        return violations
    for rule in COLUMN_RULES:
        value = trim(row.get(rule.column))
        if value is not None and len(value) > rule.max_length:
            violations.append(
                f"{rule.column} exceeds {rule.max_length} characters ({len(value)})"
            )
    return violations


def validate_headers(fieldnames: Iterable[str] | None) -> None:
    """Raise CsvFormatError if a required column is absent from the header."""
    present = {name.strip() for name in fieldnames or [] if name is not None}
    missing = REQUIRED_HEADERS - present
    if missing:
        raise CsvFormatError(f"missing required columns: {sorted(missing)}")
