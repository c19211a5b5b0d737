"""meter_etl.models

Entity dataclasses for the four record kinds plus the CSV column mapping
used to build them from a row and to copy row values onto an existing
record in update mode.

Each entity carries an explicit foreign-key field (address_id, meter_id,
endpoint_id).  Newly staged children also hold an in-memory reference to
their parent (``address``, ``meter``, ``endpoint``) because a staged parent
has no surrogate id until the batch is written; the writer copies the
parent's id into the foreign-key field at flush time.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from meter_etl.normalize import parse_datetime, parse_decimal, parse_int, trim


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ImportMode(str, Enum):
    UPDATE_AND_ADD = "UpdateAndAdd"
    ADD_ONLY = "AddOnly"
    DROP_AND_REPLACE = "DropAndReplace"

    @property
    def updates_existing(self) -> bool:
        return self is ImportMode.UPDATE_AND_ADD

    @classmethod
    def parse(cls, value: str) -> ImportMode:
        """Accept 'UpdateAndAdd', 'update_and_add', 'update-and-add', ..."""
        wanted = value.replace("_", "").replace("-", "").strip().lower()
        for mode in cls:
            if mode.value.lower() == wanted:
                return mode
        raise ValueError(f"unknown import mode: {value!r}")


class EntityKind(str, Enum):
    """Entity kinds; the value is the backing table name."""

    ADDRESS = "address"
    METER = "meter"
    ENDPOINT = "endpoint"
    GIS_RECORD = "gis_record"


# Parents before children.
DEPENDENCY_ORDER = (
    EntityKind.ADDRESS,
    EntityKind.METER,
    EntityKind.ENDPOINT,
    EntityKind.GIS_RECORD,
)
# Children before parents.
RESET_ORDER = tuple(reversed(DEPENDENCY_ORDER))


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    attr: str
    column: str
    parse: Callable[[str | None], Any] = trim


ADDRESS_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("location_icn", "Location_ICN", parse_int),
    FieldSpec("street_line1", "Location_Address_Line1"),
    FieldSpec("serv_pt_id", "Serv_Pt_ID", parse_int),
    FieldSpec("mtr_desc", "Mtr_Desc"),
    FieldSpec("latitude", "Location_Latitude", parse_decimal),
    FieldSpec("longitude", "Location_Longitude", parse_decimal),
    FieldSpec("height", "Location_Height", parse_decimal),
    FieldSpec("building_year", "Building_Year", parse_int),
    FieldSpec("building_status", "Building_Status"),
    FieldSpec("city", "City"),
    FieldSpec("zip", "Zip"),
    FieldSpec("serv_est_date", "Serv_Est_Date", parse_datetime),
    FieldSpec("serv_year_final", "Serv_Year_Final", parse_int),
    FieldSpec("sl_install_ticket_date", "SL_Install_Ticket_Date", parse_datetime),
    FieldSpec("sl_material_us", "SL_Material_US"),
    FieldSpec("sl_material_cust_side", "SL_Material_Cust_Side"),
)

METER_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("route_no", "Rte_No", parse_int),
    FieldSpec("read_sequence", "Read_Sequence", parse_int),
    FieldSpec("read_order", "Read_Order", parse_int),
    FieldSpec("serial_number", "Meter_SN", parse_int),
    FieldSpec("manufacturer", "Meter_Manufacturer"),
    FieldSpec("size_desc", "Meter_Size_Desc"),
    FieldSpec("lat_dd", "Lat_DD", parse_decimal),
    FieldSpec("lon_dd", "Lon_DD", parse_decimal),
)

ENDPOINT_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("serial_number", "Endpoint_SN", parse_int),
)

GIS_RECORD_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("object_id", "OBJECTID", parse_int),
    FieldSpec("collected_by", "CollectedBy"),
    FieldSpec("device_type", "DeviceType"),
    FieldSpec("device_id", "DeviceID"),
    FieldSpec("corr_status", "CorrStatus"),
    FieldSpec("corr_source", "CorrSource"),
    FieldSpec("creation_datetime", "CreationDateTime", parse_datetime),
    FieldSpec("update_datetime", "UpdateDateTime", parse_datetime),
    FieldSpec("horiz_est_acc", "HorizEstAcc", parse_decimal),
    FieldSpec("vert_est_acc", "VertEstAcc", parse_decimal),
    FieldSpec("geom_capture_type", "GeomCaptureType"),
    FieldSpec("x_current_map_cs", "XCurrentMapCS", parse_decimal),
    FieldSpec("y_current_map_cs", "YCurrentMapCS", parse_decimal),
    FieldSpec("pdop", "PDOP", parse_decimal),
    FieldSpec("hdop", "HDOP", parse_decimal),
    FieldSpec("task_name", "TaskName"),
    FieldSpec("project_name", "ProjectName"),
    FieldSpec("feature_height", "FeatureHeight", parse_decimal),
    FieldSpec("accuracy_reporting", "AccuracyReporting"),
    FieldSpec("auto_increment_alpha", "AutoIncrementAlpha"),
    FieldSpec("auto_increment_numeric", "AutoIncrementNumeric", parse_int),
    FieldSpec("sl_size", "SL_Size"),
    FieldSpec("class_source_util", "Class_Source_Util"),
    FieldSpec("class_source_cust", "Class_Source_Cust"),
    FieldSpec("sl_material_all", "SL_Material_All"),
)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class _Entity:
    """Behaviour shared by the four entity dataclasses."""

    kind: ClassVar[EntityKind]
    id_field: ClassVar[str]
    field_specs: ClassVar[tuple[FieldSpec, ...]]
    parent_field: ClassVar[str | None] = None
    parent_link: ClassVar[str | None] = None

    @property
    def surrogate_id(self) -> int | None:
        return getattr(self, self.id_field)

    @surrogate_id.setter
    def surrogate_id(self, value: int | None) -> None:
        setattr(self, self.id_field, value)

    @property
    def parent(self) -> Any | None:
        return getattr(self, self.parent_link) if self.parent_link else None

    def link_parent(self) -> bool:
        """Copy the in-memory parent's id into the foreign key.

        Returns False when the entity needs a parent id and has none.
        """
        if self.parent_field is None:
            return True
        parent = self.parent
        if parent is not None:
            setattr(self, self.parent_field, parent.surrogate_id)
        return getattr(self, self.parent_field) is not None

    def column_values(self) -> dict[str, Any]:
        """Mapped data columns plus the foreign key, keyed by column name."""
        values = {spec.attr: getattr(self, spec.attr) for spec in self.field_specs}
        if self.parent_field is not None:
            values[self.parent_field] = getattr(self, self.parent_field)
        return values

    def apply_row(self, row: Mapping[str, str | None]) -> None:
        """Overwrite every mapped field with the row's parsed value."""
        for spec in self.field_specs:
            setattr(self, spec.attr, spec.parse(row.get(spec.column)))

    @classmethod
    def parse_fields(cls, row: Mapping[str, str | None]) -> dict[str, Any]:
        return {spec.attr: spec.parse(row.get(spec.column)) for spec in cls.field_specs}


@dataclass(eq=False)
class Address(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.ADDRESS
    id_field: ClassVar[str] = "address_id"
    field_specs: ClassVar[tuple[FieldSpec, ...]] = ADDRESS_FIELDS

    street_line1: str
    location_icn: int | None = None
    serv_pt_id: int | None = None
    mtr_desc: str | None = None
    latitude: Decimal | None = None
    longitude: Decimal | None = None
    height: Decimal | None = None
    building_year: int | None = None
    building_status: str | None = None
    city: str | None = None
    zip: str | None = None
    serv_est_date: datetime | None = None
    serv_year_final: int | None = None
    sl_install_ticket_date: datetime | None = None
    sl_material_us: str | None = None
    sl_material_cust_side: str | None = None
    address_id: int | None = None
    staging_ref: int | None = field(default=None, repr=False)

    @classmethod
    def from_row(cls, row: Mapping[str, str | None]) -> Address:
        return cls(**cls.parse_fields(row))


@dataclass(eq=False)
class Meter(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.METER
    id_field: ClassVar[str] = "meter_id"
    field_specs: ClassVar[tuple[FieldSpec, ...]] = METER_FIELDS
    parent_field: ClassVar[str | None] = "address_id"
    parent_link: ClassVar[str | None] = "address"

    serial_number: int
    manufacturer: str
    size_desc: str
    route_no: int | None = None
    read_sequence: int | None = None
    read_order: int | None = None
    lat_dd: Decimal | None = None
    lon_dd: Decimal | None = None
    address_id: int | None = None
    meter_id: int | None = None
    address: Address | None = field(default=None, repr=False)
    staging_ref: int | None = field(default=None, repr=False)

    @classmethod
    def from_row(cls, row: Mapping[str, str | None], address: Address) -> Meter:
        return cls(
            **cls.parse_fields(row),
            address_id=address.address_id,
            address=address,
        )


@dataclass(eq=False)
class Endpoint(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.ENDPOINT
    id_field: ClassVar[str] = "endpoint_id"
    field_specs: ClassVar[tuple[FieldSpec, ...]] = ENDPOINT_FIELDS
    parent_field: ClassVar[str | None] = "meter_id"
    parent_link: ClassVar[str | None] = "meter"

    serial_number: int
    meter_id: int | None = None
    endpoint_id: int | None = None
    meter: Meter | None = field(default=None, repr=False)
    staging_ref: int | None = field(default=None, repr=False)

    @classmethod
    def from_row(cls, row: Mapping[str, str | None], meter: Meter) -> Endpoint:
        return cls(**cls.parse_fields(row), meter_id=meter.meter_id, meter=meter)


@dataclass(eq=False)
class GisRecord(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.GIS_RECORD
    id_field: ClassVar[str] = "gis_record_id"
    field_specs: ClassVar[tuple[FieldSpec, ...]] = GIS_RECORD_FIELDS
    parent_field: ClassVar[str | None] = "endpoint_id"
    parent_link: ClassVar[str | None] = "endpoint"

    object_id: int | None = None
    collected_by: str | None = None
    device_type: str | None = None
    device_id: str | None = None
    corr_status: str | None = None
    corr_source: str | None = None
    creation_datetime: datetime | None = None
    update_datetime: datetime | None = None
    horiz_est_acc: Decimal | None = None
    vert_est_acc: Decimal | None = None
    geom_capture_type: str | None = None
    x_current_map_cs: Decimal | None = None
    y_current_map_cs: Decimal | None = None
    pdop: Decimal | None = None
    hdop: Decimal | None = None
    task_name: str | None = None
    project_name: str | None = None
    feature_height: Decimal | None = None
    accuracy_reporting: str | None = None
    auto_increment_alpha: str | None = None
    auto_increment_numeric: int | None = None
    sl_size: str | None = None
    class_source_util: str | None = None
    class_source_cust: str | None = None
    sl_material_all: str | None = None
    endpoint_id: int | None = None
    gis_record_id: int | None = None
    endpoint: Endpoint | None = field(default=None, repr=False)
    staging_ref: int | None = field(default=None, repr=False)

    @classmethod
    def from_row(
        cls, row: Mapping[str, str | None], endpoint: Endpoint
    ) -> GisRecord:
        return cls(
            **cls.parse_fields(row),
            endpoint_id=endpoint.endpoint_id,
            endpoint=endpoint,
        )


Entity = Address | Meter | Endpoint | GisRecord
