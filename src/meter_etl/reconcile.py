"""meter_etl.reconcile

Entity reconcilers: map one CSV row (plus its already-resolved parent) to
an existing or a newly staged entity.

Resolution order for every kind:
  1. required fields present, serials parse          else skip the row
  2. in-batch match by natural key                   -> (batch entity, not new)
  3. store match by natural key
       update mode: row values copied onto it        -> (store entity, not new)
       otherwise:   left untouched                   -> (store entity, not new)
  4. no match: build from the row, stage for insert  -> (new entity, new)

Natural keys used inside the batch window:
  Address    ("icn", location_icn) when present, then
             ("location", street, city, zip) casefolded
  Meter      ("serial", serial_number, parent token of the address)
  Endpoint   ("serial", serial_number, parent token of the meter)
  GisRecord  ("object", object_id) when present, then
             ("endpoint", parent token of the endpoint)

Store lookups follow the same primary/fallback order (see
store.find_existing). A meter or endpoint whose parent is still staged
cannot exist in the store, so only the batch can match it.

Note: the (street, city, zip) fallback can merge two physically distinct
addresses that share text.  Keep it; report such merges as a data-quality
issue rather than changing the match.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from meter_etl.cancel import CancelToken, ImportCancelled
from meter_etl.models import Address, Endpoint, Entity, GisRecord, Meter
from meter_etl.normalize import casefold_key, parse_int
from meter_etl.staging import NaturalKey, StagingBatch, parent_token
from meter_etl.store import RecordStore, find_existing
from meter_etl.validation import (
    ADDRESS_REQUIRED,
    ENDPOINT_REQUIRED,
    METER_REQUIRED,
    missing_required,
)

log = logging.getLogger(__name__)

Row = Mapping[str, str | None]

# Skip reasons
MISSING_ADDRESS_FIELDS = "missing_address_fields"
MISSING_METER_FIELDS = "missing_meter_fields"
INVALID_METER_SN = "invalid_meter_sn"
INVALID_ENDPOINT_SN = "invalid_endpoint_sn"
ADDRESS_ERROR = "address_error"
METER_ERROR = "meter_error"
ENDPOINT_ERROR = "endpoint_error"
GIS_RECORD_ERROR = "gis_record_error"


@dataclass
class Resolution:
    entity: Entity | None
    is_new: bool = False
    skip_reason: str | None = None
    detail: str = ""

    @classmethod
    def skip(cls, reason: str, detail: str = "") -> Resolution:
        return cls(entity=None, skip_reason=reason, detail=detail)

    @property
    def skipped(self) -> bool:
        return self.entity is None


@dataclass
class ReconcileContext:
    store: RecordStore
    batch: StagingBatch
    update_existing: bool
    cancel: CancelToken


# ---------------------------------------------------------------------------
# Shared resolution
# ---------------------------------------------------------------------------

def _resolve(
    ctx: ReconcileContext,
    keys: list[NaturalKey],
    row: Row,
    candidate: Entity,
) -> Resolution:
    found = ctx.batch.find(candidate.kind, keys)
    if found is not None:
        return Resolution(found, is_new=False)

    ctx.cancel.raise_if_cancelled()
    existing = find_existing(ctx.store, candidate)

    if existing is not None:
        if ctx.update_existing:
            existing.apply_row(row)
        ctx.batch.stage_existing(existing, keys, updated=ctx.update_existing)
        return Resolution(existing, is_new=False)

    ctx.batch.stage_new(candidate, keys)
    return Resolution(candidate, is_new=True)


def _guarded(label: str, reason: str, row: Row, resolve: Callable[[], Resolution]) -> Resolution:
    try:
        return resolve()
    except ImportCancelled:
        raise
    except Exception as exc:
        log.exception("Error processing %s. Record: %r", label, dict(row))
        return Resolution.skip(reason, f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Address
# ---------------------------------------------------------------------------

def address_keys(address: Address) -> list[NaturalKey]:
    keys: list[NaturalKey] = []
    if address.location_icn is not None:
        keys.append(("icn", address.location_icn))
    keys.append((
        "location",
        casefold_key(address.street_line1),
        casefold_key(address.city),
        casefold_key(address.zip),
    ))
    return keys


def reconcile_address(ctx: ReconcileContext, row: Row) -> Resolution:
    missing = missing_required(row, ADDRESS_REQUIRED)
    if missing:
        return Resolution.skip(
            MISSING_ADDRESS_FIELDS,
            f"missing required address fields: {', '.join(missing)}",
        )

    def resolve() -> Resolution:
        candidate = Address.from_row(row)
        return _resolve(ctx, address_keys(candidate), row, candidate)

    return _guarded("address", ADDRESS_ERROR, row, resolve)


# ---------------------------------------------------------------------------
# Meter
# ---------------------------------------------------------------------------

def reconcile_meter(ctx: ReconcileContext, row: Row, address: Address) -> Resolution:
    missing = missing_required(row, METER_REQUIRED)
    if missing:
        return Resolution.skip(
            MISSING_METER_FIELDS,
            f"missing required meter fields: {', '.join(missing)}",
        )
    serial = parse_int(row.get("Meter_SN"))
    if serial is None:
        return Resolution.skip(
            INVALID_METER_SN, f"Meter_SN is not an integer: {row.get('Meter_SN')!r}"
        )

    def resolve() -> Resolution:
        keys: list[NaturalKey] = [("serial", serial, parent_token(address))]
        return _resolve(ctx, keys, row, Meter.from_row(row, address))

    return _guarded("meter", METER_ERROR, row, resolve)


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

def reconcile_endpoint(ctx: ReconcileContext, row: Row, meter: Meter) -> Resolution:
    serial = parse_int(row.get("Endpoint_SN"))
    if serial is None:
        if missing_required(row, ENDPOINT_REQUIRED):
            detail = "missing required endpoint fields: Endpoint_SN"
        else:
            detail = f"Endpoint_SN is not an integer: {row.get('Endpoint_SN')!r}"
        return Resolution.skip(INVALID_ENDPOINT_SN, detail)

    def resolve() -> Resolution:
        keys: list[NaturalKey] = [("serial", serial, parent_token(meter))]
        return _resolve(ctx, keys, row, Endpoint.from_row(row, meter))

    return _guarded("endpoint", ENDPOINT_ERROR, row, resolve)


# ---------------------------------------------------------------------------
# GIS record
# ---------------------------------------------------------------------------

def reconcile_gis_record(ctx: ReconcileContext, row: Row, endpoint: Endpoint) -> Resolution:
    def resolve() -> Resolution:
        candidate = GisRecord.from_row(row, endpoint)
        keys: list[NaturalKey] = []
        if candidate.object_id is not None:
            keys.append(("object", candidate.object_id))
        keys.append(("endpoint", parent_token(endpoint)))
        return _resolve(ctx, keys, row, candidate)

    return _guarded("GIS record", GIS_RECORD_ERROR, row, resolve)
