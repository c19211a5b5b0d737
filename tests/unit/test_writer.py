"""Unit tests for meter_etl.writer."""

import pytest

from meter_etl.cancel import CancelToken, ImportCancelled
from meter_etl.models import Address, Endpoint, EntityKind, Meter
from meter_etl.reconcile import address_keys
from meter_etl.staging import StagingBatch, parent_token
from meter_etl.store import DuplicateKeyError, StoreError
from meter_etl.writer import (
    DUPLICATE_KEY,
    PARENT_UNRESOLVED,
    TransactionalWriter,
)


def _stage_chain(batch, street="100 Main St", meter_sn=1001, endpoint_sn=5001):
    """Stage a new address -> meter -> endpoint chain and return it."""
    address = Address(street_line1=street, city="Springfield", zip="12345")
    batch.stage_new(address, address_keys(address))
    meter = Meter(serial_number=meter_sn, manufacturer="Badger", size_desc="5/8", address=address)
    batch.stage_new(meter, [("serial", meter_sn, parent_token(address))])
    endpoint = Endpoint(serial_number=endpoint_sn, meter=meter)
    batch.stage_new(endpoint, [("serial", endpoint_sn, parent_token(meter))])
    return address, meter, endpoint


# ---------------------------------------------------------------------------
# Batch transaction
# ---------------------------------------------------------------------------

class TestBatchStrategy:
    def test_inserts_chain_with_foreign_keys(self, store):
        batch = StagingBatch()
        address, meter, endpoint = _stage_chain(batch)
        result = TransactionalWriter(store, update_existing=True).flush(batch)

        assert result.strategy == "batch"
        assert result.total_inserted == 3
        assert store.commits == 1
        assert meter.address_id == address.address_id == 1
        assert store.rows(EntityKind.ENDPOINT)[0].meter_id == meter.meter_id

    def test_pending_updates_written(self, store):
        existing = Address(street_line1="100 Main St", city="Old")
        existing.address_id = store.insert(existing)
        existing.city = "New"
        batch = StagingBatch()
        batch.stage_existing(existing, address_keys(existing), updated=True)

        result = TransactionalWriter(store, update_existing=True).flush(batch)
        assert result.updated[EntityKind.ADDRESS] == 1
        assert store.rows(EntityKind.ADDRESS)[0].city == "New"

    def test_concurrent_insert_is_adopted_without_update_in_add_only(self, store):
        batch = StagingBatch()
        address, _, _ = _stage_chain(batch)
        address.mtr_desc = "from csv"
        # Row appears in the store after staging.
        store.insert(Address(street_line1="100 Main St", city="Springfield", zip="12345", mtr_desc="stored"))

        result = TransactionalWriter(store, update_existing=False).flush(batch)
        assert address.address_id == 1
        assert result.adopted[EntityKind.ADDRESS] == 1
        assert result.total_updated == 0
        assert store.count(EntityKind.ADDRESS) == 1
        assert store.rows(EntityKind.ADDRESS)[0].mtr_desc == "stored"

    def test_concurrent_insert_is_merged_in_update_mode(self, store):
        batch = StagingBatch()
        address, _, _ = _stage_chain(batch)
        address.mtr_desc = "from csv"
        store.insert(Address(street_line1="100 Main St", city="Springfield", zip="12345", mtr_desc="stored"))

        result = TransactionalWriter(store, update_existing=True).flush(batch)
        assert result.updated[EntityKind.ADDRESS] == 1
        assert store.rows(EntityKind.ADDRESS)[0].mtr_desc == "from csv"

    def test_non_duplicate_failure_propagates_and_clears_ids(self, store):
        batch = StagingBatch()
        address, meter, endpoint = _stage_chain(batch)
        store.commit_failures = [StoreError("disk full")]

        with pytest.raises(StoreError, match="disk full"):
            TransactionalWriter(store, update_existing=True).flush(batch)
        assert store.counts() == {"address": 0, "meter": 0, "endpoint": 0, "gis_record": 0}
        assert address.address_id is None
        assert meter.meter_id is None
        assert endpoint.endpoint_id is None

    def test_cancel_before_commit_rolls_back(self, store):
        batch = StagingBatch()
        _stage_chain(batch)
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(ImportCancelled):
            TransactionalWriter(store, update_existing=True, cancel=cancel).flush(batch)
        assert store.count(EntityKind.ADDRESS) == 0


# ---------------------------------------------------------------------------
# Duplicate-key recovery
# ---------------------------------------------------------------------------

class TestDuplicateRecovery:
    def test_commit_conflict_retries_row_by_row(self, store):
        batch = StagingBatch()
        _stage_chain(batch, street="1 Elm", meter_sn=1)
        _stage_chain(batch, street="2 Elm", meter_sn=2)
        store.commit_failures = [DuplicateKeyError("uq_meter_serial_address")]

        result = TransactionalWriter(store, update_existing=True).flush(batch)
        assert result.strategy == "row_by_row"
        assert result.recovered_from == "uq_meter_serial_address"
        assert result.failures == []
        assert store.counts() == {"address": 2, "meter": 2, "endpoint": 2, "gis_record": 0}

    def test_failing_entity_fails_its_children_only(self, store):
        batch = StagingBatch()
        _stage_chain(batch, street="1 Elm", meter_sn=1)
        _stage_chain(batch, street="2 Elm", meter_sn=2, endpoint_sn=6)

        def reject_meter_two(entity):
            if isinstance(entity, Meter) and entity.serial_number == 2:
                raise DuplicateKeyError("uq_meter_serial_address")

        store.insert_hook = reject_meter_two
        result = TransactionalWriter(store, update_existing=True).flush(batch)

        reasons = [(f.kind, f.reason) for f in result.failures]
        assert reasons == [
            (EntityKind.METER, DUPLICATE_KEY),
            (EntityKind.ENDPOINT, PARENT_UNRESOLVED),
        ]
        assert store.counts() == {"address": 2, "meter": 1, "endpoint": 1, "gis_record": 0}
        assert result.total_inserted == 4

    def test_failed_entity_has_no_id(self, store):
        batch = StagingBatch()
        address, meter, endpoint = _stage_chain(batch)

        def reject_meters(entity):
            if isinstance(entity, Meter):
                raise DuplicateKeyError("dup")

        store.insert_hook = reject_meters
        TransactionalWriter(store, update_existing=True).flush(batch)
        assert address.address_id is not None
        assert meter.meter_id is None
        assert endpoint.endpoint_id is None

    def test_result_serializes(self, store):
        batch = StagingBatch()
        _stage_chain(batch)
        store.commit_failures = [DuplicateKeyError("dup")]
        data = TransactionalWriter(store, update_existing=False).flush(batch).to_dict()
        assert data["strategy"] == "row_by_row"
        assert data["inserted"] == {"address": 1, "meter": 1, "endpoint": 1, "gis_record": 0}
        assert data["recovered_from"] == "dup"
