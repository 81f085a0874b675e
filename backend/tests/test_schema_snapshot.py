import pytest

from labquery.services.agent.schema_snapshot import SchemaSnapshotService, build_snapshot
from labquery.services.errors import DatastoreError

from conftest import PATIENT_ID, SCHEMA_COLUMNS, SCHEMA_FOREIGN_KEYS


def test_build_snapshot_hides_audit_table_and_lists_foreign_keys():
    snapshot = build_snapshot(SCHEMA_COLUMNS, SCHEMA_FOREIGN_KEYS)

    assert [table.name for table in snapshot.tables] == ["lab_results", "patients"]
    prompt = snapshot.to_prompt()
    assert "lab_results(id uuid NOT NULL" in prompt
    assert "numeric_result double precision," in prompt
    assert "lab_results.patient_id -> patients.id" in prompt
    assert "sql_generation_logs" not in prompt


def test_snapshot_id_is_stable_for_same_structure():
    first = build_snapshot(SCHEMA_COLUMNS, SCHEMA_FOREIGN_KEYS)
    second = build_snapshot(list(reversed(SCHEMA_COLUMNS)), SCHEMA_FOREIGN_KEYS)

    assert len(first.snapshot_id) == 64
    assert first.snapshot_id == build_snapshot(SCHEMA_COLUMNS, SCHEMA_FOREIGN_KEYS).snapshot_id
    assert [table.name for table in second.tables] == ["lab_results", "patients"]


@pytest.mark.anyio
async def test_snapshot_is_cached(datastore):
    service = SchemaSnapshotService(datastore, ["public"], ttl_seconds=60)

    first = await service.get_snapshot()
    second = await service.get_snapshot()

    assert first is second
    assert datastore.metadata_calls == 2


@pytest.mark.anyio
async def test_patient_context_loaded_and_cached(datastore):
    service = SchemaSnapshotService(datastore, ["public"], ttl_seconds=60)

    context = await service.get_patient_context(PATIENT_ID)
    await service.get_patient_context(PATIENT_ID)

    assert context["full_name"] == "Ana Test"
    assert datastore.metadata_calls == 1


@pytest.mark.anyio
async def test_unknown_patient_has_no_context(datastore):
    datastore.patient_rows = []
    service = SchemaSnapshotService(datastore, ["public"], ttl_seconds=60)

    assert await service.get_patient_context(PATIENT_ID) is None


@pytest.mark.anyio
async def test_patient_context_failure_is_not_fatal():
    class FailingDatastore:
        async def fetch_rows(self, sql, *, timeout_ms, params=None):
            raise DatastoreError("invalid input syntax for type uuid")

    service = SchemaSnapshotService(FailingDatastore(), ["public"], ttl_seconds=60)

    assert await service.get_patient_context("not-a-uuid") is None


@pytest.mark.anyio
async def test_invalidate_forces_reload(datastore):
    service = SchemaSnapshotService(datastore, ["public"], ttl_seconds=60)

    await service.get_snapshot()
    await service.get_patient_context(PATIENT_ID)
    await service.invalidate()
    await service.get_snapshot()
    await service.get_patient_context(PATIENT_ID)

    assert datastore.metadata_calls == 6
