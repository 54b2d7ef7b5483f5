from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from ralph.errors import MetadataStoreError
from ralph.orchestrator.repository import ExecutionMetadataStore

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Execution Metadata"),
]


@pytest.fixture()
def store(ralph_workspace):
    ralph_workspace.add_issues("e.1", "e.2")
    metadata_store = ExecutionMetadataStore(ralph_workspace.db_path)
    metadata_store.initialize()
    yield metadata_store
    metadata_store.close()


def test_get_or_create_starts_zeroed(store) -> None:
    metadata = store.get_or_create("e.1")

    assert metadata.issue_id == "e.1"
    assert metadata.failure_count == 0
    assert metadata.execution_count == 0
    assert metadata.last_failure_at is None
    assert metadata.last_success_at is None


def test_update_writes_only_given_fields(store) -> None:
    store.get_or_create("e.1")
    finished = datetime(2026, 3, 1, 12, 30, tzinfo=UTC)

    store.update("e.1", failure_count=2, last_failure_at=finished)
    store.update("e.1", execution_count=4)

    metadata = store.get_or_create("e.1")
    assert metadata.failure_count == 2
    assert metadata.execution_count == 4
    assert metadata.last_failure_at == finished
    assert metadata.last_success_at is None


def test_get_reads_without_inserting(store) -> None:
    assert store.get("e.1").failure_count == 0

    with pytest.raises(MetadataStoreError, match="No execution metadata row for e.1"):
        store.update("e.1", failure_count=1)

    store.get_or_create("e.1")
    store.update("e.1", failure_count=3)
    assert store.get("e.1").failure_count == 3


def test_rows_are_per_task(store) -> None:
    store.get_or_create("e.1")
    store.get_or_create("e.2")
    store.update("e.2", failure_count=1)

    assert store.get_or_create("e.1").failure_count == 0
    assert store.get_or_create("e.2").failure_count == 1


def test_update_without_fields_is_noop(store) -> None:
    store.update("e.1")


def test_update_rejects_unknown_fields(store) -> None:
    with pytest.raises(ValueError, match="Unknown execution metadata fields: status"):
        store.update("e.1", status=1)


def test_update_missing_row_raises(store) -> None:
    with pytest.raises(MetadataStoreError, match="No execution metadata row for e.2"):
        store.update("e.2", failure_count=1)


def test_unknown_issue_violates_foreign_key(store) -> None:
    with pytest.raises(MetadataStoreError, match="Failed to get task metadata for ghost"):
        store.get_or_create("ghost")


def test_initialize_is_repeatable(ralph_workspace) -> None:
    ralph_workspace.add_issues("e.1")
    first = ExecutionMetadataStore(ralph_workspace.db_path)
    first.initialize()
    first.get_or_create("e.1")
    first.update("e.1", failure_count=3)
    first.close()

    second = ExecutionMetadataStore(ralph_workspace.db_path)
    second.initialize()
    try:
        assert second.get_or_create("e.1").failure_count == 3
    finally:
        second.close()


def test_missing_database_is_reported(tmp_path: Path) -> None:
    store = ExecutionMetadataStore(tmp_path / "missing.db")

    with pytest.raises(MetadataStoreError, match="Run 'bd init' first"):
        store.initialize()


def test_store_requires_initialize(ralph_workspace) -> None:
    store = ExecutionMetadataStore(ralph_workspace.db_path)

    with pytest.raises(MetadataStoreError, match="not initialized"):
        store.get_or_create("e.1")
