"""Execution metadata store kept beside the tracker's own tables."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col

from ralph.errors import MetadataStoreError
from ralph.orchestrator.models import TaskMetadata
from ralph.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware_datetime
from ralph.storage.sqlmodel_models import EXECUTION_METADATA_DDL, TaskExecutionMetadataRow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"failure_count", "last_failure_at", "last_success_at", "execution_count"},
)


class ExecutionMetadataStore:
    """Failure/success counters per task, backed by SQLModel + SQLite.

    One instance is built per run and handed to the loop. Two runs sharing a
    tracker database are not coordinated.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._initialized = False

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def initialize(self) -> None:
        """Create the metadata table; the tracker database must already exist."""

        if not self.db_path.exists():
            raise MetadataStoreError(
                f"Beads database not found at {self.db_path}. Run 'bd init' first.",
            )
        try:
            with self.engine.begin() as connection:
                connection.execute(text(EXECUTION_METADATA_DDL))
        except SQLAlchemyError as error:
            raise MetadataStoreError(
                f"Failed to initialize execution metadata table in {self.db_path}: {error}",
            ) from error
        self._initialized = True
        logger.info("Initialized execution metadata table in %s", self.db_path)

    def get_or_create(self, task_id: str) -> TaskMetadata:
        """Return counters for ``task_id``, inserting a zeroed row on first access."""

        self._require_initialized()
        try:
            with Session(self.engine) as session:
                row = session.get(TaskExecutionMetadataRow, task_id)
                if row is None:
                    row = TaskExecutionMetadataRow(issue_id=task_id)
                    session.add(row)
                    session.commit()
                    session.refresh(row)
                return _to_view(row)
        except SQLAlchemyError as error:
            raise MetadataStoreError(
                f"Failed to get task metadata for {task_id}: {error}",
            ) from error

    def get(self, task_id: str) -> TaskMetadata:
        """Counters for ``task_id`` without writing; zeroed when no row exists yet."""

        self._require_initialized()
        try:
            with Session(self.engine) as session:
                row = session.get(TaskExecutionMetadataRow, task_id)
                return TaskMetadata(issue_id=task_id) if row is None else _to_view(row)
        except SQLAlchemyError as error:
            raise MetadataStoreError(
                f"Failed to read task metadata for {task_id}: {error}",
            ) from error

    def update(self, task_id: str, **fields: int | datetime | None) -> None:
        """Write only the provided fields; no fields is a no-op."""

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown execution metadata fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        self._require_initialized()
        values = {
            name: to_db_datetime(value) if isinstance(value, datetime) else value
            for name, value in fields.items()
        }
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(TaskExecutionMetadataRow)
                    .where(col(TaskExecutionMetadataRow.issue_id) == task_id)
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise MetadataStoreError(f"No execution metadata row for {task_id}")
                session.commit()
        except SQLAlchemyError as error:
            raise MetadataStoreError(
                f"Failed to update task metadata for {task_id}: {error}",
            ) from error

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise MetadataStoreError("Execution metadata store is not initialized.")


def _to_view(row: TaskExecutionMetadataRow) -> TaskMetadata:
    return TaskMetadata(
        issue_id=row.issue_id,
        failure_count=row.failure_count or 0,
        execution_count=row.execution_count or 0,
        last_failure_at=to_utc_aware_datetime(row.last_failure_at),
        last_success_at=to_utc_aware_datetime(row.last_success_at),
    )
