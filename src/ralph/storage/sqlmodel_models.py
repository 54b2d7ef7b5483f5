"""SQLModel ORM tables owned by the orchestrator."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

EXECUTION_METADATA_TABLE = "ralph_execution_metadata"

# The tracker owns ``issues``; the FK lives only in the DDL below because the
# ORM metadata has no ``issues`` table to resolve it against.
EXECUTION_METADATA_DDL = f"""
CREATE TABLE IF NOT EXISTS {EXECUTION_METADATA_TABLE} (
    issue_id TEXT PRIMARY KEY,
    failure_count INTEGER DEFAULT 0,
    last_failure_at DATETIME,
    last_success_at DATETIME,
    execution_count INTEGER DEFAULT 0,
    FOREIGN KEY (issue_id) REFERENCES issues(id) ON DELETE CASCADE
)
"""


class TaskExecutionMetadataRow(SQLModel, table=True):
    __tablename__ = EXECUTION_METADATA_TABLE  # type: ignore[bad-override]

    issue_id: str = Field(primary_key=True)
    failure_count: int = Field(default=0)
    last_failure_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_success_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    execution_count: int = Field(default=0)
