"""SQLModel table definitions for the schoolyard database.

Tables:
- cache_entries: latest crawl result per division, keyed "schools-{code}"
- job_records: append-only records of in-flight crawl jobs, grouped by
  store name and dropped when the job finalizes
- schema_info: schema version tracking
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


class SchemaInfo(SQLModel, table=True):  # type: ignore[call-arg]
    """Schema version tracking."""

    __tablename__ = "schema_info"

    id: int | None = Field(default=None, primary_key=True)
    version: int
    applied_at: str | None = Field(
        default=None,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")},
    )


class CacheEntryRow(SQLModel, table=True):  # type: ignore[call-arg]
    """One cache entry per division, overwritten on every crawl or refresh."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True)
    division_code: int
    fingerprint: str
    timestamp: int
    data_json: str = Field(
        default="[]",
        sa_column_kwargs={"server_default": sa.text("'[]'")},
    )
    updated_at: str | None = Field(
        default=None,
        sa_column_kwargs={
            "server_default": sa.text("CURRENT_TIMESTAMP"),
            "onupdate": sa.func.current_timestamp(),
        },
    )


class JobRecordRow(SQLModel, table=True):  # type: ignore[call-arg]
    """A record appended by a running crawl job."""

    __tablename__ = "job_records"
    __table_args__ = (sa.Index("idx_job_records_store", "store_name"),)

    id: int | None = Field(default=None, primary_key=True)
    store_name: str
    record_json: str
    created_at: str | None = Field(
        default=None,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")},
    )
