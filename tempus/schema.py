"""Database schema for jobs and their metadata, with a migration command."""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Mapping, Sequence
from typing import Any

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKeyConstraint,
    Integer,
    MetaData,
    String,
    Table,
    Uuid,
    create_engine,
    func,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine

from tempus.domain import JobEntity, JobMetadataEntity, JobMetadataStatus, JobType

MIGRATION_NAME = "m20220101_000001_create_table"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


schedule_type_enum = Enum(
    JobType, name="schedule_type_enum", values_callable=_enum_values
)
job_status_enum = Enum(
    JobMetadataStatus, name="job_status_enum", values_callable=_enum_values
)

metadata = MetaData()

job_table = Table(
    "job",
    metadata,
    Column("id", Uuid, primary_key=True, nullable=False),
    Column("retries", Integer, nullable=False, server_default=text("0")),
    Column("time", DateTime, nullable=False),
    Column("target", String, nullable=False),
    Column("payload", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Column("type", schedule_type_enum, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
)

job_metadata_table = Table(
    "job_metadata",
    metadata,
    Column("job_id", Uuid, primary_key=True, nullable=False),
    Column("status", job_status_enum, nullable=False),
    Column("failure", String, nullable=True),
    Column("processed_at", DateTime, nullable=True),
    ForeignKeyConstraint(
        ["job_id"],
        ["job.id"],
        name="fk-jobmetadata-job-id",
        ondelete="CASCADE",
        onupdate="CASCADE",
    ),
)


def upgrade(engine: Engine) -> None:
    """Create the enum types and tables that do not exist yet."""
    metadata.create_all(engine, checkfirst=True)


def downgrade(engine: Engine) -> None:
    """Drop the tables and their enum types."""
    metadata.drop_all(engine, checkfirst=True)


def _as_mapping(row: Any) -> Mapping[str, Any]:
    return getattr(row, "_mapping", row)


def entity_from_rows(job_row: Any, metadata_row: Any = None) -> JobEntity:
    """Build a JobEntity from a job row and an optional metadata row.

    A metadata row whose ``job_id`` is null (an unmatched outer join) counts as absent.
    """
    job = _as_mapping(job_row)
    meta_entity = None
    if metadata_row is not None:
        meta = _as_mapping(metadata_row)
        if meta.get("job_id") is not None:
            meta_entity = JobMetadataEntity(
                job_id=meta["job_id"],
                status=JobMetadataStatus(meta["status"]),
                failure=meta.get("failure"),
                processed_at=meta.get("processed_at"),
            )
    return JobEntity(
        id=job["id"],
        time=job["time"],
        target=job["target"],
        retries=job["retries"],
        type=JobType(job["type"]),
        payload=job["payload"],
        metadata=meta_entity,
    )


def _is_applied(engine: Engine) -> bool:
    inspector = inspect(engine)
    return all(inspector.has_table(table.name) for table in metadata.sorted_tables)


def main(argv: Sequence[str] | None = None) -> int:
    """Run a schema migration command against the configured database."""
    parser = argparse.ArgumentParser(
        prog="tempus-migrate", description="Apply or revert the job schema."
    )
    parser.add_argument(
        "-u", "--database-url", default=None, help="database URL (defaults to DATABASE_URL)"
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="up",
        choices=["up", "down", "fresh", "refresh", "reset", "status"],
    )
    args = parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))
    url = args.database_url or os.environ.get("DATABASE_URL")
    if not url:
        print("Environment variable 'DATABASE_URL' not set", file=sys.stderr)
        return 1

    engine = create_engine(url)
    try:
        match args.command:
            case "up":
                upgrade(engine)
            case "down" | "reset":
                downgrade(engine)
            case "fresh" | "refresh":
                downgrade(engine)
                upgrade(engine)
            case "status":
                state = "applied" if _is_applied(engine) else "pending"
                print(f"{MIGRATION_NAME}  {state}")
    finally:
        engine.dispose()
    return 0