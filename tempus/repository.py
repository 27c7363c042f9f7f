"""Database access for jobs and their metadata."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from dotenv import dotenv_values, find_dotenv
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import (
    DisconnectionError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from tempus.config import AppConfig
from tempus.domain import (
    JobEntity,
    JobMetadataEntity,
    JobMetadataRepositoryPort,
    JobMetadataStatus,
    JobRepositoryPort,
)
from tempus.errors import ConfigError, DatabaseError, TempusError
from tempus.schema import entity_from_rows, job_metadata_table, job_table

logger = logging.getLogger(__name__)

MAX_RETRIES = 10
RETRY_DELAY_SECS = 5
CLAIM_BATCH_SIZE = 50
CLAIM_MAX_RETRIES = 3

_T = TypeVar("_T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _database_url(environ: Mapping[str, str] | None) -> str:
    if environ is not None:
        url = environ.get("DATABASE_URL")
    else:
        url = os.environ.get("DATABASE_URL")
        if url is None:
            url = dotenv_values(find_dotenv(usecwd=True)).get("DATABASE_URL")
    if not url:
        raise ConfigError("DATABASE_URL environment variable not set")
    return url


def create_database_engine(
    config: AppConfig, environ: Mapping[str, str] | None = None
) -> Engine:
    """Create an engine for DATABASE_URL with the configured pool and check it connects."""
    url = _database_url(environ)
    db = config.database
    try:
        backend = make_url(url).get_backend_name()
        if backend == "sqlite":
            engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            connect_args: dict[str, Any] = {}
            if backend == "postgresql":
                connect_args["connect_timeout"] = int(db.connect_timeout().total_seconds())
            engine = create_engine(
                url,
                pool_size=db.min_connections,
                max_overflow=db.max_connections - db.min_connections,
                pool_timeout=db.acquire_timeout().total_seconds(),
                pool_recycle=int(db.max_lifetime().total_seconds()),
                pool_pre_ping=True,
                connect_args=connect_args,
            )
    except SQLAlchemyError as exc:
        raise DatabaseError(str(exc)) from exc

    try:
        with engine.connect():
            pass
    except SQLAlchemyError as exc:
        engine.dispose()
        raise DatabaseError(str(exc)) from exc
    return engine


async def connect_with_retry(
    config: AppConfig, environ: Mapping[str, str] | None = None
) -> Engine:
    """Connect to the database, retrying every few seconds up to MAX_RETRIES attempts."""
    attempt = 0
    while True:
        try:
            engine = await asyncio.to_thread(create_database_engine, config, environ)
        except TempusError as exc:
            attempt += 1
            if attempt >= MAX_RETRIES:
                logger.error("Failed to connect to database after %d attempts", MAX_RETRIES)
                raise
            logger.error(
                "Failed to connect to DB (attempt %d/%d): %r. Retrying in %ds...",
                attempt,
                MAX_RETRIES,
                exc,
                RETRY_DELAY_SECS,
            )
            await asyncio.sleep(RETRY_DELAY_SECS)
        else:
            logger.info("Successfully connected to the database")
            return engine


def is_connection_error(err: BaseException) -> bool:
    """Tell whether an error means the database could not be reached."""
    if isinstance(err, DatabaseError) and err.__cause__ is not None:
        err = err.__cause__
    return isinstance(err, (OperationalError, DisconnectionError, PoolTimeoutError))


def _write_metadata(conn: Connection, job_metadata: JobMetadataEntity) -> None:
    result = conn.execute(
        update(job_metadata_table)
        .where(job_metadata_table.c.job_id == job_metadata.job_id)
        .values(
            status=job_metadata.status,
            processed_at=job_metadata.processed_at,
            failure=job_metadata.failure,
        )
    )
    if result.rowcount == 0:
        raise DatabaseError("None of the records are updated")


def _is_scheduled(conn: Connection, job_id: UUID) -> bool:
    row = conn.execute(
        select(job_metadata_table.c.job_id).where(
            job_metadata_table.c.job_id == job_id,
            job_metadata_table.c.status == JobMetadataStatus.SCHEDULED,
        )
    ).first()
    return row is not None


class _Repository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def _run(self, fn: Callable[..., _T], *args: Any) -> _T:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise DatabaseError(str(exc)) from exc


class JobRepository(_Repository, JobRepositoryPort):
    """Jobs stored in the ``job`` and ``job_metadata`` tables."""

    def _load(self, conn: Connection, *criteria: Any) -> list[JobEntity]:
        query = (
            select(job_table, job_metadata_table)
            .join(
                job_metadata_table,
                job_table.c.id == job_metadata_table.c.job_id,
                isouter=True,
            )
            .where(*criteria)
            .order_by(job_table.c.time.asc())
        )
        return [entity_from_rows(row, row) for row in conn.execute(query)]

    async def find_all(self) -> list[JobEntity]:
        return await self._run(self._find_all)

    def _find_all(self) -> list[JobEntity]:
        with self.engine.connect() as conn:
            return self._load(
                conn,
                job_table.c.time <= _utcnow(),
                job_metadata_table.c.status == JobMetadataStatus.SCHEDULED,
            )

    async def find_and_flag_processing(self) -> list[JobEntity]:
        return await self._run(self._find_and_flag_processing)

    def _find_and_flag_processing(self) -> list[JobEntity]:
        claim = (
            select(job_table.c.id)
            .join(job_metadata_table, job_table.c.id == job_metadata_table.c.job_id)
            .where(
                job_metadata_table.c.status == JobMetadataStatus.SCHEDULED,
                job_table.c.time <= _utcnow(),
                job_table.c.retries < CLAIM_MAX_RETRIES,
            )
            .order_by(job_table.c.time.asc())
            .limit(CLAIM_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        with self.engine.begin() as conn:
            job_ids = list(conn.execute(claim).scalars())
            if not job_ids:
                return []
            conn.execute(
                update(job_metadata_table)
                .where(job_metadata_table.c.job_id.in_(job_ids))
                .values(status=JobMetadataStatus.PROCESSING)
            )
            return self._load(conn, job_table.c.id.in_(job_ids))

    async def increment_retry(self, job_id: UUID) -> None:
        await self._run(self._increment_retry, job_id)

    def _increment_retry(self, job_id: UUID) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(job_table)
                .where(job_table.c.id == job_id)
                .values(retries=job_table.c.retries + 1)
            )

    async def update_time(self, job_id: UUID, time: datetime) -> None:
        await self._run(self._update_time, job_id, time)

    def _update_time(self, job_id: UUID, time: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(job_table).where(job_table.c.id == job_id).values(time=time))

    async def handle_retry_transaction(
        self, job_id: UUID, new_time: datetime, retry_metadata: JobMetadataEntity
    ) -> None:
        await self._run(self._handle_retry_transaction, job_id, new_time, retry_metadata)

    def _handle_retry_transaction(
        self, job_id: UUID, new_time: datetime, retry_metadata: JobMetadataEntity
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(job_table)
                .where(job_table.c.id == job_id)
                .values(retries=job_table.c.retries + 1, time=new_time)
            )
            _write_metadata(conn, retry_metadata)

    async def save(self, job_entity: JobEntity) -> None:
        await self._run(self._save, job_entity)

    def _save(self, job_entity: JobEntity) -> None:
        now = _utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                job_table.insert().values(
                    id=job_entity.id,
                    time=job_entity.time,
                    target=job_entity.target,
                    retries=job_entity.retries,
                    type=job_entity.type,
                    payload=job_entity.payload,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.execute(
                job_metadata_table.insert().values(
                    job_id=job_entity.id,
                    status=JobMetadataStatus.SCHEDULED,
                    processed_at=None,
                    failure=None,
                )
            )

    async def delete_unprocessed(self, job_id: UUID) -> bool:
        return await self._run(self._delete_unprocessed, job_id)

    def _delete_unprocessed(self, job_id: UUID) -> bool:
        with self.engine.begin() as conn:
            if not _is_scheduled(conn, job_id):
                return False
            conn.execute(delete(job_metadata_table).where(job_metadata_table.c.job_id == job_id))
            conn.execute(delete(job_table).where(job_table.c.id == job_id))
            return True

    async def update_time_unprocessed(self, job_id: UUID, time: datetime) -> bool:
        return await self._run(self._update_time_unprocessed, job_id, time)

    def _update_time_unprocessed(self, job_id: UUID, time: datetime) -> bool:
        with self.engine.begin() as conn:
            if not _is_scheduled(conn, job_id):
                return False
            conn.execute(
                update(job_table)
                .where(job_table.c.id == job_id)
                .values(time=time, updated_at=_utcnow())
            )
            return True


class JobMetadataRepository(_Repository, JobMetadataRepositoryPort):
    """Job metadata stored in the ``job_metadata`` table."""

    async def update_status(self, job_metadata: JobMetadataEntity) -> None:
        await self._run(self._update_status, job_metadata)

    def _update_status(self, job_metadata: JobMetadataEntity) -> None:
        with self.engine.begin() as conn:
            _write_metadata(conn, job_metadata)