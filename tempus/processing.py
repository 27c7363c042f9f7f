"""Processing of due jobs: delivery, completion and retries."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from tempus.config import AppConfig
from tempus.domain import (
    JobEntity,
    JobMetadataEntity,
    JobMetadataRepositoryPort,
    JobMetadataStatus,
    JobRepositoryPort,
    JobType,
    ProcessJobUseCasePort,
)
from tempus.errors import ConfigError, HttpError, JobProcessingError, TempusError, ValidationError
from tempus.kafka import KafkaProducer, publish_kafka_message

logger = logging.getLogger(__name__)

_default_client: httpx.AsyncClient | None = None


def should_retry(retries: int, max_retries: int) -> bool:
    """Tell whether a job with this many retries may be tried again."""
    return retries < max_retries


def backoff(time: datetime, retries: int, base_delay_minutes: int) -> datetime:
    """Return the time shifted by an exponentially growing delay."""
    return time + timedelta(minutes=base_delay_minutes * 2**retries)


def validate_url(url: str) -> None:
    """Raise ValidationError unless the URL is a non-empty http(s) URL."""
    if not url:
        raise ValidationError("URL cannot be empty")
    if not url.startswith(("http://", "https://")):
        raise ValidationError("URL must start with http:// or https://")


def create_http_client(config: AppConfig) -> httpx.AsyncClient:
    """Create the HTTP client used to deliver jobs."""
    return httpx.AsyncClient(
        timeout=config.http.request_timeout().total_seconds(),
        limits=httpx.Limits(keepalive_expiry=config.http.pool_idle_timeout().total_seconds()),
    )


def _shared_client() -> httpx.AsyncClient:
    global _default_client
    if _default_client is None:
        try:
            _default_client = create_http_client(AppConfig.load())
        except TempusError as exc:
            raise ConfigError(f"Failed to initialize HTTP client: {exc}") from exc
    return _default_client


async def perform_request(
    target: str, payload: Any, client: httpx.AsyncClient | None = None
) -> httpx.Response:
    """POST the payload as JSON to the target URL."""
    validate_url(target)
    client = client if client is not None else _shared_client()
    try:
        return await client.post(target, json=payload)
    except httpx.HTTPError as exc:
        raise HttpError(str(exc)) from exc


async def handle_success(
    metadata: JobMetadataEntity, job_metadata_repository: JobMetadataRepositoryPort
) -> None:
    """Mark a job as completed now."""
    await job_metadata_repository.update_status(
        JobMetadataEntity(
            job_id=metadata.job_id,
            status=JobMetadataStatus.COMPLETED,
            failure=metadata.failure,
            processed_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
    )


async def handle_failure(
    job: JobEntity,
    job_metadata: JobMetadataEntity,
    job_repository: JobRepositoryPort,
    job_metadata_repository: JobMetadataRepositoryPort,
    error_msg: str,
    config: AppConfig,
) -> None:
    """Reschedule a failed job with backoff, or mark it failed once retries are spent."""
    attempts = config.engine.retry_attempts
    if should_retry(job.retries, attempts):
        logger.info("Retrying job %s (attempt %d/%d)", job.id, job.retries + 1, attempts)
        new_time = backoff(job.time, job.retries + 1, config.engine.base_delay_minutes)
        await job_repository.handle_retry_transaction(
            job.id,
            new_time,
            JobMetadataEntity(job_id=job_metadata.job_id, status=JobMetadataStatus.SCHEDULED),
        )
    else:
        logger.warning(
            "Job %s failed permanently after %d attempts: %s", job.id, job.retries, error_msg
        )
        await job_metadata_repository.update_status(
            JobMetadataEntity(
                job_id=job_metadata.job_id,
                status=JobMetadataStatus.FAILED,
                failure=error_msg,
                processed_at=None,
            )
        )


class ProcessJobUseCase(ProcessJobUseCasePort):
    """Claims due jobs and delivers them concurrently."""

    def __init__(
        self,
        job_repository: JobRepositoryPort,
        job_metadata_repository: JobMetadataRepositoryPort,
        config: AppConfig,
        http_client: httpx.AsyncClient | None = None,
        kafka_producer: KafkaProducer | None = None,
    ) -> None:
        self.job_repository = job_repository
        self.job_metadata_repository = job_metadata_repository
        self.config = config
        self.http_client = http_client
        self.kafka_producer = kafka_producer

    async def execute(self) -> None:
        jobs = await self.job_repository.find_and_flag_processing()
        if not jobs:
            return
        logger.info("Processing %d jobs", len(jobs))
        semaphore = asyncio.Semaphore(self.config.engine.max_concurrent_jobs)
        results = await asyncio.gather(
            *(self._run(job, semaphore) for job in jobs), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Task join error: %s", result)

    async def _run(self, job: JobEntity, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await self._process(job)
            except TempusError as exc:
                logger.error("Error processing job %s: %r", job.id, exc)

    async def _deliver(self, job: JobEntity) -> None:
        if job.type is JobType.HTTP:
            await perform_request(job.target, job.payload, self.http_client)
        else:
            await publish_kafka_message(job.target, job.payload, self.config, self.kafka_producer)

    async def _process(self, job: JobEntity) -> None:
        if job.metadata is None:
            logger.warning("Metadata is missing for jobId: %s", job.id)
            raise JobProcessingError("Missing job metadata")
        label = "Kafka job" if job.type is JobType.KAFKA else "Job"
        try:
            await self._deliver(job)
        except TempusError as exc:
            logger.error("%s %s failed: %s", label, job.id, exc)
            await handle_failure(
                job,
                job.metadata,
                self.job_repository,
                self.job_metadata_repository,
                str(exc),
                self.config,
            )
        else:
            logger.info("%s %s completed successfully", label, job.id)
            await handle_success(job.metadata, self.job_metadata_repository)