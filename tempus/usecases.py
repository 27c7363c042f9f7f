"""Use cases for creating, deleting and rescheduling jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from tempus.domain import JobEntity, JobRepositoryPort, JobType
from tempus.errors import ValidationError

logger = logging.getLogger(__name__)

_NOT_FOUND = "Job not found or already processed"


@dataclass
class CreateJobRequest:
    """What is needed to schedule a new job."""

    target: str
    time: datetime
    job_type: str
    payload: Any


@dataclass
class CreateJobResponse:
    """The outcome of scheduling a job."""

    id: UUID
    message: str


def _parse_job_type(job_type: str) -> JobType:
    match job_type.lower():
        case "kafka":
            return JobType.KAFKA
        case "http":
            return JobType.HTTP
        case _:
            raise ValidationError(f"Invalid job type: {job_type}. Supported types: http")


class CreateJobUseCase:
    """Schedule a new job."""

    def __init__(self, job_repository: JobRepositoryPort) -> None:
        self.job_repository = job_repository

    async def execute(self, request: CreateJobRequest) -> CreateJobResponse:
        job_type = _parse_job_type(request.job_type)
        job_id = uuid4()
        await self.job_repository.save(
            JobEntity(
                id=job_id,
                time=request.time,
                target=request.target,
                retries=0,
                type=job_type,
                payload=request.payload,
                metadata=None,
            )
        )
        logger.info("Job created successfully with ID: %s", job_id)
        return CreateJobResponse(id=job_id, message="Job created successfully")


class DeleteJobUseCase:
    """Delete a job that has not been processed yet."""

    def __init__(self, job_repository: JobRepositoryPort) -> None:
        self.job_repository = job_repository

    async def execute(self, job_id: UUID) -> None:
        if not await self.job_repository.delete_unprocessed(job_id):
            raise ValidationError(_NOT_FOUND)
        logger.info("Job deleted successfully with ID: %s", job_id)


class UpdateJobTimeUseCase:
    """Move a job that has not been processed yet to a new time."""

    def __init__(self, job_repository: JobRepositoryPort) -> None:
        self.job_repository = job_repository

    async def execute(self, job_id: UUID, new_time: datetime) -> None:
        if not await self.job_repository.update_time_unprocessed(job_id, new_time):
            raise ValidationError(_NOT_FOUND)
        logger.info("Job time updated successfully for ID: %s to: %s", job_id, new_time)