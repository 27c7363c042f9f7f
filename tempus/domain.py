"""Job entities, their enumerations and the ports the use cases depend on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID


class JobType(StrEnum):
    """How a job is delivered."""

    HTTP = "http"
    KAFKA = "kafka"


class JobMetadataStatus(StrEnum):
    """Lifecycle state of a job."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DELETED = "deleted"
    FAILED = "failed"


@dataclass
class JobMetadataEntity:
    """Processing state attached to a job."""

    job_id: UUID
    status: JobMetadataStatus
    failure: str | None = None
    processed_at: datetime | None = None


@dataclass
class JobEntity:
    """A scheduled job with its optional processing state."""

    id: UUID
    time: datetime
    target: str
    retries: int
    type: JobType
    payload: Any
    metadata: JobMetadataEntity | None = None


class JobRepositoryPort(ABC):
    """Storage operations on jobs."""

    @abstractmethod
    async def find_all(self) -> list[JobEntity]:
        """Return scheduled jobs that are due."""

    @abstractmethod
    async def find_and_flag_processing(self) -> list[JobEntity]:
        """Claim due jobs, mark them as processing and return them."""

    @abstractmethod
    async def increment_retry(self, job_id: UUID) -> None:
        """Add one to a job's retry count."""

    @abstractmethod
    async def update_time(self, job_id: UUID, time: datetime) -> None:
        """Move a job to a new time."""

    @abstractmethod
    async def handle_retry_transaction(
        self, job_id: UUID, new_time: datetime, retry_metadata: JobMetadataEntity
    ) -> None:
        """Reschedule a job for retry and reset its metadata atomically."""

    @abstractmethod
    async def save(self, job_entity: JobEntity) -> None:
        """Store a new job together with its scheduled metadata."""

    @abstractmethod
    async def delete_unprocessed(self, job_id: UUID) -> bool:
        """Delete a job that is still scheduled; return whether it was."""

    @abstractmethod
    async def update_time_unprocessed(self, job_id: UUID, time: datetime) -> bool:
        """Move a job that is still scheduled; return whether it was."""


class JobMetadataRepositoryPort(ABC):
    """Storage operations on job metadata."""

    @abstractmethod
    async def update_status(self, job_metadata: JobMetadataEntity) -> None:
        """Overwrite the stored metadata of a job."""


class ProcessJobUseCasePort(ABC):
    """A single pass of job processing."""

    @abstractmethod
    async def execute(self) -> None:
        """Process the jobs that are due."""