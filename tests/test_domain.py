import asyncio
import dataclasses
import uuid
from datetime import datetime

import pytest

from tempus.domain import (
    JobEntity,
    JobMetadataEntity,
    JobMetadataRepositoryPort,
    JobMetadataStatus,
    JobRepositoryPort,
    JobType,
    ProcessJobUseCasePort,
)


def test_job_type_values():
    assert [t.value for t in JobType] == ["http", "kafka"]
    assert JobType("kafka") is JobType.KAFKA


def test_status_values_in_order():
    values = ["scheduled", "processing", "completed", "deleted", "failed"]
    assert [JobMetadataStatus(v) for v in values] == list(JobMetadataStatus)
    assert JobMetadataStatus("failed") is JobMetadataStatus.FAILED


def test_unknown_job_type_rejected():
    with pytest.raises(ValueError):
        JobType("ftp")


def test_metadata_defaults():
    job_id = uuid.uuid4()
    meta = JobMetadataEntity(job_id=job_id, status=JobMetadataStatus.SCHEDULED)
    assert meta.failure is None
    assert meta.processed_at is None
    assert meta.job_id == job_id


def test_job_entity_copy_and_equality():
    job = JobEntity(
        id=uuid.uuid4(),
        time=datetime(2024, 1, 1, 12, 0),
        target="https://example.com",
        retries=0,
        type=JobType.HTTP,
        payload={"a": 1},
    )
    assert job.metadata is None
    copy = dataclasses.replace(job, retries=1)
    assert copy.retries == 1
    assert copy.id == job.id
    assert copy != job
    assert dataclasses.replace(job) == job


def test_repository_port_abstract_methods():
    assert JobRepositoryPort.__abstractmethods__ == frozenset(
        {
            "find_all",
            "find_and_flag_processing",
            "increment_retry",
            "update_time",
            "handle_retry_transaction",
            "save",
            "delete_unprocessed",
            "update_time_unprocessed",
        }
    )
    with pytest.raises(TypeError, match="find_and_flag_processing"):
        JobRepositoryPort()


def test_other_ports_abstract_methods():
    assert JobMetadataRepositoryPort.__abstractmethods__ == frozenset({"update_status"})
    assert ProcessJobUseCasePort.__abstractmethods__ == frozenset({"execute"})
    with pytest.raises(TypeError, match="update_status"):
        JobMetadataRepositoryPort()
    with pytest.raises(TypeError, match="execute"):
        ProcessJobUseCasePort()


class _PartialRepository(JobRepositoryPort):
    def __init__(self) -> None:
        self.saved: list[JobEntity] = []

    async def find_all(self):
        return list(self.saved)

    async def find_and_flag_processing(self):
        return []

    async def increment_retry(self, job_id):
        return None

    async def update_time(self, job_id, time):
        return None

    async def handle_retry_transaction(self, job_id, new_time, retry_metadata):
        return None

    async def delete_unprocessed(self, job_id):
        return False

    async def update_time_unprocessed(self, job_id, time):
        return False


class _CompleteRepository(_PartialRepository):
    async def save(self, job_entity):
        self.saved.append(job_entity)


def test_partial_implementation_cannot_be_instantiated():
    with pytest.raises(TypeError, match="save"):
        _PartialRepository()

    repo = _CompleteRepository()
    job = JobEntity(
        id=uuid.uuid4(),
        time=datetime(2024, 1, 1, 12, 0),
        target="events",
        retries=0,
        type=JobType("kafka"),
        payload=None,
    )
    asyncio.run(repo.save(job))
    assert asyncio.run(repo.find_all()) == [job]