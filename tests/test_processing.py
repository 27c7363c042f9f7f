import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
import pytest

from tempus.config import AppConfig
from tempus.domain import (
    JobEntity,
    JobMetadataEntity,
    JobMetadataRepositoryPort,
    JobMetadataStatus,
    JobRepositoryPort,
    JobType,
)
from tempus.errors import HttpError, KafkaError, ValidationError
from tempus.processing import (
    ProcessJobUseCase,
    backoff,
    handle_failure,
    handle_success,
    perform_request,
    should_retry,
    validate_url,
)

CONFIG = AppConfig.load({"DATABASE_URL": "sqlite://"})


class FakeJobs(JobRepositoryPort):
    def __init__(self, jobs):
        self.jobs = jobs
        self.retries = []

    async def find_all(self):
        return []

    async def find_and_flag_processing(self):
        jobs, self.jobs = self.jobs, []
        return jobs

    async def increment_retry(self, job_id):
        pass

    async def update_time(self, job_id, time):
        pass

    async def handle_retry_transaction(self, job_id, new_time, retry_metadata):
        self.retries.append((job_id, new_time, retry_metadata))

    async def save(self, job_entity):
        pass

    async def delete_unprocessed(self, job_id):
        return False

    async def update_time_unprocessed(self, job_id, time):
        return False


class FakeMeta(JobMetadataRepositoryPort):
    def __init__(self):
        self.updates = []

    async def update_status(self, job_metadata):
        self.updates.append(job_metadata)


class FakeProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, topic, value, timestamp_ms=None):
        if self.fail:
            raise KafkaError("down")
        self.sent.append(topic)
        return 0, 0


def _job(target, job_type=JobType.HTTP, retries=0, with_meta=True):
    job_id = uuid4()
    meta = JobMetadataEntity(job_id, JobMetadataStatus.PROCESSING) if with_meta else None
    return JobEntity(job_id, datetime(2024, 1, 1), target, retries, job_type, {"k": 1}, meta)


def _client(status=200):
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status)))


def test_should_retry():
    assert should_retry(0, 3)
    assert should_retry(2, 3)
    assert not should_retry(3, 3)
    assert not should_retry(5, 3)


def test_backoff_calculation():
    base = datetime.fromtimestamp(1000, timezone.utc).replace(tzinfo=None)
    assert backoff(base, 0, 2) == base + timedelta(minutes=2)
    assert backoff(base, 1, 2) == base + timedelta(minutes=4)
    assert backoff(base, 2, 2) == base + timedelta(minutes=8)


def test_validate_url():
    validate_url("https://example.com")
    validate_url("http://example.com")
    for bad in ["", "ftp://example.com", "invalid-url"]:
        with pytest.raises(ValidationError):
            validate_url(bad)


def test_perform_request_posts_json():
    seen = []

    def handler(request):
        seen.append((request.method, request.read()))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    response = asyncio.run(perform_request("http://example.com/h", {"a": 1}, client))
    assert response.status_code == 204
    assert seen[0][0] == "POST"
    assert b'"a"' in seen[0][1]


def test_perform_request_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(HttpError):
        asyncio.run(perform_request("http://example.com", {}, client))


def test_handle_success_marks_completed():
    meta = FakeMeta()
    asyncio.run(handle_success(JobMetadataEntity(uuid4(), JobMetadataStatus.PROCESSING), meta))
    assert meta.updates[0].status is JobMetadataStatus.COMPLETED
    assert meta.updates[0].processed_at is not None


def test_handle_failure_exhausted_marks_failed():
    jobs, meta = FakeJobs([]), FakeMeta()
    job = _job("http://example.com", retries=3)
    asyncio.run(handle_failure(job, job.metadata, jobs, meta, "boom", CONFIG))
    assert jobs.retries == []
    assert meta.updates[0].status is JobMetadataStatus.FAILED
    assert meta.updates[0].failure == "boom"


def test_execute_http_success():
    job = _job("http://example.com")
    jobs, meta = FakeJobs([job]), FakeMeta()
    asyncio.run(ProcessJobUseCase(jobs, meta, CONFIG, http_client=_client()).execute())
    assert [m.job_id for m in meta.updates] == [job.id]
    assert meta.updates[0].status is JobMetadataStatus.COMPLETED


def test_execute_invalid_url_retries_with_backoff():
    job = _job("ftp://example.com", retries=1)
    jobs, meta = FakeJobs([job]), FakeMeta()
    asyncio.run(ProcessJobUseCase(jobs, meta, CONFIG, http_client=_client()).execute())
    job_id, new_time, retry_meta = jobs.retries[0]
    assert job_id == job.id
    assert new_time == backoff(job.time, 2, 2)
    assert retry_meta.status is JobMetadataStatus.SCHEDULED
    assert meta.updates == []


def test_execute_missing_metadata_does_nothing():
    jobs, meta = FakeJobs([_job("http://example.com", with_meta=False)]), FakeMeta()
    asyncio.run(ProcessJobUseCase(jobs, meta, CONFIG, http_client=_client()).execute())
    assert meta.updates == [] and jobs.retries == []


def test_execute_kafka_jobs():
    ok, bad = _job("topic-a", JobType.KAFKA), _job("", JobType.KAFKA, retries=3)
    producer = FakeProducer()
    meta = FakeMeta()
    asyncio.run(ProcessJobUseCase(FakeJobs([ok]), meta, CONFIG, kafka_producer=producer).execute())
    assert producer.sent == ["topic-a"]
    assert meta.updates[0].status is JobMetadataStatus.COMPLETED

    meta2 = FakeMeta()
    usecase = ProcessJobUseCase(FakeJobs([bad]), meta2, CONFIG, kafka_producer=FakeProducer(True))
    asyncio.run(usecase.execute())
    assert meta2.updates[0].status is JobMetadataStatus.FAILED