"""HTTP API for scheduling, rescheduling and deleting jobs."""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import uvicorn
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tempus.config import AppConfig
from tempus.domain import JobRepositoryPort
from tempus.errors import DatabaseError, EnvError, IoError, TempusError, ValidationError
from tempus.repository import JobRepository, connect_with_retry
from tempus.usecases import CreateJobRequest as DomainCreateJobRequest
from tempus.usecases import CreateJobUseCase, DeleteJobUseCase, UpdateJobTimeUseCase

logger = logging.getLogger(__name__)


class ApiError(BaseModel):
    """Error body returned by the API."""

    error: str
    message: str

    @classmethod
    def validation_error(cls, message: str) -> "ApiError":
        return cls(error="validation_failed", message=message)

    @classmethod
    def bad_request(cls, message: str) -> "ApiError":
        return cls(error="bad_request", message=message)

    @classmethod
    def not_found(cls, message: str) -> "ApiError":
        return cls(error="not_found", message=message)

    @classmethod
    def internal_error(cls, message: str) -> "ApiError":
        return cls(error="internal_error", message=message)


class ApiException(Exception):
    """A failed request, carrying its status code and error body."""

    def __init__(self, status_code: int, error: ApiError) -> None:
        super().__init__(error.message)
        self.status_code = status_code
        self.error = error


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CreateJobRequest(BaseModel):
    """Body of a request to schedule a job."""

    model_config = ConfigDict(populate_by_name=True)

    target: str
    time: datetime
    job_type: str = Field(alias="type")
    payload: Any

    @field_validator("time")
    @classmethod
    def _normalise_time(cls, value: datetime) -> datetime:
        return _naive_utc(value)


class CreateJobResponse(BaseModel):
    """Body returned after a job was scheduled."""

    id: UUID
    message: str


class UpdateJobTimeRequest(BaseModel):
    """Body of a request to move a job to a new time."""

    time: datetime

    @field_validator("time")
    @classmethod
    def _normalise_time(cls, value: datetime) -> datetime:
        return _naive_utc(value)


def _validation_errors(payload: CreateJobRequest) -> list[str]:
    problems = []
    if len(payload.target) < 1:
        problems.append("target: length must be at least 1")
    return problems


async def health_check() -> str:
    """Report that the service is up."""
    return "OK"


async def create_job(
    payload: CreateJobRequest, job_repository: JobRepositoryPort
) -> CreateJobResponse:
    """Schedule a job; raise ApiException on failure."""
    problems = _validation_errors(payload)
    if problems:
        logger.error("Validation failed: %s", problems)
        raise ApiException(
            400, ApiError.validation_error(f"Validation errors: {'; '.join(problems)}")
        )

    request = DomainCreateJobRequest(
        target=payload.target,
        time=payload.time,
        job_type=payload.job_type,
        payload=payload.payload,
    )
    try:
        result = await CreateJobUseCase(job_repository).execute(request)
    except ValidationError as exc:
        logger.error("Validation error: %s", exc.detail)
        raise ApiException(400, ApiError.bad_request(str(exc.detail))) from exc
    except DatabaseError as exc:
        logger.error("Database error: %r", exc)
        raise ApiException(500, ApiError.internal_error("Failed to create job")) from exc
    except TempusError as exc:
        logger.error("Unexpected error: %r", exc)
        raise ApiException(500, ApiError.internal_error("Failed to create job")) from exc
    return CreateJobResponse(id=result.id, message=result.message)


async def delete_job(job_id: UUID, job_repository: JobRepositoryPort) -> None:
    """Delete a job that is still scheduled; raise ApiException on failure."""
    try:
        await DeleteJobUseCase(job_repository).execute(job_id)
    except ValidationError as exc:
        logger.error("Validation error: %s", exc.detail)
        raise ApiException(404, ApiError.not_found(str(exc.detail))) from exc
    except DatabaseError as exc:
        logger.error("Database error while deleting job %s: %r", job_id, exc)
        raise ApiException(500, ApiError.internal_error("Failed to delete job")) from exc
    except TempusError as exc:
        logger.error("Unexpected error while deleting job %s: %r", job_id, exc)
        raise ApiException(500, ApiError.internal_error("Failed to delete job")) from exc


async def update_job_time(
    job_id: UUID, payload: UpdateJobTimeRequest, job_repository: JobRepositoryPort
) -> None:
    """Move a job that is still scheduled; raise ApiException on failure."""
    try:
        await UpdateJobTimeUseCase(job_repository).execute(job_id, payload.time)
    except ValidationError as exc:
        logger.error("Validation error: %s", exc.detail)
        raise ApiException(404, ApiError.not_found(str(exc.detail))) from exc
    except DatabaseError as exc:
        logger.error("Database error while updating job %s: %r", job_id, exc)
        raise ApiException(500, ApiError.internal_error("Failed to update job")) from exc
    except TempusError as exc:
        logger.error("Unexpected error while updating job %s: %r", job_id, exc)
        raise ApiException(500, ApiError.internal_error("Failed to update job")) from exc


def _parse_job_id(raw: str) -> UUID:
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(
            status_code=400, detail=f"Invalid URL: {raw!r} is not a valid UUID"
        ) from None


async def _api_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ApiException)
    return JSONResponse(status_code=exc.status_code, content=exc.error.model_dump())


def create_app(job_repository: JobRepositoryPort) -> FastAPI:
    """Build the web application serving the health and job routes."""
    app = FastAPI(title="Tempus API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )
    app.add_exception_handler(ApiException, _api_exception_handler)

    @app.get("/health", response_class=PlainTextResponse)
    async def _health() -> str:
        return await health_check()

    @app.post("/jobs", response_model=CreateJobResponse)
    async def _create(payload: CreateJobRequest) -> CreateJobResponse:
        return await create_job(payload, job_repository)

    @app.delete("/jobs/{job_id}", status_code=204)
    async def _delete(job_id: str) -> Response:
        await delete_job(_parse_job_id(job_id), job_repository)
        return Response(status_code=204)

    @app.patch("/jobs/{job_id}/time", status_code=204)
    async def _update(job_id: str, payload: UpdateJobTimeRequest) -> Response:
        await update_job_time(_parse_job_id(job_id), payload, job_repository)
        return Response(status_code=204)

    return app


def main(argv: Sequence[str] | None = None) -> int:
    """Start the API server."""
    argparse.ArgumentParser(prog="tempus-api", description="Serve the job API.").parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        path = find_dotenv(usecwd=True)
        if not path:
            raise EnvError(".env file not found")
        load_dotenv(path)
        logger.info("tempus api")
        logger.info("Starting Tempus API Server")
        config = AppConfig.load()
        engine = asyncio.run(connect_with_retry(config))
    except TempusError as exc:
        print(exc, file=sys.stderr)
        return 1

    app = create_app(JobRepository(engine))
    logger.info("Tempus API listening on 0.0.0.0:%d", config.http.port)
    try:
        uvicorn.run(app, host="0.0.0.0", port=config.http.port)
    except OSError as exc:
        print(IoError(exc), file=sys.stderr)
        return 1
    finally:
        engine.dispose()
    return 0