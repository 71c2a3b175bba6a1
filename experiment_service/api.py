"""FastAPI application exposing the experiment service."""

import argparse
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .docker_runtime import DockerRuntime
from .manager import ExperimentManager
from .models import ExperimentRecord, LaunchResult, OutcomeStatus, StopResult
from .settings import API_HOST, API_PORT, LOG_LEVEL, configure_logging


# Request/Response models
class TrafficStartRequest(BaseModel):
    target_url: str = Field(..., min_length=1, max_length=2048)
    rps: int = Field(..., ge=1, le=100000)
    duration_seconds: int = Field(..., ge=1, le=86400)
    max_vus: Optional[int] = Field(default=None, ge=1, le=10000)

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("target_url must be an http(s) URL")
        return value


class NetworkDelayRequest(BaseModel):
    container_name: str = Field(..., min_length=1, max_length=255)
    delay_ms: int = Field(..., ge=0, le=60000)
    jitter_ms: int = Field(default=0, ge=0, le=60000)
    duration_seconds: int = Field(..., ge=1, le=86400)


class TrafficResponse(BaseModel):
    job_id: str
    status: str
    message: str
    error_kind: Optional[str] = None


class FailureResponse(BaseModel):
    failure_id: str
    status: str
    message: str
    error_kind: Optional[str] = None


class ExperimentResponse(BaseModel):
    id: str
    kind: str
    target: dict
    status: str
    container_id: Optional[str] = None
    started_at: str
    expires_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class ActiveFailuresResponse(BaseModel):
    failures: List[ExperimentResponse]


def _record_response(record: ExperimentRecord) -> ExperimentResponse:
    return ExperimentResponse(**record.to_dict())


def _outcome_code(result: Union[LaunchResult, StopResult]) -> int:
    if result.status is OutcomeStatus.FAILED:
        return 500
    if result.status is OutcomeStatus.NOT_FOUND:
        return 404
    if result.status is OutcomeStatus.ERROR:
        return 502
    return 200


def _traffic_response(result: Union[LaunchResult, StopResult]) -> JSONResponse:
    body = TrafficResponse(
        job_id=result.experiment_id,
        status=result.status.value,
        message=result.message,
        error_kind=result.error_kind.value if result.error_kind else None,
    )
    return JSONResponse(status_code=_outcome_code(result), content=body.model_dump())


def _failure_response(result: Union[LaunchResult, StopResult]) -> JSONResponse:
    body = FailureResponse(
        failure_id=result.experiment_id,
        status=result.status.value,
        message=result.message,
        error_kind=result.error_kind.value if result.error_kind else None,
    )
    return JSONResponse(status_code=_outcome_code(result), content=body.model_dump())


def get_manager(request: Request) -> ExperimentManager:
    return request.app.state.manager


def create_app(manager: Optional[ExperimentManager] = None) -> FastAPI:
    """Build the API; without a manager, one backed by the Docker daemon is created."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.manager = manager or ExperimentManager(DockerRuntime())
        yield
        await app.state.manager.shutdown()

    app = FastAPI(
        title="Distributed System Platform API",
        description="API for managing distributed system experiments: traffic generation and failure simulation",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.post("/api/traffic/start", response_model=TrafficResponse)
    async def start_traffic(request: TrafficStartRequest, manager: ExperimentManager = Depends(get_manager)):
        """Start traffic generation with the given RPS and duration."""
        result: LaunchResult = await manager.start_traffic(
            target_url=request.target_url,
            rps=request.rps,
            duration_seconds=request.duration_seconds,
            max_vus=request.max_vus,
        )
        return _traffic_response(result)

    @app.post("/api/traffic/stop/{job_id}", response_model=TrafficResponse)
    async def stop_traffic(job_id: str, manager: ExperimentManager = Depends(get_manager)):
        """Stop a running traffic generation job."""
        result: StopResult = await manager.stop_traffic(job_id)
        return _traffic_response(result)

    @app.get("/api/traffic/jobs", response_model=List[ExperimentResponse])
    async def list_traffic_jobs(
        status: Optional[str] = Query(None, description="Filter by status"),
        manager: ExperimentManager = Depends(get_manager),
    ):
        """List all traffic generation jobs, most recent first."""
        jobs = manager.list_traffic_jobs()
        if status:
            jobs = [job for job in jobs if job.status.value == status]
        return [_record_response(job) for job in jobs]

    @app.get("/api/traffic/jobs/{job_id}", response_model=ExperimentResponse)
    async def get_traffic_job(job_id: str, manager: ExperimentManager = Depends(get_manager)):
        job = manager.get_traffic_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return _record_response(job)

    @app.post("/api/failures/network/delay", response_model=FailureResponse)
    async def apply_network_delay(request: NetworkDelayRequest, manager: ExperimentManager = Depends(get_manager)):
        """Apply network delay to a container."""
        result = await manager.apply_network_delay(
            container_name=request.container_name,
            delay_ms=request.delay_ms,
            duration_seconds=request.duration_seconds,
            jitter_ms=request.jitter_ms,
        )
        return _failure_response(result)

    @app.post("/api/failures/stop/{failure_id}", response_model=FailureResponse)
    async def stop_failure(failure_id: str, manager: ExperimentManager = Depends(get_manager)):
        """Stop a failure simulation."""
        result = await manager.stop_failure(failure_id)
        return _failure_response(result)

    @app.get("/api/failures/active", response_model=ActiveFailuresResponse)
    async def list_active_failures(
        status: Optional[str] = Query(None, description="Filter by status"),
        manager: ExperimentManager = Depends(get_manager),
    ):
        failures = manager.list_active_failures()
        if status:
            failures = [failure for failure in failures if failure.status.value == status]
        return ActiveFailuresResponse(failures=[_record_response(failure) for failure in failures])

    @app.get("/api/failures/containers", response_model=List[str])
    async def list_available_containers(manager: ExperimentManager = Depends(get_manager)):
        """Containers that can be targeted by failure injection."""
        return await manager.list_available_containers()

    @app.get("/health")
    async def health_check(manager: ExperimentManager = Depends(get_manager)):
        return {
            "status": "healthy",
            "active_experiments": manager.count_active(),
            "monitors": len(manager.supervisor.in_flight()),
        }

    return app


app = create_app()


def main():
    """Main entry point for the API server."""
    parser = argparse.ArgumentParser(description="Run the experiment service API")
    parser.add_argument("--host", default=API_HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=API_PORT, help="Port to listen on")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Log level for loguru and uvicorn")
    args = parser.parse_args()

    configure_logging(args.log_level)

    import uvicorn
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":  # pragma: no cover
    main()
