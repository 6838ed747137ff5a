from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from batch_engine.catalog import InMemoryItemCatalog
from batch_engine.errors import ApiError
from batch_engine.models import PipelineOptions
from batch_engine.processors import StagedItemProcessor
from batch_engine.schemas import (
    CreateJobRequest,
    PipelineOptionsRequest,
    SequenceSkipRequest,
    SequenceStartRequest,
    error_envelope,
    success_envelope,
)
from batch_engine.service import BatchJobService, create_service_from_env

logger = logging.getLogger(__name__)


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def _options(payload: PipelineOptionsRequest) -> PipelineOptions:
    return PipelineOptions.from_dict(payload.model_dump())


def _default_service() -> BatchJobService:
    catalog = InMemoryItemCatalog()
    return create_service_from_env(
        provider=catalog,
        processor=StagedItemProcessor(catalog=catalog),
        activity_source=catalog,
    )


def create_app(service: BatchJobService | None = None) -> FastAPI:
    app = FastAPI(title="Catalog Batch Engine API", version="0.1.0")
    engine = service or _default_service()
    app.state.engine = engine

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = _trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @app.post("/api/v1/jobs", status_code=201)
    def create_job(payload: CreateJobRequest, request: Request):
        job = engine.create_and_start(
            scope=payload.scope,
            scope_filter=payload.scope_filter,
            options=_options(payload.options),
            chunk_size=payload.chunk_size,
        )
        return success_envelope(job.as_dict(), _trace_id_from_request(request), message="job started")

    @app.get("/api/v1/jobs")
    def list_jobs(
        request: Request,
        status: str | None = Query(default=None),
        scope: str | None = Query(default=None),
        cursor: str | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=100),
    ):
        result = engine.list_jobs(status=status, scope=scope, cursor=cursor, limit=limit)
        return success_envelope(
            {
                "items": [j.as_dict() for j in result["items"]],
                "total": result["total"],
                "next_cursor": result["next_cursor"],
            },
            _trace_id_from_request(request),
        )

    @app.get("/api/v1/jobs/{job_id}")
    def get_job(job_id: str, request: Request):
        return success_envelope(engine.get_status(job_id).as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/jobs/{job_id}/continue")
    def continue_job(job_id: str, request: Request, force_lock: bool = Query(default=False)):
        result = engine.continue_job(job_id, force_lock=force_lock)
        return success_envelope(result.as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/jobs/{job_id}/pause")
    def pause_job(job_id: str, request: Request):
        return success_envelope(engine.pause(job_id).as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/jobs/{job_id}/resume")
    def resume_job(job_id: str, request: Request):
        return success_envelope(engine.resume(job_id).as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/jobs/{job_id}/cancel")
    def cancel_job(job_id: str, request: Request):
        return success_envelope(engine.cancel(job_id).as_dict(), _trace_id_from_request(request))

    @app.get("/api/v1/jobs/{job_id}/live-metrics")
    def live_metrics(job_id: str, request: Request):
        return success_envelope(engine.get_live_metrics(job_id).as_dict(), _trace_id_from_request(request))

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------

    @app.get("/api/v1/sequence")
    def sequence_status(request: Request):
        return success_envelope(engine.seq_status().as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/sequence/start")
    def sequence_start(request: Request, payload: SequenceStartRequest | None = None):
        payload = payload or SequenceStartRequest()
        data = engine.seq_start(partition_id=payload.partition_id, options=_options(payload.options))
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/sequence/skip")
    def sequence_skip(request: Request, payload: SequenceSkipRequest | None = None):
        payload = payload or SequenceSkipRequest()
        return success_envelope(engine.seq_skip(options=_options(payload.options)), _trace_id_from_request(request))

    @app.post("/api/v1/sequence/stop")
    def sequence_stop(request: Request):
        return success_envelope(engine.seq_stop(), _trace_id_from_request(request))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @app.post("/api/v1/maintenance/cleanup")
    def cleanup(request: Request):
        data = engine.cleanup()
        if data["reaped"]:
            logger.info("maintenance_cleanup reaped=%s", data["reaped"])
        return success_envelope(data, _trace_id_from_request(request))

    return app
