from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PipelineOptionsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    skip_enrichment: bool = False
    skip_annotation: bool = False
    force_reprocess: bool = False


class CreateJobRequest(BaseModel):
    scope: Literal["global", "partition", "entity"]
    scope_filter: str | None = None
    options: PipelineOptionsRequest = Field(default_factory=PipelineOptionsRequest)
    chunk_size: int | None = Field(default=None, ge=1, le=200)


class SequenceStartRequest(BaseModel):
    partition_id: str | None = None
    options: PipelineOptionsRequest = Field(default_factory=PipelineOptionsRequest)


class SequenceSkipRequest(BaseModel):
    options: PipelineOptionsRequest = Field(default_factory=PipelineOptionsRequest)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
