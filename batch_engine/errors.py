from __future__ import annotations


class ApiError(Exception):
    """Caller-facing failure with a stable code and the HTTP status it maps to."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }


def job_not_found(job_id: str) -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message=f"job not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def invalid_transition(current_status: str, new_status: str) -> ApiError:
    return ApiError(
        code="JOB_STATE_TRANSITION_INVALID",
        message=f"invalid transition: {current_status} -> {new_status}",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )
