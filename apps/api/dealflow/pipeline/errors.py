from __future__ import annotations

from typing import Any

from fastapi import status


class PipelineError(Exception):
    """Base for errors the pipeline core raises and the HTTP boundary maps to a status code."""

    code = "pipeline_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class Unauthenticated(PipelineError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "authentication required") -> None:
        super().__init__(message)


class Forbidden(PipelineError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "forbidden") -> None:
        super().__init__(message)


class NotFound(PipelineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStage(PipelineError):
    code = "invalid_stage"
    status_code = status.HTTP_400_BAD_REQUEST


class NoStagesConfigured(PipelineError):
    code = "no_stages_configured"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "no active pipeline stages configured") -> None:
        super().__init__(message)


class DuplicateName(PipelineError):
    code = "duplicate_name"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidPermutation(PipelineError):
    code = "invalid_permutation"
    status_code = status.HTTP_400_BAD_REQUEST


class ConcurrentModification(PipelineError):
    code = "concurrent_modification"
    status_code = status.HTTP_409_CONFLICT


class StoreFailure(PipelineError):
    """Wraps any exception raised by the record store; never shown to callers verbatim."""

    code = "store_failure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        super().__init__(f"record store failure during {operation}")
        self.operation = operation
        self.cause = cause
