"""
Mapping of insight-core exceptions to HTTP responses.

Domain errors carry messages written for users and are returned as-is.
Anything else is logged server-side with a correlation ID and answered
with a generic message so internal details are never leaked.
"""

import logging
import uuid

from entities.shared.errors import (
    CompositionError,
    ExecutionError,
    FunnelNotFoundError,
    GenerationError,
    InsightError,
    InvalidStatusTransitionError,
    QuestionValidationError,
    SubQuestionNotFoundError,
)
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def status_code_for(error: InsightError) -> int:
    """HTTP status code for a domain error."""
    if isinstance(error, (FunnelNotFoundError, SubQuestionNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidStatusTransitionError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, (QuestionValidationError, CompositionError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, GenerationError):
        return 422 if error.recoverable else status.HTTP_502_BAD_GATEWAY
    if isinstance(error, ExecutionError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def insight_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer a domain error with its mapped status and message."""
    assert isinstance(exc, InsightError)
    code = status_code_for(exc)
    logger.warning("%s %s -> %d: %s", request.method, request.url.path, code, exc)
    content: dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, ExecutionError):
        content["error_type"] = exc.error_type
    return JSONResponse(status_code=code, content=content)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected error and answer with a correlation ID only."""
    correlation_id = uuid.uuid4().hex[:12]
    logger.error(
        "Unhandled error [%s] on %s %s: %s",
        correlation_id,
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "An internal error occurred. Please try again.",
            "correlation_id": correlation_id,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsightError, insight_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
