import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.jobs.errors import (
  EnhancementError,
  EnhancementValidationError,
  InsufficientCreditsError,
  JobNotCancelableError,
  JobNotFoundError,
  JobNotRetryableError,
  SignatureExpiredError,
  SignatureInvalidError,
)

logger = logging.getLogger("uvicorn.error")


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    message = str(value)
    return f"{type(value).__name__}: {message}" if message else type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None, code: str | None = None, extra: dict[str, Any] | None = None) -> dict[str, Any]:
  """Build a client-facing error body that never carries internals."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  if extra:
    payload.update(extra)
  # A request id lets support correlate client reports with server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


def _status_for(exc: EnhancementError) -> int:
  if isinstance(exc, EnhancementValidationError):
    return status.HTTP_400_BAD_REQUEST
  if isinstance(exc, InsufficientCreditsError):
    return status.HTTP_402_PAYMENT_REQUIRED
  if isinstance(exc, SignatureInvalidError | SignatureExpiredError):
    return status.HTTP_401_UNAUTHORIZED
  if isinstance(exc, JobNotFoundError):
    return status.HTTP_404_NOT_FOUND
  if isinstance(exc, JobNotCancelableError | JobNotRetryableError):
    return status.HTTP_409_CONFLICT
  return status.HTTP_500_INTERNAL_SERVER_ERROR


async def enhancement_exception_handler(request: Request, exc: EnhancementError) -> JSONResponse:
  """Map domain errors onto HTTP status codes."""
  request_id = _request_id(request)
  status_code = _status_for(exc)
  # Anything unmapped (provider dispatch, unknown provider) is an internal failure.
  if status_code >= 500:
    logger.error("Enhancement failure request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
    return JSONResponse(status_code=status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  logger.info("Enhancement request rejected request_id=%s path=%s status=%s code=%s", request_id, request.url.path, status_code, exc.code)
  return JSONResponse(status_code=status_code, content=_error_payload(exc.message, request_id=request_id, code=exc.code, extra=_coerce_json_safe(exc.details())))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions while keeping 5xx details out of responses."""
  from app.config import get_settings

  settings = get_settings()
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if settings.log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))
