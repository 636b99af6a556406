"""Domain errors raised by the enhancement job pipeline."""

from __future__ import annotations

from typing import Any


class EnhancementError(Exception):
  """Base class for enhancement pipeline failures."""

  code = "ENHANCEMENT_ERROR"

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message

  def details(self) -> dict[str, Any]:
    """Return client-safe structured context for the error response."""
    return {}


class EnhancementValidationError(EnhancementError):
  """Submission or callback payload failed validation; nothing was persisted."""

  code = "VALIDATION_ERROR"

  def __init__(self, message: str, *, field: str | None = None) -> None:
    super().__init__(message)
    self.field = field

  def details(self) -> dict[str, Any]:
    if self.field is None:
      return {}
    return {"field": self.field}


class InsufficientCreditsError(EnhancementError):
  """The account balance cannot cover the requested reservation."""

  code = "INSUFFICIENT_CREDITS"

  def __init__(self, *, required: int, available: int) -> None:
    super().__init__(f"Insufficient credits: {required} required, {available} available.")
    self.required = required
    self.available = available

  def details(self) -> dict[str, Any]:
    return {"required": self.required, "available": self.available}


class SignatureInvalidError(EnhancementError):
  """Webhook signature did not match, was malformed, or was replayed."""

  code = "SIGNATURE_INVALID"


class SignatureExpiredError(EnhancementError):
  """Webhook timestamp fell outside the accepted window."""

  code = "SIGNATURE_EXPIRED"


class ProviderDispatchError(EnhancementError):
  """The render provider could not be reached or rejected the dispatch."""

  code = "PROVIDER_DISPATCH_FAILED"

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class DuplicateCallbackError(EnhancementError):
  """A transition was requested that the job's current state does not allow."""

  code = "DUPLICATE_CALLBACK"

  def __init__(self, *, job_id: str, current_status: str, requested: str) -> None:
    super().__init__(f"Job {job_id} is {current_status}; ignoring {requested}.")
    self.job_id = job_id
    self.current_status = current_status
    self.requested = requested


class JobNotFoundError(EnhancementError):
  """No job with the given id is visible to the caller."""

  code = "JOB_NOT_FOUND"

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job {job_id} not found.")
    self.job_id = job_id


class JobNotCancelableError(EnhancementError):
  """The job already reached a terminal status."""

  code = "JOB_NOT_CANCELABLE"

  def __init__(self, *, job_id: str, status: str) -> None:
    super().__init__("Job already finished.")
    self.job_id = job_id
    self.status = status

  def details(self) -> dict[str, Any]:
    return {"status": self.status}


class UnknownProviderError(EnhancementError):
  """A render provider name outside the closed registry was requested."""

  code = "UNKNOWN_PROVIDER"

  def __init__(self, name: str, *, known: list[str]) -> None:
    super().__init__(f"Unknown render provider '{name}'. Expected one of: {', '.join(known)}.")
    self.name = name
    self.known = known


class JobNotRetryableError(EnhancementError):
  """Only failed jobs can be resubmitted."""

  code = "JOB_NOT_RETRYABLE"

  def __init__(self, *, job_id: str, status: str) -> None:
    super().__init__(f"Job {job_id} is {status}; only failed jobs can be retried.")
    self.job_id = job_id
    self.status = status

  def details(self) -> dict[str, Any]:
    return {"status": self.status}
