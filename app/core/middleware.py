import logging
import time
import uuid
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

REQUEST_ID_HEADER = "x-request-id"
_HIDDEN_RESPONSE_HEADERS = ("server", "x-powered-by")


def _resolve_request_id(scope: Scope) -> str:
  """Reuse the caller's request id when it sent one."""
  supplied = Headers(scope=scope).get(REQUEST_ID_HEADER, "").strip()
  return supplied[:128] or uuid.uuid4().hex


class RequestLoggingMiddleware:
  """Tag each HTTP exchange with a request id and log its outcome and latency."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = _resolve_request_id(scope)
    # Exception handlers read it back from request.state.
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "?")
    path = scope.get("path", "")
    started = time.perf_counter()
    outcome: dict[str, int] = {}

    async def tag_response(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        outcome["status"] = message["status"]
        headers = MutableHeaders(scope=message)
        headers.setdefault(REQUEST_ID_HEADER, request_id)
      await send(message)

    await self.app(scope, receive, tag_response)

    elapsed_ms = (time.perf_counter() - started) * 1000
    status_code = outcome.get("status", 0)
    level = logging.WARNING if status_code >= 500 else logging.INFO
    logger.log(level, "%s %s -> %s in %.1fms request_id=%s", method, path, status_code, elapsed_ms, request_id)


class SecurityHeadersMiddleware:
  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def strip_server_headers(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for name in _HIDDEN_RESPONSE_HEADERS:
          if name in headers:
            del headers[name]
      await send(message)

    await self.app(scope, receive, strip_server_headers)
