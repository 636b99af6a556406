from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

CallbackSink = Callable[[str, bytes, Mapping[str, str]], Awaitable[Any]]


class RenderProvider(Protocol):
  """Interface for handing a signed job payload to a rendering backend."""

  name: str

  async def dispatch(self, payload: dict[str, Any]) -> None:
    """Deliver the payload or raise ProviderDispatchError."""
    ...

  async def aclose(self) -> None:
    """Release network clients and background work."""
    ...
