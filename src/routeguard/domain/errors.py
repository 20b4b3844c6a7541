"""
Error kinds raised across layers.

Propagation policy:
- `GeometryUndefined` and `DatasetUnavailable` are absorbed inside the engine
  (queries degrade to "no result" / an empty dataset).
- `RemoteFetchFailed` is retryable; it is logged and surfaced, while the
  already-loaded dataset keeps serving.
- `RouteProviderFailed` aborts only the route attempt that raised it.
"""

from __future__ import annotations


class GeometryUndefined(ValueError):
    """Polyline input is empty or too short for the requested query."""


class DatasetUnavailable(ValueError):
    """Local dataset file is missing or its payload is malformed."""


class RemoteFetchFailed(RuntimeError):
    """Dataset refresh failed (non-2xx/304 status, transport error, timeout, bad payload)."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"HTTP {self.status}: {self.message}"


class RouteProviderFailed(RuntimeError):
    """The routing collaborator could not produce a route."""
