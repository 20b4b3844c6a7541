"""
HTTP helpers.

This module centralizes the minimal HTTP client logic used by the dataset and place-search clients.

Design goals:
- Small surface area (GET JSON, async GET JSON, async conditional GET).
- Deterministic defaults (bounded timeouts + User-Agent).
- `get_json`/`aget_json` raise on non-2xx so callers can decide how to fail;
  `get_conditional` returns the status instead because 304 is a normal outcome there.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


DEFAULT_USER_AGENT = "routeguard/0.1.0 (+https://local)"


@dataclass(frozen=True)
class ConditionalResponse:
    """Outcome of a conditional GET (the body is empty for 304)."""

    status_code: int
    etag: str | None
    text: str


def _timeout(timeout_seconds: float, total_timeout_seconds: float | None) -> httpx.Timeout:
    # httpx has no whole-request deadline; the pool/read caps bound the slow-body case.
    total = total_timeout_seconds if total_timeout_seconds is not None else timeout_seconds
    return httpx.Timeout(timeout_seconds, connect=timeout_seconds, read=total, pool=total)


def _headers(headers: dict[str, str] | None) -> dict[str, str]:
    request_headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
    if headers:
        request_headers.update(headers)
    return request_headers


def get_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """GET `url` and return the decoded JSON response.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    with httpx.Client(timeout=timeout_seconds) as client:
        resp = client.get(url, params=params, headers=_headers(headers))
        resp.raise_for_status()
        return resp.json()


async def aget_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 10,
    total_timeout_seconds: float | None = None,
) -> Any:
    """Async variant of `get_json` used from the event loop.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    async with httpx.AsyncClient(timeout=_timeout(timeout_seconds, total_timeout_seconds)) as client:
        resp = await client.get(url, params=params, headers=_headers(headers))
        resp.raise_for_status()
        return resp.json()


async def get_conditional(
    url: str,
    *,
    etag: str | None = None,
    timeout_seconds: float = 10,
    total_timeout_seconds: float | None = None,
) -> ConditionalResponse:
    """GET `url` with `If-None-Match: <etag>` when an ETag is known.

    Raises:
        httpx.TransportError: On connect/read failures and timeouts.
    """
    extra = {"If-None-Match": etag} if etag else None
    async with httpx.AsyncClient(timeout=_timeout(timeout_seconds, total_timeout_seconds)) as client:
        resp = await client.get(url, headers=_headers(extra))
        return ConditionalResponse(
            status_code=resp.status_code,
            etag=resp.headers.get("ETag"),
            text=resp.text if resp.status_code != 304 else "",
        )
