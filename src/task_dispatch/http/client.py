"""Shared httpx client construction for remote collaborators."""

from __future__ import annotations

import httpx

from task_dispatch import __version__

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = f"task-dispatch/{__version__}"


def build_client(
    *,
    base_url: str,
    timeout_seconds: float,
    headers: dict[str, str] | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Build a client with bounded timeouts and connection retries.

    ``transport`` replaces the retrying transport, which is how tests plug in
    ``httpx.MockTransport``.
    """

    base_headers = {"User-Agent": DEFAULT_USER_AGENT}
    if headers:
        base_headers.update(headers)
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        timeout=httpx.Timeout(
            timeout_seconds,
            connect=min(DEFAULT_CONNECT_TIMEOUT_SECONDS, timeout_seconds),
        ),
        headers=base_headers,
        transport=transport or httpx.HTTPTransport(retries=max_retries),
    )


def describe_http_error(error: httpx.HTTPError) -> str:
    """Short one-line description of a transport or status error."""

    if isinstance(error, httpx.HTTPStatusError):
        body = error.response.text.strip().replace("\n", " ")
        if len(body) > 300:
            body = body[:300] + "…"
        if not body:
            return f"HTTP {error.response.status_code}"
        return f"HTTP {error.response.status_code}: {body}"
    if isinstance(error, httpx.TimeoutException):
        return f"timeout: {error}"
    return str(error) or error.__class__.__name__
