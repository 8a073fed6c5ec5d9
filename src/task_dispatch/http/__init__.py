"""HTTP helpers shared by the store and runner clients."""

from task_dispatch.http.client import build_client, describe_http_error

__all__ = ["build_client", "describe_http_error"]
