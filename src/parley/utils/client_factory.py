"""
HTTP client factory utilities.
Centralizes httpx.AsyncClient creation with consistent configuration.
"""

from __future__ import annotations

import httpx

from parley.core.constants import HTTP_CONNECT_TIMEOUT, get_settings
from parley.utils.http_logger import create_logging_client

DEFAULT_WRITE_TIMEOUT = 30.0  # Time to send request
DEFAULT_POOL_TIMEOUT = 30.0  # Time to acquire connection from pool


def create_http_client(
    enable_logging: bool | None = None,
    read_timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create HTTP client with proper timeouts for streaming.

    Args:
        enable_logging: Enable HTTP request/response logging (default: http_request_logging setting)
        read_timeout: Read timeout in seconds (default: http_read_timeout setting)

    Returns:
        Configured httpx.AsyncClient
    """
    settings = get_settings()
    if enable_logging is None:
        enable_logging = settings.http_request_logging
    effective_read_timeout = read_timeout if read_timeout is not None else settings.http_read_timeout
    timeout = httpx.Timeout(
        connect=HTTP_CONNECT_TIMEOUT,
        read=effective_read_timeout,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )

    if enable_logging:
        return create_logging_client(timeout=timeout)

    return httpx.AsyncClient(timeout=timeout)
