"""
Async HTTP Client Shared Infrastructure

Ensures a single httpx.AsyncClient is shared by the rule evaluator and the
webhook fan-out so ticks reuse connection pools instead of opening sockets
per call.
"""

import inspect
from typing import Optional
import httpx
import structlog

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def get_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient, creating it lazily if the
    worker did not pre-initialize it.
    """
    global _client

    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or 10.0, connect=5.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            http2=True,
        )
    return _client


async def init_http_client() -> None:
    """Initializes the global httpx.AsyncClient used by the worker."""
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    _client = httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(10.0, connect=5.0),
        limits=httpx.Limits(
            max_connections=200,
            max_keepalive_connections=50,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": "FinOpsBridge-Enforcement/0.1"},
    )
    logger.info("http_client_initialized", http2=True, max_connections=200)


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client

    client = _client
    _client = None
    if client is None:
        return

    close_result = client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    logger.info("http_client_closed")
