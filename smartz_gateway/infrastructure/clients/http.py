"""Shared GET helper with exponential backoff retry logic"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from smartz_gateway.infrastructure.observability.metrics import (
    provider_failure_counter,
    provider_latency_histogram,
)


async def get_with_retry(
    client: httpx.AsyncClient,
    url: str,
    operation: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    max_retries: int = 1,
    backoff_base: float = 0.5,
) -> httpx.Response:
    """
    GET with retries for idempotent reads.

    Retry strategy:
    - Exponential backoff: base, 2*base, 4*base, ...
    - Retries on 5xx errors and network failures, never on 4xx
    - Tracks latency histogram and failure counter per operation

    Raises:
        httpx.HTTPStatusError / httpx.RequestError from the final attempt
    """
    attempt = 0
    while True:
        try:
            with provider_latency_histogram.labels(operation=operation).time():
                response = await client.get(url, params=params, headers=headers)
                response.raise_for_status()
                return response

        except httpx.HTTPStatusError as e:
            provider_failure_counter.labels(operation=operation).inc()
            attempt += 1
            if e.response.status_code < 500 or attempt >= max_retries:
                raise

        except httpx.RequestError:
            provider_failure_counter.labels(operation=operation).inc()
            attempt += 1
            if attempt >= max_retries:
                raise

        await asyncio.sleep(backoff_base * (2 ** (attempt - 1)))
