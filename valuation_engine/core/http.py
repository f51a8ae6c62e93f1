import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import httpx

from .metrics import OUT_COUNT, OUT_LATENCY

log = logging.getLogger("valuation_engine.http_out")


async def external_get(
    client: httpx.AsyncClient,
    service: str,
    url: str | httpx.URL,
    *,
    timeout: float,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """
    GET with one log line per outcome and outbound metrics.
    Transport errors and timeouts are re-raised untouched; callers classify them.
    """
    start = time.perf_counter()
    try:
        response = await client.get(url, params=params, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        elapsed = time.perf_counter() - start
        OUT_COUNT.labels(service=service, outcome="error").inc()
        OUT_LATENCY.labels(service=service).observe(elapsed)
        log.warning(
            "http_out failed",
            extra={"service": service, "url": str(url), "duration_ms": int(elapsed * 1000),
                   "error": f"{type(exc).__name__}:{exc}"},
        )
        raise

    elapsed = time.perf_counter() - start
    OUT_COUNT.labels(service=service, outcome=str(response.status_code)).inc()
    OUT_LATENCY.labels(service=service).observe(elapsed)
    log.info(
        "http_out",
        extra={"service": service, "url": str(response.request.url),
               "status": response.status_code, "duration_ms": int(elapsed * 1000)},
    )
    return response


@asynccontextmanager
async def client_session(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client as-is, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient() as owned:
        yield owned
