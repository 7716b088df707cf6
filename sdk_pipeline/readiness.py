"""Readiness gate for dependent HTTP endpoints.

Polls an endpoint's liveness predicate (GET returns a status below 400)
until it succeeds or the total timeout elapses. Connection refused and
other transport errors mean "not ready yet"; they are never raised.

On timeout the error says why, based on the final probe:
``ReadinessTimeoutError`` when it got no answer, ``EndpointUnhealthyError``
when it got an error status.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import httpx

from sdk_pipeline.errors import EndpointUnhealthyError, ReadinessTimeoutError
from sdk_pipeline.types import ServiceEndpoint

logger = logging.getLogger(__name__)

# Timeout for a single liveness request (seconds)
PROBE_TIMEOUT = 5.0


@dataclass
class ProbeResult:
    """Outcome of one liveness probe."""

    live: bool
    status_code: int | None = None
    error: str | None = None


@dataclass
class ReadinessResult:
    """Successful readiness wait."""

    endpoint: ServiceEndpoint
    elapsed: float
    probes: int
    status_code: int


def check_liveness(
    client: httpx.Client,
    endpoint: ServiceEndpoint,
    timeout: float = PROBE_TIMEOUT,
) -> ProbeResult:
    """Probe an endpoint once.

    Args:
        client: HTTPX client instance.
        endpoint: Endpoint to probe.
        timeout: Request timeout in seconds.

    Returns:
        ProbeResult; transport errors yield ``live=False`` with no status.
    """
    try:
        response = client.get(endpoint.url, timeout=timeout)
    except httpx.TransportError as e:
        return ProbeResult(live=False, error=f"{type(e).__name__}: {e}")

    return ProbeResult(
        live=response.status_code < 400,
        status_code=response.status_code,
    )


def await_ready(
    endpoint: ServiceEndpoint,
    total_timeout: float,
    poll_interval: float,
    client: httpx.Client | None = None,
    probe_timeout: float = PROBE_TIMEOUT,
    abort_check: Callable[[], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ReadinessResult:
    """Wait until ``endpoint`` is live.

    Args:
        endpoint: Endpoint to wait for.
        total_timeout: Deadline in seconds.
        poll_interval: Delay between probes in seconds.
        client: Optional HTTPX client; one is created if not provided.
        probe_timeout: Timeout of a single probe.
        abort_check: Called between probes; raising aborts the wait.
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        ReadinessResult once the endpoint answered with a non-error status.

    Raises:
        ReadinessTimeoutError: If the last probe got no answer.
        EndpointUnhealthyError: If the last probe got an error status.
    """
    owns_client = client is None
    if client is None:
        client = httpx.Client()

    start = clock()
    probes = 0
    last_status: int | None = None

    logger.info("Waiting up to %.0fs for %s", total_timeout, endpoint)
    try:
        while True:
            probes += 1
            # Never wait longer on a single probe than the time left
            remaining = total_timeout - (clock() - start)
            result = check_liveness(
                client, endpoint, timeout=max(min(probe_timeout, remaining), 0.1)
            )
            elapsed = clock() - start

            if result.live:
                logger.info(
                    "%s is ready after %.1fs (%d probe(s))", endpoint, elapsed, probes
                )
                return ReadinessResult(
                    endpoint=endpoint,
                    elapsed=elapsed,
                    probes=probes,
                    status_code=result.status_code or 0,
                )

            if result.status_code is not None:
                last_status = result.status_code
                logger.debug("%s returned HTTP %d", endpoint, result.status_code)
            else:
                # The verdict follows the final probe
                last_status = None
                logger.debug("%s not reachable: %s", endpoint, result.error)

            if elapsed >= total_timeout:
                break

            if abort_check is not None:
                abort_check()

            # The last probe lands on the deadline
            sleep(min(poll_interval, max(total_timeout - elapsed, 0)))
    finally:
        if owns_client:
            client.close()

    elapsed = clock() - start
    if last_status is not None:
        logger.error("%s unhealthy after %.1fs (HTTP %d)", endpoint, elapsed, last_status)
        raise EndpointUnhealthyError(endpoint, elapsed, last_status)
    logger.error("Timed out after %.1fs waiting for %s", elapsed, endpoint)
    raise ReadinessTimeoutError(endpoint, elapsed)


def await_all_ready(
    endpoints: Sequence[ServiceEndpoint],
    total_timeout: float,
    poll_interval: float,
    client: httpx.Client | None = None,
    abort_check: Callable[[], None] | None = None,
) -> list[ReadinessResult]:
    """Wait for several endpoints concurrently.

    Args:
        endpoints: Endpoints to wait for.
        total_timeout: Deadline applied to each endpoint.
        poll_interval: Delay between probes.
        client: Optional shared HTTPX client (thread-safe).
        abort_check: Called between probes of every endpoint.

    Returns:
        One ReadinessResult per endpoint, in input order.

    Raises:
        ReadinessError: The first failure, in input order.
    """
    if not endpoints:
        return []

    with ThreadPoolExecutor(
        max_workers=len(endpoints), thread_name_prefix="readiness"
    ) as executor:
        futures = [
            executor.submit(
                await_ready,
                endpoint,
                total_timeout,
                poll_interval,
                client=client,
                abort_check=abort_check,
            )
            for endpoint in endpoints
        ]
        return [f.result() for f in futures]


__all__ = [
    "PROBE_TIMEOUT",
    "ProbeResult",
    "ReadinessResult",
    "await_all_ready",
    "await_ready",
    "check_liveness",
]
