"""
HTTP readiness polling for a freshly started server.

Fixed-interval polling, no backoff or jitter. Individual probe failures are
logged at DEBUG and retried; only the final outcome reaches the caller.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Outcome of waiting for a health endpoint."""

    READY = "ready"
    TIMED_OUT = "timed_out"


class HealthWaiter:
    """Polls a health URL until it answers with a 2xx status or a deadline passes."""

    def __init__(
        self,
        request_timeout: float = 2.0,
        overall_timeout: float = 10.0,
        interval: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout = request_timeout
        self.overall_timeout = overall_timeout
        self.interval = interval
        self._transport = transport

    async def wait_until_ready(
        self,
        url: str,
        request_timeout: Optional[float] = None,
        overall_timeout: Optional[float] = None,
    ) -> HealthStatus:
        """
        Wait for `url` to report healthy.

        The overall deadline is enforced even while a probe is in flight.
        Cancelling the calling task stops polling immediately.
        """
        if request_timeout is None:
            request_timeout = self.request_timeout
        if overall_timeout is None:
            overall_timeout = self.overall_timeout

        logger.info(f"Waiting for server health at {url} (timeout {overall_timeout}s)")
        try:
            await asyncio.wait_for(self._poll(url, request_timeout), timeout=overall_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Server at {url} not healthy after {overall_timeout}s")
            return HealthStatus.TIMED_OUT
        return HealthStatus.READY

    async def _poll(self, url: str, request_timeout: float) -> None:
        # Health checks always target a local server; ignore proxy env vars
        async with httpx.AsyncClient(
            timeout=request_timeout,
            transport=self._transport,
            trust_env=False,
        ) as client:
            attempt = 0
            while True:
                attempt += 1
                try:
                    response = await client.get(url)
                    if response.is_success:
                        logger.info(f"Server healthy after {attempt} attempt(s)")
                        return
                    logger.debug(f"Health check attempt {attempt}: HTTP {response.status_code}")
                except httpx.TimeoutException:
                    logger.debug(f"Health check attempt {attempt} timed out")
                except httpx.HTTPError as e:
                    logger.debug(f"Health check attempt {attempt} failed: {e}")

                await asyncio.sleep(self.interval)
