"""HTTP transport with bounded, rate-limit-aware retries.

Every request goes through ``Transport.send``. Retries apply to all
methods, including POSTs that create runs or trigger applies, so a retried
write may be delivered more than once when the first attempt reached the
server but its response was lost.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable

import httpx

from hcp_terraform.backoff import BackoffPolicy
from hcp_terraform.config import Settings
from hcp_terraform.errors import classify_response, is_retryable_status, network_error
from hcp_terraform.utils.masking import redact_headers, redact_url

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class Transport:
    """Sends ``httpx.Request`` objects over one shared ``httpx.AsyncClient``.

    Holds no per-request state, so a single instance can serve any number
    of concurrent callers.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        policy: BackoffPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        settings = settings or Settings()
        self._max_retries = settings.retry.max_retries
        self._policy = policy or BackoffPolicy.from_settings(settings.retry, rng=rng)
        self._sleep = sleep
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.api.timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def send(self, request: httpx.Request) -> httpx.Response:
        """Send ``request``, retrying 429/5xx and connection failures.

        Returns the first 2xx response. Any other final outcome raises
        ``ClassifiedError``.
        """
        attempts = self._max_retries + 1
        target = f"{request.method} {redact_url(str(request.url))}"
        logger.debug("%s headers=%s", target, redact_headers(request.headers))

        attempt = 0
        while True:
            is_last = attempt >= self._max_retries
            try:
                response = await self._client.send(request)
            except httpx.TransportError as exc:
                if is_last:
                    raise network_error(f"{target} failed: {exc}", cause=exc) from exc
                delay = self._policy.compute(attempt, None)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    target, attempt + 1, attempts, exc, delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue
            except httpx.RequestError as exc:
                # Undecodable bodies and redirect loops will not improve on retry.
                raise network_error(f"{target} failed: {exc}", cause=exc) from exc

            if response.is_success:
                return response

            if is_retryable_status(response.status_code) and not is_last:
                delay = self._policy.compute(
                    attempt, response.status_code, response.headers, now=self._clock()
                )
                logger.warning(
                    "%s returned %d (attempt %d/%d); retrying in %.2fs",
                    target, response.status_code, attempt + 1, attempts, delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            error = classify_response(response, now=self._clock())
            logger.debug("%s gave up after %d attempt(s): %s", target, attempt + 1, error)
            raise error
