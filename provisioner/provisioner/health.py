"""Readiness probing for freshly deployed tenant instances.

An instance is ready when ``GET {access_url}/health`` answers 200 with a
JSON body.  Connection errors, non-200 responses, and non-JSON bodies all
mean "not ready yet"; the prober keeps polling on a fixed interval until
the instance is ready or the hard timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Self

import httpx

from provisioner.config import Settings
from provisioner.errors import HealthCheckFailed

logger = logging.getLogger(__name__)

_HEALTH_PATH = "/health"


class HealthProbe(Protocol):
    async def wait_until_healthy(self, access_url: str) -> dict[str, Any]: ...


class HealthProber:
    """Polls an instance's health endpoint until it reports ready.

    Parameters
    ----------
    poll_interval:
        Seconds between attempts.
    timeout:
        Hard wall-clock bound in seconds for the whole probe.
    request_timeout:
        Per-request timeout in seconds.
    http_client:
        Optional pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        *,
        poll_interval: float = 10.0,
        timeout: float = 300.0,
        request_timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout))
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient | None = None) -> Self:
        return cls(
            poll_interval=settings.health_poll_interval,
            timeout=settings.health_timeout_seconds,
            request_timeout=settings.health_request_timeout,
            http_client=http_client,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def probe_once(self, access_url: str) -> dict[str, Any] | None:
        """Return the health payload if the instance is ready, else ``None``."""
        url = access_url.rstrip("/") + _HEALTH_PATH
        try:
            response = await self._client.get(url)
        except httpx.RequestError as exc:
            logger.debug("Health probe %s failed: %s", url, type(exc).__name__)
            return None
        if response.status_code != 200:
            logger.debug("Health probe %s returned %d", url, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.debug("Health probe %s returned a non-JSON body", url)
            return None
        return payload if isinstance(payload, dict) else {"status": payload}

    async def wait_until_healthy(self, access_url: str) -> dict[str, Any]:
        """Poll until healthy.

        Returns
        -------
        dict
            The JSON body of the first successful health response.

        Raises
        ------
        HealthCheckFailed
            If no successful response arrives within the timeout.
        """
        attempts = 0
        try:
            async with asyncio.timeout(self._timeout):
                while True:
                    attempts += 1
                    payload = await self.probe_once(access_url)
                    if payload is not None:
                        logger.info("Instance %s healthy after %d attempt(s)", access_url, attempts)
                        return payload
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError as exc:
            raise HealthCheckFailed(
                f"{access_url} not healthy after {attempts} attempt(s) in {self._timeout:.0f}s"
            ) from exc
