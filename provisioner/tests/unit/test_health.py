"""Tests for the health prober.

Uses httpx.MockTransport for deterministic HTTP simulation.
"""

from __future__ import annotations

import time

import httpx
import pytest
from provisioner.errors import HealthCheckFailed
from provisioner.health import HealthProber


def _prober(responses: list[httpx.Response | Exception], **kwargs) -> tuple[HealthProber, list[str]]:
    """Build a prober whose transport returns *responses* in order, repeating the last."""
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    options = {"poll_interval": 0.001, "timeout": 2.0}
    options.update(kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HealthProber(http_client=client, **options), seen


class TestProbeOnce:
    @pytest.mark.asyncio
    async def test_ready_on_json_200(self):
        prober, seen = _prober([httpx.Response(200, json={"status": "ok", "version": "1.2.0"})])

        payload = await prober.probe_once("https://t1.example.test/")

        assert payload == {"status": "ok", "version": "1.2.0"}
        assert seen == ["https://t1.example.test/health"]

    @pytest.mark.asyncio
    async def test_non_object_json_is_wrapped(self):
        prober, _ = _prober([httpx.Response(200, json="ok")])

        assert await prober.probe_once("https://t1.example.test") == {"status": "ok"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503, json={"status": "starting"}),
            httpx.Response(200, text="<html>Application starting</html>"),
            httpx.Response(404),
        ],
    )
    async def test_not_ready(self, response):
        prober, _ = _prober([response])

        assert await prober.probe_once("https://t1.example.test") is None

    @pytest.mark.asyncio
    async def test_connection_error_is_not_ready(self):
        request = httpx.Request("GET", "https://t1.example.test/health")
        prober, _ = _prober([httpx.ConnectError("refused", request=request)])

        assert await prober.probe_once("https://t1.example.test") is None


class TestWaitUntilHealthy:
    @pytest.mark.asyncio
    async def test_polls_until_ready(self):
        request = httpx.Request("GET", "https://t1.example.test/health")
        prober, seen = _prober(
            [
                httpx.ConnectError("refused", request=request),
                httpx.Response(502),
                httpx.Response(200, text="booting"),
                httpx.Response(200, json={"status": "ok"}),
            ]
        )

        payload = await prober.wait_until_healthy("https://t1.example.test")

        assert payload == {"status": "ok"}
        assert len(seen) == 4

    @pytest.mark.asyncio
    async def test_times_out(self):
        prober, _ = _prober([httpx.Response(503)], timeout=0.1, poll_interval=0.01)

        started = time.monotonic()
        with pytest.raises(HealthCheckFailed) as excinfo:
            await prober.wait_until_healthy("https://t1.example.test")

        assert time.monotonic() - started < 2.0
        assert excinfo.value.reason.value == "health_check_failed"

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        prober, _ = _prober([httpx.Response(200, json={})])

        await prober.close()

        assert not prober._client.is_closed
