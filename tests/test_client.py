"""Tests for the progress polling client."""

from uuid import uuid4

import httpx
import pytest

from paie_engine.client import ProgressPoller, ProgressUnavailableError

RUN_ID = uuid4()
TENANT_ID = uuid4()


def scripted(*responses):
    """Transport answering with the given responses in order.

    An exception instance in the script is raised instead of answering.
    """
    calls = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        answer = queue.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    return httpx.MockTransport(handler), calls


def progress(status: str, processed: int = 0) -> httpx.Response:
    return httpx.Response(
        200,
        json={"payroll_run_id": str(RUN_ID), "status": status, "processed_count": processed},
    )


def poller(transport, **kwargs) -> ProgressPoller:
    client = httpx.AsyncClient(transport=transport, base_url="http://paie.test")
    kwargs.setdefault("base_delay", 0.0)
    return ProgressPoller(client, TENANT_ID, **kwargs)


class TestFetch:
    async def test_success_sends_tenant_header(self):
        transport, calls = scripted(progress("running", 4))

        data = await poller(transport).fetch(RUN_ID)

        assert data["processed_count"] == 4
        assert calls[0].headers["X-Tenant-ID"] == str(TENANT_ID)
        assert calls[0].url.path == f"/api/v1/payroll-runs/{RUN_ID}/progress"

    async def test_server_errors_retried(self):
        transport, calls = scripted(
            httpx.Response(503),
            httpx.ConnectError("connection refused"),
            progress("running", 2),
        )

        data = await poller(transport).fetch(RUN_ID)

        assert data["processed_count"] == 2
        assert len(calls) == 3

    async def test_client_error_not_retried(self):
        transport, calls = scripted(httpx.Response(404, json={"code": "NOT_FOUND"}))

        with pytest.raises(httpx.HTTPStatusError):
            await poller(transport).fetch(RUN_ID)

        assert len(calls) == 1

    async def test_unavailable_without_cache(self):
        transport, calls = scripted(*[httpx.Response(500)] * 4)

        with pytest.raises(ProgressUnavailableError):
            await poller(transport).fetch(RUN_ID)

        assert len(calls) == 4


class TestStaleCache:
    """The last good response is served while refreshes fail."""

    async def test_serves_stale(self):
        transport, _ = scripted(progress("running", 3), *[httpx.Response(502)] * 2)
        client = poller(transport, max_attempts=2)

        fresh = await client.fetch(RUN_ID)
        stale = await client.fetch(RUN_ID)

        assert "stale" not in fresh
        assert stale["stale"] is True
        assert stale["processed_count"] == 3

    async def test_expired_cache_not_served(self):
        transport, _ = scripted(progress("running", 3), *[httpx.Response(502)] * 2)
        client = poller(transport, max_attempts=2, max_stale_seconds=-1)

        await client.fetch(RUN_ID)

        with pytest.raises(ProgressUnavailableError):
            await client.fetch(RUN_ID)


class TestBackoff:
    def test_doubles_up_to_cap(self):
        client = ProgressPoller(httpx.AsyncClient(), TENANT_ID, base_delay=0.5, max_delay=3.0)

        assert [client.backoff(a) for a in range(4)] == [0.5, 1.0, 2.0, 3.0]


class TestWaitUntilDone:
    async def test_stops_on_terminal_status(self):
        transport, calls = scripted(
            progress("pending"), progress("running", 2), progress("completed", 5)
        )

        data = await poller(transport).wait_until_done(RUN_ID, interval=0)

        assert data["status"] == "completed"
        assert len(calls) == 3

    async def test_failed_is_terminal(self):
        transport, _ = scripted(progress("failed"))

        data = await poller(transport).wait_until_done(RUN_ID, interval=0)

        assert data["status"] == "failed"

    async def test_timeout(self):
        transport, _ = scripted(*[progress("running")] * 3)

        with pytest.raises(TimeoutError):
            await poller(transport).wait_until_done(RUN_ID, interval=0, timeout=0)
