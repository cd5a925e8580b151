"""Tests for the rate-limited httpx client using MockTransport."""

import httpx
import pytest

from network.http_client import CatalogHttpClient, TokenBucket


def _client(handler, max_retries=2):
    return CatalogHttpClient(
        max_retries=max_retries,
        retry_delay_base=0.0,
        rate_limit_rps=1000.0,
        rate_limit_burst=100,
        user_agents=["agent-a", "agent-b"],
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_fetch_success_rotates_user_agents():
    seen_agents = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_agents.append(request.headers["User-Agent"])
        return httpx.Response(200, text="<html>ok</html>")

    async with _client(handler) as client:
        first = await client.fetch("https://htreviews.org/tobaccos/brands")
        await client.fetch("https://htreviews.org/tobaccos/sarma")

    assert first.success and first.ok
    assert first.content == "<html>ok</html>"
    assert first.status_code == 200
    assert first.retry_count == 0
    assert seen_agents == ["agent-a", "agent-b"]


@pytest.mark.asyncio
async def test_fetch_retries_server_errors():
    responses = iter([httpx.Response(503), httpx.Response(200, text="recovered")])

    async with _client(lambda request: next(responses)) as client:
        result = await client.fetch("https://htreviews.org/tobaccos/sarma")

    assert result.success
    assert result.content == "recovered"
    assert result.retry_count == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404)

    async with _client(handler) as client:
        result = await client.fetch("https://htreviews.org/tobaccos/missing")

    assert not result.success
    assert result.status_code == 404
    assert "404" in result.error
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_network_errors_are_reported_as_data():
    calls = []

    def handler(request):
        calls.append(request.url)
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler, max_retries=2) as client:
        result = await client.fetch("https://htreviews.org/tobaccos/sarma")
        stats = client.get_stats()

    assert not result.success
    assert result.content is None
    assert "Network error" in result.error
    assert result.retry_count == 2
    assert len(calls) == 3
    assert stats["failed_requests"] == 1
    assert stats["total_retries"] == 2


@pytest.mark.asyncio
async def test_reset_iteration_state_clears_history():
    async with _client(lambda request: httpx.Response(200, text="ok")) as client:
        await client.fetch("https://htreviews.org/tobaccos/brands")
        assert client.get_stats()["total_requests"] == 1

        client.reset_iteration_state()

        assert client.get_stats()["total_requests"] == 0
        assert client.iteration == 0


def test_token_bucket_consumes_up_to_capacity():
    bucket = TokenBucket(capacity=2, refill_rate_per_second=0.001)

    assert bucket.try_consume()
    assert bucket.try_consume()
    assert not bucket.try_consume()
