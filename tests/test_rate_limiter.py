import httpx
import pytest
from canvas_zoom_archiver.exceptions import TransferFailure
from canvas_zoom_archiver.utils.rate_limiter import (
    ExponentialBackoff,
    RateLimitedHTTPClient,
    RateLimiter,
    RetryableStatus,
    build_api_http_client,
)


def test_backoff_delays_are_capped():
    backoff = ExponentialBackoff(base_delay=1.0, max_delay=5.0)

    assert [backoff.delay_for(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_per_second_handles_fractional_rates():
    assert RateLimiter.per_second(5).max_calls == 5
    slow = RateLimiter.per_second(0.5)
    assert (slow.max_calls, slow.time_window) == (1, 2.0)


@pytest.mark.asyncio
async def test_backoff_retries_only_listed_exceptions():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RetryableStatus(503)
        return "ok"

    backoff = ExponentialBackoff(max_retries=2, base_delay=0.0)
    assert await backoff.execute(flaky, retry_on_exceptions=(RetryableStatus,)) == "ok"
    assert len(attempts) == 3

    async def broken():
        raise KeyError("not retried")

    with pytest.raises(KeyError):
        await backoff.execute(broken, retry_on_exceptions=(RetryableStatus,))


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_fail():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    http = build_api_http_client(1000, base_delay=0.0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransferFailure):
            await http.request(client, "get", "https://applications.zoom.us/api")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_rate_limited_response_recovers():
    responses = [httpx.Response(429, headers={"retry-after": "0"}), httpx.Response(200, json={"ok": True})]

    def handler(request):
        return responses.pop(0)

    http = RateLimitedHTTPClient(RateLimiter(max_calls=100), ExponentialBackoff(max_retries=2, base_delay=0.0))
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await http.request(client, "get", "https://applications.zoom.us/api")

    assert response.json() == {"ok": True}


@pytest.mark.asyncio
async def test_auth_failures_are_returned_untouched():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401)

    http = build_api_http_client(1000, base_delay=0.0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await http.request(client, "get", "https://applications.zoom.us/api")

    assert response.status_code == 401
    assert len(calls) == 1
