import httpx
import pytest

from app.core.http_client import ResilientHTTPClient, RetryConfig


def no_wait(max_retries: int = 2) -> RetryConfig:
    return RetryConfig(max_retries=max_retries, base_delay=0, max_delay=0, jitter_factor=0)


def build(handler, max_retries: int = 2) -> ResilientHTTPClient:
    return ResilientHTTPClient(
        base_url="https://carrier.example.com/v1",
        retry_config=no_wait(max_retries),
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_request_retries_after_retry_after_header():
    """429 with Retry-After is retried, then the success is returned."""
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"ok": True})

    client = build(handler)
    resp = await client.get("/status")
    await client.close()

    assert resp.status_code == 200
    assert call_count == 2


@pytest.mark.asyncio
async def test_retry_disabled_sends_once():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(503)

    client = build(handler, max_retries=3)
    resp = await client.post("/orders", json={"id": 1}, retry=False)
    await client.close()

    assert resp.status_code == 503
    assert call_count == 1


@pytest.mark.asyncio
async def test_last_retryable_response_returned():
    """After the final attempt the error response is handed back, not raised."""
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(502, json={"message": "bad gateway"})

    client = build(handler, max_retries=2)
    resp = await client.get("/status")
    await client.close()

    assert resp.status_code == 502
    assert call_count == 3


@pytest.mark.asyncio
async def test_client_errors_not_retried():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(422, json={"message": "invalid"})

    client = build(handler)
    resp = await client.get("/status")
    await client.close()

    assert resp.status_code == 422
    assert call_count == 1


@pytest.mark.asyncio
async def test_timeouts_retried_then_raised():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        raise httpx.ReadTimeout("timed out", request=request)

    client = build(handler, max_retries=1)
    with pytest.raises(httpx.ReadTimeout):
        await client.get("/status")
    await client.close()

    assert call_count == 2


@pytest.mark.asyncio
async def test_base_url_path_preserved():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200)

    async with build(handler) as client:
        await client.get("/courier/track/awb/AWB1")

    assert seen == ["/v1/courier/track/awb/AWB1"]


def test_parse_retry_after_seconds():
    client = ResilientHTTPClient()
    response = httpx.Response(429, headers={"Retry-After": "3"})
    assert client._parse_retry_after(response) == 3.0
    assert client._parse_retry_after(httpx.Response(429)) is None


def test_backoff_capped():
    client = ResilientHTTPClient(retry_config=RetryConfig(base_delay=1, max_delay=4, jitter_factor=0))
    assert client._calculate_backoff(0) == 1
    assert client._calculate_backoff(1) == 2
    assert client._calculate_backoff(5) == 4
