"""
Provider client: bounded retry on 5xx/429/transport errors, none on other 4xx.
"""
import json

import httpx
import pytest

from omniverify.exceptions import BouncerApiError
from omniverify.services.bouncer_client import BouncerClient


def make_client(handler, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return BouncerClient(
        api_key="secret",
        base_url="https://bouncer.test/v1.1",
        max_retries=3,
        backoff_base=1.0,
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )


@pytest.mark.asyncio
async def test_create_batch_posts_emails_with_api_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"batch_id": "b-1", "duplicates": 1})

    client = make_client(handler, [])
    created = await client.create_batch(["a@x.com", "b@y.com"])
    await client.close()

    assert created.provider_batch_id == "b-1"
    assert created.quantity == 2
    assert created.duplicates == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1.1/batch"
    assert request.headers["x-api-key"] == "secret"
    assert json.loads(request.content) == {
        "emails": [{"email": "a@x.com", "name": ""}, {"email": "b@y.com", "name": ""}]
    }


@pytest.mark.asyncio
async def test_retries_server_errors_with_exponential_backoff():
    responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"status": "processing"})]
    sleeps = []

    client = make_client(lambda request: responses.pop(0), sleeps)
    report = await client.get_status("b-1")
    await client.close()

    assert report.status == "processing"
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"message": "Internal Server Error"})

    client = make_client(handler, [])
    with pytest.raises(BouncerApiError) as exc:
        await client.get_status("b-1")
    await client.close()

    assert exc.value.status == 500
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"message": "Invalid API key"})

    sleeps = []
    client = make_client(handler, sleeps)
    with pytest.raises(BouncerApiError) as exc:
        await client.create_batch(["a@x.com"])
    await client.close()

    assert exc.value.status == 401
    assert "Invalid API key" in str(exc.value)
    assert len(calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_transport_errors_retry_then_propagate():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler, [])
    with pytest.raises(httpx.ConnectError):
        await client.download_results("b-1")
    await client.close()

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_unrecognised_status_maps_to_unknown():
    client = make_client(lambda request: httpx.Response(200, json={"status": "paused"}), [])
    report = await client.get_status("b-1")
    await client.close()

    assert report.status == "unknown"
    assert report.raw_status == "paused"


@pytest.mark.asyncio
async def test_download_parses_results():
    body = [
        {
            "email": "A@X.com",
            "status": "deliverable",
            "reason": "accepted_email",
            "score": 100,
            "toxic": "false",
            "toxicity": 0,
            "provider": "google.com",
            "domain": {"name": "x.com"},
            "account": {"role": "no"},
            "dns": {"type": "MX"},
        }
    ]
    client = make_client(lambda request: httpx.Response(200, json=body), [])
    results = await client.download_results("b-1")
    await client.close()

    assert len(results) == 1
    r = results[0]
    assert r.email == "a@x.com"
    assert r.toxic is False
    assert r.domain_info == {"name": "x.com"}
    assert r.dns_info == {"type": "MX"}
