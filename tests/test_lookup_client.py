"""Tests for the lookup API client and the provisioning client."""

import json

import httpx
import pytest

from conftest import PROFILE
from lookup_client import LookupAPIError, LookupAuthError, LookupClient, LookupRateLimitError
from models import RawAccount
from provisioning_client import ProvisioningClient, ProvisioningError


def _client(settings, handler) -> LookupClient:
    return LookupClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_query_sends_identifier_and_bearer_token(settings):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json=PROFILE)

    client = _client(settings, handler)
    try:
        response = await client.query("a@example.com", "tok")
    finally:
        await client.close()

    assert response.is_success
    assert response.payload == PROFILE
    assert seen["url"].startswith("https://lookup.test/v1/people/search")
    assert "email=a%40example.com" in seen["url"]
    assert seen["auth"] == "Bearer tok"


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error", [
    (401, LookupAuthError),
    (403, LookupAuthError),
    (429, LookupRateLimitError),
    (500, LookupAPIError),
    (404, LookupAPIError),
])
async def test_query_classifies_non_200_responses(settings, status, error):
    client = _client(settings, lambda request: httpx.Response(status, text="nope"))
    try:
        with pytest.raises(error) as exc_info:
            await client.query("a@example.com", "tok")
    finally:
        await client.close()

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_query_wraps_transport_errors(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(settings, handler)
    try:
        with pytest.raises(LookupAPIError) as exc_info:
            await client.query("a@example.com", "tok")
    finally:
        await client.close()

    assert not isinstance(exc_info.value, LookupAuthError)
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_query_keeps_non_json_body(settings):
    client = _client(settings, lambda request: httpx.Response(200, text="plain"))
    try:
        response = await client.query("a@example.com", "tok")
    finally:
        await client.close()

    assert response.payload == "plain"


@pytest.mark.asyncio
async def test_probe_distinguishes_rejected_credentials(settings):
    def handler(request):
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"persons": []})
        return httpx.Response(401)

    client = _client(settings, handler)
    try:
        assert await client.probe("good") is True
        assert await client.probe("bad") is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_window_allows_burst_up_to_limit(settings):
    limited = settings.model_copy(update={"requests_per_second": 3})
    client = _client(limited, lambda request: httpx.Response(200, json={}))
    try:
        for _ in range(3):
            await client.query("a@example.com", "tok")
        assert len(client._request_times) == 3
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_provisioning_client_returns_clean_token(settings):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"token": "Bearer fresh-token"})

    client = ProvisioningClient(settings, transport=httpx.MockTransport(handler))
    try:
        token = await client.provision(RawAccount(identifier="u@example.com", secret="pw"))
    finally:
        await client.close()

    assert token == "fresh-token"
    assert seen["body"] == {"email": "u@example.com", "password": "pw"}


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(401, text="bad login"),
    httpx.Response(500, text="crash"),
    httpx.Response(200, json={"token": ""}),
    httpx.Response(200, text="not json"),
])
async def test_provisioning_client_failures(settings, response):
    client = ProvisioningClient(settings, transport=httpx.MockTransport(lambda request: response))
    try:
        with pytest.raises(ProvisioningError):
            await client.provision(RawAccount(identifier="u@example.com", secret="pw"))
    finally:
        await client.close()
