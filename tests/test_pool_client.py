# tests/test_pool_client.py

import httpx
import pytest

from hostbill.cache import TTLCache
from hostbill.pool_client import PoolApiError, PoolClient


def _recording_transport(calls, status=200, payload=None):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=payload if payload is not None else {"data": len(calls)})

    return httpx.MockTransport(handler)


def _client(calls, **kwargs):
    return PoolClient(
        "acme",
        api_key="pool-key",
        base_url="https://pool.example/api/v2/",
        cache=TTLCache(),
        transport=_recording_transport(calls, **kwargs),
    )


async def test_get_sends_key_and_drops_empty_params():
    calls = []
    client = _client(calls)

    await client.request("/pool/revenue/BTC", {"subaccount_names": "acme", "page": "", "start": None, "size": 20})

    [req] = calls
    assert req.headers["Authorization"] == "pool-key"
    assert req.url.path == "/api/v2/pool/revenue/BTC"
    assert dict(req.url.params) == {"subaccount_names": "acme", "size": "20"}


async def test_get_responses_are_cached_per_params():
    calls = []
    client = _client(calls)

    first = await client.request("/workspace", {"a": "1"})
    again = await client.request("/workspace", {"a": "1"})
    other = await client.request("/workspace", {"a": "2"})

    assert first == again == {"data": 1}
    assert other == {"data": 2}
    assert len(calls) == 2


async def test_writes_invalidate_cached_reads():
    calls = []
    client = _client(calls)

    await client.request("/workspace")
    await client.request("/workspace", method="POST", body={"name": "x"})
    await client.request("/workspace")

    assert [r.method for r in calls] == ["GET", "POST", "GET"]


async def test_proxy_maps_endpoint_names():
    calls = []
    client = _client(calls)

    await client.proxy("workers", "btc", {"status": "online"})
    await client.proxy("workspace", None)

    assert calls[0].url.path.endswith("/pool/workers/BTC")
    assert calls[0].url.params["subaccount_names"] == "acme"
    assert calls[0].url.params["status"] == "online"
    assert calls[1].url.path.endswith("/workspace")


async def test_proxy_rejects_unknown_endpoint_and_missing_currency():
    client = _client([])

    with pytest.raises(PoolApiError) as exc:
        await client.proxy("balances", "BTC")
    assert exc.value.status_code == 400
    assert "Unsupported endpoint" in exc.value.message

    with pytest.raises(PoolApiError) as exc:
        await client.proxy("revenue", None)
    assert "requires a currency" in exc.value.message


async def test_upstream_errors_keep_status_and_message():
    calls = []
    client = _client(calls, status=403, payload={"message": "sub-account not permitted"})

    with pytest.raises(PoolApiError) as exc:
        await client.request("/workspace")

    assert exc.value.status_code == 403
    assert exc.value.message == "sub-account not permitted"
    assert exc.value.details == {"message": "sub-account not permitted"}


def test_client_needs_a_subaccount():
    with pytest.raises(PoolApiError) as exc:
        PoolClient("", api_key="k")
    assert exc.value.status_code == 400


async def test_proxy_always_scopes_to_own_subaccount():
    calls = []
    client = _client(calls)

    await client.proxy("workers", "BTC", {"subaccount_names": "someone-else", "status": "online"})

    assert calls[0].url.params["subaccount_names"] == "acme"
    assert calls[0].url.params["status"] == "online"
