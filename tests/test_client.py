"""
Unit tests for the Registry Broker transport and discovery layer.

Uses respx to mock HTTP requests to the broker, so no actual broker is
required. Tests verify URL normalisation, query encoding, header
handling and the split between status errors and parse errors.
"""

from __future__ import annotations

import pytest
import httpx
import respx
from pydantic import ValidationError

from registry_broker.client import RegistryBrokerClient, _HttpClient, normalise_base_url
from registry_broker.errors import (
    RegistryBrokerError,
    RegistryBrokerParseError,
    RegistryBrokerTransportError,
)
from registry_broker.types import AutoTopUpConfig, RegistryBrokerConfig


BROKER_HOST = "https://broker.test"
BROKER_URL = f"{BROKER_HOST}/api/v1"
API_KEY = "rbk_test_key_for_unit_tests"

EMPTY_SEARCH = {"hits": [], "total": 0, "page": 1, "limit": 20}


# ============================================================
#  URL normalisation
# ============================================================


@pytest.mark.parametrize(
    "base_url",
    [f"{BROKER_HOST}/api", f"{BROKER_HOST}/api/", BROKER_HOST, f"{BROKER_HOST}/api/v1/"],
)
@pytest.mark.asyncio
async def test_base_url_variants_route_to_versioned_search(base_url: str) -> None:
    """Every base URL spelling ends up under /api/v1."""
    with respx.mock:
        route = respx.get(f"{BROKER_URL}/search").mock(
            return_value=httpx.Response(200, json=EMPTY_SEARCH)
        )
        client = RegistryBrokerClient(base_url=base_url, api_key=API_KEY)
        await client.search.search(q="weather")
        await client.aclose()

        assert route.called
        assert client.base_url == BROKER_URL


def test_explicit_api_version_is_kept() -> None:
    assert normalise_base_url("https://h.test/api/v2") == "https://h.test/api/v2"
    assert normalise_base_url("https://h.test/registry/api/v1") == "https://h.test/registry/api/v1"
    assert normalise_base_url(None) == "https://hol.org/registry/api/v1"


# ============================================================
#  Query encoding
# ============================================================


@pytest.mark.asyncio
async def test_search_repeats_list_params_in_order() -> None:
    """List filters repeat the key; scalars are trimmed; blanks dropped."""
    with respx.mock:
        route = respx.get(f"{BROKER_URL}/search").mock(
            return_value=httpx.Response(
                200,
                json={
                    "hits": [
                        {
                            "id": "a1",
                            "uaid": "uaid:aid:weather",
                            "registry": "hashgraph-online",
                            "name": "Weather Bot",
                            "capabilities": ["forecast"],
                        }
                    ],
                    "total": 1,
                    "page": 1,
                    "limit": 20,
                },
            )
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        result = await client.search.search(
            q="  weather ",
            registry="   ",
            capabilities=["a", "b"],
            metadata={"region": ["eu", "us"]},
            verified=True,
        )
        await client.aclose()

        params = route.calls.last.request.url.params
        assert params.get_list("capabilities") == ["a", "b"]
        assert params.get_list("metadata.region") == ["eu", "us"]
        assert params["q"] == "weather"
        assert params["verified"] == "true"
        assert "registry" not in params
        assert result.hits[0].name == "Weather Bot"


@pytest.mark.asyncio
async def test_stats_and_registries() -> None:
    with respx.mock:
        respx.get(f"{BROKER_URL}/stats").mock(
            return_value=httpx.Response(
                200,
                json={"totalAgents": 42, "registries": {"nanda": 40}, "status": "healthy"},
            )
        )
        respx.get(f"{BROKER_URL}/registries").mock(
            return_value=httpx.Response(200, json={"registries": ["nanda", "erc-8004"]})
        )
        respx.get(f"{BROKER_URL}/register/additional-registries").mock(
            return_value=httpx.Response(
                200,
                json={
                    "registries": [
                        {"id": "erc-8004", "networks": [{"key": "erc-8004:base", "chainId": 8453}]}
                    ]
                },
            )
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        stats = await client.search.stats()
        registries = await client.search.registries()
        catalog = await client.search.additional_registries()
        await client.aclose()

        assert stats.total_agents == 42
        assert registries == ["nanda", "erc-8004"]
        assert catalog.registries[0].networks[0].chain_id == 8453


# ============================================================
#  Errors
# ============================================================


@pytest.mark.asyncio
async def test_status_error_carries_json_body() -> None:
    """Non-2xx responses raise RegistryBrokerError with the parsed body."""
    with respx.mock:
        respx.get(f"{BROKER_URL}/stats").mock(
            return_value=httpx.Response(402, json={"error": "Insufficient credits"})
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerError) as exc_info:
            await client.search.stats()
        await client.aclose()

        err = exc_info.value
        assert err.status == 402
        assert err.body == {"error": "Insufficient credits"}
        assert "Insufficient credits" in str(err)


@pytest.mark.asyncio
async def test_status_error_degrades_to_text_body() -> None:
    """An unparsable error body still yields a usable error."""
    with respx.mock:
        respx.get(f"{BROKER_URL}/stats").mock(
            return_value=httpx.Response(
                502, text="upstream exploded", headers={"content-type": "text/plain"}
            )
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerError) as exc_info:
            await client.search.stats()
        await client.aclose()

        assert exc_info.value.status == 502
        assert exc_info.value.body == "upstream exploded"
        assert exc_info.value.status_text == "Bad Gateway"


@pytest.mark.asyncio
async def test_schema_invalid_body_is_parse_error_not_status_error() -> None:
    with respx.mock:
        respx.get(f"{BROKER_URL}/search").mock(
            return_value=httpx.Response(200, json={"hits": "not-a-list"})
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerParseError) as exc_info:
            await client.search.search()
        await client.aclose()

        err = exc_info.value
        assert not isinstance(err, RegistryBrokerError)
        assert isinstance(err.cause, ValidationError)
        assert err.raw_value == {"hits": "not-a-list"}


@pytest.mark.asyncio
async def test_non_json_success_is_parse_error() -> None:
    with respx.mock:
        respx.get(f"{BROKER_URL}/registries").mock(
            return_value=httpx.Response(200, text="<html>hi</html>", headers={"content-type": "text/html"})
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerParseError) as exc_info:
            await client.search.registries()
        await client.aclose()

        assert exc_info.value.raw_value == "<html>hi</html>"


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped() -> None:
    with respx.mock:
        respx.get(f"{BROKER_URL}/stats").mock(side_effect=httpx.ConnectError("connection refused"))
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerTransportError) as exc_info:
            await client.search.stats()
        await client.aclose()

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


# ============================================================
#  Headers
# ============================================================


@pytest.mark.asyncio
async def test_default_headers_applied_and_removable() -> None:
    """API key goes out as x-api-key; a blank value removes a header."""
    with respx.mock:
        route = respx.get(f"{BROKER_URL}/registries").mock(
            return_value=httpx.Response(200, json={"registries": []})
        )
        client = RegistryBrokerClient(
            base_url=BROKER_HOST,
            api_key=API_KEY,
            default_headers={"X-Tenant": "acme"},
        )
        await client.search.registries()
        first = route.calls.last.request

        client.set_default_header("x-tenant", "  ")
        client.set_api_key("rbk_rotated")
        await client.search.registries()
        second = route.calls.last.request
        await client.aclose()

        assert first.headers["x-api-key"] == API_KEY
        assert first.headers["x-tenant"] == "acme"
        assert first.headers["accept"] == "application/json"
        assert "x-tenant" not in second.headers
        assert second.headers["x-api-key"] == "rbk_rotated"


@pytest.mark.asyncio
async def test_http_client_sends_json_body_with_content_type() -> None:
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/register/quote").mock(
            return_value=httpx.Response(200, json={"requiredCredits": 5})
        )
        http = _HttpClient(BROKER_HOST)
        data = await http.request_json("POST", "register/quote", {"profile": {}})
        await http.close()

        request = route.calls.last.request
        assert request.headers["content-type"] == "application/json"
        assert request.content == b'{"profile": {}}'
        assert data == {"requiredCredits": 5}


# ============================================================
#  Configuration
# ============================================================


@pytest.mark.asyncio
async def test_from_config_applies_keys() -> None:
    with respx.mock:
        route = respx.get(f"{BROKER_URL}/registries").mock(
            return_value=httpx.Response(200, json={"registries": []})
        )
        config = RegistryBrokerConfig(
            base_url=f"{BROKER_HOST}/api",
            api_key=API_KEY,
            ledger_api_key="lk_123",
        )
        async with RegistryBrokerClient.from_config(config) as client:
            await client.search.registries()

        headers = route.calls.last.request.headers
        assert headers["x-api-key"] == API_KEY
        assert headers["x-ledger-api-key"] == "lk_123"


def test_top_up_config_rejects_blank_credentials() -> None:
    with pytest.raises(ValidationError):
        AutoTopUpConfig(account_id="  ", private_key="abc")
    with pytest.raises(ValidationError):
        AutoTopUpConfig(account_id="0.0.1", private_key="abc", max_hbar_amount=0)
    with pytest.raises(ValidationError):
        RegistryBrokerConfig(timeout_seconds=-1)
