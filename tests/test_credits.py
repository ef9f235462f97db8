"""
Tests for the credit top-up guard and its registration / purchase wiring.
"""

from __future__ import annotations

import json
import math

import pytest
import httpx
import respx

from registry_broker.client import RegistryBrokerClient
from registry_broker.credits import (
    extract_insufficient_credits_details,
    hbar_for_shortfall,
    run_with_credit_top_up,
    should_auto_top_up_history,
)
from registry_broker.errors import CreditTopUpError, RegistryBrokerError
from registry_broker.types import AutoTopUpConfig, InsufficientCreditsDetails


BROKER_HOST = "https://broker.test"
BROKER_URL = f"{BROKER_HOST}/api/v1"

REGISTRATION = {"profile": {"display_name": "Weather Bot"}, "endpoint": "https://agent.test/a2a"}

PURCHASE_RESPONSE = {
    "success": True,
    "purchaser": "0.0.1234",
    "credits": 100,
    "hbarAmount": 4,
    "transactionId": "0.0.1234@1700000000.000000001",
}


def payment_required(body: dict) -> RegistryBrokerError:
    return RegistryBrokerError("Registry broker request failed", status=402, body=body)


class FlakyOperation:
    """Fails with the given errors, then succeeds."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class RecordingPurchase:
    def __init__(self) -> None:
        self.amounts: list[float] = []

    async def __call__(self, hbar_amount: float, details: InsufficientCreditsDetails) -> None:
        self.amounts.append(hbar_amount)


# ============================================================
#  Guard
# ============================================================


@pytest.mark.asyncio
async def test_fractional_shortfall_buys_non_zero_amount() -> None:
    operation = FlakyOperation(payment_required({"shortfallCredits": 0.04, "creditsPerHbar": 25}))
    purchase = RecordingPurchase()

    result = await run_with_credit_top_up(operation, purchase=purchase, max_hbar=10)

    expected = math.ceil((0.04 + 1) / 25 * 1e8) / 1e8
    assert result == "ok"
    assert purchase.amounts == [expected]
    assert purchase.amounts[0] > 0
    assert operation.calls == 2


@pytest.mark.asyncio
async def test_estimated_hbar_wins_over_rate() -> None:
    operation = FlakyOperation(
        payment_required({"shortfallCredits": 10, "creditsPerHbar": 25, "estimatedHbar": 0.5})
    )
    purchase = RecordingPurchase()

    await run_with_credit_top_up(operation, purchase=purchase, max_hbar=10)

    assert purchase.amounts == [0.5]


@pytest.mark.asyncio
async def test_rate_lookup_used_when_body_has_no_rate() -> None:
    operation = FlakyOperation(payment_required({"requiredCredits": 30, "availableCredits": 5}))
    purchase = RecordingPurchase()

    async def rate_lookup() -> float:
        return 50.0

    await run_with_credit_top_up(operation, purchase=purchase, rate_lookup=rate_lookup)

    assert purchase.amounts == [hbar_for_shortfall(25, 50.0)]


@pytest.mark.asyncio
async def test_purchase_above_bound_is_refused() -> None:
    operation = FlakyOperation(payment_required({"shortfallCredits": 5000, "estimatedHbar": 50}))
    purchase = RecordingPurchase()

    with pytest.raises(CreditTopUpError):
        await run_with_credit_top_up(operation, purchase=purchase, max_hbar=10)

    assert purchase.amounts == []
    assert operation.calls == 1


@pytest.mark.asyncio
async def test_retries_at_most_once() -> None:
    """A second 402 propagates; the operation never runs a third time."""
    second = payment_required({"shortfallCredits": 1, "creditsPerHbar": 10})
    operation = FlakyOperation(
        payment_required({"shortfallCredits": 1, "creditsPerHbar": 10}),
        second,
    )
    purchase = RecordingPurchase()

    with pytest.raises(RegistryBrokerError) as exc_info:
        await run_with_credit_top_up(operation, purchase=purchase)

    assert exc_info.value is second
    assert operation.calls == 2
    assert len(purchase.amounts) == 1


@pytest.mark.asyncio
async def test_unpriceable_shortfall_reraises_original() -> None:
    original = payment_required({"shortfallCredits": 3})
    operation = FlakyOperation(original)
    purchase = RecordingPurchase()

    with pytest.raises(RegistryBrokerError) as exc_info:
        await run_with_credit_top_up(operation, purchase=purchase)

    assert exc_info.value is original
    assert purchase.amounts == []


@pytest.mark.asyncio
async def test_non_payment_errors_pass_through() -> None:
    original = RegistryBrokerError("nope", status=500, body={"error": "boom"})
    operation = FlakyOperation(original)
    purchase = RecordingPurchase()

    with pytest.raises(RegistryBrokerError) as exc_info:
        await run_with_credit_top_up(operation, purchase=purchase, default_hbar=1)

    assert exc_info.value is original
    assert operation.calls == 1


def test_extract_details_ignores_other_statuses() -> None:
    assert extract_insufficient_credits_details(RegistryBrokerError("x", status=400, body={})) is None
    assert extract_insufficient_credits_details(ValueError("x")) is None
    details = extract_insufficient_credits_details(
        payment_required({"requiredCredits": 12, "availableCredits": 2, "error": "Need credits"})
    )
    assert details is not None
    assert details.shortfall_credits == 10
    assert details.message == "Need credits"


def test_history_top_up_predicate() -> None:
    history_error = payment_required({"error": "Chat history retention requires credits"})
    bare_error = payment_required({})
    other_error = payment_required({"error": "Agent quota exhausted"})

    assert should_auto_top_up_history(3600, history_error)
    assert should_auto_top_up_history(3600, bare_error)
    assert not should_auto_top_up_history(3600, other_error)
    assert not should_auto_top_up_history(None, history_error)


# ============================================================
#  Wiring
# ============================================================


@pytest.mark.asyncio
async def test_register_agent_tops_up_and_retries_once() -> None:
    with respx.mock:
        register = respx.post(f"{BROKER_URL}/register").mock(
            side_effect=[
                httpx.Response(402, json={"error": "Insufficient credits", "shortfallCredits": 99, "creditsPerHbar": 25}),
                httpx.Response(200, json={"success": True, "status": "created", "uaid": "uaid:aid:weather"}),
            ]
        )
        purchase = respx.post(f"{BROKER_URL}/credits/purchase").mock(
            return_value=httpx.Response(200, json=PURCHASE_RESPONSE)
        )
        client = RegistryBrokerClient(
            base_url=BROKER_HOST,
            registration_auto_top_up=AutoTopUpConfig(account_id="0.0.1234", private_key="302e020100"),
        )
        outcome = await client.registration.register_agent(REGISTRATION)
        await client.aclose()

        assert outcome.outcome == "success"
        assert outcome.uaid == "uaid:aid:weather"
        assert register.call_count == 2
        assert purchase.call_count == 1
        body = json.loads(purchase.calls.last.request.content)
        assert body["accountId"] == "0.0.1234"
        assert body["payerKey"] == "302e020100"
        assert body["hbarAmount"] == 4.0
        assert body["metadata"]["shortfallCredits"] == 99


@pytest.mark.asyncio
async def test_register_agent_without_credentials_propagates_402() -> None:
    with respx.mock:
        register = respx.post(f"{BROKER_URL}/register").mock(
            return_value=httpx.Response(402, json={"error": "Insufficient credits", "shortfallCredits": 5})
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        with pytest.raises(RegistryBrokerError) as exc_info:
            await client.registration.register_agent(REGISTRATION)
        await client.aclose()

        assert exc_info.value.status == 402
        assert register.call_count == 1


@pytest.mark.asyncio
async def test_purchase_with_hbar_rounds_to_tinybars() -> None:
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/credits/purchase").mock(
            return_value=httpx.Response(200, json=PURCHASE_RESPONSE)
        )
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        result = await client.credits.purchase_with_hbar(
            account_id=" 0.0.1234 ",
            private_key="abc",
            hbar_amount=0.123456789,
            memo="manual",
        )
        with pytest.raises(CreditTopUpError):
            await client.credits.purchase_with_hbar("0.0.1234", "abc", 0)
        await client.aclose()

        body = json.loads(route.calls.last.request.content)
        assert body["hbarAmount"] == 0.12345679
        assert body["accountId"] == "0.0.1234"
        assert body["memo"] == "manual"
        assert result.transaction_id.startswith("0.0.1234@")
        assert route.call_count == 1
