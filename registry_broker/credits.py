"""
Credit top-up guard.

Wraps one side-effecting broker call. On a 402 that can be priced, buys
credits with ledger currency and retries the call exactly once.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable, TypeVar

from registry_broker.errors import CreditTopUpError, RegistryBrokerError
from registry_broker.types import DEFAULT_MAX_TOP_UP_HBAR, InsufficientCreditsDetails

logger = logging.getLogger(__name__)

T = TypeVar("T")

TINYBARS_PER_HBAR = 100_000_000

PurchaseFunction = Callable[[float, InsufficientCreditsDetails], Awaitable[Any]]
RateLookup = Callable[[], Awaitable["float | None"]]


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def extract_insufficient_credits_details(error: BaseException) -> InsufficientCreditsDetails | None:
    """Pull pricing hints out of a 402 error body.

    Returns ``None`` for anything that is not a 402 with a JSON object body.
    """
    if not isinstance(error, RegistryBrokerError) or error.status != 402:
        return None
    body = error.body
    if not isinstance(body, dict):
        return None

    shortfall = _number(body.get("shortfallCredits"))
    if shortfall is None:
        required = _number(body.get("requiredCredits"))
        available = _number(body.get("availableCredits"))
        if required is not None and available is not None:
            shortfall = required - available
    message = body.get("error") or body.get("message")

    return InsufficientCreditsDetails(
        shortfall_credits=shortfall,
        credits_per_hbar=_number(body.get("creditsPerHbar")),
        estimated_hbar=_number(body.get("estimatedHbar")),
        message=message if isinstance(message, str) else None,
    )


def has_credit_shortfall(error: BaseException) -> bool:
    details = extract_insufficient_credits_details(error)
    return bool(details and details.shortfall_credits and details.shortfall_credits > 0)


def should_auto_top_up_history(history_ttl_seconds: int | None, error: BaseException) -> bool:
    """A 402 on session creation is a retention-window rejection when it
    mentions history or carries no message at all."""
    if not history_ttl_seconds:
        return False
    if not isinstance(error, RegistryBrokerError) or error.status != 402:
        return False
    details = extract_insufficient_credits_details(error)
    message = details.message if details else None
    if not message:
        return True
    return "history" in message.lower()


def hbar_for_shortfall(shortfall_credits: float, credits_per_hbar: float) -> float:
    """Smallest purchasable amount covering ``shortfall_credits`` plus one credit."""
    if credits_per_hbar <= 0:
        raise CreditTopUpError("creditsPerHbar must be positive")
    tinybars = math.ceil((shortfall_credits + 1) / credits_per_hbar * TINYBARS_PER_HBAR)
    return tinybars / TINYBARS_PER_HBAR


def round_hbar_amount(hbar_amount: float) -> float:
    """Ceil to whole tinybars; the result must be positive."""
    tinybars = math.ceil(hbar_amount * TINYBARS_PER_HBAR)
    if tinybars <= 0:
        raise CreditTopUpError("Calculated purchase amount must be positive")
    return tinybars / TINYBARS_PER_HBAR


async def _resolve_amount(
    details: InsufficientCreditsDetails,
    rate_lookup: RateLookup | None,
    default_hbar: float | None,
) -> float | None:
    if details.estimated_hbar and details.estimated_hbar > 0:
        return round_hbar_amount(details.estimated_hbar)

    shortfall = details.shortfall_credits
    if shortfall is not None and shortfall > 0:
        rate = details.credits_per_hbar
        if (rate is None or rate <= 0) and rate_lookup is not None:
            rate = await rate_lookup()
        if rate is not None and rate > 0:
            return hbar_for_shortfall(shortfall, rate)

    if default_hbar is not None:
        return round_hbar_amount(default_hbar)
    return None


async def run_with_credit_top_up(
    operation: Callable[[], Awaitable[T]],
    *,
    purchase: PurchaseFunction,
    max_hbar: float = DEFAULT_MAX_TOP_UP_HBAR,
    should_top_up: Callable[[BaseException], bool] | None = None,
    rate_lookup: RateLookup | None = None,
    default_hbar: float | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation``; on a priced 402 buy credits and retry once.

    Args:
        operation: Zero-arg coroutine factory. Called at most twice.
        purchase: ``purchase(hbar_amount, details)`` buys the credits.
        max_hbar: Largest single purchase allowed.
        should_top_up: Predicate deciding whether an error is recoverable.
            Defaults to "402 with a positive shortfall".
        rate_lookup: Fallback source for credits-per-HBAR.
        default_hbar: Amount used when the error carries no pricing.
        label: Used in log lines.

    Raises:
        CreditTopUpError: The computed purchase exceeds ``max_hbar``.
        RegistryBrokerError: The original failure, when it is not
            recoverable, or the retry's failure.
    """
    predicate = should_top_up or has_credit_shortfall
    try:
        return await operation()
    except RegistryBrokerError as error:
        if not predicate(error):
            raise
        details = extract_insufficient_credits_details(error) or InsufficientCreditsDetails()
        amount = await _resolve_amount(details, rate_lookup, default_hbar)
        if amount is None:
            logger.debug("Cannot price credit shortfall for %s — not retrying", label)
            raise
        if amount > max_hbar:
            raise CreditTopUpError(
                f"Auto top-up for {label} needs {amount} HBAR, above the limit of {max_hbar} HBAR"
            ) from error
        logger.info(
            "Insufficient credits for %s — purchasing %.8f HBAR (shortfall=%s)",
            label, amount, details.shortfall_credits,
        )
        await purchase(amount, details)

    return await operation()
