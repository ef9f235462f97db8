"""
Registry Broker client for Python.

Async HTTP client for a Registry Broker: a hosted service that indexes
agents across registries, registers new agents, meters usage with
credits, and relays (optionally end-to-end encrypted) chat.

Usage::

    from registry_broker import RegistryBrokerClient

    async with RegistryBrokerClient(api_key="rbk_...") as client:
        result = await client.search.search(q="weather", capabilities=["forecast"])
        outcome = await client.registration.register_agent(payload)
        if outcome.outcome == "pending":
            await client.registration.wait_for_registration_completion(outcome.attempt_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Awaitable, Callable, Iterable, Literal, TypeVar
from urllib.parse import quote as url_quote

import httpx
from pydantic import BaseModel, ValidationError

from registry_broker import credits as credit_guard
from registry_broker import encryption as crypto
from registry_broker.errors import (
    CipherEnvelopeError,
    EncryptionUnavailableError,
    OperationAbortedError,
    RegistrationFailedError,
    RegistrationRejectedError,
    RegistrationTimeoutError,
    RegistryBrokerClientError,
    RegistryBrokerError,
    RegistryBrokerParseError,
    RegistryBrokerTransportError,
)
from registry_broker.ledger import (
    LedgerSignFunction,
    canonicalize_ledger_network,
    resolve_ledger_signer,
)
from registry_broker.types import (
    DEFAULT_BASE_URL,
    DEFAULT_HANDSHAKE_POLL_INTERVAL_MS,
    DEFAULT_HANDSHAKE_TIMEOUT_MS,
    DEFAULT_PROGRESS_INTERVAL_MS,
    DEFAULT_PROGRESS_TIMEOUT_MS,
    DEFAULT_TIMEOUT_SECONDS,
    MIN_PROGRESS_INTERVAL_MS,
    AdditionalRegistryCatalog,
    AgentAuthConfig,
    AgentKeyMaterial,
    AgentRegistrationRequest,
    AutoTopUpConfig,
    ChatHistoryCompaction,
    ChatHistoryEntry,
    ChatHistorySnapshot,
    CipherEnvelope,
    ConversationContext,
    CreateSessionResponse,
    CreditPurchaseResult,
    DecryptedHistoryEntry,
    EncryptionConfig,
    EncryptionHandshakeRecord,
    EncryptionHandshakeResponse,
    EncryptionHandshakeSubmission,
    EncryptionPayload,
    EphemeralKeyPair,
    HistoryAutoTopUpConfig,
    InsufficientCreditsDetails,
    LedgerChallenge,
    LedgerVerification,
    RecipientIdentity,
    RegisterAgentResponse,
    RegisterEncryptionKeyPayload,
    RegisterEncryptionKeyResponse,
    RegistrationOutcome,
    RegistrationPartial,
    RegistrationPending,
    RegistrationProgressRecord,
    RegistrationProgressResponse,
    RegistrationQuote,
    RegistrationSuccess,
    RegistriesResponse,
    RegistryBrokerConfig,
    RegistryStats,
    ResolvedAgent,
    SearchResult,
    SendMessageResponse,
    SessionEncryptionStatus,
    SessionEncryptionSummary,
)

logger = logging.getLogger(__name__)

USER_AGENT = "registry-broker-client-python/0.1.0"

M = TypeVar("M", bound=BaseModel)

QueryParams = list[tuple[str, str]]
ProgressCallback = Callable[[RegistrationProgressRecord], "Awaitable[None] | None"]
SessionCallback = Callable[[str], "Awaitable[None] | None"]
ConversationPreference = Literal["required", "preferred", "plaintext", "disabled"]


def normalise_base_url(base_url: str | None) -> str:
    """Ensure the base URL ends in a versioned API prefix.

    ``https://h/api/v2`` is kept, ``https://h/api`` becomes
    ``https://h/api/v1`` and ``https://h`` becomes ``https://h/api/v1``.
    """
    trimmed = (base_url or "").strip() or DEFAULT_BASE_URL
    trimmed = trimmed.rstrip("/")
    last = trimmed.rsplit("/", 2)
    if len(last) >= 2 and last[-2] == "api" and last[-1].startswith("v") and last[-1][1:].isdigit():
        return trimmed
    if trimmed.endswith("/api"):
        return f"{trimmed}/v1"
    return f"{trimmed}/api/v1"


def _append_query(params: QueryParams, key: str, value: Any) -> None:
    """Add one query param; lists repeat the key in order, blanks are dropped."""
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append_query(params, key, item)
        return
    if isinstance(value, bool):
        params.append((key, "true" if value else "false"))
        return
    text = str(value).strip()
    if text:
        params.append((key, text))


async def _maybe_await(result: Any) -> None:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result


async def _wait(seconds: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep, or abort early if ``cancel_event`` is set."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationAbortedError()


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, exclude_none=True)
    return value


class _HttpClient:
    """Thin wrapper around httpx for broker requests."""

    def __init__(
        self,
        base_url: str,
        default_headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = normalise_base_url(base_url)
        self._lock = threading.RLock()
        self._default_headers: dict[str, str] = {}
        for name, value in (default_headers or {}).items():
            self.set_default_header(name, value)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    # -- Default headers ----------------------------------------------------

    def set_default_header(self, name: str, value: str | None) -> None:
        """Replace a default header; a blank value removes it."""
        key = name.strip().lower()
        with self._lock:
            if value is None or not str(value).strip():
                self._default_headers.pop(key, None)
            else:
                self._default_headers[key] = str(value).strip()

    def get_default_headers(self) -> dict[str, str]:
        with self._lock:
            return dict(self._default_headers)

    def set_api_key(self, api_key: str | None) -> None:
        self.set_default_header("x-api-key", api_key)

    def set_ledger_api_key(self, ledger_api_key: str | None) -> None:
        self.set_default_header("x-ledger-api-key", ledger_api_key)

    # -- Requests -----------------------------------------------------------

    def build_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, extra: dict[str, str] | None, has_body: bool) -> dict[str, str]:
        headers = self.get_default_headers()
        for name, value in (extra or {}).items():
            headers[name.lower()] = value
        headers.setdefault("accept", "application/json")
        headers.setdefault("user-agent", USER_AGENT)
        if has_body:
            headers.setdefault("content-type", "application/json")
        return headers

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        params: QueryParams | None = None,
    ) -> httpx.Response:
        """Send a request and return the raw 2xx response.

        Raises:
            RegistryBrokerError: Non-2xx status.
            RegistryBrokerTransportError: No response at all.
        """
        url = self.build_url(path)
        try:
            response = await self._client.request(
                method,
                url,
                content=json.dumps(_dump(body)) if body is not None else None,
                headers=self._headers(headers, body is not None),
                params=params or None,
            )
        except httpx.TransportError as e:
            raise RegistryBrokerTransportError(f"Request to {path} failed: {e}") from e

        if response.is_success:
            return response

        # Error path must never raise anything but the status error itself.
        error_body = self._error_body(response)
        detail = None
        if isinstance(error_body, dict):
            detail = error_body.get("error") or error_body.get("message")
        message = "Registry broker request failed"
        if isinstance(detail, str) and detail:
            message = f"{message}: {detail}"
        logger.debug("%s %s -> %d", method, path, response.status_code)
        raise RegistryBrokerError(
            message,
            status=response.status_code,
            status_text=response.reason_phrase,
            body=error_body,
        )

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            pass
        try:
            return response.text
        except (UnicodeDecodeError, LookupError) as e:
            return {"parseError": str(e)}

    async def request_json(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        params: QueryParams | None = None,
    ) -> Any:
        """Like :meth:`request` but decodes a JSON body.

        Raises:
            RegistryBrokerParseError: 2xx without a JSON body.
        """
        response = await self.request(method, path, body=body, headers=headers, params=params)
        content_type = response.headers.get("content-type", "").lower()
        if "json" not in content_type:
            raise RegistryBrokerParseError(
                f"Expected JSON response from {path}, got {content_type or 'no content type'}",
                raw_value=response.text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise RegistryBrokerParseError(
                f"Failed to parse JSON response from {path}", cause=e, raw_value=response.text
            ) from e

    @staticmethod
    def parse_with_schema(value: Any, model: type[M], context: str) -> M:
        """Validate a decoded payload against ``model``."""
        try:
            return model.model_validate(value)
        except ValidationError as e:
            raise RegistryBrokerParseError(f"Failed to parse {context}", cause=e, raw_value=value) from e

    async def close(self) -> None:
        await self._client.aclose()


class _ConversationContextStore:
    """Per-session shared secrets, written at handshake completion."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._contexts: dict[str, list[ConversationContext]] = {}

    def register(self, context: ConversationContext) -> None:
        with self._lock:
            entries = self._contexts.setdefault(context.session_id, [])
            entries[:] = [e for e in entries if e.shared_secret != context.shared_secret]
            entries.append(context)

    def get(self, session_id: str) -> list[ConversationContext]:
        with self._lock:
            return list(self._contexts.get(session_id, []))

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._contexts.pop(session_id, None)


# ============================================================
#  Sub-managers
# ============================================================


class _SearchManager:
    """Agent discovery."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def search(
        self,
        q: str | None = None,
        page: int | None = None,
        limit: int | None = None,
        registry: str | None = None,
        registries: list[str] | None = None,
        capabilities: list[str] | None = None,
        protocols: list[str] | None = None,
        adapters: list[str] | None = None,
        min_trust: float | None = None,
        metadata: dict[str, Any] | None = None,
        type: str | None = None,
        verified: bool | None = None,
        online: bool | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> SearchResult:
        """Search indexed agents.

        List-valued filters repeat the key (``capabilities=a&capabilities=b``).
        ``metadata`` entries become ``metadata.<key>=<value>`` params.
        """
        params: QueryParams = []
        _append_query(params, "q", q)
        _append_query(params, "page", page)
        _append_query(params, "limit", limit)
        _append_query(params, "registry", registry)
        _append_query(params, "registries", registries)
        _append_query(params, "capabilities", capabilities)
        _append_query(params, "protocols", protocols)
        _append_query(params, "adapters", adapters)
        _append_query(params, "minTrust", min_trust)
        for key, value in (metadata or {}).items():
            if key.strip():
                _append_query(params, f"metadata.{key.strip()}", value)
        _append_query(params, "type", type)
        _append_query(params, "verified", verified)
        _append_query(params, "online", online)
        _append_query(params, "sortBy", sort_by)
        _append_query(params, "sortOrder", sort_order)

        data = await self._http.request_json("GET", "/search", params=params)
        return self._http.parse_with_schema(data, SearchResult, "search response")

    async def stats(self) -> RegistryStats:
        data = await self._http.request_json("GET", "/stats")
        return self._http.parse_with_schema(data, RegistryStats, "stats response")

    async def registries(self) -> list[str]:
        data = await self._http.request_json("GET", "/registries")
        return self._http.parse_with_schema(data, RegistriesResponse, "registries response").registries

    async def additional_registries(self) -> AdditionalRegistryCatalog:
        data = await self._http.request_json("GET", "/register/additional-registries")
        return self._http.parse_with_schema(
            data, AdditionalRegistryCatalog, "additional registry catalog response"
        )


class _CreditManager:
    """Credit purchases with ledger currency."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def purchase_with_hbar(
        self,
        account_id: str,
        private_key: str,
        hbar_amount: float,
        memo: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditPurchaseResult:
        """Buy credits. The amount is ceiled to whole tinybars.

        Raises:
            CreditTopUpError: The amount is not positive.
        """
        body: dict[str, Any] = {
            "accountId": account_id.strip(),
            "payerKey": private_key.strip(),
            "hbarAmount": credit_guard.round_hbar_amount(hbar_amount),
        }
        if memo:
            body["memo"] = memo
        if metadata:
            body["metadata"] = metadata

        logger.info("Purchasing credits: %.8f HBAR from %s", body["hbarAmount"], body["accountId"])
        data = await self._http.request_json("POST", "/credits/purchase", body)
        return self._http.parse_with_schema(data, CreditPurchaseResult, "credit purchase response")

    def purchaser_for(
        self, config: AutoTopUpConfig, memo: str, metadata: dict[str, Any] | None = None
    ) -> credit_guard.PurchaseFunction:
        """Adapt a top-up config into the guard's purchase callback."""

        async def purchase(hbar_amount: float, details: InsufficientCreditsDetails) -> CreditPurchaseResult:
            extra = dict(metadata or {})
            if details.shortfall_credits is not None:
                extra["shortfallCredits"] = details.shortfall_credits
            return await self.purchase_with_hbar(
                account_id=config.account_id,
                private_key=config.private_key,
                hbar_amount=hbar_amount,
                memo=config.memo or memo,
                metadata=extra or None,
            )

        return purchase


def classify_registration(response: RegisterAgentResponse) -> RegistrationOutcome:
    """Turn a register/update response into a three-way outcome.

    ``pending`` while any sub-registry is still in flight, ``partial``
    once any failed terminally, ``success`` otherwise.

    Raises:
        RegistrationRejectedError: The primary registration itself failed,
            so none of the three outcomes applies.
    """
    if response.primary_result == "failed":
        raise RegistrationRejectedError(response)

    status = (response.status or "").lower()
    pending = [r.key for r in response.additional_registries if r.status == "pending"]
    failed = [r for r in response.additional_registries if r.status == "failed"]

    if pending or status == "pending":
        return RegistrationPending(
            attempt_id=response.attempt_id,
            pending_registries=pending,
            response=response,
        )
    if failed or status == "partial":
        return RegistrationPartial(failed_registries=failed, response=response)
    return RegistrationSuccess(response=response)


def _require_attempt_id(attempt_id: str | None) -> str:
    trimmed = (attempt_id or "").strip()
    if not trimmed:
        raise RegistryBrokerClientError("attempt_id is required to track registration progress")
    return trimmed


class _RegistrationManager:
    """Agent registration, updates and progress polling."""

    def __init__(
        self,
        http: _HttpClient,
        credits: _CreditManager,
        auto_top_up: AutoTopUpConfig | None = None,
    ) -> None:
        self._http = http
        self._credits = credits
        self._auto_top_up = auto_top_up

    @staticmethod
    def _body(payload: AgentRegistrationRequest | dict[str, Any]) -> dict[str, Any]:
        if isinstance(payload, AgentRegistrationRequest):
            return payload.to_wire()
        return AgentRegistrationRequest.model_validate(payload).to_wire()

    async def _submit(
        self,
        method: str,
        path: str,
        body: dict[str, Any],
        auto_top_up: AutoTopUpConfig | None,
        label: str,
    ) -> RegistrationOutcome:
        async def submit() -> RegisterAgentResponse:
            data = await self._http.request_json(method, path, body)
            return self._http.parse_with_schema(data, RegisterAgentResponse, f"{label} response")

        top_up = auto_top_up or self._auto_top_up
        if top_up is None:
            response = await submit()
        else:

            async def rate_lookup() -> float | None:
                quote = await self.get_registration_quote(body)
                return quote.credits_per_hbar

            response = await credit_guard.run_with_credit_top_up(
                submit,
                purchase=self._credits.purchaser_for(top_up, "Registry Broker auto top-up"),
                max_hbar=top_up.max_hbar_amount,
                rate_lookup=rate_lookup,
                label=label,
            )

        outcome = classify_registration(response)
        logger.info("%s for %s: %s", label.capitalize(), response.uaid, outcome.outcome)
        return outcome

    async def register_agent(
        self,
        payload: AgentRegistrationRequest | dict[str, Any],
        auto_top_up: AutoTopUpConfig | None = None,
    ) -> RegistrationOutcome:
        """Register an agent with the broker.

        Args:
            payload: Profile, endpoint, protocol and optional
                ``additional_registries`` to publish to.
            auto_top_up: Ledger credentials for buying missing credits.
                Defaults to the client's ``registration_auto_top_up``.

        Returns:
            :class:`RegistrationSuccess`, :class:`RegistrationPending` or
            :class:`RegistrationPartial` (discriminated by ``outcome``).

        Raises:
            RegistryBrokerError: Including 402 when credits are short and no
                top-up credentials exist.
            RegistrationRejectedError: The broker did not register the agent.
            CreditTopUpError: The required purchase exceeds the bound.
        """
        return await self._submit("POST", "/register", self._body(payload), auto_top_up, "agent registration")

    async def update_agent(
        self,
        uaid: str,
        payload: AgentRegistrationRequest | dict[str, Any],
        auto_top_up: AutoTopUpConfig | None = None,
    ) -> RegistrationOutcome:
        """Update an existing agent. Same outcome protocol as registration."""
        return await self._submit(
            "PATCH",
            f"/register/{url_quote(uaid, safe='')}",
            self._body(payload),
            auto_top_up,
            "agent update",
        )

    async def get_registration_quote(
        self, payload: AgentRegistrationRequest | dict[str, Any]
    ) -> RegistrationQuote:
        data = await self._http.request_json("POST", "/register/quote", self._body(payload))
        return self._http.parse_with_schema(data, RegistrationQuote, "registration quote response")

    async def get_registration_progress(self, attempt_id: str) -> RegistrationProgressRecord | None:
        """Fetch one progress record; ``None`` while the broker has none yet."""
        attempt_id = _require_attempt_id(attempt_id)
        try:
            data = await self._http.request_json(
                "GET", f"/register/progress/{url_quote(attempt_id, safe='')}"
            )
        except RegistryBrokerError as e:
            if e.status == 404:
                return None
            raise
        return self._http.parse_with_schema(
            data, RegistrationProgressResponse, "registration progress response"
        ).progress

    async def wait_for_registration_completion(
        self,
        attempt_id: str,
        interval_ms: int = DEFAULT_PROGRESS_INTERVAL_MS,
        timeout_ms: int = DEFAULT_PROGRESS_TIMEOUT_MS,
        throw_on_failure: bool = True,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RegistrationProgressRecord:
        """Poll a registration attempt until it is terminal.

        Args:
            attempt_id: From a pending outcome.
            interval_ms: Poll interval (never below 250 ms).
            timeout_ms: Overall deadline.
            throw_on_failure: Raise on a ``failed`` or ``partial`` record
                instead of returning it.
            on_progress: Sync or async callback run for every record seen.
            cancel_event: Setting it aborts the next wait.

        Raises:
            RegistrationFailedError: Terminal failure with ``throw_on_failure``.
            RegistrationTimeoutError: Deadline passed first.
            OperationAbortedError: ``cancel_event`` was set.
        """
        attempt_id = _require_attempt_id(attempt_id)
        interval = max(MIN_PROGRESS_INTERVAL_MS, interval_ms) / 1000.0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        last_status: str | None = None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationAbortedError()

            record = await self.get_registration_progress(attempt_id)
            if record is not None:
                if record.status != last_status:
                    logger.debug("Registration %s is %s", attempt_id, record.status)
                    last_status = record.status
                if on_progress is not None:
                    await _maybe_await(on_progress(record))
                if record.is_terminal:
                    if throw_on_failure and record.status in ("failed", "partial"):
                        raise RegistrationFailedError(record)
                    return record

            if loop.time() >= deadline:
                raise RegistrationTimeoutError(attempt_id, timeout_ms)
            await _wait(interval, cancel_event)

    async def resolve_uaid(self, uaid: str) -> ResolvedAgent:
        data = await self._http.request_json("GET", f"/resolve/{url_quote(uaid, safe='')}")
        return self._http.parse_with_schema(data, ResolvedAgent, "resolve response")


class _LedgerAuthManager:
    """Challenge/response login with a ledger account."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http
        self.verification: LedgerVerification | None = None

    async def create_challenge(self, account_id: str, network: str) -> LedgerChallenge:
        resolved = canonicalize_ledger_network(network)
        data = await self._http.request_json(
            "POST",
            "/auth/ledger/challenge",
            {"accountId": account_id, "network": resolved.wire_name},
        )
        return self._http.parse_with_schema(data, LedgerChallenge, "ledger challenge response")

    async def verify_challenge(
        self,
        challenge_id: str,
        account_id: str,
        network: str,
        signature: str,
        signature_kind: str | None = None,
        public_key: str | None = None,
        expires_in_minutes: int | None = None,
    ) -> LedgerVerification:
        """Submit a signed challenge; the issued key becomes ``x-ledger-api-key``."""
        resolved = canonicalize_ledger_network(network)
        body: dict[str, Any] = {
            "challengeId": challenge_id,
            "accountId": account_id,
            "network": resolved.wire_name,
            "signature": signature,
        }
        if signature_kind:
            body["signatureKind"] = signature_kind
        if public_key:
            body["publicKey"] = public_key
        if expires_in_minutes is not None:
            body["expiresInMinutes"] = expires_in_minutes

        data = await self._http.request_json("POST", "/auth/ledger/verify", body)
        result = self._http.parse_with_schema(data, LedgerVerification, "ledger verification response")
        self._http.set_ledger_api_key(result.key)
        self.verification = result
        logger.info(
            "Ledger account %s verified on %s (key %s…%s)",
            result.account_id,
            resolved.canonical,
            result.api_key.prefix,
            result.api_key.last_four,
        )
        return result

    async def authenticate(
        self,
        account_id: str,
        network: str,
        sign: LedgerSignFunction,
        expires_in_minutes: int | None = None,
    ) -> LedgerVerification:
        """Challenge, sign with ``sign``, verify."""
        signer = resolve_ledger_signer(network, sign=sign)
        challenge = await self.create_challenge(account_id, network)
        signed = await signer(challenge.message)
        return await self.verify_challenge(
            challenge.challenge_id,
            account_id,
            network,
            signed.signature,
            signature_kind=signed.signature_kind,
            public_key=signed.public_key,
            expires_in_minutes=expires_in_minutes,
        )

    async def authenticate_with_credentials(
        self,
        account_id: str,
        network: str,
        sign: LedgerSignFunction | None = None,
        hedera_private_key: str | None = None,
        evm_private_key: str | None = None,
        expires_in_minutes: int | None = None,
        set_account_header: bool = True,
        label: str | None = None,
    ) -> LedgerVerification:
        """Authenticate with a private key or custom signer.

        Key/network family mismatches raise before any request is sent.

        Raises:
            LedgerNetworkMismatchError: Key family does not match ``network``.
            LedgerNetworkError: Unknown network.
            LedgerAuthenticationError: No key and no signer.
        """
        resolved = canonicalize_ledger_network(network)
        signer = resolve_ledger_signer(
            resolved,
            sign=sign,
            hedera_private_key=hedera_private_key,
            evm_private_key=evm_private_key,
        )
        logger.info("Authenticating %s ledger account %s", label or resolved.canonical, account_id)

        challenge = await self.create_challenge(account_id, network)
        signed = await signer(challenge.message)
        verification = await self.verify_challenge(
            challenge.challenge_id,
            account_id,
            network,
            signed.signature,
            signature_kind=signed.signature_kind,
            public_key=signed.public_key,
            expires_in_minutes=expires_in_minutes,
        )
        if set_account_header:
            self._http.set_default_header("x-account-id", verification.account_id)
        return verification


class _EncryptionManager:
    """Long-term encryption keys and envelope helpers."""

    def __init__(self, http: _HttpClient, config: EncryptionConfig | None = None) -> None:
        self._http = http
        self._config = config
        self._lock = threading.RLock()
        self._keys: dict[str, AgentKeyMaterial] = {}

    async def register_key(
        self, payload: RegisterEncryptionKeyPayload | dict[str, Any]
    ) -> RegisterEncryptionKeyResponse:
        """Publish a public key. Private keys are never sent."""
        if not isinstance(payload, RegisterEncryptionKeyPayload):
            payload = RegisterEncryptionKeyPayload.model_validate(payload)
        data = await self._http.request_json("POST", "/encryption/keys", payload)
        return self._http.parse_with_schema(
            data, RegisterEncryptionKeyResponse, "encryption key registration response"
        )

    def get_agent_key(self, uaid: str) -> AgentKeyMaterial | None:
        with self._lock:
            return self._keys.get(uaid)

    async def _ensure_key(
        self,
        store_key: str,
        identity: RegisterEncryptionKeyPayload,
        generate_if_missing: bool,
        private_key: str | None,
        public_key: str | None,
    ) -> AgentKeyMaterial:
        with self._lock:
            existing = self._keys.get(store_key)
        if existing is not None:
            return existing

        if private_key:
            public_key = public_key or crypto.derive_public_key(private_key)
        elif not public_key:
            if not generate_if_missing:
                raise RegistryBrokerClientError(
                    f"No encryption key material for {store_key} and generation is disabled"
                )
            pair = crypto.generate_key_pair()
            private_key, public_key = pair.private_key, pair.public_key
            logger.info("Generated encryption key for %s", store_key)

        identity.public_key = public_key
        await self.register_key(identity)

        material = AgentKeyMaterial(
            uaid=identity.uaid,
            key_type=identity.key_type,
            public_key=public_key,
            private_key=private_key,
        )
        with self._lock:
            self._keys[store_key] = material
        return material

    async def ensure_agent_key(
        self,
        uaid: str,
        generate_if_missing: bool = True,
        private_key: str | None = None,
        public_key: str | None = None,
        key_type: str = "secp256k1",
    ) -> AgentKeyMaterial:
        """Return the agent's key, registering one if needed.

        Looks in the local store first, then uses the supplied material,
        then generates a fresh pair when allowed.
        """
        return await self._ensure_key(
            uaid,
            RegisterEncryptionKeyPayload(key_type=key_type, public_key="", uaid=uaid),
            generate_if_missing,
            private_key,
            public_key,
        )

    async def bootstrap(self) -> AgentKeyMaterial | None:
        """Apply ``EncryptionConfig.auto_register``, if any."""
        auto = self._config.auto_register if self._config else None
        if auto is None or not auto.enabled:
            return None

        material = auto.key_material
        if auto.uaid:
            return await self.ensure_agent_key(
                auto.uaid,
                generate_if_missing=material.generate_if_missing,
                private_key=material.private_key,
                public_key=material.public_key,
                key_type=auto.key_type,
            )

        if auto.ledger_account_id:
            store_key = f"ledger:{auto.ledger_account_id}"
        elif auto.email:
            store_key = f"email:{auto.email.lower()}"
        else:
            raise RegistryBrokerClientError(
                "auto_register requires uaid, ledger_account_id or email"
            )
        return await self._ensure_key(
            store_key,
            RegisterEncryptionKeyPayload(
                key_type=auto.key_type,
                public_key="",
                ledger_account_id=auto.ledger_account_id,
                ledger_network=auto.ledger_network,
                email=auto.email,
            ),
            material.generate_if_missing,
            material.private_key,
            material.public_key,
        )

    # -- Primitives ---------------------------------------------------------

    def generate_ephemeral_key_pair(self) -> EphemeralKeyPair:
        return crypto.generate_key_pair()

    def derive_shared_secret(self, private_key: str, peer_public_key: str) -> bytes:
        return crypto.derive_shared_secret(private_key, peer_public_key)

    def encrypt_cipher_envelope(self, payload: EncryptionPayload | dict[str, Any]) -> CipherEnvelope:
        if not isinstance(payload, EncryptionPayload):
            payload = EncryptionPayload.model_validate(payload)
        return crypto.encrypt_cipher_envelope(
            payload.plaintext,
            payload.session_id,
            payload.shared_secret,
            payload.recipients,
            associated_data=payload.associated_data,
            revision=payload.revision,
        )

    def decrypt_cipher_envelope(self, envelope: CipherEnvelope | dict[str, Any], shared_secret: bytes | str) -> str:
        return crypto.decrypt_cipher_envelope(envelope, shared_secret)


class _ChatManager:
    """Chat sessions, messages and history."""

    def __init__(
        self,
        http: _HttpClient,
        credits: _CreditManager,
        contexts: _ConversationContextStore,
        history_top_up: HistoryAutoTopUpConfig | None = None,
        auto_decrypt_history: bool = False,
    ) -> None:
        self._http = http
        self._credits = credits
        self._contexts = contexts
        self._history_top_up = history_top_up
        self._auto_decrypt_history = auto_decrypt_history

    async def create_session(
        self,
        uaid: str | None = None,
        agent_url: str | None = None,
        auth: AgentAuthConfig | dict[str, Any] | None = None,
        history_ttl_seconds: int | None = None,
        encryption_requested: bool | None = None,
        sender_uaid: str | None = None,
    ) -> CreateSessionResponse:
        """Open a chat session with an indexed agent or a direct endpoint.

        When ``history_ttl_seconds`` is rejected for missing credits and a
        history top-up is configured, buys credits and retries once.
        """
        if not uaid and not agent_url:
            raise RegistryBrokerClientError("create_session requires uaid or agent_url")

        body: dict[str, Any] = {}
        if uaid:
            body["uaid"] = uaid
        if agent_url:
            body["agentUrl"] = agent_url
        if auth is not None:
            body["auth"] = _dump(auth)
        if history_ttl_seconds is not None:
            body["historyTtlSeconds"] = history_ttl_seconds
        if encryption_requested is not None:
            body["encryptionRequested"] = encryption_requested
        if sender_uaid:
            body["senderUaid"] = sender_uaid

        async def submit() -> CreateSessionResponse:
            data = await self._http.request_json("POST", "/chat/session", body)
            return self._http.parse_with_schema(data, CreateSessionResponse, "chat session response")

        top_up = self._history_top_up
        if top_up is None or not history_ttl_seconds:
            return await submit()

        return await credit_guard.run_with_credit_top_up(
            submit,
            purchase=self._credits.purchaser_for(
                top_up,
                "Registry Broker chat history top-up",
                {"purpose": "chat-history", "historyTtlSeconds": history_ttl_seconds},
            ),
            max_hbar=top_up.max_hbar_amount,
            should_top_up=lambda error: credit_guard.should_auto_top_up_history(
                history_ttl_seconds, error
            ),
            default_hbar=top_up.hbar_amount,
            label="chat history retention",
        )

    async def send_message(
        self,
        message: str | None = None,
        session_id: str | None = None,
        uaid: str | None = None,
        agent_url: str | None = None,
        streaming: bool | None = None,
        auth: AgentAuthConfig | dict[str, Any] | None = None,
        encryption: EncryptionPayload | dict[str, Any] | None = None,
        cipher_envelope: CipherEnvelope | dict[str, Any] | None = None,
    ) -> SendMessageResponse:
        """Send a chat message.

        With ``encryption`` the envelope is sealed locally and only the
        envelope goes over the wire.
        """
        body: dict[str, Any] = {}
        if encryption is not None:
            if not isinstance(encryption, EncryptionPayload):
                encryption = EncryptionPayload.model_validate(encryption)
            envelope_session = (encryption.session_id or session_id or "").strip()
            if not envelope_session:
                raise RegistryBrokerClientError("Encrypted chat messages require a session_id")
            recipients = list(encryption.recipients or [])
            if not recipients:
                raise RegistryBrokerClientError("Encrypted chat messages require at least one recipient")
            envelope = crypto.encrypt_cipher_envelope(
                encryption.plaintext,
                envelope_session,
                encryption.shared_secret,
                recipients,
                associated_data=encryption.associated_data,
                revision=encryption.revision,
            )
            body["cipherEnvelope"] = _dump(envelope)
        elif cipher_envelope is not None:
            body["cipherEnvelope"] = _dump(cipher_envelope)
        elif message is not None:
            body["message"] = message
        else:
            raise RegistryBrokerClientError("send_message requires message, encryption or cipher_envelope")

        if session_id:
            body["sessionId"] = session_id
        if uaid:
            body["uaid"] = uaid
        if agent_url:
            body["agentUrl"] = agent_url
        if streaming is not None:
            body["streaming"] = streaming
        if auth is not None:
            body["auth"] = _dump(auth)

        data = await self._http.request_json("POST", "/chat/message", body)
        return self._http.parse_with_schema(data, SendMessageResponse, "chat message response")

    async def get_history(
        self,
        session_id: str,
        decrypt: bool | None = None,
        shared_secret: bytes | str | None = None,
        identity: RecipientIdentity | None = None,
    ) -> ChatHistorySnapshot:
        """Fetch a session's history, optionally decrypting envelopes.

        ``decrypted_history`` is aligned with ``history``; an entry that
        cannot be opened has ``plaintext=None``. A history with no envelopes
        passes content through; encrypted history without a secret (given
        or cached for the session) gives an empty list.
        """
        data = await self._http.request_json(
            "GET", f"/chat/session/{url_quote(session_id, safe='')}/history"
        )
        if isinstance(data, dict) and "sessionId" not in data:
            data = {**data, "sessionId": session_id}
        snapshot = self._http.parse_with_schema(data, ChatHistorySnapshot, "chat history response")

        should_decrypt = self._auto_decrypt_history if decrypt is None else decrypt
        if not should_decrypt:
            return snapshot

        if not any(entry.cipher_envelope is not None for entry in snapshot.history):
            snapshot.decrypted_history = [
                DecryptedHistoryEntry(entry=entry, plaintext=entry.content)
                for entry in snapshot.history
            ]
            return snapshot

        if shared_secret is not None:
            secrets = [crypto.normalize_shared_secret(shared_secret)]
        else:
            contexts = self._contexts.get(session_id)
            matched = [
                c for c in contexts
                if identity is not None and c.identity is not None and identity.matches(c.identity)
            ]
            secrets = [c.shared_secret for c in (matched or contexts)]
        if not secrets:
            snapshot.decrypted_history = []
            return snapshot

        snapshot.decrypted_history = [
            DecryptedHistoryEntry(entry=entry, plaintext=_open_entry(entry, secrets))
            for entry in snapshot.history
        ]
        return snapshot

    async def compact_history(
        self, session_id: str, preserve_entries: int | None = None
    ) -> ChatHistoryCompaction:
        body: dict[str, Any] = {}
        if preserve_entries is not None:
            body["preserveEntries"] = preserve_entries
        data = await self._http.request_json(
            "POST", f"/chat/session/{url_quote(session_id, safe='')}/compact", body
        )
        return self._http.parse_with_schema(data, ChatHistoryCompaction, "chat history compaction response")

    async def end_session(self, session_id: str) -> None:
        """End a session. Ending an unknown or already-ended session is a no-op."""
        try:
            await self._http.request("DELETE", f"/chat/session/{url_quote(session_id, safe='')}")
        except RegistryBrokerError as e:
            if e.status != 404:
                raise
            logger.debug("Chat session %s already ended", session_id)
        self._contexts.drop(session_id)

    async def get_encryption_status(self, session_id: str) -> SessionEncryptionStatus:
        data = await self._http.request_json(
            "GET", f"/chat/session/{url_quote(session_id, safe='')}/encryption"
        )
        return self._http.parse_with_schema(data, SessionEncryptionStatus, "session encryption status")

    async def submit_encryption_handshake(
        self, session_id: str, payload: EncryptionHandshakeSubmission | dict[str, Any]
    ) -> EncryptionHandshakeRecord:
        if not isinstance(payload, EncryptionHandshakeSubmission):
            payload = EncryptionHandshakeSubmission.model_validate(payload)
        data = await self._http.request_json(
            "POST",
            f"/chat/session/{url_quote(session_id, safe='')}/encryption-handshake",
            payload,
        )
        return self._http.parse_with_schema(
            data, EncryptionHandshakeResponse, "encryption handshake response"
        ).handshake


def _open_entry(entry: ChatHistoryEntry, secrets: Iterable[bytes]) -> str | None:
    if entry.cipher_envelope is None:
        return entry.content
    for secret in secrets:
        try:
            return crypto.decrypt_cipher_envelope(entry.cipher_envelope, secret)
        except CipherEnvelopeError:
            continue
    return None


# ============================================================
#  Conversations
# ============================================================


class ConversationHandle:
    """A chat session with its negotiated mode (``encrypted`` or ``plaintext``)."""

    def __init__(
        self,
        chat: _ChatManager,
        session_id: str,
        mode: Literal["encrypted", "plaintext"],
        summary: SessionEncryptionSummary | None = None,
        uaid: str | None = None,
        shared_secret: bytes | None = None,
        recipients: list[RecipientIdentity] | None = None,
        identity: RecipientIdentity | None = None,
    ) -> None:
        self._chat = chat
        self.session_id = session_id
        self.mode = mode
        self.summary = summary
        self.uaid = uaid
        self.identity = identity
        self._shared_secret = shared_secret
        self._recipients = recipients or []

    @property
    def encrypted(self) -> bool:
        return self.mode == "encrypted"

    def __repr__(self) -> str:
        return f"ConversationHandle(session_id={self.session_id!r}, mode={self.mode!r})"

    async def send(
        self,
        plaintext: str,
        streaming: bool | None = None,
        auth: AgentAuthConfig | dict[str, Any] | None = None,
    ) -> SendMessageResponse:
        if not self.encrypted:
            return await self._chat.send_message(
                plaintext, session_id=self.session_id, uaid=self.uaid, streaming=streaming, auth=auth
            )
        return await self._chat.send_message(
            session_id=self.session_id,
            uaid=self.uaid,
            streaming=streaming,
            auth=auth,
            encryption=EncryptionPayload(
                plaintext=plaintext,
                shared_secret=self._shared_secret or b"",
                recipients=self._recipients,
                session_id=self.session_id,
            ),
        )

    async def fetch_history(self, decrypt: bool = True) -> ChatHistorySnapshot:
        if not self.encrypted:
            return await self._chat.get_history(self.session_id, decrypt=False)
        return await self._chat.get_history(
            self.session_id, decrypt=decrypt, shared_secret=self._shared_secret
        )

    def decrypt_history_entry(self, entry: ChatHistoryEntry | dict[str, Any]) -> str | None:
        if not isinstance(entry, ChatHistoryEntry):
            entry = ChatHistoryEntry.model_validate(entry)
        secrets = [self._shared_secret] if self._shared_secret else []
        return _open_entry(entry, secrets)


def _normalise_preference(preference: str) -> Literal["required", "preferred", "plaintext"]:
    value = (preference or "preferred").strip().lower()
    if value == "disabled":
        return "plaintext"
    if value not in ("required", "preferred", "plaintext"):
        raise RegistryBrokerClientError(f"Unknown encryption preference: {preference}")
    return value  # type: ignore[return-value]


def _identity_of(participant: Any) -> RecipientIdentity | None:
    if participant is None:
        return None
    identity = RecipientIdentity(
        uaid=participant.uaid,
        ledger_account_id=participant.ledger_account_id,
        user_id=participant.user_id,
        email=participant.email,
    )
    return None if identity.is_empty() else identity


class _ConversationManager:
    """Negotiates encrypted (or plaintext) conversations over chat sessions."""

    def __init__(
        self,
        chat: _ChatManager,
        encryption: _EncryptionManager,
        contexts: _ConversationContextStore,
        ready: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._chat = chat
        self._encryption = encryption
        self._contexts = contexts
        self._ready = ready

    async def _ensure_ready(self) -> None:
        if self._ready is not None:
            await self._ready()

    async def start_conversation(
        self,
        uaid: str,
        preference: ConversationPreference = "preferred",
        sender_uaid: str | None = None,
        history_ttl_seconds: int | None = None,
        auth: AgentAuthConfig | dict[str, Any] | None = None,
        handshake_timeout_ms: int = DEFAULT_HANDSHAKE_TIMEOUT_MS,
        poll_interval_ms: int = DEFAULT_HANDSHAKE_POLL_INTERVAL_MS,
        on_session_created: SessionCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ConversationHandle:
        """Open a session with ``uaid`` and negotiate encryption.

        ``required`` raises :class:`EncryptionUnavailableError` when the
        counterpart has no key; ``preferred`` falls back to plaintext.
        Setting ``cancel_event`` aborts the handshake wait with
        :class:`OperationAbortedError`.
        """
        await self._ensure_ready()
        mode = _normalise_preference(preference)
        session = await self._chat.create_session(
            uaid=uaid,
            auth=auth,
            history_ttl_seconds=history_ttl_seconds,
            encryption_requested=mode != "plaintext",
            sender_uaid=sender_uaid,
        )
        if on_session_created is not None:
            await _maybe_await(on_session_created(session.session_id))

        if mode == "plaintext":
            return ConversationHandle(self._chat, session.session_id, "plaintext", uaid=uaid)

        summary = session.encryption
        if summary is None or not summary.enabled:
            if mode == "required":
                raise EncryptionUnavailableError(session.session_id, summary)
            logger.info("Encryption unavailable for session %s — continuing in plaintext", session.session_id)
            return ConversationHandle(self._chat, session.session_id, "plaintext", summary=summary, uaid=uaid)

        return await self._establish(
            session.session_id,
            "requester",
            summary,
            own_uaid=sender_uaid,
            peer_uaid=uaid,
            timeout_ms=handshake_timeout_ms,
            interval_ms=poll_interval_ms,
            cancel_event=cancel_event,
        )

    async def accept_conversation(
        self,
        session_id: str,
        responder_uaid: str | None = None,
        preference: ConversationPreference = "preferred",
        handshake_timeout_ms: int = DEFAULT_HANDSHAKE_TIMEOUT_MS,
        poll_interval_ms: int = DEFAULT_HANDSHAKE_POLL_INTERVAL_MS,
        cancel_event: asyncio.Event | None = None,
    ) -> ConversationHandle:
        """Responder half of :meth:`start_conversation`."""
        await self._ensure_ready()
        mode = _normalise_preference(preference)
        if mode == "plaintext":
            return ConversationHandle(self._chat, session_id, "plaintext")

        status = await self._chat.get_encryption_status(session_id)
        summary = status.encryption
        if summary is None or not summary.enabled:
            if mode == "required":
                raise EncryptionUnavailableError(session_id, summary)
            return ConversationHandle(self._chat, session_id, "plaintext", summary=summary)

        peer = summary.requester.uaid if summary.requester else None
        return await self._establish(
            session_id,
            "responder",
            summary,
            own_uaid=responder_uaid,
            peer_uaid=peer,
            timeout_ms=handshake_timeout_ms,
            interval_ms=poll_interval_ms,
            cancel_event=cancel_event,
        )

    async def start_chat(
        self,
        uaid: str | None = None,
        agent_url: str | None = None,
        preference: ConversationPreference = "preferred",
        sender_uaid: str | None = None,
        history_ttl_seconds: int | None = None,
        auth: AgentAuthConfig | dict[str, Any] | None = None,
        on_session_created: SessionCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ConversationHandle:
        """A uaid negotiates a conversation; a bare ``agent_url`` is always plaintext."""
        if uaid:
            return await self.start_conversation(
                uaid,
                preference=preference,
                sender_uaid=sender_uaid,
                history_ttl_seconds=history_ttl_seconds,
                auth=auth,
                on_session_created=on_session_created,
                cancel_event=cancel_event,
            )
        if not agent_url:
            raise RegistryBrokerClientError("start_chat requires uaid or agent_url")

        session = await self._chat.create_session(
            agent_url=agent_url,
            auth=auth,
            history_ttl_seconds=history_ttl_seconds,
            sender_uaid=sender_uaid,
        )
        if on_session_created is not None:
            await _maybe_await(on_session_created(session.session_id))
        return ConversationHandle(self._chat, session.session_id, "plaintext")

    async def _establish(
        self,
        session_id: str,
        role: Literal["requester", "responder"],
        summary: SessionEncryptionSummary,
        own_uaid: str | None,
        peer_uaid: str | None,
        timeout_ms: int,
        interval_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> ConversationHandle:
        pair = self._encryption.generate_ephemeral_key_pair()
        await self._chat.submit_encryption_handshake(
            session_id,
            EncryptionHandshakeSubmission(
                role=role,
                ephemeral_public_key=pair.public_key,
                uaid=own_uaid,
            ),
        )
        logger.debug("Submitted %s handshake for session %s", role, session_id)

        handshake = await self._wait_for_handshake(
            session_id, summary, timeout_ms, interval_ms, cancel_event
        )
        counterpart = handshake.responder if role == "requester" else handshake.requester
        if counterpart is None or not counterpart.ephemeral_public_key:
            raise EncryptionUnavailableError(
                session_id, summary, reason="counterpart did not publish an ephemeral key"
            )

        secret = self._encryption.derive_shared_secret(pair.private_key, counterpart.ephemeral_public_key)
        recipients = [
            identity
            for identity in (_identity_of(summary.requester), _identity_of(summary.responder))
            if identity is not None
        ]
        own = summary.requester if role == "requester" else summary.responder
        identity = _identity_of(own) or (RecipientIdentity(uaid=own_uaid) if own_uaid else None)

        self._contexts.register(
            ConversationContext(session_id=session_id, shared_secret=secret, identity=identity)
        )
        logger.info("Encrypted conversation established for session %s", session_id)
        return ConversationHandle(
            self._chat,
            session_id,
            "encrypted",
            summary=summary,
            uaid=peer_uaid,
            shared_secret=secret,
            recipients=recipients,
            identity=identity,
        )

    async def _wait_for_handshake(
        self,
        session_id: str,
        summary: SessionEncryptionSummary,
        timeout_ms: int,
        interval_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> EncryptionHandshakeRecord:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationAbortedError()
            status = await self._chat.get_encryption_status(session_id)
            handshake = status.encryption.handshake if status.encryption else None
            if handshake is not None and handshake.status == "complete":
                return handshake
            if loop.time() >= deadline:
                raise EncryptionUnavailableError(
                    session_id, summary, reason="timed out waiting for encryption handshake"
                )
            await _wait(max(interval_ms, 1) / 1000.0, cancel_event)


# ============================================================
#  Main client
# ============================================================


class RegistryBrokerClient:
    """
    The main Registry Broker client.

    Wires discovery, registration, credits, ledger authentication, chat,
    encryption and conversations over one shared HTTP session.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        ledger_api_key: str | None = None,
        default_headers: dict[str, str] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        registration_auto_top_up: AutoTopUpConfig | None = None,
        history_auto_top_up: HistoryAutoTopUpConfig | None = None,
        encryption: EncryptionConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = _HttpClient(base_url, default_headers, timeout_seconds, transport)
        if api_key:
            self._http.set_api_key(api_key)
        if ledger_api_key:
            self._http.set_ledger_api_key(ledger_api_key)

        self._encryption_config = encryption
        self._contexts = _ConversationContextStore()

        # Sub-managers
        self.search = _SearchManager(self._http)
        self.credits = _CreditManager(self._http)
        self.ledger = _LedgerAuthManager(self._http)
        self.registration = _RegistrationManager(self._http, self.credits, registration_auto_top_up)
        self.encryption = _EncryptionManager(self._http, encryption)
        self.chat = _ChatManager(
            self._http,
            self.credits,
            self._contexts,
            history_top_up=history_auto_top_up,
            auto_decrypt_history=bool(encryption and encryption.auto_decrypt_history),
        )
        self.conversations = _ConversationManager(
            self.chat, self.encryption, self._contexts, ready=self.encryption_ready
        )

        # State
        self._bootstrap_lock = asyncio.Lock()
        self._bootstrapped = False
        self._bootstrap_key: AgentKeyMaterial | None = None

    @classmethod
    def from_config(
        cls,
        config: RegistryBrokerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RegistryBrokerClient:
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            ledger_api_key=config.ledger_api_key,
            default_headers=config.default_headers,
            timeout_seconds=config.timeout_seconds,
            registration_auto_top_up=config.registration_auto_top_up,
            history_auto_top_up=config.history_auto_top_up,
            encryption=config.encryption,
            transport=transport,
        )

    @classmethod
    async def initialize_agent(
        cls,
        uaid: str,
        ensure_encryption_key: bool = True,
        **options: Any,
    ) -> RegistryBrokerClient:
        """Build a client for an agent and make sure its encryption key exists.

        ``options`` are passed to the constructor. The key is available
        afterwards via ``client.encryption.get_agent_key(uaid)``.
        """
        client = cls(**options)
        await client.encryption_ready()
        if ensure_encryption_key:
            await client.encryption.ensure_agent_key(uaid, generate_if_missing=True)
        return client

    @property
    def base_url(self) -> str:
        """Normalised versioned base URL."""
        return self._http.base_url

    @property
    def default_headers(self) -> dict[str, str]:
        """Snapshot of the headers sent on every request."""
        return self._http.get_default_headers()

    def set_default_header(self, name: str, value: str | None) -> None:
        self._http.set_default_header(name, value)

    def set_api_key(self, api_key: str | None) -> None:
        self._http.set_api_key(api_key)

    def set_ledger_api_key(self, ledger_api_key: str | None) -> None:
        self._http.set_ledger_api_key(ledger_api_key)

    async def encryption_ready(self) -> AgentKeyMaterial | None:
        """Run encryption auto-registration once; later calls are no-ops."""
        async with self._bootstrap_lock:
            if not self._bootstrapped:
                self._bootstrap_key = await self.encryption.bootstrap()
                self._bootstrapped = True
        return self._bootstrap_key

    async def aclose(self) -> None:
        await self._http.close()

    async def __aenter__(self) -> RegistryBrokerClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
