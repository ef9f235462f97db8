"""
Pydantic models for the Registry Broker client.

Wire payloads use camelCase; models expose snake_case attributes and
accept either spelling on input (``populate_by_name``).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ============================================================
#  Defaults
# ============================================================

DEFAULT_BASE_URL = "https://hol.org/registry/api/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PROGRESS_INTERVAL_MS = 1_500
DEFAULT_PROGRESS_TIMEOUT_MS = 5 * 60 * 1_000
MIN_PROGRESS_INTERVAL_MS = 250
DEFAULT_HANDSHAKE_TIMEOUT_MS = 30_000
DEFAULT_HANDSHAKE_POLL_INTERVAL_MS = 1_000
DEFAULT_HISTORY_TOP_UP_HBAR = 0.25
DEFAULT_MAX_TOP_UP_HBAR = 10.0


# ============================================================
#  Configuration
# ============================================================


class AutoTopUpConfig(BaseModel):
    """Ledger credentials used to buy credits when the broker answers 402."""

    account_id: str
    private_key: str
    memo: str | None = None
    max_hbar_amount: float = DEFAULT_MAX_TOP_UP_HBAR

    @field_validator("account_id", "private_key")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("max_hbar_amount")
    @classmethod
    def validate_bound(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("max_hbar_amount must be positive")
        return v


class HistoryAutoTopUpConfig(AutoTopUpConfig):
    """Top-up credentials for chat-history retention purchases."""

    hbar_amount: float = DEFAULT_HISTORY_TOP_UP_HBAR

    @field_validator("hbar_amount")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("hbar_amount must be positive")
        return v


class KeyMaterialSource(BaseModel):
    """Where an agent's long-term encryption key comes from."""

    private_key: str | None = None
    public_key: str | None = None
    generate_if_missing: bool = False


class AutoRegisterConfig(BaseModel):
    """Register an encryption key for an identity when the client starts."""

    uaid: str | None = None
    ledger_account_id: str | None = None
    ledger_network: str | None = None
    email: str | None = None
    key_type: str = "secp256k1"
    key_material: KeyMaterialSource = Field(default_factory=KeyMaterialSource)
    enabled: bool = True


class EncryptionConfig(BaseModel):
    """Client-level encryption behaviour."""

    auto_register: AutoRegisterConfig | None = None
    auto_decrypt_history: bool = False


class RegistryBrokerConfig(BaseModel):
    """Everything needed to build a :class:`RegistryBrokerClient`."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    ledger_api_key: str | None = None
    default_headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    registration_auto_top_up: AutoTopUpConfig | None = None
    history_auto_top_up: HistoryAutoTopUpConfig | None = None
    encryption: EncryptionConfig | None = None

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0 or v > 600:
            raise ValueError("timeout_seconds must be between 0 and 600")
        return v


# ============================================================
#  Discovery
# ============================================================


class SearchHit(BaseModel):
    """One agent in a search result."""

    id: str
    uaid: str
    registry: str
    name: str
    description: str | None = None
    capabilities: list[Any] = Field(default_factory=list)
    endpoints: Any = None
    metadata: dict[str, Any] | None = None
    profile: dict[str, Any] | None = None
    created_at: str | None = Field(None, alias="createdAt")
    updated_at: str | None = Field(None, alias="updatedAt")
    last_seen: str | None = Field(None, alias="lastSeen")

    model_config = {"populate_by_name": True}


class SearchResult(BaseModel):
    hits: list[SearchHit]
    total: int
    page: int
    limit: int


class RegistryStats(BaseModel):
    total_agents: int = Field(alias="totalAgents")
    registries: dict[str, int] = Field(default_factory=dict)
    capabilities: dict[str, int] = Field(default_factory=dict)
    last_update: str | None = Field(None, alias="lastUpdate")
    status: str

    model_config = {"populate_by_name": True}


class RegistriesResponse(BaseModel):
    registries: list[str]


class AdditionalRegistryNetwork(BaseModel):
    key: str
    label: str | None = None
    network_id: str | None = Field(None, alias="networkId")
    chain_id: int | None = Field(None, alias="chainId")

    model_config = {"populate_by_name": True}


class AdditionalRegistryDescriptor(BaseModel):
    """A sub-registry an agent may also publish to."""

    id: str
    label: str | None = None
    networks: list[AdditionalRegistryNetwork] = Field(default_factory=list)


class AdditionalRegistryCatalog(BaseModel):
    registries: list[AdditionalRegistryDescriptor]


class ResolvedAgent(BaseModel):
    agent: SearchHit


# ============================================================
#  Registration
# ============================================================

SubRegistryStatus = Literal["pending", "completed", "failed"]

_PENDING_STATUSES = {"pending", "queued", "processing", "in_progress", "in-progress"}
_COMPLETED_STATUSES = {
    "completed", "complete", "created", "registered", "success",
    "succeeded", "duplicate", "skipped", "updated",
}
_FAILED_STATUSES = {"failed", "error", "errored"}


def normalize_sub_registry_status(value: Any) -> str:
    """Map the broker's status spellings onto pending/completed/failed."""
    if not isinstance(value, str):
        raise ValueError("sub-registry status must be a string")
    lowered = value.strip().lower()
    if lowered in _PENDING_STATUSES:
        return "pending"
    if lowered in _COMPLETED_STATUSES:
        return "completed"
    if lowered in _FAILED_STATUSES:
        return "failed"
    raise ValueError(f"unknown sub-registry status: {value!r}")


class AgentRegistrationRequest(BaseModel):
    """Payload for ``POST /register`` and ``PATCH /register/{uaid}``."""

    profile: dict[str, Any]
    endpoint: str | None = None
    protocol: str | None = None
    communication_protocol: str | None = Field(None, alias="communicationProtocol")
    registry: str | None = None
    additional_registries: list[str] | None = Field(None, alias="additionalRegistries")
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RegistrationQuote(BaseModel):
    """Credit pricing for a registration payload."""

    account_id: str | None = Field(None, alias="accountId")
    registry: str | None = None
    protocol: str | None = None
    required_credits: float = Field(alias="requiredCredits")
    available_credits: float | None = Field(None, alias="availableCredits")
    shortfall_credits: float | None = Field(None, alias="shortfallCredits")
    credits_per_hbar: float | None = Field(None, alias="creditsPerHbar")
    estimated_hbar: float | None = Field(None, alias="estimatedHbar")

    model_config = {"populate_by_name": True}


class AdditionalRegistryResult(BaseModel):
    """Synchronous result for one sub-registry in a register response."""

    registry: str | None = None
    registry_key: str | None = Field(None, alias="registryKey")
    status: SubRegistryStatus
    agent_id: str | int | None = Field(None, alias="agentId")
    agent_uri: str | None = Field(None, alias="agentUri")
    credits: float | None = None
    error: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> str:
        return normalize_sub_registry_status(v)

    @property
    def key(self) -> str:
        return self.registry_key or self.registry or "unknown"


class RegistrationCredits(BaseModel):
    base: float | None = None
    additional: float | None = None
    total: float | None = None


class RegisterAgentResponse(BaseModel):
    """Raw broker answer to a registration or update."""

    success: bool = True
    status: str | None = None
    uaid: str | None = None
    agent_id: str | None = Field(None, alias="agentId")
    message: str | None = None
    attempt_id: str | None = Field(None, alias="attemptId")
    additional_registries: list[AdditionalRegistryResult] = Field(
        default_factory=list, alias="additionalRegistries"
    )
    credits: RegistrationCredits | None = None
    agent: dict[str, Any] | None = None

    model_config = {"populate_by_name": True, "extra": "allow"}

    @property
    def primary_result(self) -> Literal["created", "already-exists", "failed"]:
        status = (self.status or "").lower()
        if not self.success and status not in ("partial", "pending"):
            return "failed"
        if status == "duplicate":
            return "already-exists"
        return "created"


class RegistrationSuccess(BaseModel):
    outcome: Literal["success"] = "success"
    response: RegisterAgentResponse

    @property
    def uaid(self) -> str | None:
        return self.response.uaid


class RegistrationPending(BaseModel):
    outcome: Literal["pending"] = "pending"
    attempt_id: str | None = None
    pending_registries: list[str] = Field(default_factory=list)
    response: RegisterAgentResponse

    @property
    def uaid(self) -> str | None:
        return self.response.uaid


class RegistrationPartial(BaseModel):
    outcome: Literal["partial"] = "partial"
    failed_registries: list[AdditionalRegistryResult] = Field(default_factory=list)
    response: RegisterAgentResponse

    @property
    def uaid(self) -> str | None:
        return self.response.uaid


RegistrationOutcome = Annotated[
    Union[RegistrationSuccess, RegistrationPending, RegistrationPartial],
    Field(discriminator="outcome"),
]


class RegistrationProgressEntry(BaseModel):
    """Progress of one sub-registry inside a polled attempt."""

    registry_key: str = Field(alias="registryKey")
    registry_id: str | None = Field(None, alias="registryId")
    status: SubRegistryStatus
    agent_id: str | int | None = Field(None, alias="agentId")
    agent_uri: str | None = Field(None, alias="agentUri")
    credits: float | None = None
    error: str | None = None
    network_id: str | None = Field(None, alias="networkId")
    chain_id: int | None = Field(None, alias="chainId")

    model_config = {"populate_by_name": True}

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> str:
        return normalize_sub_registry_status(v)


class RegistrationProgressRecord(BaseModel):
    """Server-held projection of a registration attempt."""

    attempt_id: str = Field(alias="attemptId")
    mode: str | None = None
    status: Literal["pending", "completed", "partial", "failed"]
    uaid: str | None = None
    primary: dict[str, Any] | None = None
    additional_registries: dict[str, RegistrationProgressEntry] = Field(
        default_factory=dict, alias="additionalRegistries"
    )
    error: str | None = None
    created_at: str | None = Field(None, alias="createdAt")
    updated_at: str | None = Field(None, alias="updatedAt")
    completed_at: str | None = Field(None, alias="completedAt")

    model_config = {"populate_by_name": True}

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"


class RegistrationProgressResponse(BaseModel):
    progress: RegistrationProgressRecord


# ============================================================
#  Credits
# ============================================================


class CreditPurchaseResult(BaseModel):
    success: bool | None = None
    purchaser: str
    credits: float
    hbar_amount: float = Field(alias="hbarAmount")
    transaction_id: str = Field(alias="transactionId")
    consensus_timestamp: str | None = Field(None, alias="consensusTimestamp")

    model_config = {"populate_by_name": True}


class InsufficientCreditsDetails(BaseModel):
    """Pricing hints extracted from a 402 body."""

    shortfall_credits: float | None = None
    credits_per_hbar: float | None = None
    estimated_hbar: float | None = None
    message: str | None = None


# ============================================================
#  Ledger
# ============================================================


class CanonicalLedgerNetwork(BaseModel):
    canonical: str
    kind: Literal["hedera", "evm"]
    hedera_network: Literal["mainnet", "testnet"] | None = None
    chain_id: int | None = None
    legacy_name: str | None = None

    @property
    def wire_name(self) -> str:
        """Network string the broker expects in challenge/verify bodies."""
        if self.kind == "hedera" and self.hedera_network:
            return self.hedera_network
        return self.canonical


class LedgerChallenge(BaseModel):
    challenge_id: str = Field(alias="challengeId")
    message: str
    expires_at: str | None = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}


class LedgerApiKeySummary(BaseModel):
    id: str
    label: str | None = None
    prefix: str
    last_four: str = Field(alias="lastFour")
    created_at: str | None = Field(None, alias="createdAt")
    last_used_at: str | None = Field(None, alias="lastUsedAt")
    owner_type: str | None = Field(None, alias="ownerType")
    ledger_account_id: str | None = Field(None, alias="ledgerAccountId")
    ledger_network: str | None = Field(None, alias="ledgerNetwork")

    model_config = {"populate_by_name": True}


class LedgerVerification(BaseModel):
    key: str
    api_key: LedgerApiKeySummary = Field(alias="apiKey")
    account_id: str = Field(alias="accountId")
    network: str
    network_canonical: str | None = Field(None, alias="networkCanonical")

    model_config = {"populate_by_name": True}


class LedgerSignature(BaseModel):
    signature: str
    signature_kind: Literal["raw", "map", "evm"] = "raw"
    public_key: str | None = None


# ============================================================
#  Chat
# ============================================================


class AgentAuthConfig(BaseModel):
    """Credentials the broker forwards to the target agent."""

    type: str | None = None
    token: str | None = None
    username: str | None = None
    password: str | None = None
    header_name: str | None = Field(None, alias="headerName")
    header_value: str | None = Field(None, alias="headerValue")
    headers: dict[str, str] | None = None

    model_config = {"populate_by_name": True}


class RecipientIdentity(BaseModel):
    uaid: str | None = None
    ledger_account_id: str | None = Field(None, alias="ledgerAccountId")
    user_id: str | None = Field(None, alias="userId")
    email: str | None = None

    model_config = {"populate_by_name": True}

    def is_empty(self) -> bool:
        return not (self.uaid or self.ledger_account_id or self.user_id or self.email)

    def matches(self, other: RecipientIdentity | None) -> bool:
        if other is None:
            return False
        if self.uaid and other.uaid and self.uaid.lower() == other.uaid.lower():
            return True
        if (
            self.ledger_account_id
            and other.ledger_account_id
            and self.ledger_account_id.lower() == other.ledger_account_id.lower()
        ):
            return True
        if self.user_id and other.user_id and self.user_id == other.user_id:
            return True
        if self.email and other.email and self.email.lower() == other.email.lower():
            return True
        return False


class CipherEnvelopeRecipient(RecipientIdentity):
    encrypted_share: str = Field(alias="encryptedShare")


class KeyLocator(BaseModel):
    session_id: str | None = Field(None, alias="sessionId")
    revision: int = 1

    model_config = {"populate_by_name": True}


class CipherEnvelope(BaseModel):
    """Encrypted-at-rest chat payload. Never carries secrets."""

    algorithm: str
    ciphertext: str
    nonce: str
    associated_data: str | None = Field(None, alias="associatedData")
    key_locator: KeyLocator | None = Field(None, alias="keyLocator")
    recipients: list[CipherEnvelopeRecipient] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class ChatHistoryEntry(BaseModel):
    message_id: str = Field(alias="messageId")
    role: Literal["user", "agent"]
    content: str | None = None
    cipher_envelope: CipherEnvelope | None = Field(None, alias="cipherEnvelope")
    timestamp: str
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def check_single_payload(self) -> ChatHistoryEntry:
        if (self.content is None) == (self.cipher_envelope is None):
            raise ValueError("exactly one of content or cipherEnvelope must be set")
        return self


class DecryptedHistoryEntry(BaseModel):
    entry: ChatHistoryEntry
    plaintext: str | None = None


class ChatHistorySnapshot(BaseModel):
    session_id: str = Field(alias="sessionId")
    history: list[ChatHistoryEntry] = Field(default_factory=list)
    history_ttl_seconds: int | None = Field(None, alias="historyTtlSeconds")
    decrypted_history: list[DecryptedHistoryEntry] | None = Field(None, alias="decryptedHistory")

    model_config = {"populate_by_name": True}


class ChatHistoryCompaction(BaseModel):
    """Server-side summarisation result; never synthesised locally."""

    session_id: str | None = Field(None, alias="sessionId")
    summary_entry: ChatHistoryEntry = Field(alias="summaryEntry")
    preserved_entries: list[ChatHistoryEntry] = Field(default_factory=list, alias="preservedEntries")
    history: list[ChatHistoryEntry] = Field(default_factory=list)
    credits_debited: float = Field(0, alias="creditsDebited")
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class EncryptionParticipant(RecipientIdentity):
    long_term_public_key: str | None = Field(None, alias="longTermPublicKey")


class EncryptionHandshakeParty(RecipientIdentity):
    role: str | None = None
    key_type: str | None = Field(None, alias="keyType")
    ephemeral_public_key: str | None = Field(None, alias="ephemeralPublicKey")
    long_term_public_key: str | None = Field(None, alias="longTermPublicKey")
    signature: str | None = None
    submitted_at: str | None = Field(None, alias="submittedAt")


class EncryptionHandshakeRecord(BaseModel):
    session_id: str | None = Field(None, alias="sessionId")
    algorithm: str | None = None
    status: str = "pending"
    requester: EncryptionHandshakeParty | None = None
    responder: EncryptionHandshakeParty | None = None
    created_at: str | None = Field(None, alias="createdAt")
    completed_at: str | None = Field(None, alias="completedAt")

    model_config = {"populate_by_name": True}


class SessionEncryptionSummary(BaseModel):
    enabled: bool = False
    algorithm: str | None = None
    requester: EncryptionParticipant | None = None
    responder: EncryptionParticipant | None = None
    handshake: EncryptionHandshakeRecord | None = None


class SessionEncryptionStatus(BaseModel):
    requires_encryption: bool | None = Field(None, alias="requiresEncryption")
    encryption: SessionEncryptionSummary | None = None

    model_config = {"populate_by_name": True}


class EncryptionHandshakeResponse(BaseModel):
    handshake: EncryptionHandshakeRecord


class EncryptionHandshakeSubmission(BaseModel):
    role: Literal["requester", "responder"]
    key_type: str = Field("secp256k1", alias="keyType")
    ephemeral_public_key: str = Field(alias="ephemeralPublicKey")
    long_term_public_key: str | None = Field(None, alias="longTermPublicKey")
    signature: str | None = None
    uaid: str | None = None
    user_id: str | None = Field(None, alias="userId")
    ledger_account_id: str | None = Field(None, alias="ledgerAccountId")
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class CreateSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    uaid: str | None = None
    agent: dict[str, Any] | None = None
    history: list[ChatHistoryEntry] = Field(default_factory=list)
    history_ttl_seconds: int | None = Field(None, alias="historyTtlSeconds")
    encryption: SessionEncryptionSummary | None = None

    model_config = {"populate_by_name": True}


class SendMessageResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    uaid: str | None = None
    message: str | None = None
    timestamp: str | None = None
    content: str | None = None
    history: list[ChatHistoryEntry] = Field(default_factory=list)
    history_ttl_seconds: int | None = Field(None, alias="historyTtlSeconds")
    encrypted: bool | None = None

    model_config = {"populate_by_name": True}


class ConversationContext(BaseModel):
    """Client-side cache entry: the secret negotiated for one session."""

    session_id: str
    shared_secret: bytes = Field(repr=False)
    identity: RecipientIdentity | None = None


class EncryptionPayload(BaseModel):
    """Plaintext to seal into a cipher envelope before sending."""

    plaintext: str
    shared_secret: bytes | str
    recipients: list[RecipientIdentity]
    session_id: str | None = None
    associated_data: str | None = None
    revision: int = 1


# ============================================================
#  Encryption keys
# ============================================================


class EphemeralKeyPair(BaseModel):
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"EphemeralKeyPair(public_key={self.public_key!r})"


class AgentKeyMaterial(BaseModel):
    """An identity's long-term key. ``private_key`` stays local."""

    uaid: str | None = None
    key_type: str = "secp256k1"
    public_key: str
    private_key: str | None = Field(None, repr=False)


class RegisterEncryptionKeyPayload(BaseModel):
    key_type: str = Field("secp256k1", alias="keyType")
    public_key: str = Field(alias="publicKey")
    uaid: str | None = None
    ledger_account_id: str | None = Field(None, alias="ledgerAccountId")
    ledger_network: str | None = Field(None, alias="ledgerNetwork")
    email: str | None = None

    model_config = {"populate_by_name": True}


class RegisterEncryptionKeyResponse(BaseModel):
    id: str | None = None
    key_type: str = Field("secp256k1", alias="keyType")
    public_key: str = Field(alias="publicKey")
    uaid: str | None = None
    ledger_account_id: str | None = Field(None, alias="ledgerAccountId")
    ledger_network: str | None = Field(None, alias="ledgerNetwork")
    email: str | None = None
    created_at: str | None = Field(None, alias="createdAt")
    updated_at: str | None = Field(None, alias="updatedAt")

    model_config = {"populate_by_name": True}
