"""
Registry Broker client for Python.

Async client for discovering, registering and chatting with agents
through a Registry Broker, with credit top-ups, ledger authentication
and end-to-end encrypted conversations.

Example::

    from registry_broker import RegistryBrokerClient

    async with RegistryBrokerClient(api_key="rbk_your_key") as client:
        # Discover agents
        result = await client.search.search(q="translator", capabilities=["text"])

        # Authenticate with a ledger account
        await client.ledger.authenticate_with_credentials(
            account_id="0.0.1234",
            network="hedera:testnet",
            hedera_private_key="302e0201...",
        )

        # Talk to an agent, encrypted when both sides have keys
        conversation = await client.conversations.start_conversation(
            result.hits[0].uaid, preference="preferred",
        )
        await conversation.send("Hello!")
"""

from registry_broker.client import (
    ConversationHandle,
    RegistryBrokerClient,
    classify_registration,
    normalise_base_url,
)
from registry_broker.credits import run_with_credit_top_up
from registry_broker.encryption import (
    decrypt_cipher_envelope,
    derive_shared_secret,
    encrypt_cipher_envelope,
    generate_key_pair,
)
from registry_broker.errors import (
    CipherEnvelopeError,
    CreditTopUpError,
    EncryptionUnavailableError,
    LedgerAuthenticationError,
    LedgerNetworkError,
    LedgerNetworkMismatchError,
    OperationAbortedError,
    RegistrationFailedError,
    RegistrationRejectedError,
    RegistrationTimeoutError,
    RegistryBrokerClientError,
    RegistryBrokerError,
    RegistryBrokerParseError,
    RegistryBrokerTransportError,
)
from registry_broker.ledger import canonicalize_ledger_network, resolve_ledger_signer
from registry_broker.types import (
    AgentAuthConfig,
    AgentKeyMaterial,
    AgentRegistrationRequest,
    AutoRegisterConfig,
    AutoTopUpConfig,
    ChatHistoryCompaction,
    ChatHistoryEntry,
    ChatHistorySnapshot,
    CipherEnvelope,
    EncryptionConfig,
    EncryptionPayload,
    HistoryAutoTopUpConfig,
    KeyMaterialSource,
    LedgerSignature,
    LedgerVerification,
    RecipientIdentity,
    RegisterAgentResponse,
    RegistrationPartial,
    RegistrationPending,
    RegistrationProgressRecord,
    RegistrationQuote,
    RegistrationSuccess,
    RegistryBrokerConfig,
    SearchHit,
    SearchResult,
)

__all__ = [
    "RegistryBrokerClient",
    "ConversationHandle",
    "classify_registration",
    "normalise_base_url",
    "run_with_credit_top_up",
    "canonicalize_ledger_network",
    "resolve_ledger_signer",
    "generate_key_pair",
    "derive_shared_secret",
    "encrypt_cipher_envelope",
    "decrypt_cipher_envelope",
    # Errors
    "RegistryBrokerClientError",
    "RegistryBrokerError",
    "RegistryBrokerParseError",
    "RegistryBrokerTransportError",
    "RegistrationFailedError",
    "RegistrationRejectedError",
    "RegistrationTimeoutError",
    "OperationAbortedError",
    "LedgerAuthenticationError",
    "LedgerNetworkError",
    "LedgerNetworkMismatchError",
    "CreditTopUpError",
    "EncryptionUnavailableError",
    "CipherEnvelopeError",
    # Types
    "RegistryBrokerConfig",
    "AutoTopUpConfig",
    "HistoryAutoTopUpConfig",
    "EncryptionConfig",
    "AutoRegisterConfig",
    "KeyMaterialSource",
    "AgentRegistrationRequest",
    "RegisterAgentResponse",
    "RegistrationSuccess",
    "RegistrationPending",
    "RegistrationPartial",
    "RegistrationProgressRecord",
    "RegistrationQuote",
    "SearchHit",
    "SearchResult",
    "AgentAuthConfig",
    "AgentKeyMaterial",
    "ChatHistoryEntry",
    "ChatHistorySnapshot",
    "ChatHistoryCompaction",
    "CipherEnvelope",
    "EncryptionPayload",
    "RecipientIdentity",
    "LedgerSignature",
    "LedgerVerification",
]

__version__ = "0.1.0"
