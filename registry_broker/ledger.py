"""
Ledger network resolution and challenge signers.

Two disjoint signer families exist: Hedera-native keys (ED25519 or ECDSA
secp256k1, raw signature, base64) and EVM keys (EIP-191 personal-sign).
A key for one family is never accepted for the other.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any, Awaitable, Callable, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from registry_broker.errors import (
    LedgerAuthenticationError,
    LedgerNetworkError,
    LedgerNetworkMismatchError,
)
from registry_broker.types import CanonicalLedgerNetwork, LedgerSignature

logger = logging.getLogger(__name__)

LedgerSignFunction = Callable[[str], Union[Awaitable[LedgerSignature], LedgerSignature]]

_HEDERA_ALIASES: dict[str, str] = {
    "hedera:mainnet": "mainnet",
    "mainnet": "mainnet",
    "hedera-mainnet": "mainnet",
    "hedera_mainnet": "mainnet",
    "hedera:testnet": "testnet",
    "testnet": "testnet",
    "hedera-testnet": "testnet",
    "hedera_testnet": "testnet",
}

EVM_NETWORK_CHAIN_IDS: dict[str, int] = {
    "abstract": 2741,
    "abstract-testnet": 11124,
    "base": 8453,
    "base-sepolia": 84532,
    "avalanche": 43114,
    "avalanche-fuji": 43113,
    "iotex": 4689,
    "sei": 1329,
    "sei-testnet": 1328,
    "polygon": 137,
    "polygon-amoy": 80002,
    "peaq": 3338,
}

_CHAIN_ID_TO_ALIAS = {chain_id: alias for alias, chain_id in EVM_NETWORK_CHAIN_IDS.items()}

_CAIP2_RE = re.compile(r"^eip155:(\d+)$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


# ============================================================
#  Network canonicalisation
# ============================================================


def _is_hedera_like(value: str) -> bool:
    return (
        value.startswith("hedera:")
        or "hedera-" in value
        or "hedera_" in value
        or value in ("mainnet", "testnet")
    )


def canonicalize_ledger_network(network: str) -> CanonicalLedgerNetwork:
    """Resolve a user-supplied ledger network string.

    Args:
        network: ``hedera:testnet``, ``testnet``, ``eip155:8453``, ``8453``,
            ``base-sepolia``...

    Returns:
        :class:`CanonicalLedgerNetwork`.

    Raises:
        LedgerNetworkError: If the network is blank or unknown.
    """
    if not isinstance(network, str) or not network.strip():
        raise LedgerNetworkError("Ledger network is required.")
    value = network.strip().lower()

    if _is_hedera_like(value):
        hedera_network = _HEDERA_ALIASES.get(value)
        if hedera_network is None:
            raise LedgerNetworkError(
                "Unsupported Hedera network. Use hedera:mainnet or hedera:testnet "
                '(legacy "mainnet"/"testnet" also accepted).'
            )
        return CanonicalLedgerNetwork(
            canonical=f"hedera:{hedera_network}",
            kind="hedera",
            hedera_network=hedera_network,
        )

    chain_id: int | None = None
    alias: str | None = None
    match = _CAIP2_RE.match(value)
    if match:
        chain_id = int(match.group(1))
    elif value.isdigit():
        chain_id = int(value)

    if chain_id is None:
        chain_id = EVM_NETWORK_CHAIN_IDS.get(value)
        if chain_id is not None:
            alias = value
    else:
        alias = _CHAIN_ID_TO_ALIAS.get(chain_id)

    if chain_id is None:
        raise LedgerNetworkError(
            'Unsupported EVM ledger network. Provide an alias like "base-sepolia" '
            "or a canonical eip155:<chainId> string."
        )
    return CanonicalLedgerNetwork(
        canonical=f"eip155:{chain_id}",
        kind="evm",
        chain_id=chain_id,
        legacy_name=alias,
    )


# ============================================================
#  Signers
# ============================================================


def _strip_hex(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned or not _HEX_RE.match(cleaned):
        raise LedgerAuthenticationError("Private key must be a hex string")
    return cleaned


def _load_hedera_key(private_key: str) -> ed25519.Ed25519PrivateKey | ec.EllipticCurvePrivateKey:
    """Parse a Hedera key: DER/PKCS#8 hex, raw ED25519 hex, or 0x raw ECDSA hex."""
    is_prefixed = private_key.strip().lower().startswith("0x")
    raw = bytes.fromhex(_strip_hex(private_key))

    if len(raw) > 32:
        try:
            key = serialization.load_der_private_key(raw, password=None)
        except ValueError as e:
            raise LedgerAuthenticationError(f"Unrecognised Hedera private key encoding: {e}") from e
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key
        if isinstance(key, ec.EllipticCurvePrivateKey) and isinstance(key.curve, ec.SECP256K1):
            return key
        raise LedgerAuthenticationError("Hedera private keys must be ED25519 or ECDSA secp256k1")

    if len(raw) != 32:
        raise LedgerAuthenticationError("Raw Hedera private keys must be 32 bytes")
    if is_prefixed:
        return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())
    return ed25519.Ed25519PrivateKey.from_private_bytes(raw)


def _public_key_der_hex(key: ed25519.Ed25519PrivateKey | ec.EllipticCurvePrivateKey) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).hex()


def sign_with_hedera_key(private_key: str, message: str) -> LedgerSignature:
    """Sign a challenge with a Hedera-native key.

    ECDSA keys sign keccak256(message) the way Hedera does and return the
    64-byte ``r || s`` form.
    """
    key = _load_hedera_key(private_key)
    payload = message.encode("utf-8")

    if isinstance(key, ed25519.Ed25519PrivateKey):
        signature = key.sign(payload)
    else:
        from eth_keys import keys
        from eth_utils import keccak

        secret = key.private_numbers().private_value.to_bytes(32, "big")
        signed = keys.PrivateKey(secret).sign_msg_hash(keccak(payload))
        signature = signed.r.to_bytes(32, "big") + signed.s.to_bytes(32, "big")

    return LedgerSignature(
        signature=base64.b64encode(signature).decode("ascii"),
        signature_kind="raw",
        public_key=_public_key_der_hex(key),
    )


def sign_with_evm_key(private_key: str, message: str) -> LedgerSignature:
    """EIP-191 personal-sign with an EVM private key."""
    try:
        from eth_account import Account
        from eth_account.messages import encode_defunct
    except ImportError:
        raise RuntimeError(
            "eth-account not installed — install with: pip install registry-broker-client"
        )

    key = "0x" + _strip_hex(private_key)
    signed = Account.sign_message(encode_defunct(text=message), key)
    sig_hex = signed.signature.hex()
    if not sig_hex.startswith("0x"):
        sig_hex = "0x" + sig_hex
    return LedgerSignature(signature=sig_hex, signature_kind="evm")


def resolve_ledger_signer(
    network: str | CanonicalLedgerNetwork,
    sign: LedgerSignFunction | None = None,
    hedera_private_key: str | None = None,
    evm_private_key: str | None = None,
) -> Callable[[str], Awaitable[LedgerSignature]]:
    """Pick the signer for a network's family.

    Fails fast, before any network call, when a key of the wrong family is
    supplied.

    Raises:
        LedgerNetworkMismatchError: Key family does not match the network.
        LedgerAuthenticationError: No key and no custom signer.
    """
    resolved = (
        network if isinstance(network, CanonicalLedgerNetwork)
        else canonicalize_ledger_network(network)
    )

    if hedera_private_key and resolved.kind != "hedera":
        raise LedgerNetworkMismatchError(
            "hedera_private_key can only be used with hedera:mainnet or hedera:testnet networks"
        )
    if evm_private_key and resolved.kind != "evm":
        raise LedgerNetworkMismatchError(
            "evm_private_key can only be used with EVM networks (eip155:<chainId>)"
        )

    if sign is not None:
        custom = sign

        async def _custom(message: str) -> LedgerSignature:
            result: Any = custom(message)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
            if isinstance(result, dict):
                result = LedgerSignature.model_validate(result)
            return result

        return _custom

    if hedera_private_key:
        key = hedera_private_key

        async def _hedera(message: str) -> LedgerSignature:
            return sign_with_hedera_key(key, message)

        return _hedera

    if evm_private_key:
        key = evm_private_key

        async def _evm(message: str) -> LedgerSignature:
            return sign_with_evm_key(key, message)

        return _evm

    raise LedgerAuthenticationError(
        "Ledger authentication requires hedera_private_key, evm_private_key or a custom sign function."
    )
