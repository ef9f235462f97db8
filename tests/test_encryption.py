"""
Tests for cipher envelopes, key agreement and agent key management.
"""

from __future__ import annotations

import base64
import json

import pytest
import httpx
import respx

from registry_broker.client import RegistryBrokerClient
from registry_broker.encryption import (
    decrypt_cipher_envelope,
    derive_public_key,
    derive_shared_secret,
    encrypt_cipher_envelope,
    generate_key_pair,
    normalize_shared_secret,
)
from registry_broker.errors import CipherEnvelopeError, RegistryBrokerClientError
from registry_broker.types import (
    AutoRegisterConfig,
    EncryptionConfig,
    KeyMaterialSource,
    RecipientIdentity,
)


BROKER_HOST = "https://broker.test"
BROKER_URL = f"{BROKER_HOST}/api/v1"

SECRET = bytes(range(32))
OTHER_SECRET = bytes(range(1, 33))
RECIPIENTS = [RecipientIdentity(uaid="uaid:alice"), RecipientIdentity(uaid="uaid:bob")]


def key_response(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"id": "key-1", **body})


# ============================================================
#  Envelopes
# ============================================================


def test_envelope_round_trip() -> None:
    envelope = encrypt_cipher_envelope("meet at noon", "sess-1", SECRET, RECIPIENTS)

    assert envelope.algorithm == "aes-256-gcm"
    assert envelope.key_locator is not None
    assert envelope.key_locator.session_id == "sess-1"
    assert "meet at noon" not in envelope.ciphertext
    assert decrypt_cipher_envelope(envelope, SECRET) == "meet at noon"


def test_wrong_secret_raises() -> None:
    envelope = encrypt_cipher_envelope("meet at noon", "sess-1", SECRET, RECIPIENTS)
    with pytest.raises(CipherEnvelopeError):
        decrypt_cipher_envelope(envelope, OTHER_SECRET)


def test_tampered_ciphertext_raises() -> None:
    envelope = encrypt_cipher_envelope("meet at noon", "sess-1", SECRET, RECIPIENTS)
    raw = bytearray(base64.b64decode(envelope.ciphertext))
    raw[0] ^= 0x01
    tampered = envelope.model_copy(update={"ciphertext": base64.b64encode(bytes(raw)).decode()})

    with pytest.raises(CipherEnvelopeError):
        decrypt_cipher_envelope(tampered, SECRET)


def test_associated_data_is_authenticated() -> None:
    envelope = encrypt_cipher_envelope("meet at noon", "sess-1", SECRET, RECIPIENTS)
    moved = envelope.model_copy(
        update={"associated_data": base64.b64encode(b"sess-2").decode()}
    )
    with pytest.raises(CipherEnvelopeError):
        decrypt_cipher_envelope(moved, SECRET)


def test_empty_associated_data_round_trips() -> None:
    envelope = encrypt_cipher_envelope("hi", "sess-1", SECRET, RECIPIENTS, associated_data="")
    wire = envelope.model_dump(by_alias=True, exclude_none=True)

    assert wire["associatedData"] == ""
    assert decrypt_cipher_envelope(envelope, SECRET) == "hi"
    assert decrypt_cipher_envelope(wire, SECRET) == "hi"


def test_envelope_never_carries_the_secret() -> None:
    envelope = encrypt_cipher_envelope("meet at noon", "sess-1", SECRET, RECIPIENTS)
    serialized = json.dumps(envelope.model_dump(by_alias=True))
    encodings = {SECRET.hex(), base64.b64encode(SECRET).decode()}

    shares = [r.encrypted_share for r in envelope.recipients]
    assert len(shares) == 2
    assert len(set(shares)) == 2
    for encoded in encodings:
        assert encoded not in shares
        assert encoded not in serialized


def test_envelope_survives_wire_form() -> None:
    envelope = encrypt_cipher_envelope("hi", "sess-1", SECRET, [{"uaid": "uaid:alice"}])
    wire = envelope.model_dump(by_alias=True, exclude_none=True)
    assert wire["keyLocator"] == {"sessionId": "sess-1", "revision": 1}
    assert decrypt_cipher_envelope(wire, SECRET.hex()) == "hi"


# ============================================================
#  Keys
# ============================================================


def test_ecdh_is_symmetric() -> None:
    alice = generate_key_pair()
    bob = generate_key_pair()

    assert len(bytes.fromhex(alice.public_key)) == 33
    assert derive_public_key(alice.private_key) == alice.public_key
    assert derive_shared_secret(alice.private_key, bob.public_key) == derive_shared_secret(
        bob.private_key, alice.public_key
    )


def test_normalize_shared_secret_forms() -> None:
    assert normalize_shared_secret(SECRET.hex()) == SECRET
    assert normalize_shared_secret("0x" + SECRET.hex()) == SECRET
    assert normalize_shared_secret(base64.b64encode(SECRET).decode()) == SECRET
    with pytest.raises(CipherEnvelopeError):
        normalize_shared_secret(b"short")


def test_key_pair_repr_hides_private_key() -> None:
    pair = generate_key_pair()
    assert pair.private_key not in repr(pair)


# ============================================================
#  Agent keys
# ============================================================


@pytest.mark.asyncio
async def test_ensure_agent_key_generates_once_and_keeps_private_key_local() -> None:
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/encryption/keys").mock(side_effect=key_response)
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        first = await client.encryption.ensure_agent_key("uaid:alice")
        second = await client.encryption.ensure_agent_key("uaid:alice")
        await client.aclose()

        body = json.loads(route.calls.last.request.content)
        assert route.call_count == 1
        assert first is second
        assert first.private_key
        assert body["publicKey"] == first.public_key
        assert body["uaid"] == "uaid:alice"
        assert body["keyType"] == "secp256k1"
        assert first.private_key not in route.calls.last.request.content.decode()


@pytest.mark.asyncio
async def test_ensure_agent_key_uses_supplied_material() -> None:
    pair = generate_key_pair()
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/encryption/keys").mock(side_effect=key_response)
        client = RegistryBrokerClient(base_url=BROKER_HOST)
        material = await client.encryption.ensure_agent_key("uaid:bob", private_key=pair.private_key)
        await client.aclose()

        assert material.public_key == pair.public_key
        assert json.loads(route.calls.last.request.content)["publicKey"] == pair.public_key


@pytest.mark.asyncio
async def test_ensure_agent_key_without_material_or_generation_raises() -> None:
    client = RegistryBrokerClient(base_url=BROKER_HOST)
    with pytest.raises(RegistryBrokerClientError):
        await client.encryption.ensure_agent_key("uaid:carol", generate_if_missing=False)
    await client.aclose()


@pytest.mark.asyncio
async def test_encryption_ready_bootstraps_once() -> None:
    config = EncryptionConfig(
        auto_register=AutoRegisterConfig(
            uaid="uaid:alice",
            key_material=KeyMaterialSource(generate_if_missing=True),
        )
    )
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/encryption/keys").mock(side_effect=key_response)
        client = RegistryBrokerClient(base_url=BROKER_HOST, encryption=config)
        first = await client.encryption_ready()
        second = await client.encryption_ready()
        await client.aclose()

        assert route.call_count == 1
        assert first is not None
        assert first is second
        assert client.encryption.get_agent_key("uaid:alice") is first


@pytest.mark.asyncio
async def test_bootstrap_for_ledger_identity() -> None:
    config = EncryptionConfig(
        auto_register=AutoRegisterConfig(
            ledger_account_id="0.0.1234",
            ledger_network="hedera:testnet",
            key_material=KeyMaterialSource(generate_if_missing=True),
        )
    )
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/encryption/keys").mock(side_effect=key_response)
        client = RegistryBrokerClient(base_url=BROKER_HOST, encryption=config)
        await client.encryption_ready()
        await client.aclose()

        body = json.loads(route.calls.last.request.content)
        assert body["ledgerAccountId"] == "0.0.1234"
        assert body["ledgerNetwork"] == "hedera:testnet"
        assert "uaid" not in body


@pytest.mark.asyncio
async def test_initialize_agent_ensures_key() -> None:
    with respx.mock:
        route = respx.post(f"{BROKER_URL}/encryption/keys").mock(side_effect=key_response)
        client = await RegistryBrokerClient.initialize_agent("uaid:alice", base_url=BROKER_HOST)
        await client.aclose()

        assert route.call_count == 1
        assert client.encryption.get_agent_key("uaid:alice") is not None
