"""
End-to-end chat encryption primitives.

secp256k1 ECDH for key agreement, SHA-256 over the shared x-coordinate as
the session secret, AES-256-GCM for payloads. Envelopes carry only
ciphertext, nonce and per-recipient one-way shares of the secret.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re
from typing import Any, Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from registry_broker.errors import CipherEnvelopeError
from registry_broker.types import (
    CipherEnvelope,
    CipherEnvelopeRecipient,
    EphemeralKeyPair,
    KeyLocator,
    RecipientIdentity,
)

ALGORITHM = "aes-256-gcm"
NONCE_BYTES = 12
SECRET_BYTES = 32

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")
_SHARE_INFO = b"registry-broker/cipher-envelope/share"


# ============================================================
#  Keys
# ============================================================


def _strip_0x(value: str) -> str:
    value = value.strip()
    return value[2:] if value.lower().startswith("0x") else value


def _load_private_key(private_key: str) -> ec.EllipticCurvePrivateKey:
    try:
        secret = int(_strip_0x(private_key), 16)
        return ec.derive_private_key(secret, ec.SECP256K1())
    except ValueError as e:
        raise CipherEnvelopeError(f"Invalid secp256k1 private key: {e}") from e


def _load_public_key(public_key: str) -> ec.EllipticCurvePublicKey:
    try:
        encoded = bytes.fromhex(_strip_0x(public_key))
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), encoded)
    except ValueError as e:
        raise CipherEnvelopeError(f"Invalid secp256k1 public key: {e}") from e


def _compressed_hex(key: ec.EllipticCurvePublicKey) -> str:
    return key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    ).hex()


def generate_key_pair() -> EphemeralKeyPair:
    """New secp256k1 key pair as hex (compressed public key)."""
    key = ec.generate_private_key(ec.SECP256K1())
    private_hex = key.private_numbers().private_value.to_bytes(32, "big").hex()
    return EphemeralKeyPair(private_key=private_hex, public_key=_compressed_hex(key.public_key()))


def derive_public_key(private_key: str) -> str:
    return _compressed_hex(_load_private_key(private_key).public_key())


def derive_shared_secret(private_key: str, peer_public_key: str) -> bytes:
    """SHA-256 of the ECDH shared x-coordinate. Symmetric for both parties."""
    key = _load_private_key(private_key)
    shared = key.exchange(ec.ECDH(), _load_public_key(peer_public_key))
    return hashlib.sha256(shared).digest()


def normalize_shared_secret(secret: bytes | bytearray | str) -> bytes:
    """Accept raw bytes, hex, or base64; always return 32 bytes."""
    if isinstance(secret, (bytes, bytearray)):
        raw = bytes(secret)
    elif isinstance(secret, str):
        value = secret.strip()
        if _HEX_RE.match(value) and len(_strip_0x(value)) == SECRET_BYTES * 2:
            raw = bytes.fromhex(_strip_0x(value))
        else:
            try:
                raw = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise CipherEnvelopeError("Shared secret must be bytes, hex or base64") from e
    else:
        raise CipherEnvelopeError("Shared secret must be bytes, hex or base64")

    if len(raw) != SECRET_BYTES:
        raise CipherEnvelopeError(f"Shared secret must be {SECRET_BYTES} bytes, got {len(raw)}")
    return raw


# ============================================================
#  Envelopes
# ============================================================


def _identity_label(recipient: RecipientIdentity) -> str:
    if recipient.uaid:
        return f"uaid:{recipient.uaid}"
    if recipient.ledger_account_id:
        return f"ledger:{recipient.ledger_account_id}"
    if recipient.user_id:
        return f"user:{recipient.user_id}"
    if recipient.email:
        return f"email:{recipient.email.lower()}"
    return "anonymous"


def wrap_secret_share(
    shared_secret: bytes | str,
    session_id: str | None,
    recipient: RecipientIdentity,
) -> str:
    """One-way per-recipient share of the secret (HKDF-SHA256, base64).

    Lets a holder of the secret confirm it is addressed; never reveals it.
    """
    secret = normalize_shared_secret(shared_secret)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SECRET_BYTES,
        salt=(session_id or "").encode("utf-8"),
        info=_SHARE_INFO + b":" + _identity_label(recipient).encode("utf-8"),
    )
    return base64.b64encode(hkdf.derive(secret)).decode("ascii")


def _coerce_recipient(value: RecipientIdentity | dict[str, Any]) -> RecipientIdentity:
    if isinstance(value, RecipientIdentity):
        return value
    return RecipientIdentity.model_validate(value)


def encrypt_cipher_envelope(
    plaintext: str,
    session_id: str | None,
    shared_secret: bytes | str,
    recipients: Iterable[RecipientIdentity | dict[str, Any]],
    associated_data: str | None = None,
    revision: int = 1,
) -> CipherEnvelope:
    """Seal ``plaintext`` with AES-256-GCM under the session secret.

    The authenticated data is ``associated_data`` if given, else the
    session id, so an envelope cannot be replayed into another session.
    """
    secret = normalize_shared_secret(shared_secret)
    nonce = os.urandom(NONCE_BYTES)
    aad_source = associated_data if associated_data is not None else session_id
    aad = aad_source.encode("utf-8") if aad_source is not None else None

    ciphertext = AESGCM(secret).encrypt(nonce, plaintext.encode("utf-8"), aad)

    envelope_recipients = []
    for raw in recipients:
        recipient = _coerce_recipient(raw)
        envelope_recipients.append(
            CipherEnvelopeRecipient(
                uaid=recipient.uaid,
                ledger_account_id=recipient.ledger_account_id,
                user_id=recipient.user_id,
                email=recipient.email,
                encrypted_share=wrap_secret_share(secret, session_id, recipient),
            )
        )

    return CipherEnvelope(
        algorithm=ALGORITHM,
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        nonce=base64.b64encode(nonce).decode("ascii"),
        associated_data=base64.b64encode(aad).decode("ascii") if aad is not None else None,
        key_locator=KeyLocator(session_id=session_id, revision=revision),
        recipients=envelope_recipients,
    )


def decrypt_cipher_envelope(
    envelope: CipherEnvelope | dict[str, Any],
    shared_secret: bytes | str,
) -> str:
    """Open an envelope.

    Raises:
        CipherEnvelopeError: Wrong secret, tampered fields, or an
            unsupported algorithm. Never returns partial output.
    """
    if not isinstance(envelope, CipherEnvelope):
        envelope = CipherEnvelope.model_validate(envelope)
    if envelope.algorithm.lower() != ALGORITHM:
        raise CipherEnvelopeError(f"Unsupported cipher algorithm: {envelope.algorithm}")

    secret = normalize_shared_secret(shared_secret)
    try:
        nonce = base64.b64decode(envelope.nonce, validate=True)
        ciphertext = base64.b64decode(envelope.ciphertext, validate=True)
        if envelope.associated_data is not None:
            aad: bytes | None = base64.b64decode(envelope.associated_data, validate=True)
        elif envelope.key_locator and envelope.key_locator.session_id:
            aad = envelope.key_locator.session_id.encode("utf-8")
        else:
            aad = None
    except (binascii.Error, ValueError) as e:
        raise CipherEnvelopeError("Cipher envelope is not valid base64") from e

    if len(nonce) != NONCE_BYTES:
        raise CipherEnvelopeError("Cipher envelope nonce must be 12 bytes")

    try:
        plaintext = AESGCM(secret).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise CipherEnvelopeError(
            "Unable to decrypt cipher envelope: wrong shared secret or tampered payload"
        ) from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CipherEnvelopeError("Decrypted payload is not valid UTF-8") from e
