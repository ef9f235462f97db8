"""
Exceptions raised by the Registry Broker client.

Two kinds matter most to callers:

* :class:`RegistryBrokerError`: the broker answered with a non-2xx status
  (it rejected us).
* :class:`RegistryBrokerParseError`: the broker answered 2xx but the body
  was not the shape we expected (it sent garbage).

Everything else is local: ledger credential problems, credit top-up bounds,
polling timeouts and encryption failures.
"""

from __future__ import annotations

from typing import Any


class RegistryBrokerClientError(Exception):
    """Base exception for all registry broker client errors."""


# ---------------------------------------------------------------------------
# Transport / decoding
# ---------------------------------------------------------------------------


class RegistryBrokerError(RegistryBrokerClientError):
    """The broker returned a non-2xx response.

    ``body`` is best-effort: parsed JSON when possible, raw text otherwise,
    or ``{"parseError": "..."}`` when neither could be read.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int,
        status_text: str = "",
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.status_text = status_text
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        status = f"{self.status} {self.status_text}".strip()
        return f"{base} ({status})"


class RegistryBrokerParseError(RegistryBrokerClientError):
    """A 2xx response body failed JSON decoding or schema validation."""

    def __init__(self, message: str, cause: Any = None, raw_value: Any = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.raw_value = raw_value


class RegistryBrokerTransportError(RegistryBrokerClientError):
    """The request never produced a response (DNS, connect, timeout...)."""


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class RegistrationFailedError(RegistryBrokerError):
    """Polling observed a terminal ``failed`` or ``partial`` record."""

    def __init__(self, record: Any) -> None:
        status = getattr(record, "status", "failed")
        body = record.model_dump(by_alias=True) if hasattr(record, "model_dump") else record
        super().__init__(
            "Registration did not complete successfully",
            status=409,
            status_text=status,
            body=body,
        )
        self.record = record


class RegistrationRejectedError(RegistryBrokerError):
    """The broker answered but did not register the primary agent."""

    def __init__(self, response: Any) -> None:
        status = getattr(response, "status", None) or "failed"
        message = getattr(response, "message", None) or "Agent registration was rejected"
        body = response.model_dump(by_alias=True) if hasattr(response, "model_dump") else response
        super().__init__(message, status=422, status_text=status, body=body)
        self.response = response


class RegistrationTimeoutError(RegistryBrokerClientError):
    """Polling gave up before the attempt reached a terminal state."""

    def __init__(self, attempt_id: str, timeout_ms: int) -> None:
        super().__init__(
            f"Registration progress polling timed out after {timeout_ms}ms "
            f"(attempt {attempt_id})"
        )
        self.attempt_id = attempt_id
        self.timeout_ms = timeout_ms


class OperationAbortedError(RegistryBrokerClientError):
    """The caller's cancel event was set before the next wait."""

    def __init__(self, message: str = "The operation was aborted") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerAuthenticationError(RegistryBrokerClientError):
    """Ledger authentication could not be attempted or completed."""


class LedgerNetworkError(LedgerAuthenticationError):
    """The ledger network string is empty or not recognised."""


class LedgerNetworkMismatchError(LedgerAuthenticationError):
    """A private key was supplied for the wrong ledger family.

    Raised before any network call; never retried.
    """


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditTopUpError(RegistryBrokerClientError):
    """An automatic credit purchase was refused locally."""


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


class EncryptionUnavailableError(RegistryBrokerClientError):
    """The broker could not enable encryption for a chat session."""

    def __init__(self, session_id: str, summary: Any = None, reason: str | None = None) -> None:
        detail = reason or "counterpart has no registered encryption key"
        super().__init__(f"Encryption is not enabled for session {session_id}: {detail}")
        self.session_id = session_id
        self.summary = summary


class CipherEnvelopeError(RegistryBrokerClientError):
    """A cipher envelope could not be opened (wrong secret or tampered)."""
