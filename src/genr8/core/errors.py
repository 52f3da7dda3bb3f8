"""Error taxonomy for the generation pipeline.

Every user-visible failure carries a stable :class:`ErrorKind` tag plus a
human-readable message.  The HTTP layer maps kinds to status codes through
:data:`HTTP_STATUS`; nothing else in the core knows about HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Stable failure tags exposed to clients."""

    UNKNOWN_MODEL = "UnknownModel"
    MODEL_UNAVAILABLE = "ModelUnavailable"
    PAYMENT_EXPIRED = "PaymentExpired"
    DISPATCH_ERROR = "DispatchError"
    DISPATCH_EXHAUSTED = "DispatchExhausted"
    PROVIDER_REPORTED_FAILURE = "ProviderReportedFailure"
    RESULT_TIMEOUT = "ResultTimeout"
    MALFORMED_CALLBACK = "MalformedCallback"
    NOT_FOUND = "NotFound"
    RETRY_NOT_ALLOWED = "RetryNotAllowed"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNKNOWN_MODEL: 400,
    ErrorKind.MODEL_UNAVAILABLE: 503,
    ErrorKind.PAYMENT_EXPIRED: 409,
    ErrorKind.DISPATCH_ERROR: 502,
    ErrorKind.DISPATCH_EXHAUSTED: 502,
    ErrorKind.PROVIDER_REPORTED_FAILURE: 422,
    ErrorKind.RESULT_TIMEOUT: 504,
    ErrorKind.MALFORMED_CALLBACK: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RETRY_NOT_ALLOWED: 409,
}


@dataclass(frozen=True)
class ErrorDetail:
    """Failure attached to a terminal ``failed`` generation request.

    Attributes:
        kind: Stable error tag.
        message: Human-readable explanation, safe to show to the client.
        provider_detail: The provider's own failure message, when it gave one.
    """

    kind: ErrorKind
    message: str
    provider_detail: str | None = None

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value, "message": self.message}
        if self.provider_detail:
            data["providerDetail"] = self.provider_detail
        return data


class Genr8Error(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.NOT_FOUND

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class ModelNotFoundError(Genr8Error):
    kind = ErrorKind.UNKNOWN_MODEL


class ModelUnavailableError(Genr8Error):
    kind = ErrorKind.MODEL_UNAVAILABLE


class GenerationNotFoundError(Genr8Error):
    kind = ErrorKind.NOT_FOUND


class PaymentNotFoundError(Genr8Error):
    kind = ErrorKind.NOT_FOUND


class CallbackNotFoundError(Genr8Error):
    kind = ErrorKind.NOT_FOUND


class DispatchError(Genr8Error):
    """The provider rejected a submission or could not be reached.

    Transient by definition: the orchestrator retries it with backoff.
    """

    kind = ErrorKind.DISPATCH_ERROR


class ProviderQueryError(Genr8Error):
    """A provider status lookup failed.

    Never fatal: the orchestrator keeps waiting for the callback.
    """

    kind = ErrorKind.DISPATCH_ERROR


class MalformedCallbackError(Genr8Error):
    kind = ErrorKind.MALFORMED_CALLBACK


class RetryNotAllowedError(Genr8Error):
    kind = ErrorKind.RETRY_NOT_ALLOWED


class PaymentBackendError(Exception):
    """Transport or protocol failure talking to the settlement backend.

    Never leaves :class:`~genr8.core.payment.PaymentGate`; the gate reports it
    as "not settled yet".
    """
