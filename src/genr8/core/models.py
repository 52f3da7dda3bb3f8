"""Domain records for the generation pipeline.

These dataclasses are the in-process representation of a generation job, its
payment intent and the provider callback that completes it.  They are plain
mutable records; ownership rules (who may write which record) are enforced by
the components that hold them, not by the records themselves.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from genr8.core.errors import ErrorDetail


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware current time, the default clock everywhere."""
    return datetime.now(timezone.utc)


class GenerationState(str, Enum):
    """Lifecycle of a :class:`GenerationRequest`.

    The happy path is strictly ordered; ``failed`` may be entered from any
    non-terminal state.  ``completed`` and ``failed`` are terminal.
    """

    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    DISPATCHING = "dispatching"
    AWAITING_RESULT = "awaiting_result"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationState.COMPLETED, GenerationState.FAILED)


# Position of each happy-path state; used to reject backwards transitions.
STATE_ORDER: dict[GenerationState, int] = {
    GenerationState.CREATED: 0,
    GenerationState.AWAITING_PAYMENT: 1,
    GenerationState.DISPATCHING: 2,
    GenerationState.AWAITING_RESULT: 3,
    GenerationState.COMPLETED: 4,
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    EXPIRED = "expired"


class CallbackStatus(str, Enum):
    """Provider job status, normalised across provider payload shapes."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class GenerationRequest:
    """One user job, owned exclusively by the orchestrator.

    Attributes:
        generation_id: Opaque unique token created by the orchestrator.
        model_id: Catalog id of the requested model.
        prompt: User prompt text.
        modality: ``"image"`` or ``"video"`` (empty when the model is unknown).
        options: Provider options passed through to the job payload.
        wallet: Payer identity, consulted by the exemption policy.
        state: Current lifecycle state.
        error: Failure detail once the request is ``failed``.
        payment_id: Payment intent covering this request.
        correlation_id: Provider task id, assigned once on dispatch.
        result: Primary result reference (URL) once completed.
        result_urls: Every result reference the provider returned.
        dispatch_attempts: Submit attempts made so far.
        retry_of: Generation id this request retries, if any.
        created_at: Creation time.
        updated_at: Time of the last state change.
        dispatched_at: Time the provider accepted the job.
        provider_checked_at: Time of the last provider status lookup.
    """

    generation_id: str
    model_id: str
    prompt: str
    modality: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    wallet: str | None = None
    state: GenerationState = GenerationState.CREATED
    error: ErrorDetail | None = None
    payment_id: str | None = None
    correlation_id: str | None = None
    result: str | None = None
    result_urls: list[str] = field(default_factory=list)
    dispatch_attempts: int = 0
    retry_of: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    dispatched_at: datetime | None = None
    provider_checked_at: datetime | None = None

    def snapshot(self) -> GenerationRequest:
        """Detached copy safe to hand out while the original keeps changing."""
        return dataclasses.replace(
            self,
            options=dict(self.options),
            result_urls=list(self.result_urls),
        )


@dataclass
class PaymentIntent:
    """A requested-but-not-yet-confirmed payment with its own expiry.

    Attributes:
        payment_id: Opaque unique token.
        amount: Amount due, taken from the catalog.
        currency: Currency code.
        generation_id: Generation the intent was created for.
        payment_url: URL the client follows to pay.
        expires_at: After this instant an unsettled intent expires.
        status: ``pending``, ``settled`` or ``expired``.
        created_at: Creation time.
        settled_at: Settlement time.
        proof: Client-supplied settlement reference (e.g. a transaction
            signature), forwarded to the settlement backend.
        redeemed_by: Generation currently entitled to use the settlement.
    """

    payment_id: str
    amount: Decimal
    currency: str
    generation_id: str
    payment_url: str
    expires_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    settled_at: datetime | None = None
    proof: str | None = None
    redeemed_by: str | None = None

    def __post_init__(self) -> None:
        if self.redeemed_by is None:
            self.redeemed_by = self.generation_id

    @property
    def is_settled(self) -> bool:
        return self.status is PaymentStatus.SETTLED

    def snapshot(self) -> PaymentIntent:
        return dataclasses.replace(self)


@dataclass
class CallbackRecord:
    """Latest provider callback received for one correlation id.

    Attributes:
        correlation_id: Provider task id.
        payload: Raw provider payload, stored verbatim.
        received_at: Receipt time of :attr:`payload`.
        status: Normalised provider status.
        result: Primary result reference, if the payload carried one.
        result_urls: Every result reference found in the payload.
        failure_detail: Provider failure message, if any.
        content_policy: The failure looks like a content-policy rejection.
        deliveries: Number of callbacks received for this id.
    """

    correlation_id: str
    payload: dict[str, Any]
    received_at: datetime
    status: CallbackStatus = CallbackStatus.PENDING
    result: str | None = None
    result_urls: list[str] = field(default_factory=list)
    failure_detail: str | None = None
    content_policy: bool = False
    deliveries: int = 1

    def to_dict(self) -> dict:
        return {
            "correlationId": self.correlation_id,
            "status": self.status.value,
            "result": self.result,
            "resultUrls": list(self.result_urls),
            "failureDetail": self.failure_detail,
            "contentPolicy": self.content_policy,
            "receivedAt": self.received_at.isoformat(),
            "deliveries": self.deliveries,
            "payload": self.payload,
        }
