"""End-to-end lifecycle of a generation request.

The orchestrator composes the catalog, the payment gate, the dispatcher and
the callback correlator, and owns the request state machine::

    created ─▶ awaiting_payment ─▶ dispatching ─▶ awaiting_result ─▶ completed
       │              │                 │                 │
       └──────────────┴─────────────────┴─────────────────┴──▶ failed

Transitions
-----------
- ``created → awaiting_payment`` as soon as the catalog resolves the model.
  Unknown models fail with ``UnknownModel``, coming-soon models with
  ``ModelUnavailable``; neither creates a payment intent.
- ``awaiting_payment → dispatching`` once the gate reports the intent settled
  (immediately for exempt requests).  An intent that expires unsettled fails
  the request with ``PaymentExpired``.
- ``dispatching → awaiting_result`` when the provider accepts the job.  Each
  rejection is retried with exponential backoff up to the attempt ceiling,
  after which the request fails with ``DispatchExhausted``.  The payment is
  not consumed by a failed dispatch; :meth:`GenerationOrchestrator.retry`
  reuses it.
- ``awaiting_result → completed`` the first time the correlator holds a
  callback with a result reference; ``→ failed`` with
  ``ProviderReportedFailure`` when the callback reports failure, or with
  ``ResultTimeout`` when nothing usable arrived in time.  While no usable
  callback is stored, the provider's status endpoint is consulted at most
  once per poll interval; a finished job found that way is recorded in the
  correlator exactly as if its callback had arrived.
- ``completed`` and ``failed`` are terminal.  A retry always gets a new
  generation id; terminal records are never reopened.

Transition-on-read
------------------
There is no background scheduler.  :meth:`GenerationOrchestrator.check_status`
advances the state machine lazily: each poll confirms a pending payment,
dispatches a paid job and consults the correlator, as far as the current
facts allow.  The polling client therefore drives progress; a request nobody
polls stays where it is until its next read.

Concurrency
-----------
All writes to one request happen under that request's per-key lock, so
concurrent polls never observe a half-applied transition (readers receive
snapshots).  Dispatch takes the lock only to count each attempt and to
record the outcome; the provider calls and backoff sleeps run without it.
A request whose dispatch is under way is marked, and concurrent polls return
its ``dispatching`` snapshot at once rather than submitting the job again.
The correlator and the gate lock on their own keys, independently of this
lock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from genr8.core.catalog import ModelDescriptor, PricingCatalog
from genr8.core.config import Genr8Config
from genr8.core.correlator import CallbackCorrelator, parse_callback
from genr8.core.dispatcher import GenerationDispatcher
from genr8.core.errors import (
    DispatchError,
    ErrorDetail,
    ErrorKind,
    GenerationNotFoundError,
    ModelNotFoundError,
    ProviderQueryError,
    RetryNotAllowedError,
)
from genr8.core.models import (
    STATE_ORDER,
    CallbackRecord,
    CallbackStatus,
    Clock,
    GenerationRequest,
    GenerationState,
    PaymentStatus,
    utc_now,
)
from genr8.core.payment import PaymentChallenge, PaymentGate, SettlementResult
from genr8.core.store import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


def new_generation_id() -> str:
    return f"gen_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class StartOutcome:
    """Result of :meth:`GenerationOrchestrator.start`.

    Attributes:
        request: Snapshot of the new request.
        challenge: 402 descriptor when payment is required, else ``None``.
    """

    request: GenerationRequest
    challenge: PaymentChallenge | None = None

    @property
    def payment_required(self) -> bool:
        return self.challenge is not None


class GenerationOrchestrator:
    """Owns generation requests and drives them through their lifecycle.

    Args:
        catalog: Model catalog.
        gate: Payment gate.
        dispatcher: Provider dispatcher.
        correlator: Callback correlator.
        store: Request store keyed by generation id.
        max_dispatch_attempts: Submit attempts before ``DispatchExhausted``.
        dispatch_backoff_seconds: Delay after the first failed attempt,
            doubled after each further failure.
        result_timeout_seconds: Maximum wait for a usable callback after
            dispatch.
        status_poll_interval_seconds: Minimum spacing of provider status
            lookups while no usable callback is stored; ``0`` disables them.
        clock: Time source.
        sleep: Backoff sleeper (tests pass a no-op).
    """

    def __init__(
        self,
        catalog: PricingCatalog,
        gate: PaymentGate,
        dispatcher: GenerationDispatcher,
        correlator: CallbackCorrelator,
        *,
        store: KeyedStore[GenerationRequest] | None = None,
        max_dispatch_attempts: int = 3,
        dispatch_backoff_seconds: float = 0.5,
        result_timeout_seconds: float = 3600,
        status_poll_interval_seconds: float = 30,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_dispatch_attempts < 1:
            raise ValueError("max_dispatch_attempts must be >= 1")
        self._catalog = catalog
        self._gate = gate
        self._dispatcher = dispatcher
        self._correlator = correlator
        self._requests: KeyedStore[GenerationRequest] = store or InMemoryKeyedStore()
        # correlation id -> generation id, for in-flight requests only
        self._in_flight: KeyedStore[str] = InMemoryKeyedStore()
        # failed generation id -> generation id of its retry
        self._retries: KeyedStore[str] = InMemoryKeyedStore()
        self._max_attempts = max_dispatch_attempts
        self._backoff = dispatch_backoff_seconds
        self._result_timeout = timedelta(seconds=result_timeout_seconds)
        self._poll_interval = timedelta(seconds=status_poll_interval_seconds)
        # generation ids with a dispatch loop under way
        self._dispatching: set[str] = set()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: Genr8Config,
        catalog: PricingCatalog,
        gate: PaymentGate,
        dispatcher: GenerationDispatcher,
        correlator: CallbackCorrelator,
        clock: Clock = utc_now,
    ) -> GenerationOrchestrator:
        return cls(
            catalog,
            gate,
            dispatcher,
            correlator,
            max_dispatch_attempts=config.dispatch_max_attempts,
            dispatch_backoff_seconds=config.dispatch_backoff_seconds,
            result_timeout_seconds=config.result_timeout_seconds,
            status_poll_interval_seconds=config.status_poll_interval_seconds,
            clock=clock,
        )

    # -- Public interface ---------------------------------------------------

    async def start(
        self,
        model_id: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        wallet: str | None = None,
    ) -> StartOutcome:
        """Create a generation request and put it in front of the payment gate.

        Returns synchronously in ``awaiting_payment`` (with a challenge) when
        payment is required, or in ``failed`` for unknown/unavailable models.
        Exempt requests are dispatched right away.
        """
        now = self._clock()
        request = GenerationRequest(
            generation_id=new_generation_id(),
            model_id=model_id,
            prompt=prompt,
            options=dict(options or {}),
            wallet=wallet,
            created_at=now,
            updated_at=now,
        )
        generation_id = request.generation_id

        async with self._requests.locked(generation_id):
            await self._requests.put(generation_id, request)
            logger.info(f"Generation {generation_id} created for model {model_id!r}")

            descriptor = self._resolve_model(request)
            if descriptor is None:
                return StartOutcome(request.snapshot())

            self._transition(request, GenerationState.AWAITING_PAYMENT)
            evaluation = await self._gate.evaluate(generation_id, model_id, wallet)
            if evaluation.required:
                request.payment_id = evaluation.intent.payment_id
                challenge = self._gate.challenge(evaluation.intent)
                return StartOutcome(request.snapshot(), challenge)

            self._transition(request, GenerationState.DISPATCHING)

        return StartOutcome(await self._drive(generation_id))

    async def check_status(self, generation_id: str) -> GenerationRequest:
        """Return the current state of a request, advancing it lazily.

        Raises:
            GenerationNotFoundError: If the id is unknown.
        """
        return await self._drive(generation_id)

    async def confirm_payment(self, payment_id: str, proof: str | None = None) -> SettlementResult:
        """Record client-supplied settlement proof and verify it.

        The next :meth:`check_status` of the request moves it on.

        Raises:
            PaymentNotFoundError: If the id is unknown.
        """
        return await self._gate.confirm(payment_id, proof)

    async def payment_challenge(self, request: GenerationRequest) -> PaymentChallenge | None:
        """The 402 descriptor for a request still awaiting payment."""
        if request.state is not GenerationState.AWAITING_PAYMENT or not request.payment_id:
            return None
        intent = await self._gate.get(request.payment_id)
        return self._gate.challenge(intent)

    async def retry(self, generation_id: str) -> GenerationRequest:
        """Re-run a request that failed with ``DispatchExhausted``.

        The new request gets a fresh generation id and reuses the original
        settled payment intent, so nothing is charged twice.  Each failed
        request can be retried once.

        Raises:
            GenerationNotFoundError: If the id is unknown.
            RetryNotAllowedError: If the request is not a dispatch failure or
                has already been retried.
        """
        new_id = new_generation_id()

        async with self._requests.locked(generation_id):
            failed = await self._get(generation_id)
            if failed.state is not GenerationState.FAILED or failed.error.kind is not ErrorKind.DISPATCH_EXHAUSTED:
                raise RetryNotAllowedError(
                    f"Generation {generation_id} is {failed.state.value}; "
                    "only DispatchExhausted failures can be retried"
                )
            if await self._retries.get(generation_id) is not None:
                raise RetryNotAllowedError(f"Generation {generation_id} has already been retried")
            if failed.payment_id and not await self._gate.reassign(failed.payment_id, generation_id, new_id):
                raise RetryNotAllowedError(f"Payment for {generation_id} cannot be reused")
            await self._retries.put(generation_id, new_id)

        now = self._clock()
        request = GenerationRequest(
            generation_id=new_id,
            model_id=failed.model_id,
            prompt=failed.prompt,
            modality=failed.modality,
            options=dict(failed.options),
            wallet=failed.wallet,
            payment_id=failed.payment_id,
            retry_of=generation_id,
            created_at=now,
            updated_at=now,
        )
        async with self._requests.locked(new_id):
            await self._requests.put(new_id, request)
            logger.info(f"Generation {new_id} retries {generation_id} with payment {failed.payment_id}")
            self._transition(request, GenerationState.AWAITING_PAYMENT)
        return await self._drive(new_id)

    def list_models(self, modality: str | None = None) -> list[ModelDescriptor]:
        return self._catalog.models(modality)

    @property
    def correlator(self) -> CallbackCorrelator:
        return self._correlator

    async def aclose(self) -> None:
        await self._gate.aclose()
        await self._dispatcher.aclose()

    # -- State machine ------------------------------------------------------

    async def _get(self, generation_id: str) -> GenerationRequest:
        request = await self._requests.get(generation_id)
        if request is None:
            raise GenerationNotFoundError(f"Generation not found: {generation_id}")
        return request

    def _transition(self, request: GenerationRequest, state: GenerationState) -> None:
        current = request.state
        if current.is_terminal:
            raise RuntimeError(f"{request.generation_id}: {current.value} is terminal")
        if state is not GenerationState.FAILED and STATE_ORDER[state] <= STATE_ORDER[current]:
            raise RuntimeError(f"{request.generation_id}: cannot go {current.value} -> {state.value}")
        request.state = state
        request.updated_at = self._clock()
        logger.info(f"Generation {request.generation_id}: {current.value} -> {state.value}")

    def _fail(
        self,
        request: GenerationRequest,
        kind: ErrorKind,
        message: str,
        provider_detail: str | None = None,
    ) -> None:
        request.error = ErrorDetail(kind, message, provider_detail)
        self._transition(request, GenerationState.FAILED)
        logger.warning(f"Generation {request.generation_id} failed: {kind.value} - {message}")

    def _resolve_model(self, request: GenerationRequest) -> ModelDescriptor | None:
        try:
            descriptor = self._catalog.price_of(request.model_id)
        except ModelNotFoundError as exc:
            self._fail(request, ErrorKind.UNKNOWN_MODEL, exc.message)
            return None
        request.modality = descriptor.modality
        if descriptor.coming_soon:
            self._fail(
                request,
                ErrorKind.MODEL_UNAVAILABLE,
                f"{descriptor.name} is coming soon. Please check back later.",
            )
            return None
        return descriptor

    async def _drive(self, generation_id: str) -> GenerationRequest:
        """Advance a request as far as current facts allow; return a snapshot.

        One read may carry a request through several steps.
        """
        async with self._requests.locked(generation_id):
            request = await self._get(generation_id)
            if generation_id in self._dispatching:
                return request.snapshot()
            if request.state is GenerationState.AWAITING_PAYMENT:
                await self._advance_payment(request)
            if request.state is GenerationState.AWAITING_RESULT:
                await self._advance_result(request)
            if request.state is not GenerationState.DISPATCHING:
                return request.snapshot()
            self._dispatching.add(generation_id)

        try:
            await self._dispatch(generation_id)
        finally:
            self._dispatching.discard(generation_id)

        async with self._requests.locked(generation_id):
            request = await self._get(generation_id)
            if request.state is GenerationState.AWAITING_RESULT:
                await self._advance_result(request)
            return request.snapshot()

    async def _advance_payment(self, request: GenerationRequest) -> None:
        if request.payment_id is None:
            # Exempt request interrupted before dispatch.
            self._transition(request, GenerationState.DISPATCHING)
            return

        settlement = await self._gate.confirm(request.payment_id)
        if settlement.settled:
            self._transition(request, GenerationState.DISPATCHING)
        elif settlement.status is PaymentStatus.EXPIRED:
            self._fail(
                request,
                ErrorKind.PAYMENT_EXPIRED,
                "Payment was not completed before the intent expired; start a new generation",
            )

    async def _dispatch(self, generation_id: str) -> None:
        """Submit a paid job, retrying rejections with exponential backoff.

        The caller has marked *generation_id* in ``_dispatching``.  The request
        lock is held only while an attempt is counted and while the outcome is
        recorded.
        """
        delay = self._backoff
        last_error: DispatchError | None = None

        while True:
            async with self._requests.locked(generation_id):
                request = await self._get(generation_id)
                if request.dispatch_attempts >= self._max_attempts:
                    self._fail(
                        request,
                        ErrorKind.DISPATCH_EXHAUSTED,
                        f"The provider did not accept the job after {request.dispatch_attempts} attempts; "
                        "the payment remains valid for a retry",
                        provider_detail=last_error.message if last_error else None,
                    )
                    return
                request.dispatch_attempts += 1
                attempt = request.dispatch_attempts
                job = request.snapshot()

            try:
                correlation_id = await self._dispatcher.submit(job)
                await self._claim_correlation(correlation_id, generation_id)
            except DispatchError as exc:
                last_error = exc
                logger.warning(
                    f"Dispatch attempt {attempt}/{self._max_attempts} "
                    f"for {generation_id} failed: {exc.message}"
                )
                if attempt < self._max_attempts:
                    await self._sleep(delay)
                    delay *= 2
                continue

            async with self._requests.locked(generation_id):
                request = await self._get(generation_id)
                request.correlation_id = correlation_id
                request.dispatched_at = self._clock()
                self._transition(request, GenerationState.AWAITING_RESULT)
            return

    async def _claim_correlation(self, correlation_id: str, generation_id: str) -> None:
        def claim(owner: str | None) -> str:
            if owner is not None and owner != generation_id:
                raise DispatchError(f"Provider reused correlation id {correlation_id}")
            return generation_id

        await self._in_flight.upsert(correlation_id, claim)

    def _status_check_due(self, request: GenerationRequest) -> bool:
        if not self._poll_interval:
            return False
        last = request.provider_checked_at or request.dispatched_at
        return self._clock() - last >= self._poll_interval

    async def _check_provider(self, request: GenerationRequest) -> CallbackRecord | None:
        """Look the job up at the provider; record it if it has finished."""
        request.provider_checked_at = self._clock()
        try:
            payload = await self._dispatcher.query_status(request)
        except ProviderQueryError as exc:
            logger.warning(f"Status lookup for {request.generation_id} failed: {exc.message}")
            return None

        if parse_callback(payload).status is CallbackStatus.PENDING:
            return None
        logger.info(
            f"Generation {request.generation_id}: provider reports task "
            f"{request.correlation_id} finished before its callback arrived"
        )
        return await self._correlator.record(request.correlation_id, payload)

    async def _advance_result(self, request: GenerationRequest) -> None:
        record = await self._correlator.find(request.correlation_id)
        usable = record is not None and (record.status is CallbackStatus.FAILED or record.result)
        if not usable and self._status_check_due(request):
            record = await self._check_provider(request) or record

        if record is not None and record.status is CallbackStatus.FAILED:
            message = "The provider reported that the generation failed"
            if record.content_policy:
                message = "The provider rejected the prompt under its content policy"
            self._fail(request, ErrorKind.PROVIDER_REPORTED_FAILURE, message, record.failure_detail)
        elif record is not None and record.result:
            request.result = record.result
            request.result_urls = list(record.result_urls)
            self._transition(request, GenerationState.COMPLETED)
        elif self._clock() - request.dispatched_at > self._result_timeout:
            self._fail(
                request,
                ErrorKind.RESULT_TIMEOUT,
                "No result arrived from the provider in time",
            )
        else:
            return

        await self._in_flight.delete(request.correlation_id)
