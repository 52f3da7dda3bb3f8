"""Tests for genr8.core.orchestrator - the generation state machine.

All tests run the real catalog, gate, dispatcher and correlator against a
fake settlement backend, a mock provider transport and a fake clock.

Tests cover:
- ``start`` for unknown, coming-soon, payable and exempt requests.
- Lazy progress on ``check_status``: settlement, dispatch, completion.
- Dispatch retry with backoff and exhaustion.
- Provider failures and result timeouts.
- Provider status lookups when the callback is late.
- State monotonicity and the end-to-end scenarios.
- The manual retry path reusing a settled payment.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from genr8.core.correlator import CallbackCorrelator
from genr8.core.errors import ErrorKind, GenerationNotFoundError, RetryNotAllowedError
from genr8.core.models import STATE_ORDER, GenerationState, PaymentStatus
from genr8.core.orchestrator import GenerationOrchestrator
from genr8.core.payment import PaymentGate
from genr8.core.store import InMemoryKeyedStore

from tests.helpers import EXEMPT_WALLET, FakeClock, FakePaymentBackend, FakeProviderAPI


def _done(task_id: str, url: str = "https://cdn.test/out.png") -> dict:
    return {"correlationId": task_id, "status": "done", "result": url}


# ---------------------------------------------------------------------------
# start().
# ---------------------------------------------------------------------------


class TestStart:
    def test_unknown_model_fails_without_intent(self, orchestrator: GenerationOrchestrator):
        outcome = asyncio.run(orchestrator.start("nope", "a cat"))
        request = outcome.request
        assert request.state is GenerationState.FAILED
        assert request.error.kind is ErrorKind.UNKNOWN_MODEL
        assert request.payment_id is None
        assert outcome.challenge is None

    def test_unknown_model_failure_is_pollable(self, orchestrator: GenerationOrchestrator):
        async def scenario():
            outcome = await orchestrator.start("nope", "a cat")
            return await orchestrator.check_status(outcome.request.generation_id)

        assert asyncio.run(scenario()).error.kind is ErrorKind.UNKNOWN_MODEL

    def test_coming_soon_model_is_unavailable(self, orchestrator: GenerationOrchestrator):
        outcome = asyncio.run(orchestrator.start("soon-model", "a cat"))
        assert outcome.request.state is GenerationState.FAILED
        assert outcome.request.error.kind is ErrorKind.MODEL_UNAVAILABLE
        assert "coming soon" in outcome.request.error.message
        assert outcome.challenge is None

    def test_valid_model_requires_payment(self, orchestrator: GenerationOrchestrator):
        outcome = asyncio.run(orchestrator.start("vid-model", "waves", {"aspectRatio": "9:16"}))
        assert outcome.payment_required
        assert outcome.request.state is GenerationState.AWAITING_PAYMENT
        assert outcome.request.modality == "video"
        assert outcome.request.options == {"aspectRatio": "9:16"}
        assert outcome.challenge.amount == Decimal("0.36")
        assert outcome.challenge.currency == "USDC"
        assert outcome.request.payment_id == outcome.challenge.payment_id

    def test_nothing_is_dispatched_before_payment(
        self, orchestrator: GenerationOrchestrator, provider_api: FakeProviderAPI
    ):
        asyncio.run(orchestrator.start("img-model", "a cat"))
        assert provider_api.requests == []

    def test_exempt_wallet_dispatches_immediately(
        self, orchestrator: GenerationOrchestrator, provider_api: FakeProviderAPI
    ):
        outcome = asyncio.run(orchestrator.start("img-model", "a cat", wallet=EXEMPT_WALLET))
        assert not outcome.payment_required
        assert outcome.request.payment_id is None
        assert outcome.request.state is GenerationState.AWAITING_RESULT
        assert outcome.request.correlation_id == "task-1"
        assert len(provider_api.requests) == 1

    def test_generation_ids_are_unique(self, orchestrator: GenerationOrchestrator):
        async def scenario():
            return {(await orchestrator.start("img-model", "p")).request.generation_id for _ in range(20)}

        assert len(asyncio.run(scenario())) == 20


# ---------------------------------------------------------------------------
# check_status() and payment.
# ---------------------------------------------------------------------------


class TestCheckStatusPayment:
    def test_unknown_generation(self, orchestrator: GenerationOrchestrator):
        with pytest.raises(GenerationNotFoundError):
            asyncio.run(orchestrator.check_status("gen_missing"))

    def test_unsettled_stays_awaiting_payment(self, orchestrator: GenerationOrchestrator):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            request = await orchestrator.check_status(outcome.request.generation_id)
            return request, await orchestrator.payment_challenge(request)

        request, challenge = asyncio.run(scenario())
        assert request.state is GenerationState.AWAITING_PAYMENT
        assert challenge.payment_id == request.payment_id

    def test_settlement_moves_to_awaiting_result(
        self, orchestrator: GenerationOrchestrator, payment_backend: FakePaymentBackend
    ):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            payment_backend.settled = True
            return await orchestrator.check_status(outcome.request.generation_id)

        request = asyncio.run(scenario())
        assert request.state is GenerationState.AWAITING_RESULT
        assert request.correlation_id == "task-1"
        assert request.dispatch_attempts == 1

    def test_confirm_payment_with_proof(
        self, orchestrator: GenerationOrchestrator, payment_backend: FakePaymentBackend
    ):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            payment_backend.settled = True
            result = await orchestrator.confirm_payment(outcome.request.payment_id, proof="0xsig")
            request = await orchestrator.check_status(outcome.request.generation_id)
            return result, request

        result, request = asyncio.run(scenario())
        assert result.settled is True
        assert payment_backend.calls[0].proof == "0xsig"
        assert request.state is GenerationState.AWAITING_RESULT

    def test_backend_outage_keeps_waiting(
        self, orchestrator: GenerationOrchestrator, payment_backend: FakePaymentBackend
    ):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            payment_backend.fail_with("connection refused")
            return await orchestrator.check_status(outcome.request.generation_id)

        assert asyncio.run(scenario()).state is GenerationState.AWAITING_PAYMENT

    def test_concurrent_polls_dispatch_once(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
    ):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            payment_backend.settled = True
            generation_id = outcome.request.generation_id
            polls = await asyncio.gather(*(orchestrator.check_status(generation_id) for _ in range(5)))
            return polls, await orchestrator.check_status(generation_id)

        polls, final = asyncio.run(scenario())
        assert len(provider_api.requests) == 1
        assert {r.state for r in polls} <= {GenerationState.DISPATCHING, GenerationState.AWAITING_RESULT}
        assert {r.correlation_id for r in polls} <= {None, "task-1"}
        assert final.correlation_id == "task-1"

    def test_poll_during_dispatch_backoff_does_not_wait(
        self,
        catalog,
        gate: PaymentGate,
        dispatcher,
        correlator: CallbackCorrelator,
        clock: FakeClock,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
    ):
        """The request lock is not held across provider calls and backoff sleeps."""

        async def scenario():
            sleeping = asyncio.Event()
            release = asyncio.Event()

            async def blocking_sleep(delay: float) -> None:
                sleeping.set()
                await release.wait()

            orchestrator = GenerationOrchestrator(
                catalog, gate, dispatcher, correlator, clock=clock, sleep=blocking_sleep
            )
            generation_id = (await orchestrator.start("img-model", "a cat")).request.generation_id
            payment_backend.settled = True
            provider_api.reject_next(1)

            first = asyncio.create_task(orchestrator.check_status(generation_id))
            await sleeping.wait()
            during = await asyncio.wait_for(orchestrator.check_status(generation_id), timeout=1)
            release.set()
            return during, await first

        during, after = asyncio.run(scenario())
        assert during.state is GenerationState.DISPATCHING
        assert during.dispatch_attempts == 1
        assert after.state is GenerationState.AWAITING_RESULT
        assert after.dispatch_attempts == 2
        assert len(provider_api.requests) == 2

    def test_unknown_ids_leave_no_locks_behind(self, catalog, gate, dispatcher, correlator, clock):
        store = InMemoryKeyedStore()
        orchestrator = GenerationOrchestrator(catalog, gate, dispatcher, correlator, store=store, clock=clock)

        async def scenario():
            for i in range(1000):
                with pytest.raises(GenerationNotFoundError):
                    await orchestrator.check_status(f"gen_bogus_{i}")

        asyncio.run(scenario())
        assert store.lock_count() == 0

    def test_snapshots_are_detached(self, orchestrator: GenerationOrchestrator):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat", {"n": 1})
            outcome.request.options["n"] = 99
            outcome.request.state = GenerationState.COMPLETED
            return await orchestrator.check_status(outcome.request.generation_id)

        request = asyncio.run(scenario())
        assert request.options == {"n": 1}
        assert request.state is GenerationState.AWAITING_PAYMENT


# ---------------------------------------------------------------------------
# Dispatch.
# ---------------------------------------------------------------------------


class TestDispatchRetry:
    def _settled_request(self, orchestrator, payment_backend) -> str:
        payment_backend.settled = True
        return asyncio.run(orchestrator.start("img-model", "a cat")).request.generation_id

    def test_transient_rejections_are_retried(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
        sleeps: list[float],
    ):
        generation_id = self._settled_request(orchestrator, payment_backend)
        provider_api.reject_next(2)
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.state is GenerationState.AWAITING_RESULT
        assert request.dispatch_attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_exhaustion(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
        sleeps: list[float],
    ):
        generation_id = self._settled_request(orchestrator, payment_backend)
        provider_api.reject_next(3, status_code=503, body={"code": 503, "msg": "overloaded"})
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.state is GenerationState.FAILED
        assert request.error.kind is ErrorKind.DISPATCH_EXHAUSTED
        assert "overloaded" in request.error.provider_detail
        assert request.correlation_id is None
        assert len(provider_api.requests) == 3
        # No sleep after the last attempt.
        assert sleeps == [0.5, 1.0]

    def test_exhausted_request_is_not_redispatched_on_poll(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
    ):
        generation_id = self._settled_request(orchestrator, payment_backend)
        provider_api.reject_next(3)

        async def scenario():
            await orchestrator.check_status(generation_id)
            return await orchestrator.check_status(generation_id)

        assert asyncio.run(scenario()).state is GenerationState.FAILED
        assert len(provider_api.requests) == 3

    def test_reused_correlation_id_is_rejected(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
    ):
        """Two in-flight requests never share a correlation id."""
        payment_backend.settled = True
        provider_api.issue("dup", "dup", "fresh")

        async def scenario():
            first = await orchestrator.start("img-model", "a")
            second = await orchestrator.start("img-model", "b")
            a = await orchestrator.check_status(first.request.generation_id)
            b = await orchestrator.check_status(second.request.generation_id)
            return a, b

        a, b = asyncio.run(scenario())
        assert a.correlation_id == "dup"
        assert b.correlation_id == "fresh"
        assert b.dispatch_attempts == 2


# ---------------------------------------------------------------------------
# Results.
# ---------------------------------------------------------------------------


class TestResults:
    def _dispatched(self, orchestrator, payment_backend) -> str:
        payment_backend.settled = True

        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            await orchestrator.check_status(outcome.request.generation_id)
            return outcome.request.generation_id

        return asyncio.run(scenario())

    def test_callback_completes(self, orchestrator, payment_backend, correlator: CallbackCorrelator):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest(
                {"data": {"taskId": "task-1", "successFlag": 1, "response": {"resultUrls": ["u1", "u2"]}}}
            )
            return await orchestrator.check_status(generation_id)

        request = asyncio.run(scenario())
        assert request.state is GenerationState.COMPLETED
        assert request.result == "u1"
        assert request.result_urls == ["u1", "u2"]

    def test_progress_callback_keeps_waiting(self, orchestrator, payment_backend, correlator):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest({"taskId": "task-1", "status": "generating"})
            return await orchestrator.check_status(generation_id)

        assert asyncio.run(scenario()).state is GenerationState.AWAITING_RESULT

    def test_provider_failure(self, orchestrator, payment_backend, correlator):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest({"data": {"taskId": "task-1", "state": "fail", "failMsg": "GPU on fire"}})
            return await orchestrator.check_status(generation_id)

        request = asyncio.run(scenario())
        assert request.state is GenerationState.FAILED
        assert request.error.kind is ErrorKind.PROVIDER_REPORTED_FAILURE
        assert request.error.provider_detail == "GPU on fire"

    def test_content_policy_failure_message(self, orchestrator, payment_backend, correlator):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest(
                {"data": {"taskId": "task-1", "state": "fail", "failMsg": "content policy violation"}}
            )
            return await orchestrator.check_status(generation_id)

        assert "content policy" in asyncio.run(scenario()).error.message

    def test_result_timeout(self, orchestrator, payment_backend, clock: FakeClock):
        generation_id = self._dispatched(orchestrator, payment_backend)
        clock.advance(3601)
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.state is GenerationState.FAILED
        assert request.error.kind is ErrorKind.RESULT_TIMEOUT

    def test_late_but_present_result_beats_timeout(self, orchestrator, payment_backend, correlator, clock):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest(_done("task-1"))
            clock.advance(7200)
            return await orchestrator.check_status(generation_id)

        assert asyncio.run(scenario()).state is GenerationState.COMPLETED

    def test_callback_before_first_poll(
        self, orchestrator, payment_backend, correlator, provider_api: FakeProviderAPI
    ):
        """A callback stored before anyone polls is picked up on the first poll."""
        provider_api.issue("early")

        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat", wallet=EXEMPT_WALLET)
            await correlator.ingest(_done("early", "https://cdn.test/early.png"))
            return await orchestrator.check_status(outcome.request.generation_id)

        request = asyncio.run(scenario())
        assert request.state is GenerationState.COMPLETED
        assert request.result == "https://cdn.test/early.png"

    def test_completed_is_terminal(self, orchestrator, payment_backend, correlator, clock):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest(_done("task-1"))
            await orchestrator.check_status(generation_id)
            clock.advance(1)
            await correlator.ingest({"data": {"taskId": "task-1", "state": "fail"}})
            clock.advance(10_000)
            return await orchestrator.check_status(generation_id)

        request = asyncio.run(scenario())
        assert request.state is GenerationState.COMPLETED
        assert request.error is None


class TestProviderStatusLookup:
    """Results found at the provider's status endpoint when the callback is late."""

    _JOB_DONE = {"state": "success", "resultJson": '{"resultUrls": ["https://cdn.test/lookup.png"]}'}

    def _dispatched(self, orchestrator, payment_backend, model_id: str = "img-model") -> str:
        payment_backend.settled = True

        async def scenario():
            outcome = await orchestrator.start(model_id, "a cat")
            await orchestrator.check_status(outcome.request.generation_id)
            return outcome.request.generation_id

        return asyncio.run(scenario())

    def test_no_lookup_within_interval(self, orchestrator, payment_backend, provider_api, clock):
        generation_id = self._dispatched(orchestrator, payment_backend)
        clock.advance(29)
        assert asyncio.run(orchestrator.check_status(generation_id)).state is GenerationState.AWAITING_RESULT
        assert provider_api.status_queries == []

    def test_lost_callback_completes_from_lookup(
        self, orchestrator, payment_backend, provider_api: FakeProviderAPI, correlator, clock
    ):
        generation_id = self._dispatched(orchestrator, payment_backend)
        provider_api.report("task-1", self._JOB_DONE)
        clock.advance(30)

        async def scenario():
            request = await orchestrator.check_status(generation_id)
            return request, await correlator.find("task-1")

        request, record = asyncio.run(scenario())
        assert request.state is GenerationState.COMPLETED
        assert request.result == "https://cdn.test/lookup.png"
        assert record is not None
        query = provider_api.status_queries[0]
        assert query.url.path == "/api/v1/jobs/recordInfo"
        assert query.url.params["taskId"] == "task-1"
        assert query.headers["Authorization"] == "Bearer test-provider-key"

    def test_veo_lookup(self, orchestrator, payment_backend, provider_api: FakeProviderAPI, clock):
        generation_id = self._dispatched(orchestrator, payment_backend, "vid-model")
        provider_api.report("task-1", {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/v.mp4"]}})
        clock.advance(30)
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.state is GenerationState.COMPLETED
        assert request.result_urls == ["https://cdn.test/v.mp4"]
        assert provider_api.status_queries[0].url.path == "/api/v1/veo/record-info"

    def test_failure_found_by_lookup(self, orchestrator, payment_backend, provider_api: FakeProviderAPI, clock):
        generation_id = self._dispatched(orchestrator, payment_backend)
        provider_api.report("task-1", {"state": "fail", "failMsg": "GPU on fire"})
        clock.advance(30)
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.error.kind is ErrorKind.PROVIDER_REPORTED_FAILURE
        assert request.error.provider_detail == "GPU on fire"

    def test_lookups_are_spaced_by_interval(
        self, orchestrator, payment_backend, provider_api: FakeProviderAPI, clock
    ):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            clock.advance(30)
            await orchestrator.check_status(generation_id)
            await orchestrator.check_status(generation_id)
            clock.advance(10)
            await orchestrator.check_status(generation_id)
            clock.advance(20)
            return await orchestrator.check_status(generation_id)

        assert asyncio.run(scenario()).state is GenerationState.AWAITING_RESULT
        assert len(provider_api.status_queries) == 2

    def test_lookup_error_keeps_waiting(self, orchestrator, payment_backend, provider_api: FakeProviderAPI, clock):
        generation_id = self._dispatched(orchestrator, payment_backend)
        provider_api.status_error = 500
        clock.advance(30)
        assert asyncio.run(orchestrator.check_status(generation_id)).state is GenerationState.AWAITING_RESULT
        assert len(provider_api.status_queries) == 1

    def test_lookup_rescues_request_past_timeout(
        self, orchestrator, payment_backend, provider_api: FakeProviderAPI, clock
    ):
        generation_id = self._dispatched(orchestrator, payment_backend)
        provider_api.report("task-1", self._JOB_DONE)
        clock.advance(7200)
        assert asyncio.run(orchestrator.check_status(generation_id)).state is GenerationState.COMPLETED

    def test_stored_callback_skips_lookup(
        self, orchestrator, payment_backend, provider_api: FakeProviderAPI, correlator, clock
    ):
        generation_id = self._dispatched(orchestrator, payment_backend)

        async def scenario():
            await correlator.ingest(_done("task-1"))
            clock.advance(60)
            return await orchestrator.check_status(generation_id)

        assert asyncio.run(scenario()).state is GenerationState.COMPLETED
        assert provider_api.status_queries == []

    def test_zero_interval_disables_lookups(
        self, catalog, gate, dispatcher, correlator, clock, payment_backend, provider_api: FakeProviderAPI
    ):
        orchestrator = GenerationOrchestrator(
            catalog, gate, dispatcher, correlator, status_poll_interval_seconds=0, clock=clock
        )
        generation_id = self._dispatched(orchestrator, payment_backend)
        provider_api.report("task-1", self._JOB_DONE)
        clock.advance(3601)
        request = asyncio.run(orchestrator.check_status(generation_id))
        assert request.error.kind is ErrorKind.RESULT_TIMEOUT
        assert provider_api.status_queries == []


# ---------------------------------------------------------------------------
# Monotonicity and end-to-end scenarios.
# ---------------------------------------------------------------------------


def _assert_monotonic(states: list[GenerationState]) -> None:
    positions = [STATE_ORDER[s] for s in states if s is not GenerationState.FAILED]
    assert positions == sorted(positions)
    if GenerationState.FAILED in states:
        first = states.index(GenerationState.FAILED)
        assert all(s is GenerationState.FAILED for s in states[first:])


class TestEndToEnd:
    def test_scenario_paid_generation_completes(
        self,
        orchestrator: GenerationOrchestrator,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
        correlator: CallbackCorrelator,
    ):
        provider_api.issue("abc123")

        async def scenario():
            outcome = await orchestrator.start("sora", "a cat on a skateboard")
            generation_id = outcome.request.generation_id
            states = [outcome.request.state]

            states.append((await orchestrator.check_status(generation_id)).state)
            payment_backend.settled = True
            await orchestrator.confirm_payment(outcome.request.payment_id)
            states.append((await orchestrator.check_status(generation_id)).state)
            states.append((await orchestrator.check_status(generation_id)).state)

            await correlator.ingest(
                {"correlationId": "abc123", "status": "done", "result": "https://cdn/x.mp4"}
            )
            final = await orchestrator.check_status(generation_id)
            states.append(final.state)
            return outcome, final, states

        outcome, final, states = asyncio.run(scenario())
        assert outcome.challenge.amount == Decimal("0.50")
        assert outcome.challenge.currency == "USDC"
        assert states == [
            GenerationState.AWAITING_PAYMENT,
            GenerationState.AWAITING_PAYMENT,
            GenerationState.AWAITING_RESULT,
            GenerationState.AWAITING_RESULT,
            GenerationState.COMPLETED,
        ]
        _assert_monotonic(states)
        assert final.result == "https://cdn/x.mp4"
        assert provider_api.payloads[0]["input"]["prompt"] == "a cat on a skateboard"
        assert provider_api.payloads[0]["model"] == "sora-2-text-to-video"

    def test_scenario_dispatch_exhausted_keeps_payment_settled(
        self,
        orchestrator: GenerationOrchestrator,
        gate: PaymentGate,
        payment_backend: FakePaymentBackend,
        provider_api: FakeProviderAPI,
    ):
        provider_api.reject_next(3)

        async def scenario():
            outcome = await orchestrator.start("sora", "a cat on a skateboard")
            payment_backend.settled = True
            final = await orchestrator.check_status(outcome.request.generation_id)
            intent = await gate.get(outcome.request.payment_id)
            return final, intent

        final, intent = asyncio.run(scenario())
        assert final.state is GenerationState.FAILED
        assert final.error.kind is ErrorKind.DISPATCH_EXHAUSTED
        assert intent.status is PaymentStatus.SETTLED

    def test_scenario_payment_expires(
        self, orchestrator: GenerationOrchestrator, clock: FakeClock
    ):
        async def scenario():
            first = await orchestrator.start("sora", "a cat on a skateboard")
            clock.advance(901)
            expired = await orchestrator.check_status(first.request.generation_id)
            second = await orchestrator.start("sora", "a cat on a skateboard")
            return first, expired, second

        first, expired, second = asyncio.run(scenario())
        assert expired.state is GenerationState.FAILED
        assert expired.error.kind is ErrorKind.PAYMENT_EXPIRED
        assert second.request.generation_id != first.request.generation_id
        assert second.challenge.payment_id != first.challenge.payment_id
        assert second.request.state is GenerationState.AWAITING_PAYMENT

    def test_payment_required_never_skips_awaiting_payment(
        self, orchestrator: GenerationOrchestrator, payment_backend: FakePaymentBackend
    ):
        payment_backend.settled = True
        outcome = asyncio.run(orchestrator.start("img-model", "a cat"))
        assert outcome.request.state is GenerationState.AWAITING_PAYMENT


# ---------------------------------------------------------------------------
# Manual retry.
# ---------------------------------------------------------------------------


class TestRetry:
    def _exhausted(self, orchestrator, provider_api, payment_backend, wallet=None):
        payment_backend.settled = True
        provider_api.reject_next(3)

        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat", wallet=wallet)
            return await orchestrator.check_status(outcome.request.generation_id)

        failed = asyncio.run(scenario())
        assert failed.error.kind is ErrorKind.DISPATCH_EXHAUSTED
        return failed

    def test_retry_reuses_settled_payment(
        self, orchestrator, provider_api, payment_backend: FakePaymentBackend, gate: PaymentGate
    ):
        failed = self._exhausted(orchestrator, provider_api, payment_backend)
        verifications = len(payment_backend.calls)

        async def scenario():
            retried = await orchestrator.retry(failed.generation_id)
            intent = await gate.get(failed.payment_id)
            return retried, intent

        retried, intent = asyncio.run(scenario())
        assert retried.generation_id != failed.generation_id
        assert retried.retry_of == failed.generation_id
        assert retried.payment_id == failed.payment_id
        assert retried.state is GenerationState.AWAITING_RESULT
        assert retried.dispatch_attempts == 1
        assert intent.redeemed_by == retried.generation_id
        # Settled intents are not re-verified, let alone re-charged.
        assert len(payment_backend.calls) == verifications

    def test_original_request_is_unchanged(self, orchestrator, provider_api, payment_backend):
        failed = self._exhausted(orchestrator, provider_api, payment_backend)

        async def scenario():
            await orchestrator.retry(failed.generation_id)
            return await orchestrator.check_status(failed.generation_id)

        assert asyncio.run(scenario()).state is GenerationState.FAILED

    def test_retry_only_once(self, orchestrator, provider_api, payment_backend):
        failed = self._exhausted(orchestrator, provider_api, payment_backend)

        async def scenario():
            await orchestrator.retry(failed.generation_id)
            await orchestrator.retry(failed.generation_id)

        with pytest.raises(RetryNotAllowedError, match="already"):
            asyncio.run(scenario())

    def test_exempt_request_can_be_retried_once(self, orchestrator, provider_api, payment_backend):
        failed = self._exhausted(orchestrator, provider_api, payment_backend, wallet=EXEMPT_WALLET)
        assert failed.payment_id is None

        async def scenario():
            retried = await orchestrator.retry(failed.generation_id)
            with pytest.raises(RetryNotAllowedError):
                await orchestrator.retry(failed.generation_id)
            return retried

        assert asyncio.run(scenario()).state is GenerationState.AWAITING_RESULT

    def test_retry_of_retry_after_second_exhaustion(self, orchestrator, provider_api, payment_backend):
        failed = self._exhausted(orchestrator, provider_api, payment_backend)
        provider_api.reject_next(3)

        async def scenario():
            second = await orchestrator.retry(failed.generation_id)
            third = await orchestrator.retry(second.generation_id)
            return second, third

        second, third = asyncio.run(scenario())
        assert second.error.kind is ErrorKind.DISPATCH_EXHAUSTED
        assert third.retry_of == second.generation_id
        assert third.state is GenerationState.AWAITING_RESULT

    def test_non_dispatch_failure_cannot_be_retried(self, orchestrator, clock: FakeClock):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            clock.advance(901)
            await orchestrator.check_status(outcome.request.generation_id)
            await orchestrator.retry(outcome.request.generation_id)

        with pytest.raises(RetryNotAllowedError):
            asyncio.run(scenario())

    def test_in_progress_request_cannot_be_retried(self, orchestrator):
        async def scenario():
            outcome = await orchestrator.start("img-model", "a cat")
            await orchestrator.retry(outcome.request.generation_id)

        with pytest.raises(RetryNotAllowedError):
            asyncio.run(scenario())

    def test_unknown_generation(self, orchestrator):
        with pytest.raises(GenerationNotFoundError):
            asyncio.run(orchestrator.retry("gen_missing"))


class TestListModels:
    def test_passthrough(self, orchestrator: GenerationOrchestrator):
        assert [m.id for m in orchestrator.list_models("image")] == ["img-model"]
