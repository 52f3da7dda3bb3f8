"""Pay-before-compute gate modelled on HTTP 402.

The gate decides whether a generation may proceed, issues payment intents,
and later confirms settlement against a payment backend.

Lifecycle of a :class:`~genr8.core.models.PaymentIntent`::

    pending ──confirm: backend says paid──▶ settled
       │
       └──confirm after expires_at, still unpaid──▶ expired

Settlement Backends
-------------------
:class:`HttpPaymentBackend`
    Real verification over HTTP.  ``POST {base}/verify`` with the intent's
    id, amount, currency and client-supplied proof; the backend answers
    ``{"settled": true|false}`` (``{"paid": ...}`` is accepted too, and a
    ``402`` status means "not paid").
:class:`MockPaymentBackend`
    Development stand-in that reports every intent as settled once a fixed
    delay has passed since it was created.

Failure Model
-------------
``confirm`` never raises for backend trouble.  Network faults, timeouts and
garbage responses are logged and reported as ``settled=False``; callers treat
that as "not yet".  Only an unknown payment id raises.

Exemptions
----------
Payment is required unless an :class:`ExemptionPolicy` grants an exemption.
The default policy exempts nobody; the configured wallet allowlist is the only
built-in rule, and every exemption is logged with the generation id.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import httpx

from genr8.core.catalog import PricingCatalog
from genr8.core.config import Genr8Config
from genr8.core.errors import PaymentBackendError, PaymentNotFoundError
from genr8.core.models import Clock, PaymentIntent, PaymentStatus, utc_now
from genr8.core.store import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger(__name__)


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class PaymentChallenge:
    """Machine-readable "payment required" descriptor.

    Transport-level contract: rendered as a 402 body and a
    ``WWW-Authenticate: x402 ...`` header.
    """

    payment_id: str
    amount: Decimal
    currency: str
    payment_url: str
    expires_at: datetime

    @property
    def www_authenticate(self) -> str:
        return (
            f'x402 amount="{self.amount}" currency="{self.currency}" '
            f'payment-url="{self.payment_url}"'
        )

    def to_dict(self) -> dict:
        # JSON number on the wire; the header keeps the exact decimal text.
        return {
            "paymentId": self.payment_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "paymentUrl": self.payment_url,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class PaymentEvaluation:
    """Outcome of :meth:`PaymentGate.evaluate`."""

    required: bool
    intent: PaymentIntent | None = None
    exemption: str | None = None


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of :meth:`PaymentGate.confirm`."""

    payment_id: str
    settled: bool
    status: PaymentStatus

    def to_dict(self) -> dict:
        return {"paymentId": self.payment_id, "settled": self.settled, "status": self.status.value}


class ExemptionPolicy:
    """Explicit, auditable rule for skipping payment.

    Args:
        wallets: Wallet addresses granted free access.

    Subclass and override :meth:`exempt` for other policies (e.g. a
    pre-funded credit balance).
    """

    def __init__(self, wallets: Iterable[str] = ()) -> None:
        self.wallets = frozenset(w for w in wallets if w)

    def exempt(self, wallet: str | None) -> str | None:
        """Return the reason *wallet* is exempt, or ``None`` if payment is due."""
        if wallet and wallet in self.wallets:
            return "wallet allowlist"
        return None


class PaymentBackend(ABC):
    """Settlement verification service."""

    @abstractmethod
    async def verify(self, intent: PaymentIntent) -> bool:
        """Return whether *intent* has been paid.

        Raises:
            PaymentBackendError: If the backend could not be asked.
        """

    async def aclose(self) -> None:
        """Release network resources, if any."""


class HttpPaymentBackend(PaymentBackend):
    """Settlement verification over HTTP.

    Args:
        base_url: Backend base URL.
        api_key: Optional bearer credential.
        timeout: Per-call timeout in seconds.
        client: Pre-built client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def verify(self, intent: PaymentIntent) -> bool:
        body = {
            "paymentId": intent.payment_id,
            "generationId": intent.generation_id,
            "amount": str(intent.amount),
            "currency": intent.currency,
            "proof": intent.proof,
        }
        try:
            response = await self._client.post("/verify", json=body, headers=self._headers)
        except httpx.HTTPError as exc:
            raise PaymentBackendError(f"payment backend unreachable: {type(exc).__name__}") from exc

        # 402 is the backend's way of saying "not paid (yet)".
        if response.status_code == 402:
            return False
        if response.status_code >= 400:
            raise PaymentBackendError(f"payment backend returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentBackendError("payment backend returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise PaymentBackendError("payment backend returned an unexpected body")
        return bool(data.get("settled", data.get("paid", False)))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class MockPaymentBackend(PaymentBackend):
    """Development backend: settles every intent after a fixed delay."""

    def __init__(self, delay_seconds: float = 2.0, clock: Clock = utc_now) -> None:
        self._delay = timedelta(seconds=delay_seconds)
        self._clock = clock

    async def verify(self, intent: PaymentIntent) -> bool:
        return self._clock() - intent.created_at >= self._delay


def build_payment_backend(config: Genr8Config, clock: Clock = utc_now) -> PaymentBackend:
    """Create the backend selected by ``config.payment_backend``."""
    if config.payment_backend == "mock":
        logger.warning("Using mock payment backend: every intent settles after a fixed delay")
        return MockPaymentBackend(config.mock_settlement_delay_seconds, clock=clock)
    api_key = config.payment_backend_api_key
    return HttpPaymentBackend(
        base_url=config.payment_backend_url,
        api_key=api_key.get_secret_value() if api_key else None,
        timeout=config.payment_backend_timeout_seconds,
    )


class PaymentGate:
    """Issues payment intents and confirms their settlement.

    Args:
        catalog: Source of every amount charged.
        backend: Settlement verification backend.
        currency: Currency code for new intents.
        intent_ttl_seconds: Lifetime of a pending intent.
        payment_url_template: Format string with a ``{payment_id}`` field.
        exemption: Exemption policy; defaults to exempting nobody.
        store: Intent store, keyed by payment id.
        clock: Time source.
    """

    def __init__(
        self,
        catalog: PricingCatalog,
        backend: PaymentBackend,
        *,
        currency: str = "USDC",
        intent_ttl_seconds: int = 900,
        payment_url_template: str = "/payment/{payment_id}",
        exemption: ExemptionPolicy | None = None,
        store: KeyedStore[PaymentIntent] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._catalog = catalog
        self._backend = backend
        self._currency = currency
        self._ttl = timedelta(seconds=intent_ttl_seconds)
        self._url_template = payment_url_template
        self._exemption = exemption or ExemptionPolicy()
        self._intents: KeyedStore[PaymentIntent] = store or InMemoryKeyedStore()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Genr8Config,
        catalog: PricingCatalog,
        backend: PaymentBackend,
        clock: Clock = utc_now,
    ) -> PaymentGate:
        return cls(
            catalog,
            backend,
            currency=config.currency,
            intent_ttl_seconds=config.payment_intent_ttl_seconds,
            payment_url_template=config.payment_url_template,
            exemption=ExemptionPolicy(config.exempt_wallets),
            clock=clock,
        )

    async def evaluate(
        self, generation_id: str, model_id: str, wallet: str | None = None
    ) -> PaymentEvaluation:
        """Decide whether *generation_id* must pay, creating an intent if so.

        Raises:
            ModelNotFoundError: If *model_id* is not in the catalog.
        """
        descriptor = self._catalog.price_of(model_id)

        reason = self._exemption.exempt(wallet)
        if reason:
            logger.info(
                f"Payment exemption for {generation_id} ({model_id}): {reason}, wallet={wallet}"
            )
            return PaymentEvaluation(required=False, exemption=reason)

        now = self._clock()
        payment_id = new_payment_id()
        intent = PaymentIntent(
            payment_id=payment_id,
            amount=descriptor.price,
            currency=self._currency,
            generation_id=generation_id,
            payment_url=self._url_template.format(payment_id=payment_id),
            expires_at=now + self._ttl,
            created_at=now,
        )
        await self._intents.put(payment_id, intent)
        logger.info(
            f"Payment required for {generation_id}: {intent.amount} {intent.currency} "
            f"(intent {payment_id})"
        )
        return PaymentEvaluation(required=True, intent=intent.snapshot())

    def challenge(self, intent: PaymentIntent) -> PaymentChallenge:
        return PaymentChallenge(
            payment_id=intent.payment_id,
            amount=intent.amount,
            currency=intent.currency,
            payment_url=intent.payment_url,
            expires_at=intent.expires_at,
        )

    async def get(self, payment_id: str) -> PaymentIntent:
        """Return a snapshot of the intent.

        Raises:
            PaymentNotFoundError: If the id is unknown.
        """
        intent = await self._intents.get(payment_id)
        if intent is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        return intent.snapshot()

    def is_expired(self, intent: PaymentIntent) -> bool:
        """True once *intent* is past its expiry without having settled."""
        if intent.status is PaymentStatus.EXPIRED:
            return True
        return intent.status is PaymentStatus.PENDING and self._clock() >= intent.expires_at

    async def confirm(self, payment_id: str, proof: str | None = None) -> SettlementResult:
        """Verify settlement of *payment_id*.

        Idempotent: once settled, the backend is not consulted again.  Calls
        for the same payment id are serialized so a settlement is verified at
        most once.

        Args:
            payment_id: Intent to confirm.
            proof: Optional settlement reference from the client.  The first
                proof supplied is kept; later ones are ignored.

        Returns:
            The settlement outcome.  Backend failures yield ``settled=False``.

        Raises:
            PaymentNotFoundError: If the id is unknown.
        """
        async with self._intents.locked(payment_id):
            intent = await self._intents.get(payment_id)
            if intent is None:
                raise PaymentNotFoundError(f"Payment not found: {payment_id}")

            if intent.status is not PaymentStatus.PENDING:
                return SettlementResult(payment_id, intent.is_settled, intent.status)

            if proof and not intent.proof:
                intent.proof = proof

            try:
                paid = await self._backend.verify(intent.snapshot())
            except PaymentBackendError as exc:
                logger.warning(f"Settlement check for {payment_id} failed: {exc}")
                paid = False

            now = self._clock()
            if paid:
                intent.status = PaymentStatus.SETTLED
                intent.settled_at = now
                logger.info(f"Payment {payment_id} settled ({intent.amount} {intent.currency})")
            elif self.is_expired(intent):
                intent.status = PaymentStatus.EXPIRED
                logger.info(f"Payment {payment_id} expired without settlement")

            await self._intents.put(payment_id, intent)
            return SettlementResult(payment_id, intent.is_settled, intent.status)

    async def reassign(self, payment_id: str, from_generation_id: str, to_generation_id: str) -> bool:
        """Move a settled intent's redemption to a retry request.

        Succeeds only if the intent is settled and currently redeemed by
        *from_generation_id*, so each settlement backs at most one retry chain.
        """
        async with self._intents.locked(payment_id):
            intent = await self._intents.get(payment_id)
            if intent is None or not intent.is_settled or intent.redeemed_by != from_generation_id:
                return False
            intent.redeemed_by = to_generation_id
            await self._intents.put(payment_id, intent)
            logger.info(f"Payment {payment_id} reassigned {from_generation_id} -> {to_generation_id}")
            return True

    async def aclose(self) -> None:
        await self._backend.aclose()
