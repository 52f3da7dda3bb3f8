"""Shared pytest fixtures for GENR8 tests.

Nothing here touches the network: provider calls go through an
``httpx.MockTransport`` and settlement through an in-memory fake backend.
Time is a :class:`FakeClock` that only moves when a test advances it.
"""

from __future__ import annotations

import json
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from genr8.api.main import create_app
from genr8.core.catalog import PricingCatalog
from genr8.core.config import Genr8Config
from genr8.core.correlator import CallbackCorrelator
from genr8.core.dispatcher import GenerationDispatcher
from genr8.core.orchestrator import GenerationOrchestrator
from genr8.core.payment import ExemptionPolicy, PaymentGate

from tests.helpers import EXEMPT_WALLET, TEST_MODELS, FakeClock, FakePaymentBackend, FakeProviderAPI

# ---------------------------------------------------------------------------
# Fixtures.
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def catalog_file(temp_dir: Path) -> Path:
    path = temp_dir / "models.json"
    path.write_text(json.dumps({"models": TEST_MODELS}))
    return path


@pytest.fixture
def test_config(catalog_file: Path) -> Genr8Config:
    """Configuration pointing at the test catalog, isolated from any .env file."""
    return Genr8Config(
        _env_file=None,
        provider_base_url="https://provider.test/api/v1",
        provider_api_key="test-provider-key",
        public_base_url="http://testserver",
        payment_backend="mock",
        catalog_path=catalog_file,
        exempt_wallets=[EXEMPT_WALLET],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the orchestrator, in order."""
    return []


@pytest.fixture
def catalog() -> PricingCatalog:
    return PricingCatalog.from_entries(TEST_MODELS)


@pytest.fixture
def payment_backend() -> FakePaymentBackend:
    return FakePaymentBackend()


@pytest.fixture
def provider_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def provider_client(provider_api: FakeProviderAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(provider_api.handler))


@pytest.fixture
def gate(catalog: PricingCatalog, payment_backend: FakePaymentBackend, clock: FakeClock) -> PaymentGate:
    return PaymentGate(
        catalog,
        payment_backend,
        currency="USDC",
        intent_ttl_seconds=900,
        exemption=ExemptionPolicy([EXEMPT_WALLET]),
        clock=clock,
    )


@pytest.fixture
def dispatcher(
    test_config: Genr8Config, catalog: PricingCatalog, provider_client: httpx.AsyncClient
) -> GenerationDispatcher:
    return GenerationDispatcher.from_config(test_config, catalog, client=provider_client)


@pytest.fixture
def correlator(clock: FakeClock) -> CallbackCorrelator:
    return CallbackCorrelator(ttl_seconds=24 * 60 * 60, clock=clock)


@pytest.fixture
def orchestrator(
    catalog: PricingCatalog,
    gate: PaymentGate,
    dispatcher: GenerationDispatcher,
    correlator: CallbackCorrelator,
    clock: FakeClock,
    sleeps: list[float],
) -> GenerationOrchestrator:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return GenerationOrchestrator(
        catalog,
        gate,
        dispatcher,
        correlator,
        max_dispatch_attempts=3,
        dispatch_backoff_seconds=0.5,
        result_timeout_seconds=3600,
        clock=clock,
        sleep=record_sleep,
    )


@pytest.fixture
def test_client(
    test_config: Genr8Config, orchestrator: GenerationOrchestrator
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the fake-backed orchestrator."""
    app = create_app(test_config, orchestrator=orchestrator)
    with TestClient(app) as client:
        yield client
