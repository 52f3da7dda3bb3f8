"""GENR8 Gateway - FastAPI Application.

This module is the entry point for the web service.  It defines the
application factory, all REST routes, and the ``main()`` CLI function that
launches the uvicorn server.

Architecture
------------
- **Configuration** comes from :data:`~genr8.core.config.config`
  (``GENR8_*`` environment variables and ``.env``).
- **The pipeline** is a :class:`~genr8.core.orchestrator.GenerationOrchestrator`
  built in the lifespan handler and stored on ``app.state``.  Tests inject
  their own through :func:`create_app`.
- **Payment** follows HTTP 402: an unpaid request gets a ``402`` with a
  challenge body and a ``WWW-Authenticate: x402 ...`` header.  The client
  pays, optionally confirms with proof, and polls.
- **Progress** is driven by polling ``GET /generations/{id}``; there is no
  background worker.

Endpoints
---------
========  =================================  ====================================
Method    Path                               Purpose
========  =================================  ====================================
GET       ``/health``                        Liveness and version
GET       ``/models``                        Model catalog (``?modality=``)
POST      ``/generations``                   Start a generation (402 / 201)
GET       ``/generations/{id}``              Poll a generation
POST      ``/generations/{id}/retry``        Retry a DispatchExhausted failure
POST      ``/payments/{id}/confirm``         Confirm settlement of an intent
POST      ``/provider-callback``             Provider completion webhook
GET       ``/provider-callback``             Read back a stored callback
========  =================================  ====================================

Usage
-----
CLI (installed entry point)::

    genr8

Direct invocation::

    python -m genr8.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genr8 import __version__
from genr8.api.models import ConfirmPaymentRequest, StartGenerationRequest
from genr8.core.catalog import PricingCatalog
from genr8.core.config import Genr8Config, config
from genr8.core.correlator import CallbackCorrelator
from genr8.core.dispatcher import GenerationDispatcher
from genr8.core.errors import HTTP_STATUS, ErrorKind, Genr8Error, MalformedCallbackError
from genr8.core.models import GenerationRequest, GenerationState
from genr8.core.orchestrator import GenerationOrchestrator
from genr8.core.payment import PaymentChallenge, PaymentGate, build_payment_backend

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Genr8Config) -> GenerationOrchestrator:
    """Wire the pipeline components from configuration."""
    catalog = PricingCatalog.from_config(settings)
    gate = PaymentGate.from_config(settings, catalog, build_payment_backend(settings))
    dispatcher = GenerationDispatcher.from_config(settings, catalog)
    correlator = CallbackCorrelator(ttl_seconds=settings.callback_ttl_seconds)
    return GenerationOrchestrator.from_config(settings, catalog, gate, dispatcher, correlator)


# ---------------------------------------------------------------------------
# Response helpers.
# ---------------------------------------------------------------------------


def _http_error(exc: Genr8Error) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def _generation_body(
    request: GenerationRequest, challenge: PaymentChallenge | None = None
) -> dict:
    """Serialise a generation snapshot for the wire."""
    body: dict = {
        "generationId": request.generation_id,
        "state": request.state.value,
        "modelId": request.model_id,
        "modality": request.modality,
        "dispatchAttempts": request.dispatch_attempts,
        "createdAt": request.created_at.isoformat(),
        "updatedAt": request.updated_at.isoformat(),
    }
    if request.payment_id:
        body["paymentId"] = request.payment_id
    if challenge is not None:
        payment = challenge.to_dict()
        body.update(
            amount=payment["amount"],
            currency=payment["currency"],
            paymentUrl=payment["paymentUrl"],
            expiresAt=payment["expiresAt"],
        )
        body["payment"] = payment
    if request.correlation_id:
        body["correlationId"] = request.correlation_id
    if request.result:
        body["result"] = request.result
        body["resultUrls"] = list(request.result_urls)
    if request.error is not None:
        body["error"] = request.error.to_dict()
    if request.retry_of:
        body["retryOf"] = request.retry_of
    return body


def _status_for(request: GenerationRequest, success: int = 200) -> int:
    if request.state is GenerationState.FAILED:
        return HTTP_STATUS[request.error.kind]
    return success


def _orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def _settings(request: Request) -> Genr8Config:
    return request.app.state.config


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": __version__}


@router.get("/models")
async def list_models(
    modality: Literal["image", "video"] | None = Query(default=None),
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
    settings: Genr8Config = Depends(_settings),
) -> dict:
    """List purchasable models with their prices."""
    return {
        "currency": settings.currency,
        "models": [m.to_dict() for m in orchestrator.list_models(modality)],
    }


@router.post("/generations")
async def start_generation(
    body: StartGenerationRequest,
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> JSONResponse:
    """Start a generation.

    Returns ``402`` with a payment challenge when payment is due, ``201``
    when the request was exempt and has been dispatched, or the error status
    of its failure kind (``400`` unknown model, ``503`` coming soon,
    ``502`` dispatch exhausted).
    """
    outcome = await orchestrator.start(body.model_id, body.prompt, body.options, body.wallet)
    request = outcome.request

    if request.state is GenerationState.FAILED:
        detail = {**request.error.to_dict(), "generationId": request.generation_id}
        raise HTTPException(status_code=HTTP_STATUS[request.error.kind], detail=detail)

    if outcome.challenge is not None:
        return JSONResponse(
            status_code=402,
            content=_generation_body(request, outcome.challenge),
            headers={"WWW-Authenticate": outcome.challenge.www_authenticate},
        )

    return JSONResponse(status_code=201, content=_generation_body(request))


@router.get("/generations/{generation_id}")
async def get_generation(
    generation_id: str,
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> JSONResponse:
    """Poll a generation, advancing it as far as current facts allow.

    Failed generations are returned with the status code of their error kind
    so clients can branch on the status alone.
    """
    try:
        request = await orchestrator.check_status(generation_id)
        challenge = await orchestrator.payment_challenge(request)
    except Genr8Error as exc:
        raise _http_error(exc) from exc
    return JSONResponse(status_code=_status_for(request), content=_generation_body(request, challenge))


@router.post("/generations/{generation_id}/retry")
async def retry_generation(
    generation_id: str,
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> JSONResponse:
    """Retry a DispatchExhausted failure under a new generation id."""
    try:
        request = await orchestrator.retry(generation_id)
    except Genr8Error as exc:
        raise _http_error(exc) from exc
    return JSONResponse(status_code=201, content=_generation_body(request))


@router.post("/payments/{payment_id}/confirm")
async def confirm_payment(
    payment_id: str,
    body: ConfirmPaymentRequest | None = None,
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> dict:
    """Verify settlement of a payment intent."""
    proof = body.proof if body else None
    try:
        result = await orchestrator.confirm_payment(payment_id, proof)
    except Genr8Error as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@router.post("/provider-callback")
async def provider_callback(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> JSONResponse:
    """Receive a provider completion callback.

    Recognised and orphan correlation ids are both acknowledged with
    ``accepted: true``.  A payload without any id is acknowledged with
    ``accepted: false`` so the provider does not keep redelivering it; only a
    body that is not JSON at all gets a ``500``.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.error("Provider callback body is not valid JSON")
        return JSONResponse(
            status_code=500,
            content={"detail": {"kind": ErrorKind.MALFORMED_CALLBACK.value, "message": "Invalid JSON body"}},
        )

    try:
        record = await orchestrator.correlator.ingest(payload)
    except MalformedCallbackError as exc:
        logger.warning(f"Provider callback rejected: {exc.message}")
        return JSONResponse(
            status_code=200,
            content={"accepted": False, "kind": exc.kind.value, "message": exc.message},
        )

    return JSONResponse(
        status_code=200,
        content={"accepted": True, "correlationId": record.correlation_id},
    )


@router.get("/provider-callback")
async def get_provider_callback(
    correlation_id: str | None = Query(default=None, alias="correlationId"),
    task_id: str | None = Query(default=None, alias="taskId"),
    orchestrator: GenerationOrchestrator = Depends(_orchestrator),
) -> dict:
    """Read back the stored callback for a correlation (task) id."""
    key = correlation_id or task_id
    if not key:
        raise HTTPException(status_code=400, detail="correlationId (or taskId) is required")
    try:
        record = await orchestrator.correlator.lookup(key)
    except Genr8Error as exc:
        raise _http_error(exc) from exc
    return record.to_dict()


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: Genr8Config = config,
    orchestrator: GenerationOrchestrator | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Configuration to build the pipeline from.
        orchestrator: Pre-built orchestrator.  When given, the lifespan
            handler uses it as-is and leaves closing it to the caller.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        owned = orchestrator is None
        app.state.config = settings
        app.state.orchestrator = build_orchestrator(settings) if owned else orchestrator
        logger.info(f"GENR8 gateway {__version__} started (payment backend: {settings.payment_backend})")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        if owned:
            await app.state.orchestrator.aclose()
        logger.info("GENR8 gateway stopped.")

    app = FastAPI(
        title="GENR8 Gateway",
        description="Pay-per-generation gateway for image and video models (HTTP 402).",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so browser wallets on another origin can
    # call the API.  Restrict ``allow_origins`` in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~genr8.core.config.config`
    (``GENR8_SERVER_HOST``, ``GENR8_SERVER_PORT``, ``GENR8_LOG_LEVEL``).

    This function is registered as the ``genr8`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "genr8.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
