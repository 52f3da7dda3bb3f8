"""Submission of paid generation jobs to external providers."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from genr8.core.catalog import PricingCatalog
from genr8.core.config import Genr8Config
from genr8.core.errors import DispatchError
from genr8.core.models import GenerationRequest
from genr8.core.providers import GenerationProvider, ProviderRegistry, provider_registry

logger = logging.getLogger(__name__)


class GenerationDispatcher:
    """Routes a generation request to the provider adapter for its model.

    The dispatcher makes exactly one submission attempt per call; retry and
    backoff belong to the orchestrator, which owns the request state.

    Args:
        catalog: Resolves the model's provider and provider model id.
        providers: Provider adapters keyed by adapter name.
    """

    def __init__(self, catalog: PricingCatalog, providers: Mapping[str, GenerationProvider]) -> None:
        self._catalog = catalog
        self._providers = dict(providers)

        missing = {m.provider for m in catalog.models()} - set(self._providers)
        if missing:
            raise ValueError(f"No provider adapter configured for: {', '.join(sorted(missing))}")

    @classmethod
    def from_config(
        cls,
        config: Genr8Config,
        catalog: PricingCatalog,
        client: httpx.AsyncClient | None = None,
        registry: ProviderRegistry = provider_registry,
    ) -> GenerationDispatcher:
        """Instantiate one adapter per provider named in the catalog."""
        api_key = config.provider_api_key
        providers = {
            name: registry.instantiate(
                name,
                base_url=config.provider_base_url,
                api_key=api_key.get_secret_value() if api_key else None,
                callback_url=config.callback_url,
                timeout=config.dispatch_timeout_seconds,
                client=client,
            )
            for name in sorted({m.provider for m in catalog.models()})
        }
        return cls(catalog, providers)

    async def submit(self, request: GenerationRequest) -> str:
        """Submit *request* and return the provider's correlation id.

        Raises:
            DispatchError: If the provider rejects the job or cannot be
                reached.
        """
        descriptor = self._catalog.price_of(request.model_id)
        provider = self._providers[descriptor.provider]
        payload = provider.build_payload(descriptor, request.prompt, request.options)

        logger.info(
            f"Dispatching {request.generation_id} to {provider.name} "
            f"(model={descriptor.provider_model}, modality={descriptor.modality})"
        )
        correlation_id = await provider.submit(payload)
        if not correlation_id:
            raise DispatchError(f"{provider.name}: empty correlation id")
        return correlation_id

    async def query_status(self, request: GenerationRequest) -> dict:
        """Ask the model's provider for the record of a dispatched job.

        Raises:
            ProviderQueryError: If the lookup fails.
        """
        provider = self._providers[self._catalog.price_of(request.model_id).provider]
        return await provider.query_status(request.correlation_id)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
