"""Provider adapters and registry for external generation services.

Each generation provider exposes its own job-submission endpoint and payload
shape.  A provider adapter encapsulates:

- the submission endpoint path
- translation of prompt + model + modality + options into the provider's
  job payload
- interpretation of the provider's submission response

and presents one coroutine, :meth:`GenerationProvider.submit`, that returns
the provider's task id verbatim.  That id is the join key for the
asynchronous completion callback, so it is never invented locally.
:meth:`GenerationProvider.query_status` reads the task back when its
callback is late.

Registered Providers
--------------------
- **kie-jobs**: Kie.ai market jobs API (``POST /jobs/createTask``, status via
  ``GET /jobs/recordInfo``).  Used by Sora 2, Qwen, Ideogram, Grok Imagine,
  Nano Banana Pro and 4o Image.
- **kie-veo**: Kie.ai Veo API (``POST /veo/generate``, status via
  ``GET /veo/record-info``).

Both answer ``{"code": 200, "data": {"taskId": "..."}}`` on success and a
non-200 ``code`` with a ``msg`` on rejection.

Usage Example
-------------
    >>> from genr8.core.providers import provider_registry
    >>> provider = provider_registry.instantiate(
    ...     "kie-jobs",
    ...     base_url="https://api.kie.ai/api/v1",
    ...     api_key="kie_xxx",
    ...     callback_url="https://genr8.example.com/provider-callback",
    ... )
    >>> payload = provider.build_payload(descriptor, "a cat on a skateboard", {})
    >>> task_id = await provider.submit(payload)

See Also
--------
- GenerationDispatcher: picks the adapter for a model and submits jobs
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from genr8.core.catalog import ModelDescriptor
from genr8.core.errors import DispatchError, Genr8Error, ProviderQueryError

logger = logging.getLogger(__name__)

# Longest slice of a provider response quoted in an error message.
_MAX_DETAIL = 200


def _summarise(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:_MAX_DETAIL]
    if isinstance(data, dict):
        message = data.get("msg") or data.get("message")
        if message:
            return str(message)[:_MAX_DETAIL]
    return str(data)[:_MAX_DETAIL]


class GenerationProvider(ABC):
    """Abstract base class for provider adapters.

    Attributes
    ----------
    name : str
        Registry key, referenced by the catalog's ``provider`` field
    description : str
        Brief description of the provider API
    endpoint : str
        Submission path, relative to the base URL
    status_endpoint : str
        Task status path, relative to the base URL

    Notes
    -----
    - Adapters share one ``httpx.AsyncClient`` when the dispatcher builds them
    - API keys are sent as bearer tokens and never logged
    """

    name: str = "base"
    description: str = "Base class for provider adapters"
    endpoint: str = "/"
    status_endpoint: str = "/"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        callback_url: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the provider adapter.

        Args:
            base_url: Provider API base URL.
            api_key: Bearer credential.
            callback_url: URL the provider calls when a job finishes.
            timeout: Per-request timeout in seconds.
            client: Shared HTTP client.  One is created if omitted.
        """
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @abstractmethod
    def build_payload(
        self, descriptor: ModelDescriptor, prompt: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        """Translate a generation job into the provider's request body."""

    def _unwrap(self, response: httpx.Response, error: type[Genr8Error], action: str) -> dict[str, Any]:
        """Return the ``{"code": 200, ...}`` envelope or raise *error*."""
        if response.status_code >= 400:
            raise error(f"{self.name}: HTTP {response.status_code} - {_summarise(response)}")

        try:
            data = response.json()
        except ValueError as exc:
            raise error(f"{self.name}: invalid JSON in {action} response") from exc

        code = data.get("code") if isinstance(data, dict) else None
        if code != 200:
            raise error(f"{self.name}: {action} failed, code {code} - {_summarise(response)}")
        return data

    async def submit(self, payload: dict[str, Any]) -> str:
        """Send a job to the provider and return its task id.

        Raises:
            DispatchError: On transport faults, HTTP error statuses, a
                non-200 provider ``code`` or a response without a task id.
        """
        url = f"{self.base_url}{self.endpoint}"
        try:
            response = await self._client.post(
                url, json=payload, headers=self._headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise DispatchError(f"{self.name}: provider unreachable ({type(exc).__name__})") from exc

        data = self._unwrap(response, DispatchError, "task creation")
        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise DispatchError(f"{self.name}: submission response carried no taskId")

        logger.info(f"{self.name}: task {task_id} created")
        return str(task_id)

    async def query_status(self, task_id: str) -> dict[str, Any]:
        """Fetch the provider's record of *task_id*.

        The envelope has the same shape as the completion callback, so it can
        be fed to :func:`~genr8.core.correlator.parse_callback` unchanged.

        Raises:
            ProviderQueryError: On transport faults, HTTP error statuses or a
                non-200 provider ``code``.
        """
        url = f"{self.base_url}{self.status_endpoint}"
        try:
            response = await self._client.get(
                url, params={"taskId": task_id}, headers=self._headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise ProviderQueryError(
                f"{self.name}: provider unreachable ({type(exc).__name__})"
            ) from exc

        data = self._unwrap(response, ProviderQueryError, "status lookup")
        logger.debug(f"{self.name}: status of task {task_id} fetched")
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class KieJobsProvider(GenerationProvider):
    """Kie.ai market jobs API.

    Options are passed through into ``input`` untouched, so model-specific
    knobs (``aspect_ratio``, ``n_frames``, ``image_size``, ...) reach the
    provider without this adapter knowing about them.
    """

    name = "kie-jobs"
    description = "Kie.ai jobs API (createTask)"
    endpoint = "/jobs/createTask"
    status_endpoint = "/jobs/recordInfo"

    def build_payload(
        self, descriptor: ModelDescriptor, prompt: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": descriptor.provider_model,
            "input": {**options, "prompt": prompt},
        }
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url
        return payload


class KieVeoProvider(GenerationProvider):
    """Kie.ai Veo video API.

    The generation type follows the number of reference images:
    none means text-to-video, one or two are first/last frames, three or more
    are references.
    """

    name = "kie-veo"
    description = "Kie.ai Veo API (veo/generate)"
    endpoint = "/veo/generate"
    status_endpoint = "/veo/record-info"

    def build_payload(
        self, descriptor: ModelDescriptor, prompt: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": prompt,
            "model": descriptor.provider_model,
            "aspectRatio": options.get("aspectRatio", "16:9"),
            "enableTranslation": True,
        }

        image_urls = options.get("imageUrls") or []
        if image_urls:
            payload["imageUrls"] = list(image_urls)
            if options.get("generationType"):
                payload["generationType"] = options["generationType"]
            elif len(image_urls) <= 2:
                payload["generationType"] = "FIRST_AND_LAST_FRAMES_2_VIDEO"
            else:
                payload["generationType"] = "REFERENCE_2_VIDEO"
        else:
            payload["generationType"] = "TEXT_2_VIDEO"

        if options.get("seeds") is not None:
            payload["seeds"] = options["seeds"]
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url
        return payload


class ProviderRegistry:
    """Registry for discovering and instantiating provider adapters.

    Notes
    -----
    - Adapters must be registered before they can be instantiated
    - Registry is global and shared across the application
    """

    def __init__(self) -> None:
        self._providers: dict[str, type[GenerationProvider]] = {}

    def register(self, provider_class: type[GenerationProvider]) -> type[GenerationProvider]:
        """Register a provider adapter class (usable as a decorator)."""
        name = provider_class.name
        if name in self._providers:
            logger.warning(f"Provider adapter '{name}' is already registered, overwriting")
        self._providers[name] = provider_class
        logger.debug(f"Registered provider adapter: {name}")
        return provider_class

    def instantiate(self, name: str, **kwargs: Any) -> GenerationProvider:
        """Create an instance of a registered provider adapter.

        Raises
        ------
        KeyError
            If *name* is not registered
        """
        if name not in self._providers:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider adapter '{name}' not found. Available adapters: {available}")
        return self._providers[name](**kwargs)

    def get_provider_class(self, name: str) -> type[GenerationProvider] | None:
        return self._providers.get(name)

    def list_available(self) -> list[str]:
        return list(self._providers.keys())


# Global provider registry instance
provider_registry = ProviderRegistry()
provider_registry.register(KieJobsProvider)
provider_registry.register(KieVeoProvider)
