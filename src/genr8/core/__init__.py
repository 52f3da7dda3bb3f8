"""Core of the GENR8 generation gateway.

The gateway sells single image/video generations.  A request is priced by the
catalog, held behind an HTTP 402 payment gate, dispatched to an external
provider once paid, and completed when the provider's asynchronous callback
arrives.

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with GENR8_ in .env files

2. **Catalog** (catalog.py):
   - Model id -> price, modality and provider adapter, loaded from JSON

3. **Payment Gate** (payment.py):
   - Payment intents, 402 challenges, settlement through a pluggable backend
   - Explicit exemption policy

4. **Provider Layer** (providers.py, dispatcher.py):
   - Adapter per provider API, registry pattern for discovery
   - Single-attempt submission returning the provider's task id

5. **Callback Correlation** (correlator.py):
   - Keyed, TTL-bounded store of the latest callback per task id

6. **Orchestration** (orchestrator.py):
   - Request state machine, advanced lazily on every status read

Storage for all of the above goes through the ``KeyedStore`` contract
(store.py).

Usage Example
-------------
    from genr8.core import GenerationOrchestrator

    outcome = await orchestrator.start("sora-2", "a fox running through snow")
    if outcome.payment_required:
        print(outcome.challenge.www_authenticate)

See Also
--------
- genr8.api.main: HTTP surface
- Genr8Config: Configuration options and environment variables
"""

from genr8.core.catalog import ModelDescriptor, PricingCatalog
from genr8.core.config import Genr8Config, config
from genr8.core.correlator import CallbackCorrelator
from genr8.core.dispatcher import GenerationDispatcher
from genr8.core.orchestrator import GenerationOrchestrator, StartOutcome
from genr8.core.payment import PaymentGate
from genr8.core.providers import GenerationProvider, provider_registry

__all__ = [
    "CallbackCorrelator",
    "GenerationDispatcher",
    "GenerationOrchestrator",
    "GenerationProvider",
    "Genr8Config",
    "ModelDescriptor",
    "PaymentGate",
    "PricingCatalog",
    "StartOutcome",
    "config",
    "provider_registry",
]
