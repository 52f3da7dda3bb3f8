"""GENR8 - pay-per-generation gateway for image and video models."""

__version__ = "0.1.0"

from genr8.core.catalog import ModelDescriptor, PricingCatalog
from genr8.core.config import Genr8Config, config
from genr8.core.orchestrator import GenerationOrchestrator

__all__ = [
    "GenerationOrchestrator",
    "Genr8Config",
    "ModelDescriptor",
    "PricingCatalog",
    "config",
]
