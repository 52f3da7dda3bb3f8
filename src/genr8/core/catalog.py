"""Model pricing catalog.

The catalog is the single source of truth for what a generation costs and
which provider adapter produces it.  The payment gate charges the price
returned here and the dispatcher sends the provider model named here, so the
two can never disagree.

The catalog is loaded once at process start from a JSON file shaped like::

    {
      "models": [
        {
          "id": "sora-2",
          "name": "Sora 2",
          "provider": "kie-jobs",
          "provider_model": "sora-2-text-to-video",
          "price": "0.21",
          "modality": "video"
        }
      ]
    }

Prices are kept as strings in the file and parsed into :class:`~decimal.Decimal`
so that ``0.1 + 0.2`` style float drift never reaches a payment amount.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Literal

from genr8.core.config import Genr8Config
from genr8.core.errors import ModelNotFoundError

logger = logging.getLogger(__name__)

Modality = Literal["image", "video"]
MODALITIES: tuple[str, ...] = ("image", "video")


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one purchasable model.

    Attributes:
        id: Catalog identifier chosen by the client (e.g. ``"sora-2"``).
        name: Display name.
        provider: Name of the provider adapter that runs this model.
        price: Price of one generation, in the configured currency.
        modality: ``"image"`` or ``"video"``.
        provider_model: Model identifier sent to the provider.  Defaults to
            :attr:`id`.
        description: Short marketing description.
        coming_soon: Listed but not yet purchasable.
    """

    id: str
    name: str
    provider: str
    price: Decimal
    modality: Modality
    provider_model: str = ""
    description: str = ""
    coming_soon: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("model id must not be empty")
        if self.price <= 0:
            raise ValueError(f"price for {self.id!r} must be > 0, got {self.price}")
        if self.modality not in MODALITIES:
            raise ValueError(f"modality for {self.id!r} must be image or video, got {self.modality!r}")
        if not self.provider_model:
            object.__setattr__(self, "provider_model", self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "price": str(self.price),
            "modality": self.modality,
            "description": self.description,
            "comingSoon": self.coming_soon,
        }


def _parse_price(raw, model_id: str) -> Decimal:
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"invalid price for {model_id!r}: {raw!r}") from exc


class PricingCatalog:
    """Read-only lookup table of :class:`ModelDescriptor` by id."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._models:
                raise ValueError(f"duplicate model id in catalog: {descriptor.id!r}")
            self._models[descriptor.id] = descriptor

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[Mapping],
        price_overrides: Mapping[str, Decimal] | None = None,
    ) -> PricingCatalog:
        """Build a catalog from raw dictionaries.

        Args:
            entries: Model dictionaries as found under ``"models"`` in the
                catalog file.
            price_overrides: Optional model id -> price replacements.  Ids that
                do not exist in *entries* are ignored with a warning.

        Returns:
            A new catalog.

        Raises:
            ValueError: On duplicate ids, non-positive prices or unknown
                modalities.
        """
        overrides = dict(price_overrides or {})
        descriptors = []
        for entry in entries:
            model_id = entry["id"]
            price = overrides.pop(model_id, None)
            if price is None:
                price = _parse_price(entry["price"], model_id)
            descriptors.append(
                ModelDescriptor(
                    id=model_id,
                    name=entry.get("name", model_id),
                    provider=entry["provider"],
                    price=Decimal(price),
                    modality=entry["modality"],
                    provider_model=entry.get("provider_model", ""),
                    description=entry.get("description", ""),
                    coming_soon=bool(entry.get("coming_soon", False)),
                )
            )
        for model_id in overrides:
            logger.warning(f"Price override for unknown model {model_id!r} ignored")
        return cls(descriptors)

    @classmethod
    def from_file(
        cls,
        path: Path,
        price_overrides: Mapping[str, Decimal] | None = None,
    ) -> PricingCatalog:
        """Load the catalog from a JSON file.

        Unlike the forgiving JSON helpers used elsewhere, a missing or broken
        catalog is a startup error: a gateway without prices cannot charge.
        """
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        catalog = cls.from_entries(data.get("models", []), price_overrides)
        logger.info(f"Loaded {len(catalog)} models from {path}")
        for descriptor in catalog.models():
            logger.debug(f"  - {descriptor.name}: {descriptor.price}")
        return catalog

    @classmethod
    def from_config(cls, config: Genr8Config) -> PricingCatalog:
        return cls.from_file(config.catalog_path, config.price_overrides)

    def price_of(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for *model_id*.

        Raises:
            ModelNotFoundError: If the id is not in the catalog.
        """
        try:
            return self._models[model_id]
        except KeyError:
            raise ModelNotFoundError(f"Unknown model: {model_id}") from None

    def models(self, modality: str | None = None) -> list[ModelDescriptor]:
        """List descriptors in catalog order, optionally filtered by modality."""
        return [m for m in self._models.values() if modality is None or m.modality == modality]

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)
