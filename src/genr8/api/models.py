"""Pydantic request models for the GENR8 API.

FastAPI uses these for request validation and OpenAPI documentation.  Field
names are snake_case in Python and camelCase on the wire, matching the JSON
the gateway returns.

Models
------
StartGenerationRequest
    Payload for ``POST /generations``: the model, the prompt and optional
    provider options.
ConfirmPaymentRequest
    Payload for ``POST /payments/{paymentId}/confirm``: optional settlement
    proof.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound on prompt length accepted by the providers we dispatch to.
MAX_PROMPT_LENGTH = 5000


class StartGenerationRequest(BaseModel):
    """Request body for ``POST /generations``.

    Attributes:
        model_id: Catalog model identifier (e.g. ``"sora-2"``).
        prompt: Text prompt.  Surrounding whitespace is stripped.
        options: Provider options passed through to the job payload
            (``aspect_ratio``, ``n_frames``, ``imageUrls``, ...).
        wallet: Payer wallet address.  Only consulted by the exemption
            policy.
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(
        ...,
        alias="modelId",
        min_length=1,
        description="Catalog model identifier (e.g. 'sora-2').",
    )
    prompt: str = Field(
        ...,
        min_length=1,
        max_length=MAX_PROMPT_LENGTH,
        description="Text prompt for the generation.",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific options, passed through untouched.",
    )
    wallet: str | None = Field(
        default=None,
        description="Payer wallet address.",
    )

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("prompt must not be blank")
        return value


class ConfirmPaymentRequest(BaseModel):
    """Request body for ``POST /payments/{paymentId}/confirm``."""

    proof: str | None = Field(
        default=None,
        description="Settlement reference, e.g. a transaction signature.",
    )
