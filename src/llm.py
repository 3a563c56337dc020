"""LLM client using LiteLLM for schema-constrained generation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from litellm import acompletion

from config import settings

logger = logging.getLogger(__name__)


class StageCallError(RuntimeError):
    """Raised when the generative service returns nothing usable."""


class GenerativeTextService(Protocol):
    """Produces JSON text that conforms to a supplied schema."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Dict[str, Any],
        max_tokens: int,
        timeout: float,
    ) -> str:
        ...


class LLMClient:
    """Wrapper around LiteLLM for consistent LLM access."""

    def __init__(self, model: Optional[str] = None, temperature: Optional[float] = None):
        """Initialize the client with a default model if omitted."""
        self.model = self._normalize_model_name(model or settings.llm.model)
        self.temperature = (
            temperature if temperature is not None else settings.orchestrator.temperature
        )

    def _normalize_model_name(self, model: str) -> str:
        """Normalize model name for LiteLLM compatibility.

        LiteLLM expects Anthropic models without the 'anthropic:' prefix.
        For example: 'claude-sonnet-4-20250514', not 'anthropic:claude-sonnet-4-20250514'.
        """
        if model.startswith("anthropic:"):
            return model[len("anthropic:") :]
        return model

    def _litellm_kwargs(self) -> Dict[str, Any]:
        """Build LiteLLM keyword arguments from settings."""
        extra: Dict[str, Any] = {}
        if settings.llm.base_url:
            extra["api_base"] = settings.llm.base_url
        if settings.llm.api_key:
            extra["api_key"] = settings.llm.api_key
        return extra

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Dict[str, Any],
        max_tokens: int,
        timeout: float,
    ) -> str:
        """Request a JSON completion constrained to ``schema``.

        Args:
            system_prompt: Stage instructions
            user_prompt: Stage input
            schema: JSON schema with ``name`` and ``schema`` keys
            max_tokens: Maximum response tokens
            timeout: Request timeout in seconds

        Returns:
            Raw response text
        """
        response = await acompletion(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": schema.get("name", "response"),
                    "schema": schema.get("schema", schema),
                    "strict": bool(schema.get("strict", False)),
                },
            },
            **self._litellm_kwargs(),
        )
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise StageCallError(f"{self.model} returned an empty response")
        return content
