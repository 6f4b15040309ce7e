"""OpenAI-backed generator using JSON-mode chat completions."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any

from loguru import logger

from ai_database.errors import DependencyMissingError, GenerationError
from ai_database.generation.base import GenerationRequest

SYSTEM_PROMPT = (
    "You generate realistic records for a database. "
    "Reply with a single JSON object whose keys are exactly the requested field names. "
    "Use a JSON array for fields marked []."
)


class OpenAIGenerator:
    """Generator that asks an OpenAI chat model for field values."""

    def __init__(
        self,
        model_name: str = "gpt-4o-mini",
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.7,
    ) -> None:
        self.model_name = model_name
        self.temperature = temperature
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: Any | None = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        async with self._client_lock:
            if self._client is not None:
                return self._client

            from openai import AsyncOpenAI

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise DependencyMissingError("OpenAI generation requires OPENAI_API_KEY.")

            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self._base_url,
                timeout=self._timeout,
            )
            return self._client

    async def generate(
        self, directives: dict[str, Any], request: GenerationRequest
    ) -> dict[str, Any]:
        if not request.fields:
            return {}

        client = await self._get_client()
        prompt = request.render()
        logger.debug(f"Generating {request.entity_type} with {self.model_name}")

        try:
            response = await client.chat.completions.create(
                model=self.model_name,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
            content = response.choices[0].message.content or "{}"
            values = json.loads(content)
        except json.JSONDecodeError as exc:
            raise GenerationError(request.entity_type, f"model returned invalid JSON: {exc}") from exc
        except Exception as exc:
            raise GenerationError(request.entity_type, str(exc)) from exc

        if not isinstance(values, dict):
            raise GenerationError(request.entity_type, "model did not return a JSON object")

        wanted = {f.name for f in request.fields}
        return {key: value for key, value in values.items() if key in wanted}
