"""
Text-generation client for AI-assisted repairs.

Talks to any OpenAI-compatible chat endpoint (a local vLLM server by default).
Callers depend on the ``TextGenerator`` protocol so tests can plug in a fake.
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

import openai
from openai import AsyncOpenAI

from ...config.settings import settings
from ...exceptions import TextGenerationError

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a meticulous LaTeX repair agent. "
    "You return one complete, compilable LaTeX document and nothing else."
)


@runtime_checkable
class TextGenerator(Protocol):
    async def request_correction(self, instruction: str, document: str) -> str:
        ...


class OpenAICompatibleClient:
    def __init__(
        self,
        api_base: Optional[str] = None,
        model: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.api_base = api_base or settings.llm_api_base
        self.model = model or settings.llm_model
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key or settings.llm_api_key or "EMPTY",  # vLLM doesn't require key
            base_url=self.api_base,
            timeout=self.timeout,
            max_retries=0,
        )

    async def request_correction(self, instruction: str, document: str) -> str:
        LOGGER.info("Requesting correction from %s (%s)", self.api_base, self.model)
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"{instruction}\n\nCurrent LaTeX document:\n{document}"},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as exc:
            raise TextGenerationError(f"Correction request timed out: {exc}", model=self.model) from exc
        except openai.APIError as exc:
            raise TextGenerationError(f"Correction request failed: {exc}", model=self.model) from exc

        if not response.choices:
            raise TextGenerationError("Completion returned no choices", model=self.model)
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise TextGenerationError("Completion returned empty content", model=self.model)
        LOGGER.debug("Received %d characters from %s", len(content), self.model)
        return content

    async def close(self) -> None:
        await self._client.close()


_CLIENT_INSTANCE: Optional[OpenAICompatibleClient] = None


def get_text_generator() -> OpenAICompatibleClient:
    global _CLIENT_INSTANCE
    if _CLIENT_INSTANCE is None:
        _CLIENT_INSTANCE = OpenAICompatibleClient()
    return _CLIENT_INSTANCE


__all__ = ["TextGenerator", "OpenAICompatibleClient", "get_text_generator", "SYSTEM_PROMPT"]
