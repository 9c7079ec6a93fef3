"""
Completion-service wrapper for AsyncOpenAI clients.

Provides ``CompletionBackend`` which wraps ``AsyncOpenAI`` with a
``complete(prompt, params)`` method returning the text of every returned
choice.  Uses the prompt-in/text-out Completions endpoint, not chat.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from openai import AsyncOpenAI

from meowrelay.core.types import DEFAULT_SAMPLING, SamplingParams, classify_api_error

logger = logging.getLogger(__name__)


@dataclass
class CompletionConfig:
    model: str = "gpt-3.5-turbo-instruct"
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"


def completion_choices(raw: Any) -> list[str]:
    """Extract choice texts from an OpenAI ``Completion`` object."""
    if not getattr(raw, "choices", None):
        return []
    return [choice.text or "" for choice in raw.choices]


class CompletionBackend:
    """Wraps ``AsyncOpenAI`` with the completion-collaborator interface."""

    def __init__(self, config: CompletionConfig,
                 client: Optional[AsyncOpenAI] = None) -> None:
        self._cfg = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key or None,
            base_url=config.base_url or None,
        )

    @property
    def model(self) -> str:
        return self._cfg.model

    async def complete(self, prompt: str,
                       params: SamplingParams = DEFAULT_SAMPLING) -> list[str]:
        """Return the completion choices for *prompt*.

        Raises a :class:`~meowrelay.core.types.CompletionError` subclass on
        any provider failure.
        """
        try:
            raw = await self._client.completions.create(
                model=self._cfg.model,
                prompt=prompt,
                max_tokens=params.max_tokens,
                temperature=params.temperature,
                top_p=params.top_p,
                frequency_penalty=params.frequency_penalty,
                presence_penalty=params.presence_penalty,
                stop=list(params.stop),
            )
        except Exception as exc:  # noqa: BLE001
            error_type = classify_api_error(exc)
            raise error_type(f"{self._cfg.model}: {exc}") from exc
        return completion_choices(raw)

    async def close(self) -> None:
        await self._client.close()
