from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence

from openai import OpenAI, OpenAIError

from .errors import LanguageModelFailure

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class LanguageModel(Protocol):
    def generate(self, system: str, prompt: str, history: Sequence[Message] = ()) -> str:
        ...


class OpenAIChatModel:
    """Stateless chat-completions client; the caller re-supplies history on every call.

    ``base_url`` may point at any OpenAI-compatible server (e.g. a local
    Ollama at ``http://localhost:11434/v1``).
    """

    def __init__(
        self,
        model: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: float = 0.2,
    ) -> None:
        self.model = model
        self.temperature = temperature
        kwargs = {"base_url": base_url, "timeout": timeout, "max_retries": 0}
        if api_key is not None:
            kwargs["api_key"] = api_key
        elif base_url is not None:
            # Local OpenAI-compatible servers ignore the key but the client insists on one.
            kwargs["api_key"] = "unused"
        try:
            self._client = OpenAI(**kwargs)
        except OpenAIError as exc:
            raise LanguageModelFailure(
                "OPENAI_API_KEY is not set. Put it in a .env file or environment variable."
            ) from exc

    def generate(self, system: str, prompt: str, history: Sequence[Message] = ()) -> str:
        messages: List[Message] = [{"role": "system", "content": system}]
        messages.extend(history)
        messages.append({"role": "user", "content": prompt})

        logger.debug("Calling %s with %d messages", self.model, len(messages))
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            raise LanguageModelFailure(f"Language model {self.model} request failed") from exc

        answer = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not answer:
            raise LanguageModelFailure(f"Language model {self.model} returned an empty reply")
        return answer


__all__ = ["LanguageModel", "Message", "OpenAIChatModel"]
