"""Single-turn chat client used as the analyzer's model backend."""
from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

ChatFn = Callable[[str], Awaitable[str]]

# Low temperature keeps repeated evaluations of the same content consistent.
_TEMPERATURE = 0.2
_MAX_TOKENS = 2048
_KEY_VARS = {"anthropic": "ANTHROPIC_API_KEY", "openai": "OPENAI_API_KEY"}
_DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMCallError(Exception):
    """LLM call failed or returned no usable text."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def _anthropic_backend(api_key: str | None, base_url: str | None) -> Any:
    import anthropic
    return anthropic.AsyncAnthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))


def _openai_backend(api_key: str | None, base_url: str | None) -> Any:
    """OpenAI or any server speaking its API; ``OPENAI_BASE_URL`` points elsewhere."""
    import openai
    kwargs: dict[str, Any] = {}
    key = api_key or os.environ.get("OPENAI_API_KEY")
    if key:
        kwargs["api_key"] = key
    url = base_url or os.environ.get("OPENAI_BASE_URL")
    if url:
        kwargs["base_url"] = url
    return openai.AsyncOpenAI(**kwargs)


_BACKENDS: dict[str, Callable[[str | None, str | None], Any]] = {
    "anthropic": _anthropic_backend,
    "openai": _openai_backend,
    "openai_compatible": _openai_backend,
}


class LLMClient:
    """Async chat over Anthropic, OpenAI or an OpenAI-compatible server.

    Unset arguments fall back to ``LLM_PROVIDER``, ``LLM_MODEL`` and the
    provider's key and URL variables.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        backend = _BACKENDS.get(self.provider)
        if backend is None:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or os.environ.get("LLM_MODEL") or _DEFAULT_MODELS[self.provider]
        self._client: Any = backend(api_key, base_url)

    @property
    def provider_id(self) -> str:
        """Identifies the active provider and model; part of the config hash."""
        return f"{self.provider}:{self.model}"

    async def chat(self, prompt: str) -> str:
        """Send one user message, return the raw reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=_MAX_TOKENS,
                    temperature=_TEMPERATURE,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = response.content[0].text
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=_MAX_TOKENS,
                    temperature=_TEMPERATURE,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = response.choices[0].message.content
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        if not text or not text.strip():
            raise LLMCallError("LLM returned an empty reply", retryable=True)
        return text.strip()


def configured_client() -> LLMClient | None:
    """Build the default client from the environment, or None if no model is configured."""
    provider = os.environ.get("LLM_PROVIDER", "anthropic")
    key_var = _KEY_VARS.get(provider)
    if key_var and not os.environ.get(key_var):
        log.info("%s is not set; chat analysis disabled", key_var)
        return None
    try:
        return LLMClient()
    except Exception as exc:
        log.warning("No chat model configured: %s", exc)
        return None
