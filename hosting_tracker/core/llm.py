"""
Hosting Tracker — LLM Provider Abstraction.

The classifier and the rule suggester only ever ask the model for a JSON
answer, so the public entry point is `complete_json()`: send a prompt to the
configured provider, bound the call by a timeout, strip markdown fences and
decode the JSON.

Every failure comes out as an LLMError subclass, so callers handle one
exception family whichever SDK is underneath:

    LLMConfigError    — unknown provider or no API key
    LLMTimeoutError   — the provider didn't answer within the timeout
    LLMResponseError  — the answer wasn't JSON
    LLMError          — anything the provider SDK raised

Supports: anthropic (default), gemini, openai, cohere. Classification wants
repeatable answers, so every provider is called with temperature 0.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The LLM couldn't give a usable answer."""


class LLMConfigError(LLMError):
    """LLM_PROVIDER / LLM_API_KEY don't describe a usable provider."""


class LLMTimeoutError(LLMError):
    """The provider call exceeded its timeout."""


class LLMResponseError(LLMError):
    """The provider answered, but not with JSON."""


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    model: str
    api_key: str


# (config, system, user_message, max_tokens) -> response text
_ProviderFn = Callable[[ProviderConfig, str, str, int], Awaitable[str]]

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _ask_anthropic(config: ProviderConfig, system: str, user_message: str, max_tokens: int) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=config.api_key)
    response = await client.messages.create(
        model=config.model,
        max_tokens=max_tokens,
        temperature=0,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _ask_gemini(config: ProviderConfig, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=config.api_key)
    gm = genai.GenerativeModel(model_name=config.model, system_instruction=system)
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(
            max_output_tokens=max_tokens,
            temperature=0,
            response_mime_type="application/json",
        ),
    )
    return response.text


async def _ask_openai(config: ProviderConfig, system: str, user_message: str, max_tokens: int) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=config.api_key)
    response = await client.chat.completions.create(
        model=config.model,
        max_tokens=max_tokens,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content or ""


async def _ask_cohere(config: ProviderConfig, system: str, user_message: str, max_tokens: int) -> str:
    import cohere

    client = cohere.AsyncClientV2(api_key=config.api_key)
    response = await client.chat(
        model=config.model,
        max_tokens=max_tokens,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.message.content[0].text


_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "anthropic": (_ask_anthropic, "claude-haiku-4-5"),
    "gemini":    (_ask_gemini,    "gemini-2.0-flash"),
    "openai":    (_ask_openai,    "gpt-4o-mini"),
    "cohere":    (_ask_cohere,    "command-a-03-2025"),
}

# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------


def _select_provider() -> tuple[_ProviderFn, ProviderConfig]:
    """Read settings and return the provider function and its config."""
    from hosting_tracker.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise LLMConfigError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )
    if not settings.llm_enabled:
        raise LLMConfigError("LLM_API_KEY is not set; LLM fallback is disabled")

    fn, default_model = _PROVIDERS[provider_name]
    config = ProviderConfig(provider_name, settings.LLM_MODEL or default_model, settings.LLM_API_KEY)
    logger.info("LLM provider: %s, model: %s", config.name, config.model)
    return fn, config


# Lazy singleton, populated on first call
_provider: tuple[_ProviderFn, ProviderConfig] | None = None


def reset_provider() -> None:
    """Forget the selected provider so the next call re-reads settings."""
    global _provider
    _provider = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


async def complete_json(
    system: str,
    user_message: str,
    max_tokens: int = 256,
    timeout: float | None = None,
) -> Any:
    """Ask the configured provider for a JSON answer and return it decoded.

    timeout defaults to LLM_TIMEOUT_SECONDS. Raises an LLMError subclass on
    any failure; never returns partial data.
    """
    global _provider
    from hosting_tracker.config import settings

    if _provider is None:
        _provider = _select_provider()
    fn, config = _provider
    timeout = settings.LLM_TIMEOUT_SECONDS if timeout is None else timeout

    try:
        raw_text = await asyncio.wait_for(fn(config, system, user_message, max_tokens), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise LLMTimeoutError(f"{config.name} did not answer within {timeout}s") from exc
    except Exception as exc:
        raise LLMError(f"{config.name} request failed: {exc}") from exc

    cleaned = _clean_llm_response(raw_text or "")
    logger.debug("%s response: %s", config.name, cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"{config.name} answer is not JSON: {exc} — raw: {cleaned[:200]!r}") from exc
