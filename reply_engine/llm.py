"""
OpenRouter LLM client and JSON extraction helpers.

This module provides:
- The ChatBackend protocol every pipeline stage calls through
- An OpenRouter client with a bounded deadline and no retries
- Typed failures: BackendUnavailable and MalformedOutput
- Strict-JSON call shape (first balanced {...} span of the completion)

Each stage issues at most one backend call and converts an LLMError into its
own fallback value; nothing in here decides what that fallback is.
"""

import json
from typing import Any, Dict, List, Optional, Protocol
import openai
from openai import AsyncOpenAI
from loguru import logger

from .utils import get_config, ConfigurationError, Timer


class LLMError(Exception):
    """Raised when LLM operations fail."""
    pass


class BackendUnavailable(LLMError):
    """The backend could not be reached or returned no completion."""
    pass


class MalformedOutput(LLMError):
    """A completion was received but does not contain the required JSON."""
    pass


class ChatBackend(Protocol):
    """Anything that can turn a list of chat turns into one completion."""

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str: ...


class OpenRouterClient:
    """OpenRouter API client for LLM interactions."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or get_config()
        api_key = self.config.get("OPENROUTER_API_KEY")
        if not api_key:
            raise ConfigurationError("Required environment variable OPENROUTER_API_KEY is not set")

        # One attempt per stage; callers own the per-message deadline
        self.client = AsyncOpenAI(
            base_url=self.config["OPENROUTER_BASE_URL"],
            api_key=api_key,
            timeout=self.config.get("REQUEST_TIMEOUT_SECONDS", 15),
            max_retries=0,
            default_headers={
                "HTTP-Referer": self.config["OPENROUTER_SITE_URL"],
                "X-Title": self.config["OPENROUTER_APP_TITLE"],
            }
        )

        logger.info("OpenRouter client initialized",
                    base_url=self.config["OPENROUTER_BASE_URL"],
                    timeout_seconds=self.config.get("REQUEST_TIMEOUT_SECONDS", 15))

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """
        Generate one completion.

        Args:
            model: Model identifier
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response

        Returns:
            str: Generated text, stripped

        Raises:
            BackendUnavailable: On any transport or API failure, or an empty completion
        """
        logger.debug("Requesting completion",
                     model=model,
                     message_count=len(messages),
                     temperature=temperature)

        try:
            with Timer("llm_completion"):
                response = await self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
        except openai.OpenAIError as e:
            logger.error("LLM completion failed", error=str(e), model=model)
            raise BackendUnavailable(f"LLM completion failed: {str(e)}") from e

        if not response.choices:
            raise BackendUnavailable("No response choices returned from LLM")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise BackendUnavailable("Empty response from LLM")

        logger.debug("LLM completion received",
                     model=model,
                     response_length=len(content),
                     tokens_used=getattr(response.usage, "total_tokens", None))

        return content.strip()


def _balanced_object_end(text: str, start: int) -> int:
    """Index just past the '}' closing the '{' at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return -1


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """
    Parse the first balanced ``{...}`` span of a completion.

    Models wrap JSON in prose or markdown fences often enough that the raw
    completion cannot be handed to ``json.loads`` directly. Braces inside JSON
    strings are skipped while scanning. Only the first span is considered.

    Raises:
        MalformedOutput: If the first span is missing or does not parse to a JSON object
    """
    if not text:
        raise MalformedOutput("Empty completion")

    start = text.find("{")
    if start == -1:
        raise MalformedOutput("No JSON object found in response")

    end = _balanced_object_end(text, start)
    if end == -1:
        raise MalformedOutput("Unbalanced JSON object in response")

    try:
        parsed = json.loads(text[start:end])
    except (json.JSONDecodeError, RecursionError, ValueError) as e:
        raise MalformedOutput(f"Invalid JSON in response: {type(e).__name__}") from e

    if not isinstance(parsed, dict):
        raise MalformedOutput("Response JSON is not an object")
    return parsed


async def complete_json(
    backend: ChatBackend,
    model: str,
    messages: List[Dict[str, str]],
    temperature: float = 0.0,
    max_tokens: int = 500,
) -> Dict[str, Any]:
    """
    Strict-JSON call shape shared by the router, the matcher and the keyword extractor.

    Raises:
        BackendUnavailable: If the call fails
        MalformedOutput: If the completion holds no JSON object
    """
    try:
        completion = await backend.complete(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except LLMError:
        raise
    except Exception as e:
        # Injected backends may raise anything; treat it as an outage
        raise BackendUnavailable(f"LLM completion failed: {str(e)}") from e

    return extract_json_object(completion)


async def complete_text(
    backend: ChatBackend,
    model: str,
    messages: List[Dict[str, str]],
    temperature: float = 0.7,
    max_tokens: int = 300,
) -> str:
    """
    Free-text call shape used by the responder.

    Raises:
        BackendUnavailable: If the call fails or returns nothing
    """
    try:
        completion = await backend.complete(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except LLMError:
        raise
    except Exception as e:
        raise BackendUnavailable(f"LLM completion failed: {str(e)}") from e

    if not completion or not completion.strip():
        raise BackendUnavailable("Empty response from LLM")
    return completion


# Global client instance
_llm_client: Optional[OpenRouterClient] = None


def get_llm_client() -> OpenRouterClient:
    """
    Get the global OpenRouter client, initializing if needed.

    Raises:
        ConfigurationError: If OPENROUTER_API_KEY is not configured
    """
    global _llm_client
    if _llm_client is None:
        _llm_client = OpenRouterClient()
    return _llm_client
