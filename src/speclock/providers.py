from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

import openai
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

from .config import ProjectConfig, ProviderDefinition
from .errors import (
    ConfigurationError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationParams:
    """Per-call generation parameters, taken from the spec record's generator config."""

    model: str
    temperature: float = 0.0
    seed: int | None = None
    max_output_tokens: int | None = None
    timeout: float = 60.0


class Provider(Protocol):
    """Synchronous text completion. The returned text, not the request, is authoritative."""

    def complete(self, prompt: str, params: GenerationParams) -> str:
        ...


ProviderFactory = Callable[[str], Provider]


def ensure_api_key(definition: ProviderDefinition, repo_root: Path | None = None) -> str:
    """Load the provider credential from the environment or ``.env``.

    Runs before any network call so a missing credential surfaces as a
    configuration problem rather than a provider failure.

    Raises:
        ConfigurationError: If the named environment variable is unset or blank.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv(definition.api_key_env, "").strip()
    if not key:
        raise ConfigurationError(f"{definition.api_key_env} is required for the {definition.kind} provider")
    return key


def get_chat_model(
    *,
    params: GenerationParams,
    api_key: str,
    base_url: str | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with deterministic parameters and SDK retries disabled.

    Retries are owned by ``RetryingProvider`` so the policy is applied once.
    """
    if not params.model or not params.model.strip():
        raise ValueError("model must be a non-empty string")
    kwargs: dict[str, Any] = {
        "model": params.model,
        "temperature": params.temperature,
        "timeout": params.timeout,
        "max_retries": 0,
        "api_key": api_key,
    }
    if params.seed is not None:
        kwargs["seed"] = params.seed
    if params.max_output_tokens is not None:
        kwargs["max_completion_tokens"] = params.max_output_tokens
    if base_url:
        kwargs["base_url"] = base_url
    return ChatOpenAI(**kwargs)


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    raise ProviderError(f"provider returned unsupported content type {type(content).__name__}")


@dataclass(slots=True)
class OpenAIChatProvider:
    """OpenAI-compatible chat completion through langchain-openai."""

    name: str
    api_key: str
    base_url: str | None = None

    def complete(self, prompt: str, params: GenerationParams) -> str:
        model = get_chat_model(params=params, api_key=self.api_key, base_url=self.base_url)
        try:
            message = model.invoke(prompt)
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(f"{self.name} timed out after {params.timeout}s") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderAuthError(f"{self.name} rejected credentials: {exc}") from exc
        except openai.RateLimitError as exc:
            raise ProviderRateLimitError(f"{self.name} rate limited: {exc}") from exc
        except openai.APIError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        return _message_text(message.content)


class RetryingProvider:
    """Bounded exponential backoff around any provider.

    Auth errors are raised immediately; timeouts, rate limits and other
    provider errors are retried until ``max_attempts`` calls have been made.
    """

    def __init__(
        self,
        inner: Provider,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.inner = inner
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    def complete(self, prompt: str, params: GenerationParams) -> str:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.inner.complete(prompt, params)
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                logger.warning(
                    "Provider call failed on attempt %d/%d (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")


def build_provider(config: ProjectConfig, name: str) -> Provider:
    """Provider for a configured name, wrapped in the configured retry policy.

    Raises:
        ConfigurationError: For an unknown provider name or a missing credential.
    """
    definition = config.provider_definition(name)
    api_key = ensure_api_key(definition, repo_root=config.root)
    inner = OpenAIChatProvider(name=name, api_key=api_key, base_url=definition.base_url)
    logger.info("Using provider %s (%s)", name, definition.kind)
    return RetryingProvider(
        inner,
        max_attempts=definition.max_attempts,
        base_delay=definition.base_delay,
        max_delay=definition.max_delay,
    )


def params_for(config: ProjectConfig, provider_name: str, *, model: str, temperature: float, seed: int | None, max_output_tokens: int | None) -> GenerationParams:
    definition = config.provider_definition(provider_name)
    return GenerationParams(
        model=model,
        temperature=temperature,
        seed=seed,
        max_output_tokens=max_output_tokens,
        timeout=definition.timeout,
    )
