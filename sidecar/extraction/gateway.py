"""Model gateway: provider invocation with classified errors, retries and fallback."""

from __future__ import annotations

import random
import time
from typing import Any, Callable, Dict, Optional

import anthropic
import openai
from loguru import logger

from sidecar.errors import (
    ClientError,
    ConfigurationError,
    ExtractionFailed,
    InvalidProvider,
    MissingCredentials,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    TransientProviderError,
    UnknownProviderError,
)
from sidecar.extraction.models import ModelResponse
from sidecar.extraction.prompt_builder import API_KEY_ENV, SUPPORTED_PROVIDERS, get_max_tokens
from sidecar.utils.config import Config
from sidecar.utils.llm_client import create_anthropic_client, create_openai_client

MODEL_NAMES = {
    "claude": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4-turbo-preview",
    "gemini": "gemini-1.5-pro",
}

_TIMEOUT_ERRORS = (openai.APITimeoutError, anthropic.APITimeoutError, TimeoutError)
_CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError, ConnectionError)


def get_model_name(provider: str) -> str:
    """Model used for a provider; unknown names are echoed back unchanged."""
    return MODEL_NAMES.get(provider, provider)


def classify_error(exc: BaseException, provider: Optional[str] = None) -> ProviderError:
    """Map an SDK or transport exception onto the gateway's error kinds."""
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, _TIMEOUT_ERRORS):
        return ProviderTimeout(message, provider=provider)
    if isinstance(exc, _CONNECTION_ERRORS):
        return ProviderTimeout(message, provider=provider)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status == 429:
            return RateLimited(message, provider=provider, status_code=status)
        if status >= 500:
            return ProviderUnavailable(message, provider=provider, status_code=status)
        if 400 <= status < 500:
            return ClientError(message, provider=provider, status_code=status)

    return UnknownProviderError(message, provider=provider, status_code=status)


class ModelGateway:
    """Invoke text-generation providers for entity extraction.

    Retry policy: transient errors (rate limits, 5xx, timeouts) are retried
    with exponential backoff and jitter up to ``llm.retry_attempts`` total
    attempts; client errors are raised immediately; unknown errors are not
    retried. When the requested provider gives up and a distinct fallback
    provider has credentials, the call is repeated once on the fallback.

    Example:
        >>> gateway = ModelGateway(config)
        >>> text = gateway.invoke(prompt.prompt, prompt.system_prompt, "claude")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        clients: Optional[Dict[str, Any]] = None,
        sleep_fn: Callable[[float], None] | None = None,
        random_fn: Callable[[float, float], float] | None = None,
    ) -> None:
        self.config = config or Config()
        self.max_attempts = max(1, self.config.llm.retry_attempts)
        self._clients: Dict[str, Any] = dict(clients or {})
        self._sleep = sleep_fn or time.sleep
        self._uniform = random_fn or random.uniform

    # -----------------------
    # Public API
    # -----------------------
    def invoke(self, prompt: str, system_prompt: str, provider: Optional[str] = None) -> str:
        """Return raw generator text for a prompt."""
        return self.invoke_with_usage(prompt, system_prompt, provider).text

    def invoke_with_usage(
        self,
        prompt: str,
        system_prompt: str,
        provider: Optional[str] = None,
        *,
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        """Invoke a provider and return text plus token usage.

        Raises:
            InvalidProvider / MissingCredentials: configuration problems, never retried
            ClientError: non-transient 4xx from the provider
            ExtractionFailed: retries (and any fallback) exhausted
        """
        active = provider or self.config.llm.primary_provider
        try:
            return self._invoke_with_retries(active, prompt, system_prompt, max_tokens)
        except (ExtractionFailed, ClientError) as primary_error:
            fallback = self._fallback_for(active)
            if fallback is None:
                raise

            logger.warning(f"Provider {active} failed, falling back to {fallback}")
            try:
                response = self._invoke_with_retries(fallback, prompt, system_prompt, max_tokens)
            except (ExtractionFailed, ClientError) as fallback_error:
                raise ExtractionFailed(
                    f"All providers failed. Primary ({active}): {primary_error}; "
                    f"Fallback ({fallback}): {fallback_error}",
                    attempts=getattr(fallback_error, "attempts", 1),
                    provider=fallback,
                ) from fallback_error
            response.fallback_used = True
            return response

    def classify_error(self, exc: BaseException, provider: Optional[str] = None) -> ProviderError:
        return classify_error(exc, provider)

    def should_retry(self, error: BaseException, attempts_so_far: int) -> bool:
        """True only for transient errors while under the attempt ceiling."""
        if attempts_so_far >= self.max_attempts:
            return False
        return isinstance(self.classify_error(error), TransientProviderError)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        llm = self.config.llm
        delay = min(llm.base_delay * (2 ** (attempt - 1)), llm.max_backoff)
        if llm.jitter > 0:
            delay += self._uniform(0, llm.jitter)
        return delay

    def get_model_name(self, provider: str) -> str:
        return get_model_name(provider)

    # -----------------------
    # Retry loop
    # -----------------------
    def _invoke_with_retries(
        self,
        provider: str,
        prompt: str,
        system_prompt: str,
        max_tokens: Optional[int],
    ) -> ModelResponse:
        adapter = self._adapter(provider)
        output_tokens = max_tokens or get_max_tokens(provider)
        attempts = 0

        logger.info(f"Calling LLM for extraction using {provider}: {get_model_name(provider)}")

        while True:
            attempts += 1
            try:
                return adapter(prompt, system_prompt, output_tokens)
            except ConfigurationError:
                raise
            except Exception as exc:  # noqa: BLE001 - classified below
                error = self.classify_error(exc, provider)
                if error is not exc:
                    error.__cause__ = exc

                if isinstance(error, ClientError):
                    logger.error(
                        "LLM request rejected",
                        provider=provider,
                        status_code=error.status_code,
                        error=str(error),
                    )
                    raise error from exc

                if not self.should_retry(error, attempts):
                    raise ExtractionFailed(
                        f"{provider} request failed after {attempts} attempt(s): {error}",
                        attempts=attempts,
                        provider=provider,
                    ) from error

                delay = self.backoff_delay(attempts)
                logger.warning(
                    "LLM request failed",
                    provider=provider,
                    kind=error.kind,
                    attempt=attempts,
                    max_attempts=self.max_attempts,
                    retry_in=round(delay, 2),
                    error=str(error),
                )
                self._sleep(delay)

    def _fallback_for(self, provider: str) -> Optional[str]:
        fallback = self.config.llm.fallback_provider
        if not fallback or fallback == provider:
            return None
        if fallback in self._clients or self.config.api_key_for(fallback):
            return fallback
        return None

    # -----------------------
    # Provider adapters
    # -----------------------
    def _adapter(self, provider: str) -> Callable[[str, str, int], ModelResponse]:
        adapters = {
            "claude": self._call_claude,
            "openai": self._call_openai,
            "gemini": self._call_gemini,
        }
        if provider not in adapters:
            raise InvalidProvider(provider, list(SUPPORTED_PROVIDERS))
        return adapters[provider]

    def _get_client(self, provider: str) -> Any:
        if provider in self._clients:
            return self._clients[provider]

        api_key = self.config.api_key_for(provider)
        if not api_key:
            raise MissingCredentials(provider, API_KEY_ENV.get(provider))

        llm = self.config.llm
        if provider == "claude":
            client = create_anthropic_client(
                api_key, base_url=llm.anthropic_base_url, timeout=llm.timeout
            )
        elif provider == "gemini":
            client = create_openai_client(api_key, base_url=llm.gemini_base_url, timeout=llm.timeout)
        else:
            client = create_openai_client(api_key, base_url=llm.openai_base_url, timeout=llm.timeout)

        self._clients[provider] = client
        return client

    def _call_claude(self, prompt: str, system_prompt: str, max_tokens: int) -> ModelResponse:
        client = self._get_client("claude")
        message = client.messages.create(
            model=get_model_name("claude"),
            max_tokens=max_tokens,
            temperature=self.config.llm.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))

        usage = getattr(message, "usage", None)
        return ModelResponse(
            text="\n".join(parts).strip(),
            provider="claude",
            model=getattr(message, "model", None) or get_model_name("claude"),
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

    def _chat_completion(
        self, provider: str, prompt: str, system_prompt: str, max_tokens: int
    ) -> ModelResponse:
        client = self._get_client(provider)
        response = client.chat.completions.create(
            model=get_model_name(provider),
            max_tokens=max_tokens,
            temperature=self.config.llm.temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        )

        content = response.choices[0].message.content
        if isinstance(content, list):
            text = "\n".join(
                str(item.get("text", "")) if isinstance(item, dict) else str(item)
                for item in content
            ).strip()
        else:
            text = str(content or "")

        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=text,
            provider=provider,
            model=getattr(response, "model", None) or get_model_name(provider),
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    def _call_openai(self, prompt: str, system_prompt: str, max_tokens: int) -> ModelResponse:
        return self._chat_completion("openai", prompt, system_prompt, max_tokens)

    def _call_gemini(self, prompt: str, system_prompt: str, max_tokens: int) -> ModelResponse:
        # Google's OpenAI-compatible endpoint speaks the chat.completions protocol.
        return self._chat_completion("gemini", prompt, system_prompt, max_tokens)
