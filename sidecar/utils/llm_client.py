"""LLM client creation factory.

Centralizes construction of provider SDK clients so API keys, base URLs and
timeouts are configured the same way everywhere. SDK-level retries are
disabled by default: the model gateway owns the retry policy.
"""

from typing import Any, Optional

import anthropic
from loguru import logger
from openai import OpenAI


def mask_key(api_key: Optional[str]) -> str:
    """Return a log-safe representation of an API key."""
    if api_key and len(api_key) > 8:
        return f"{api_key[:4]}...{api_key[-4:]}"
    return "None"


def create_openai_client(
    api_key: str,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
    **kwargs: Any,
) -> OpenAI:
    """Create and configure an OpenAI (or OpenAI-compatible) client.

    Args:
        api_key: The API key.
        base_url: Optional base URL, e.g. Google's OpenAI-compatible endpoint.
        timeout: Request timeout in seconds.
        max_retries: SDK-level retries (0 leaves retrying to the caller).
        **kwargs: Additional arguments to pass to the OpenAI constructor.

    Returns:
        Configured OpenAI client.
    """
    logger.debug(
        f"Creating OpenAI client: base_url={base_url}, "
        f"api_key={mask_key(api_key)}, timeout={timeout}"
    )

    return OpenAI(
        api_key=api_key,
        base_url=base_url,
        timeout=timeout,
        max_retries=max_retries,
        **kwargs,
    )


def create_anthropic_client(
    api_key: str,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
) -> anthropic.Anthropic:
    """Create and configure an Anthropic client."""
    logger.debug(
        f"Creating Anthropic client: base_url={base_url}, "
        f"api_key={mask_key(api_key)}, timeout={timeout}"
    )

    client_kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": max_retries}
    if base_url:
        client_kwargs["base_url"] = base_url
    if timeout is not None:
        client_kwargs["timeout"] = timeout
    return anthropic.Anthropic(**client_kwargs)
