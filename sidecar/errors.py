"""Exception taxonomy for the extraction and governance pipeline.

The hierarchy mirrors how each failure is handled:

- ``ConfigurationError``: fatal, never retried, surfaced to the caller.
- ``TransientProviderError``: retried by the gateway, then wrapped in
  ``ExtractionFailed``.
- ``MalformedResponse``: generator output is unusable for one message.
- ``EntityValidationError``: drops a single candidate entity.
- ``ProposalError``: illegal proposal lifecycle transitions.
"""

from __future__ import annotations

from typing import Optional


class SidecarError(Exception):
    """Base class for all pipeline errors."""


# Configuration ---------------------------------------------------------------


class ConfigurationError(SidecarError):
    """Invalid or incomplete configuration."""


class InvalidProvider(ConfigurationError):
    """Provider name is not one of the supported providers."""

    def __init__(self, provider: str, supported: Optional[list[str]] = None) -> None:
        self.provider = provider
        self.supported = list(supported or [])
        message = f"Invalid provider: {provider}"
        if self.supported:
            message += f". Supported: {', '.join(self.supported)}"
        super().__init__(message)


class MissingCredentials(ConfigurationError):
    """Provider is known but its API key is not configured."""

    def __init__(self, provider: str, env_var: str | None = None) -> None:
        self.provider = provider
        self.env_var = env_var
        hint = f" (set {env_var})" if env_var else ""
        super().__init__(f"API key not found for provider: {provider}{hint}")


class PromptTooLarge(SidecarError):
    """Rendered prompt exceeds the provider's token ceiling."""

    def __init__(self, provider: str, estimated_tokens: int, max_tokens: int) -> None:
        self.provider = provider
        self.estimated_tokens = estimated_tokens
        self.max_tokens = max_tokens
        super().__init__(
            f"Prompt for {provider} is ~{estimated_tokens} tokens, limit is {max_tokens}"
        )


# Provider invocation ---------------------------------------------------------


class ProviderError(SidecarError):
    """Classified failure from a text-generation provider."""

    kind = "unknown"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Provider failure that is worth retrying."""


class RateLimited(TransientProviderError):
    kind = "rate_limited"


class ProviderUnavailable(TransientProviderError):
    kind = "unavailable"


class ProviderTimeout(TransientProviderError):
    kind = "timeout"


class ClientError(ProviderError):
    """Non-transient 4xx failure (bad auth, malformed request)."""

    kind = "client_error"


class UnknownProviderError(ProviderError):
    kind = "unknown"


class ExtractionFailed(SidecarError):
    """Raised once the gateway gives up on a message."""

    def __init__(self, message: str, *, attempts: int = 0, provider: str | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.provider = provider


# Input / output validation ---------------------------------------------------


class MalformedMessage(SidecarError, TypeError):
    """Inbound message is not text."""


class MalformedResponse(SidecarError):
    """Generator output could not be parsed into an object."""

    def __init__(self, message: str, *, raw_excerpt: str = "") -> None:
        super().__init__(message)
        self.raw_excerpt = raw_excerpt


class MissingEntitiesField(MalformedResponse):
    """Parsed object has no ``entities`` sequence."""


class EntityValidationError(SidecarError):
    """A single candidate entity failed hard validation."""

    def __init__(self, message: str, *, field: str, value: object = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class InvalidEntityType(EntityValidationError):
    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid entity_type: {value!r}", field="entity_type", value=value)


class InvalidConfidence(EntityValidationError):
    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid confidence: {value!r}", field="confidence", value=value)


class InvalidEntityField(EntityValidationError):
    """Required text field missing or not a string."""


# Proposal lifecycle ----------------------------------------------------------


class ProposalError(SidecarError):
    """Base class for proposal lifecycle failures."""


class ProposalNotFound(ProposalError):
    def __init__(self, proposal_id: str) -> None:
        super().__init__(f"Proposal not found: {proposal_id}")
        self.proposal_id = proposal_id


class AlreadyReviewed(ProposalError):
    """Proposal has already left the pending state."""

    def __init__(self, proposal_id: str, status: str) -> None:
        super().__init__(f"Proposal {proposal_id} is already {status}")
        self.proposal_id = proposal_id
        self.status = status
