"""Provider-specific prompt construction for entity extraction.

Each provider has its own dialect (tagged blocks for Claude, markdown headers
for OpenAI, labeled blocks for Gemini) rendered from
``config/extraction_prompts.yaml``. Rendering is pure: nothing here touches the
network, and configuration is only consulted in ``validate_provider`` and when
resolving the default provider.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from loguru import logger

from sidecar.errors import InvalidProvider, MissingCredentials
from sidecar.extraction.models import CostEstimate, ExtractionContext, ExtractionPrompt, SourceInfo
from sidecar.utils.config import Config

SUPPORTED_PROVIDERS = ("claude", "openai", "gemini")

API_KEY_ENV = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GOOGLE_AI_API_KEY",
}

# USD per million tokens.
TOKEN_COSTS = {
    "claude": {"input": 3.0, "output": 15.0},
    "openai": {"input": 10.0, "output": 30.0},
    "gemini": {"input": 1.25, "output": 5.0},
}

MAX_TOKENS = {"claude": 4096, "openai": 4096, "gemini": 8192}
DEFAULT_MAX_TOKENS = 4096

CHARS_PER_TOKEN = {"claude": 4, "openai": 4, "gemini": 4}
DEFAULT_CHARS_PER_TOKEN = 4

NO_PROJECT_CONTEXT = "No project context available."
NO_CONVERSATION = "No recent conversation history."

ENTITY_DESCRIPTION_CLIP = 100
DOCUMENT_CONTENT_CLIP = 200

_REPO_ROOT = Path(__file__).resolve().parents[2]


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _resolve_template_path(path: str | Path) -> Path:
    candidate = Path(path)
    if candidate.is_absolute() or candidate.exists():
        return candidate
    return _REPO_ROOT / candidate


def coerce_source(source: Any) -> SourceInfo:
    """Accept a SourceInfo, a mapping, a bare type string or None."""
    if isinstance(source, SourceInfo):
        return source
    if isinstance(source, Mapping):
        return SourceInfo(**source)
    if isinstance(source, str) and source:
        return SourceInfo(type=source)
    return SourceInfo()


def estimate_tokens(text: Any, provider: str) -> int:
    """Approximate token count from character length. Not billing-accurate."""
    if not isinstance(text, str):
        text = json.dumps(text, default=str)
    divisor = CHARS_PER_TOKEN.get(provider, DEFAULT_CHARS_PER_TOKEN)
    return math.ceil(len(text) / divisor)


def estimate_cost(input_tokens: int, output_tokens: int, provider: str) -> CostEstimate:
    """Apply fixed per-million-token rates.

    Raises:
        InvalidProvider: If no rates are known for ``provider``
    """
    rates = TOKEN_COSTS.get(provider)
    if rates is None:
        raise InvalidProvider(provider, list(SUPPORTED_PROVIDERS))

    input_cost = round(input_tokens / 1_000_000 * rates["input"], 6)
    output_cost = round(output_tokens / 1_000_000 * rates["output"], 6)
    return CostEstimate(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=round(input_cost + output_cost, 6),
        provider=provider,
    )


def get_max_tokens(provider: str) -> int:
    return MAX_TOKENS.get(provider, DEFAULT_MAX_TOKENS)


class PromptBuilder:
    """Render extraction prompts for any supported provider.

    Example:
        >>> builder = PromptBuilder(config)
        >>> result = builder.build_extraction_prompt("We chose Postgres", context, "slack")
        >>> result.provider
        'claude'
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        prompts_path: str | Path | None = None,
    ) -> None:
        self.config = config or Config()
        path = prompts_path or self.config.llm.prompt_template
        self.prompts_path = _resolve_template_path(path)
        self.prompts = self._load_prompts(self.prompts_path)

    # -----------------------
    # Public API
    # -----------------------
    def build_extraction_prompt(
        self,
        message: str,
        context: Optional[ExtractionContext] = None,
        source: Any = None,
        provider: Optional[str] = None,
    ) -> ExtractionPrompt:
        """Render the full prompt for ``provider`` (default: configured provider).

        Raises:
            InvalidProvider: If ``provider`` has no dialect
        """
        active = provider or self.resolve_default_provider()
        dialect = self._dialect(active)
        source_info = coerce_source(source)

        prompt = dialect["user_template"].format(
            project_context=self.build_project_context(context),
            conversation_context=self.build_conversation_context(context),
            source=self._format_source(source_info),
            message=message,
            schema=self.build_entity_schema(active),
            examples=self.build_examples(active),
        )
        return ExtractionPrompt(
            prompt=prompt,
            system_prompt=self.build_system_prompt(active),
            provider=active,
            estimated_tokens=estimate_tokens(prompt, active),
        )

    def build_system_prompt(self, provider: str) -> str:
        base = str(self.prompts.get("system", "")).strip()
        suffix = str(self._dialect(provider).get("system_suffix", "")).strip()
        return f"{base}\n\n{suffix}" if suffix else base

    def build_project_context(self, context: Optional[ExtractionContext]) -> str:
        if context is None or context.project_metadata is None:
            return NO_PROJECT_CONTEXT

        metadata = context.project_metadata
        lines: List[str] = [f"Project: {metadata.name}"]
        if metadata.description:
            lines.append(f"Description: {metadata.description}")

        entities = context.related_entities[: self.config.context.prompt_entity_limit]
        if entities:
            lines.append("")
            lines.append(f"Existing Entities (Top {self.config.context.prompt_entity_limit}):")
            for idx, entity in enumerate(entities, start=1):
                lines.append(f"{idx}. [{entity.type}] {entity.title} (ID: {entity.id})")
                if entity.description:
                    lines.append(f"   {_clip(entity.description, ENTITY_DESCRIPTION_CLIP)}")

        documents = context.reference_documents[: self.config.context.prompt_document_limit]
        if documents:
            lines.append("")
            lines.append("Relevant Documents:")
            for idx, doc in enumerate(documents, start=1):
                lines.append(f"{idx}. {doc.title or doc.type}")
                if doc.content:
                    lines.append(f"   {_clip(doc.content, DOCUMENT_CONTENT_CLIP)}")

        return "\n".join(lines)

    def build_conversation_context(self, context: Optional[ExtractionContext]) -> str:
        if context is None or not context.recent_conversation:
            return NO_CONVERSATION

        lines = ["Recent Conversation:"]
        for turn in context.recent_conversation[: self.config.context.max_conversation_turns]:
            if turn.created_at is not None:
                lines.append(f"[{turn.created_at.strftime('%Y-%m-%d %H:%M')}] {turn.content}")
            else:
                lines.append(turn.content)
        return "\n".join(lines)

    def build_entity_schema(self, provider: str) -> str:
        schema = json.dumps(self.prompts.get("entity_schema", {}), indent=2)
        return self._dialect(provider)["schema_template"].format(schema=schema)

    def build_examples(self, provider: str) -> str:
        template = self._dialect(provider)["example_template"]
        rendered = [
            template.format(
                index=idx,
                input=example.get("input", ""),
                output=json.dumps(example.get("output", {}), indent=2),
            )
            for idx, example in enumerate(self.prompts.get("examples") or [], start=1)
        ]
        return "\n\n".join(rendered)

    def validate_provider(self, provider: str) -> bool:
        """Check a provider name and that its credentials are configured.

        Raises:
            InvalidProvider: Unknown provider name
            MissingCredentials: Known provider without an API key
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise InvalidProvider(provider, list(SUPPORTED_PROVIDERS))
        if not self.config.api_key_for(provider):
            raise MissingCredentials(provider, API_KEY_ENV[provider])
        return True

    def resolve_default_provider(self) -> str:
        """Configured primary provider, or the fallback if only it has credentials."""
        primary = self.config.llm.primary_provider
        fallback = self.config.llm.fallback_provider
        if not self.config.api_key_for(primary) and fallback and self.config.api_key_for(fallback):
            logger.warning(
                f"Primary provider {primary} has no API key, using fallback {fallback}"
            )
            return fallback
        return primary

    # -----------------------
    # Template handling
    # -----------------------
    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def _dialect(self, provider: str) -> Dict[str, str]:
        providers = self.prompts.get("providers") or {}
        if provider not in SUPPORTED_PROVIDERS or provider not in providers:
            raise InvalidProvider(provider, list(SUPPORTED_PROVIDERS))
        return providers[provider]

    @staticmethod
    def _format_source(source: SourceInfo) -> str:
        if source.platform and source.platform != source.type:
            return f"{source.type} ({source.platform})"
        return source.type
