from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from sidecar.errors import InvalidProvider, MissingCredentials
from sidecar.extraction.models import (
    ConversationTurn,
    ExtractionContext,
    ProjectMetadata,
    ReferenceDocument,
    RelatedEntity,
    SourceInfo,
)
from sidecar.extraction.prompt_builder import (
    NO_CONVERSATION,
    NO_PROJECT_CONTEXT,
    PromptBuilder,
    coerce_source,
    estimate_cost,
    estimate_tokens,
    get_max_tokens,
)


@pytest.fixture
def builder(config) -> PromptBuilder:
    return PromptBuilder(config)


@pytest.fixture
def context() -> ExtractionContext:
    return ExtractionContext(
        project_metadata=ProjectMetadata(
            id="proj-1", name="Apollo", description="Billing platform rewrite"
        ),
        related_entities=[
            RelatedEntity(id=f"n{i}", type="decision", title=f"Decision {i}", description="x" * 150)
            for i in range(7)
        ],
        reference_documents=[ReferenceDocument(id="doc-1", title="ADR-12", content="Use queues.")],
        recent_conversation=[
            ConversationTurn(id="m1", content="Should we drop MySQL?", created_at=datetime(2024, 5, 1, 9, 30))
        ],
    )


@pytest.mark.parametrize(
    ("provider", "marker"),
    [
        ("claude", "<message_to_analyze>"),
        ("openai", "# Message to Analyze"),
        ("gemini", "MESSAGE TO ANALYZE:"),
    ],
)
def test_each_provider_has_its_own_dialect(builder, context, provider, marker) -> None:
    result = builder.build_extraction_prompt("We chose Postgres", context, "slack", provider)

    assert result.provider == provider
    assert marker in result.prompt
    assert "We chose Postgres" in result.prompt
    assert "Source: slack" in result.prompt or "**Source:** slack" in result.prompt
    assert result.estimated_tokens == estimate_tokens(result.prompt, provider)


def test_system_prompt_appends_provider_suffix(builder) -> None:
    claude = builder.build_system_prompt("claude")
    openai = builder.build_system_prompt("openai")

    assert claude.startswith(openai.split("\n\n")[0])
    assert claude.endswith("well-structured JSON format.")
    assert openai.endswith("following the schema provided.")


def test_project_context_limits_entities_and_clips(builder, context) -> None:
    text = builder.build_project_context(context)

    assert text.startswith("Project: Apollo")
    assert "Description: Billing platform rewrite" in text
    assert "Existing Entities (Top 5):" in text
    assert "5. [decision] Decision 4 (ID: n4)" in text
    assert "Decision 5" not in text
    assert "x" * 100 + "..." in text
    assert "1. ADR-12" in text


def test_empty_context_uses_placeholders(builder) -> None:
    assert builder.build_project_context(None) == NO_PROJECT_CONTEXT
    assert builder.build_project_context(ExtractionContext()) == NO_PROJECT_CONTEXT
    assert builder.build_conversation_context(ExtractionContext()) == NO_CONVERSATION

    result = builder.build_extraction_prompt("hello", None, None, "gemini")
    assert NO_PROJECT_CONTEXT in result.prompt
    assert "Source: unknown" in result.prompt


def test_conversation_context_includes_timestamps(builder, context) -> None:
    text = builder.build_conversation_context(context)

    assert text.splitlines() == ["Recent Conversation:", "[2024-05-01 09:30] Should we drop MySQL?"]


def test_examples_and_schema_render(builder) -> None:
    examples = builder.build_examples("claude")
    schema = builder.build_entity_schema("openai")

    assert "<example1>" in examples and "<example3>" in examples
    assert schema.startswith("### Entity Schema")
    assert '"entity_type"' in schema


def test_invalid_provider(builder) -> None:
    with pytest.raises(InvalidProvider, match="llama"):
        builder.build_extraction_prompt("hi", None, None, "llama")
    with pytest.raises(InvalidProvider):
        builder.validate_provider("llama")


def test_validate_provider_requires_credentials(config) -> None:
    builder = PromptBuilder(config)
    with pytest.raises(MissingCredentials, match="ANTHROPIC_API_KEY"):
        builder.validate_provider("claude")

    config.anthropic_api_key = "sk-ant-test"
    assert builder.validate_provider("claude") is True


def test_default_provider_falls_back_when_primary_has_no_key(config) -> None:
    config.llm.fallback_provider = "openai"
    config.openai_api_key = "sk-test"

    assert PromptBuilder(config).resolve_default_provider() == "openai"

    config.anthropic_api_key = "sk-ant-test"
    assert PromptBuilder(config).resolve_default_provider() == "claude"


def test_source_platform_is_rendered(builder) -> None:
    result = builder.build_extraction_prompt(
        "hi there", None, SourceInfo(type="chat", platform="slack"), "gemini"
    )
    assert "Source: chat (slack)" in result.prompt


def test_coerce_source() -> None:
    assert coerce_source(None).type == "unknown"
    assert coerce_source("email").type == "email"
    assert coerce_source({"type": "commit", "id": "abc"}).id == "abc"


def test_estimates() -> None:
    assert estimate_tokens("abcd" * 10, "claude") == 10
    assert estimate_tokens("abcde", "openai") == 2

    cost = estimate_cost(1_000_000, 100_000, "claude")
    assert cost.input_cost == 3.0
    assert cost.output_cost == 1.5
    assert cost.total_cost == 4.5

    with pytest.raises(InvalidProvider):
        estimate_cost(1, 1, "llama")

    assert get_max_tokens("gemini") == 8192
    assert get_max_tokens("llama") == 4096


def test_missing_template_file(config, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        PromptBuilder(config, prompts_path=tmp_path / "missing.yaml")


@pytest.mark.parametrize("provider", ["claude", "openai", "gemini"])
def test_cost_is_additive_and_linear(provider) -> None:
    single = estimate_cost(10_000, 2_000, provider)
    double = estimate_cost(20_000, 4_000, provider)

    assert single.total_cost == pytest.approx(single.input_cost + single.output_cost)
    assert double.total_cost == pytest.approx(2 * single.total_cost)
