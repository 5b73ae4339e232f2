"""Context assembly for entity extraction.

Collects the material the generator sees alongside a message: project
metadata, related knowledge-graph entities, reference documents, recent
conversation and the submitter's user context. Every store read is optional;
a failed read degrades to an empty sub-part and a lower quality score.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, List, Optional, TypeVar

from loguru import logger

from sidecar.errors import MalformedMessage
from sidecar.extraction.models import ContextSummary, ExtractionContext
from sidecar.storage.base import ContextSource
from sidecar.utils.config import ContextConfig

T = TypeVar("T")

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with", "we", "you", "i", "me", "my", "our",
        "this", "these", "those", "am", "been", "being", "have", "had",
        "do", "does", "did", "but", "if", "or", "because", "until",
        "while", "about", "can", "could", "should", "would", "just", "what",
        "which", "who", "when", "where", "how", "all", "each", "there",
    }
)

MAX_KEYWORDS = 10

QUALITY_WEIGHTS = {
    "project_metadata": 0.20,
    "related_entities": 0.30,
    "reference_documents": 0.25,
    "recent_conversation": 0.15,
    "user_context": 0.10,
}

_NON_WORD = re.compile(r"[^\w\s]")


def extract_keywords(message: Any, max_keywords: int = MAX_KEYWORDS) -> List[str]:
    """Return up to ``max_keywords`` (at most 10) distinct content words, first-seen order.

    Raises:
        MalformedMessage: If ``message`` is not a string
    """
    if not isinstance(message, str):
        raise MalformedMessage(f"Message must be text, got {type(message).__name__}")

    limit = min(max_keywords, MAX_KEYWORDS)
    keywords: List[str] = []
    seen = set()
    for word in _NON_WORD.sub(" ", message.lower()).split():
        if len(word) <= 2 or word in STOP_WORDS or word.isdigit() or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def calculate_context_quality(context: ExtractionContext) -> float:
    """Score how much supporting material a context carries, in [0, 1]."""
    score = 0.0
    if context.project_metadata is not None:
        score += QUALITY_WEIGHTS["project_metadata"]
    if context.related_entities:
        score += QUALITY_WEIGHTS["related_entities"]
    if context.reference_documents:
        score += QUALITY_WEIGHTS["reference_documents"]
    if context.recent_conversation:
        score += QUALITY_WEIGHTS["recent_conversation"]
    if context.user_context is not None:
        score += QUALITY_WEIGHTS["user_context"]
    return round(min(score, 1.0), 2)


def get_context_summary(context: ExtractionContext) -> ContextSummary:
    return ContextSummary(
        has_project_metadata=context.project_metadata is not None,
        related_entity_count=len(context.related_entities),
        reference_document_count=len(context.reference_documents),
        conversation_turn_count=len(context.recent_conversation),
        has_user_context=context.user_context is not None,
        quality_score=context.quality_score,
        assembly_time_ms=context.assembly_time_ms,
        keywords=list(context.keywords),
    )


class ContextAssembler:
    """Build an ``ExtractionContext`` from a store.

    Example:
        >>> assembler = ContextAssembler(store, config.context)
        >>> context = assembler.assemble_context("proj-1", "We chose Postgres", "slack")
    """

    def __init__(self, store: Optional[ContextSource] = None, config: ContextConfig | None = None):
        self.store = store
        self.config = config or ContextConfig()

    def _fetch(self, label: str, default: T, fn: Callable[[], T]) -> T:
        if self.store is None:
            return default
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001 - each sub-part is optional
            logger.warning(f"Failed to fetch {label}: {exc}")
            return default

    def assemble_context(
        self,
        project_id: str,
        message: Any,
        source: str = "unknown",
        user_id: Optional[str] = None,
    ) -> ExtractionContext:
        """Gather every context sub-part for one message.

        Raises:
            MalformedMessage: If ``message`` is not a string
        """
        start = time.perf_counter()
        keywords = extract_keywords(message, self.config.max_keywords)
        store = self.store

        project_metadata = self._fetch(
            "project metadata", None, lambda: store.get_project_metadata(project_id)
        )
        related_entities = (
            self._fetch(
                "related entities",
                [],
                lambda: store.find_related_entities(
                    project_id, keywords, limit=self.config.max_related_entities
                ),
            )
            if keywords
            else []
        )
        reference_documents = (
            self._fetch(
                "reference documents",
                [],
                lambda: store.search_reference_documents(
                    project_id, keywords, limit=self.config.max_reference_documents
                ),
            )
            if keywords
            else []
        )
        recent_conversation = self._fetch(
            "recent conversation",
            [],
            lambda: store.get_recent_conversation(
                source, project_id, limit=self.config.max_conversation_turns
            ),
        )
        user_context = (
            self._fetch("user context", None, lambda: store.get_user_context(user_id, project_id))
            if user_id
            else None
        )

        context = ExtractionContext(
            project_metadata=project_metadata,
            related_entities=related_entities[: self.config.max_related_entities],
            reference_documents=reference_documents[: self.config.max_reference_documents],
            recent_conversation=recent_conversation[: self.config.max_conversation_turns],
            user_context=user_context,
            keywords=keywords,
            source=source,
            assembly_time_ms=int((time.perf_counter() - start) * 1000),
        )
        context.quality_score = calculate_context_quality(context)

        logger.debug(
            "Assembled extraction context",
            project_id=project_id,
            quality=context.quality_score,
            entities=len(context.related_entities),
            documents=len(context.reference_documents),
        )
        return context
