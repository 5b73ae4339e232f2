"""Shared data models for the extraction pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500


class EntityType(str, Enum):
    """Entity types the generator may report."""

    DECISION = "Decision"
    RISK = "Risk"
    ACTION_ITEM = "Action Item"
    TASK = "Task"
    NONE = "None"


class Priority(str, Enum):
    """Priority / impact scale."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


# Context ---------------------------------------------------------------------


class ProjectMetadata(BaseModel):
    id: str
    name: str
    description: str = ""
    created_at: Optional[datetime] = None


class RelatedEntity(BaseModel):
    """Existing knowledge-graph entity that matched the message keywords."""

    id: str
    type: str
    title: str = ""
    description: str = ""
    relevance_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ReferenceDocument(BaseModel):
    id: str
    type: str = "document"
    title: str = ""
    content: str = ""
    source_url: str = ""
    relevance_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ConversationTurn(BaseModel):
    id: str
    content: str = ""
    source_type: str = "unknown"
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class UserContext(BaseModel):
    user_id: str
    username: str = ""
    email: str = ""
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    authority_level: Optional[int] = None


class ExtractionContext(BaseModel):
    """Material assembled for one extraction request. Never persisted."""

    project_metadata: Optional[ProjectMetadata] = None
    related_entities: List[RelatedEntity] = Field(default_factory=list)
    reference_documents: List[ReferenceDocument] = Field(default_factory=list)
    recent_conversation: List[ConversationTurn] = Field(default_factory=list)
    user_context: Optional[UserContext] = None
    keywords: List[str] = Field(default_factory=list)
    source: str = "unknown"
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    assembly_time_ms: int = 0


class ContextSummary(BaseModel):
    """Read-only projection of an ExtractionContext for logs and metrics."""

    has_project_metadata: bool
    related_entity_count: int
    reference_document_count: int
    conversation_turn_count: int
    has_user_context: bool
    quality_score: float
    assembly_time_ms: int
    keywords: List[str]


class SourceInfo(BaseModel):
    """Where a message came from (chat, email, commit, meeting, ...)."""

    type: str = "unknown"
    platform: Optional[str] = None
    id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Prompts ---------------------------------------------------------------------


class ExtractionPrompt(BaseModel):
    prompt: str
    system_prompt: str
    provider: str
    estimated_tokens: int


class CostEstimate(BaseModel):
    input_cost: float
    output_cost: float
    total_cost: float
    provider: str


# Generator output ------------------------------------------------------------


class CandidateEntity(BaseModel):
    """One untrusted entity as reported by the generator.

    Every field may hold any JSON value; nothing here is checked. Use
    ``response_validator.validate_entity`` before acting on it.
    """

    model_config = ConfigDict(extra="allow")

    entity_type: Any = None
    confidence: Any = None
    title: Any = None
    description: Any = None
    priority: Any = None
    impact: Any = None
    tags: Any = None
    mentioned_users: Any = None
    related_entity_ids: Any = None
    reasoning: Any = None
    citations: Any = None
    deadline: Any = None
    owner: Any = None


class ValidatedEntity(BaseModel):
    """Entity that passed validation and may drive decisions."""

    model_config = ConfigDict(extra="forbid")

    entity_type: EntityType
    confidence: float = Field(..., ge=0.0, le=1.0)
    title: str = Field(..., max_length=TITLE_MAX_LENGTH)
    description: str = Field(..., max_length=DESCRIPTION_MAX_LENGTH)
    priority: Priority = Priority.MEDIUM
    impact: Optional[Priority] = None
    tags: List[str] = Field(default_factory=list)
    mentioned_users: List[str] = Field(default_factory=list)
    related_entity_ids: List[Any] = Field(default_factory=list)
    reasoning: str = ""
    citations: List[str] = Field(default_factory=list)
    deadline: Optional[str] = None
    owner: Optional[str] = None

    @property
    def effective_impact(self) -> Optional[Priority]:
        """Impact, with priority standing in for Risk entities that lack one."""
        if self.impact is not None:
            return self.impact
        if self.entity_type == EntityType.RISK:
            return self.priority
        return None

    def summary(self) -> Dict[str, str]:
        return {"type": self.entity_type.value, "title": self.title}


class ModelResponse(BaseModel):
    """Raw generator output plus usage accounting."""

    text: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    fallback_used: bool = False
