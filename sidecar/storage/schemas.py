"""Pydantic models for persisted graph records (nodes, evidence, proposals, policy)."""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sidecar.utils.config import DEFAULT_DETECTION_TYPES


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _dump_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class ProposalStatus(str, Enum):
    """Proposal lifecycle states. Approved and rejected are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RolePermission(BaseModel):
    """Per (role, entity type) creation policy. Read-only to this package."""

    role_id: str
    entity_type: str
    can_create: bool = False
    auto_create_enabled: bool = False
    auto_create_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    requires_approval: bool = True
    approval_from_role_id: Optional[str] = None


class RoleInfo(BaseModel):
    id: str
    role_name: str
    role_code: str = ""
    authority_level: int = Field(default=1, ge=0, le=5)


class UserRole(BaseModel):
    """A user's effective role within one project."""

    user_id: str
    project_id: str
    role_id: str
    role_name: str = ""
    authority_level: int = Field(default=1, ge=0, le=5)


class SidecarSettings(BaseModel):
    """Project-level sidecar settings."""

    auto_create_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    detection_types: List[str] = Field(default_factory=lambda: list(DEFAULT_DETECTION_TYPES))
    notify_chat_platform: bool = True
    notify_email: bool = False


class Evidence(BaseModel):
    """Immutable provenance linking a graph node to its source message."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    entity_id: str
    entity_type: str
    project_id: Optional[str] = None
    evidence_type: str = "ai_extraction"
    source_type: str = "unknown"
    source_id: Optional[str] = None
    source_platform: Optional[str] = None
    quotes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    extraction_method: str = "llm_analysis"
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def to_neo4j_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["metadata"] = _dump_json(self.metadata)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_neo4j(cls, props: Dict[str, Any]) -> "Evidence":
        data = dict(props)
        data["metadata"] = _load_json(data.get("metadata")) or {}
        return cls(**data)


class KnowledgeGraphNode(BaseModel):
    """Materialized project entity."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    project_id: str
    attrs: Dict[str, Any] = Field(default_factory=dict)
    created_by_ai: bool = True
    ai_confidence: Optional[float] = None
    created_by: Optional[str] = None
    evidence_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Node type cannot be empty")
        return v

    def to_neo4j_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["attrs"] = _dump_json(self.attrs)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_neo4j(cls, props: Dict[str, Any]) -> "KnowledgeGraphNode":
        data = dict(props)
        data["attrs"] = _load_json(data.get("attrs")) or {}
        return cls(**data)


class Proposal(BaseModel):
    """Entity awaiting human review before it enters the knowledge graph."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    proposed_by: str
    entity_type: str
    proposed_data: Dict[str, Any] = Field(default_factory=dict)
    ai_analysis: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_type: str = "unknown"
    source_id: Optional[str] = None
    source_platform: Optional[str] = None
    source_metadata: Dict[str, Any] = Field(default_factory=dict)
    status: ProposalStatus = ProposalStatus.PENDING
    requires_approval_from: Optional[str] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    entity_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    reviewed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ProposalStatus.PENDING

    def to_neo4j_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["proposed_data"] = _dump_json(self.proposed_data)
        data["ai_analysis"] = _dump_json(self.ai_analysis)
        data["source_metadata"] = _dump_json(self.source_metadata)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["reviewed_at"] = self.reviewed_at.isoformat() if self.reviewed_at else None
        return data

    @classmethod
    def from_neo4j(cls, props: Dict[str, Any]) -> "Proposal":
        data = dict(props)
        for key in ("proposed_data", "ai_analysis", "source_metadata"):
            data[key] = _load_json(data.get(key)) or {}
        return cls(**data)


class ProposalStats(BaseModel):
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total: int = 0
    avg_confidence: Optional[float] = None


class UsageRecord(BaseModel):
    """Token usage and estimated cost for one generator call."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: Optional[str] = None
    feature_type: str = "entity_extraction"
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_neo4j_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["total_tokens"] = self.total_tokens
        data["created_at"] = self.created_at.isoformat()
        return data
