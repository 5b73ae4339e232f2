"""Shared fixtures: an in-memory GraphStore and a credential-free Config."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from sidecar.errors import AlreadyReviewed, ProposalNotFound
from sidecar.extraction.models import (
    ConversationTurn,
    ProjectMetadata,
    ReferenceDocument,
    RelatedEntity,
    UserContext,
)
from sidecar.storage.schemas import (
    Evidence,
    KnowledgeGraphNode,
    Proposal,
    ProposalStats,
    ProposalStatus,
    RoleInfo,
    RolePermission,
    SidecarSettings,
    UsageRecord,
    UserRole,
)
from sidecar.utils.config import Config, CurationConfig, LLMConfig


class InMemoryStore:
    """GraphStore backed by dicts. ``fail_writes`` makes node writes raise."""

    def __init__(self) -> None:
        self.projects: Dict[str, ProjectMetadata] = {}
        self.related: List[RelatedEntity] = []
        self.documents: List[ReferenceDocument] = []
        self.conversation: List[ConversationTurn] = []
        self.user_contexts: Dict[Tuple[str, str], UserContext] = {}
        self.user_roles: Dict[Tuple[str, str], UserRole] = {}
        self.roles: Dict[str, RoleInfo] = {}
        self.permissions: Dict[Tuple[str, str], RolePermission] = {}
        self.settings: Dict[str, SidecarSettings] = {}
        self.nodes: Dict[str, KnowledgeGraphNode] = {}
        self.evidence: Dict[str, Evidence] = {}
        self.proposals: Dict[str, Proposal] = {}
        self.usage: List[UsageRecord] = []
        self.fail_writes = False
        self.closed = False

    # Seeding helpers
    def add_member(
        self,
        user_id: str,
        project_id: str,
        *,
        role_id: str = "role-dev",
        role_name: str = "Developer",
        authority_level: int = 2,
    ) -> None:
        self.user_roles[(user_id, project_id)] = UserRole(
            user_id=user_id,
            project_id=project_id,
            role_id=role_id,
            role_name=role_name,
            authority_level=authority_level,
        )
        self.roles.setdefault(
            role_id, RoleInfo(id=role_id, role_name=role_name, authority_level=authority_level)
        )

    def add_permission(self, role_id: str, entity_type: str, **fields) -> RolePermission:
        permission = RolePermission(role_id=role_id, entity_type=entity_type, **fields)
        self.permissions[(role_id, entity_type)] = permission
        return permission

    # ContextSource
    def get_project_metadata(self, project_id: str) -> Optional[ProjectMetadata]:
        return self.projects.get(project_id)

    def find_related_entities(
        self, project_id: str, keywords: Sequence[str], *, limit: int
    ) -> List[RelatedEntity]:
        return self.related[:limit]

    def search_reference_documents(
        self, project_id: str, keywords: Sequence[str], *, limit: int
    ) -> List[ReferenceDocument]:
        return self.documents[:limit]

    def get_recent_conversation(
        self, source_type: str, project_id: str, *, limit: int
    ) -> List[ConversationTurn]:
        return self.conversation[:limit]

    def get_user_context(self, user_id: str, project_id: str) -> Optional[UserContext]:
        return self.user_contexts.get((user_id, project_id))

    # GraphStore
    def get_user_role(self, user_id: str, project_id: str) -> Optional[UserRole]:
        return self.user_roles.get((user_id, project_id))

    def get_role(self, role_id: str) -> Optional[RoleInfo]:
        return self.roles.get(role_id)

    def get_role_permission(self, role_id: str, entity_type: str) -> Optional[RolePermission]:
        return self.permissions.get((role_id, entity_type))

    def get_sidecar_settings(self, project_id: str) -> Optional[SidecarSettings]:
        return self.settings.get(project_id)

    def create_node_with_evidence(
        self, node: KnowledgeGraphNode, evidence: Evidence
    ) -> Tuple[str, str]:
        if self.fail_writes:
            raise RuntimeError("store unavailable")
        self.nodes[node.id] = node.model_copy(update={"evidence_id": evidence.id})
        self.evidence[evidence.id] = evidence
        return node.id, evidence.id

    def insert_proposal(self, proposal: Proposal) -> str:
        self.proposals[proposal.id] = proposal
        return proposal.id

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        return self.proposals.get(proposal_id)

    def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        reviewer_id: str,
        notes: Optional[str],
    ) -> bool:
        proposal = self.proposals.get(proposal_id)
        if proposal is None or not proposal.is_pending:
            return False
        self.proposals[proposal_id] = proposal.model_copy(
            update={
                "status": status,
                "reviewed_by": reviewer_id,
                "review_notes": notes,
                "reviewed_at": datetime.now(UTC),
            }
        )
        return True

    def approve_proposal_with_node(
        self,
        proposal_id: str,
        reviewer_id: str,
        notes: Optional[str],
        node: KnowledgeGraphNode,
        evidence: Evidence,
    ) -> Tuple[str, str]:
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        if not proposal.is_pending:
            raise AlreadyReviewed(proposal_id, proposal.status.value)
        node_id, evidence_id = self.create_node_with_evidence(node, evidence)
        self.proposals[proposal_id] = proposal.model_copy(
            update={
                "status": ProposalStatus.APPROVED,
                "reviewed_by": reviewer_id,
                "review_notes": notes,
                "reviewed_at": datetime.now(UTC),
                "entity_id": node_id,
            }
        )
        return node_id, evidence_id

    def list_proposals(
        self,
        project_id: str,
        *,
        status: Optional[ProposalStatus] = None,
        role_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Proposal]:
        rows = [
            p
            for p in self.proposals.values()
            if p.project_id == project_id
            and (status is None or p.status == status)
            and (role_id is None or p.requires_approval_from in (None, role_id))
        ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    def get_proposal_stats(self, project_id: str) -> ProposalStats:
        rows = [p for p in self.proposals.values() if p.project_id == project_id]
        stats = ProposalStats(total=len(rows))
        for proposal in rows:
            setattr(stats, proposal.status.value, getattr(stats, proposal.status.value) + 1)
        if rows:
            stats.avg_confidence = sum(p.confidence for p in rows) / len(rows)
        return stats

    def record_usage(self, record: UsageRecord) -> str:
        self.usage.append(record)
        return record.id

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with no API keys, no fallback and the audit trail under tmp_path."""
    return Config(
        llm=LLMConfig(fallback_provider=None, jitter=0.0),
        curation=CurationConfig(audit_path=str(tmp_path / "audit.jsonl")),
        anthropic_api_key="",
        openai_api_key="",
        google_ai_api_key="",
    )
