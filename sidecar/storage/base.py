"""Narrow store interface consumed by the extraction and workflow layers."""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple

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


class ContextSource(Protocol):
    """Read side used by context assembly."""

    def get_project_metadata(self, project_id: str) -> Optional[ProjectMetadata]: ...

    def find_related_entities(
        self, project_id: str, keywords: Sequence[str], *, limit: int
    ) -> List[RelatedEntity]: ...

    def search_reference_documents(
        self, project_id: str, keywords: Sequence[str], *, limit: int
    ) -> List[ReferenceDocument]: ...

    def get_recent_conversation(
        self, source_type: str, project_id: str, *, limit: int
    ) -> List[ConversationTurn]: ...

    def get_user_context(self, user_id: str, project_id: str) -> Optional[UserContext]: ...


class GraphStore(ContextSource, Protocol):
    """Everything the workflow engine needs from persistence."""

    def get_user_role(self, user_id: str, project_id: str) -> Optional[UserRole]: ...

    def get_role(self, role_id: str) -> Optional[RoleInfo]: ...

    def get_role_permission(self, role_id: str, entity_type: str) -> Optional[RolePermission]: ...

    def get_sidecar_settings(self, project_id: str) -> Optional[SidecarSettings]: ...

    def create_node_with_evidence(
        self, node: KnowledgeGraphNode, evidence: Evidence
    ) -> Tuple[str, str]:
        """Write a node and its evidence atomically; return (node_id, evidence_id)."""
        ...

    def insert_proposal(self, proposal: Proposal) -> str: ...

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...

    def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        reviewer_id: str,
        notes: Optional[str],
    ) -> bool:
        """Transition a pending proposal; return False if it was not pending."""
        ...

    def approve_proposal_with_node(
        self,
        proposal_id: str,
        reviewer_id: str,
        notes: Optional[str],
        node: KnowledgeGraphNode,
        evidence: Evidence,
    ) -> Tuple[str, str]:
        """Mark approved and write node + evidence in one transaction.

        Raises:
            ProposalNotFound: no proposal with that id
            AlreadyReviewed: proposal is no longer pending (nothing is written)
        """
        ...

    def list_proposals(
        self,
        project_id: str,
        *,
        status: Optional[ProposalStatus] = None,
        role_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Proposal]: ...

    def get_proposal_stats(self, project_id: str) -> ProposalStats: ...

    def record_usage(self, record: UsageRecord) -> str: ...
