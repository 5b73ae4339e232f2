"""Role-based auto-creation workflow.

Routes validated entities to the knowledge graph or to the proposal queue,
and owns the proposal lifecycle (pending -> approved | rejected). Every node
written here is paired with exactly one Evidence record in the same store
transaction.
"""

from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from sidecar.errors import AlreadyReviewed, ProposalNotFound
from sidecar.extraction.models import EntityType, SourceInfo, ValidatedEntity
from sidecar.extraction.prompt_builder import coerce_source
from sidecar.storage.base import GraphStore
from sidecar.storage.schemas import (
    Evidence,
    KnowledgeGraphNode,
    Proposal,
    ProposalStats,
    ProposalStatus,
    SidecarSettings,
)
from sidecar.utils.config import Config
from sidecar.workflow.decision_engine import Action, Decision, determine_action

NODE_ATTR_FIELDS = (
    "title",
    "description",
    "priority",
    "impact",
    "tags",
    "mentioned_users",
    "related_entity_ids",
    "deadline",
    "owner",
)

_TYPE_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_entity_type(entity_type: EntityType | str) -> str:
    """Graph casing for an entity type: ``"Action Item"`` -> ``"action_item"``."""
    value = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
    return _TYPE_SEPARATORS.sub("_", value.strip()).lower()


class EntityResult(BaseModel):
    """What happened to one entity in a batch."""

    entity: Dict[str, str]
    action: str  # auto_created | proposal_created | skipped | error
    reason: Optional[str] = None
    entity_id: Optional[str] = None
    evidence_id: Optional[str] = None
    proposal_id: Optional[str] = None
    requires_approval_from: Optional[str] = None
    error: Optional[str] = None


class ProcessingSummary(BaseModel):
    auto_created: int = 0
    proposals: int = 0
    skipped: int = 0


class ProcessingResult(BaseModel):
    processed: int
    results: List[EntityResult] = Field(default_factory=list)
    summary: ProcessingSummary = Field(default_factory=ProcessingSummary)


class ApprovalResult(BaseModel):
    proposal_id: str
    entity_id: str
    evidence_id: str
    status: ProposalStatus = ProposalStatus.APPROVED


class WorkflowAuditTrail:
    """JSONL log of workflow events, one line per graph or proposal change.

    Entries are written after the store transaction has committed, so a failed
    append is logged and counted in ``failed_writes`` but never raised.
    """

    def __init__(self, path: Path, *, enabled: bool = True) -> None:
        self.path = path
        self.enabled = enabled
        self.failed_writes = 0

    def record(self, event: str, *, project_id: Optional[str] = None, **fields: Any) -> bool:
        if not self.enabled:
            return False

        entry = {
            "event": event,
            "project_id": project_id,
            "timestamp": datetime.now(UTC).isoformat(),
            **fields,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, sort_keys=True, default=str) + "\n")
        except OSError as exc:
            self.failed_writes += 1
            logger.warning(f"Audit entry '{event}' not written to {self.path}: {exc}")
            return False
        return True


class WorkflowEngine:
    """Decide and execute auto-create / propose / skip for extracted entities."""

    def __init__(
        self,
        store: GraphStore,
        config: Config | None = None,
        audit_path: Path | None = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self._audit = WorkflowAuditTrail(
            audit_path or Path(self.config.curation.audit_path),
            enabled=self.config.curation.enable_audit_trail,
        )

    # Public API -----------------------------------------------------
    def process_extracted_entities(
        self,
        entities: Sequence[ValidatedEntity],
        user_id: str,
        project_id: str,
        source: SourceInfo | Dict[str, Any] | str | None = None,
    ) -> ProcessingResult:
        """Route every entity independently; one failure never aborts the batch."""
        source_info = coerce_source(source)
        settings = self.get_sidecar_settings(project_id)
        logger.info(
            f"Processing {len(entities)} entities for user {user_id} in project {project_id}"
        )

        def _run(entity: ValidatedEntity) -> EntityResult:
            try:
                return self.process_entity(entity, user_id, project_id, source_info, settings)
            except Exception as exc:  # noqa: BLE001 - isolate per-entity failures
                logger.error(
                    "Error processing entity",
                    entity_type=entity.entity_type.value,
                    title=entity.title,
                    error=str(exc),
                )
                return EntityResult(entity=entity.summary(), action="error", error=str(exc))

        workers = min(self.config.workflow.max_workers, len(entities))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(_run, entities))
        else:
            results = [_run(entity) for entity in entities]

        summary = ProcessingSummary()
        for result in results:
            if result.action == "auto_created":
                summary.auto_created += 1
            elif result.action == "proposal_created":
                summary.proposals += 1
            else:
                summary.skipped += 1

        return ProcessingResult(processed=len(entities), results=results, summary=summary)

    def process_entity(
        self,
        entity: ValidatedEntity,
        user_id: str,
        project_id: str,
        source: SourceInfo,
        settings: SidecarSettings | None = None,
    ) -> EntityResult:
        settings = settings or self.get_sidecar_settings(project_id)

        if entity.entity_type == EntityType.NONE:
            return EntityResult(
                entity=entity.summary(), action="skipped", reason="Not project related"
            )
        if entity.entity_type.value not in settings.detection_types:
            return EntityResult(
                entity=entity.summary(),
                action="skipped",
                reason=f"{entity.entity_type.value} detection disabled for project",
            )

        decision = self.decide(entity, user_id, project_id, settings)
        if decision.action == Action.AUTO_CREATE:
            result = self.auto_create_entity(
                entity, user_id, project_id, source, settings=settings
            )
            result.reason = decision.reason
            return result
        if decision.action == Action.CREATE_PROPOSAL:
            result = self.create_proposal(
                entity,
                user_id,
                project_id,
                decision.approver_role_id,
                source,
                settings=settings,
            )
            result.reason = decision.reason
            return result
        return EntityResult(entity=entity.summary(), action="skipped", reason=decision.reason)

    def decide(
        self,
        entity: ValidatedEntity,
        user_id: str,
        project_id: str,
        settings: SidecarSettings | None = None,
    ) -> Decision:
        """Look up role, permission and settings, then run the rule list."""
        settings = settings or self.get_sidecar_settings(project_id)
        user_role = self.store.get_user_role(user_id, project_id)
        permission = (
            self.store.get_role_permission(user_role.role_id, entity.entity_type.value)
            if user_role is not None
            else None
        )
        decision = determine_action(
            entity,
            user_role.authority_level if user_role is not None else None,
            permission,
            settings,
            high_authority_level=self.config.workflow.high_authority_level,
        )
        logger.debug(
            "Decision",
            entity_type=entity.entity_type.value,
            confidence=entity.confidence,
            authority=user_role.authority_level if user_role else None,
            action=decision.action.value,
            rule=decision.rule,
        )
        return decision

    def auto_create_entity(
        self,
        entity: ValidatedEntity,
        user_id: str,
        project_id: str,
        source: SourceInfo | Dict[str, Any] | str | None = None,
        *,
        settings: SidecarSettings | None = None,
    ) -> EntityResult:
        """Write node + evidence atomically. Store failures propagate."""
        source_info = coerce_source(source)
        node_type = normalize_entity_type(entity.entity_type)
        node = KnowledgeGraphNode(
            type=node_type,
            project_id=project_id,
            attrs=self._node_attrs(
                entity.model_dump(mode="json"),
                ai_confidence=entity.confidence,
                ai_reasoning=entity.reasoning,
            ),
            ai_confidence=entity.confidence,
            created_by=user_id,
        )
        evidence = self._evidence_for(
            node,
            project_id=project_id,
            source=source_info,
            citations=entity.citations,
            created_by=user_id,
        )

        node_id, evidence_id = self.store.create_node_with_evidence(node, evidence)
        logger.info(f"Auto-created {node_type} node {node_id}")

        self._audit.record(
            "auto_created",
            project_id=project_id,
            entity_id=node_id,
            evidence_id=evidence_id,
            entity_type=entity.entity_type.value,
            user_id=user_id,
        )
        self._notify_stakeholders(entity.summary(), "auto_created", None, settings)

        return EntityResult(
            entity=entity.summary(),
            action="auto_created",
            entity_id=node_id,
            evidence_id=evidence_id,
        )

    def create_proposal(
        self,
        entity: ValidatedEntity,
        user_id: str,
        project_id: str,
        approval_role_id: Optional[str],
        source: SourceInfo | Dict[str, Any] | str | None = None,
        *,
        settings: SidecarSettings | None = None,
    ) -> EntityResult:
        """Persist a pending proposal. Never touches the knowledge graph."""
        source_info = coerce_source(source)
        proposal = Proposal(
            project_id=project_id,
            proposed_by=user_id,
            entity_type=entity.entity_type.value,
            proposed_data=entity.model_dump(mode="json"),
            ai_analysis={
                "confidence": entity.confidence,
                "reasoning": entity.reasoning,
                "citations": list(entity.citations),
                "mentioned_users": list(entity.mentioned_users),
                "related_entity_ids": list(entity.related_entity_ids),
            },
            confidence=entity.confidence,
            source_type=source_info.type,
            source_id=source_info.id,
            source_platform=source_info.platform,
            source_metadata=dict(source_info.metadata),
            requires_approval_from=approval_role_id,
        )
        proposal_id = self.store.insert_proposal(proposal)
        logger.info(f"Created proposal {proposal_id} for {entity.entity_type.value}")

        approver_role = self.store.get_role(approval_role_id) if approval_role_id else None
        approver_name = (
            approver_role.role_name if approver_role else self.config.workflow.default_approver_name
        )

        self._audit.record(
            "proposal_created",
            project_id=project_id,
            proposal_id=proposal_id,
            entity_type=entity.entity_type.value,
            user_id=user_id,
            requires_approval_from=approval_role_id,
        )
        self._notify_stakeholders(entity.summary(), "proposal_created", approver_name, settings)

        return EntityResult(
            entity=entity.summary(),
            action="proposal_created",
            proposal_id=proposal_id,
            requires_approval_from=approver_name,
        )

    def approve_proposal(
        self, proposal_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> ApprovalResult:
        """Approve a pending proposal and materialize its entity.

        Raises:
            ProposalNotFound: Unknown proposal id
            AlreadyReviewed: Proposal already approved or rejected
        """
        proposal = self._pending_proposal(proposal_id)

        node = KnowledgeGraphNode(
            type=normalize_entity_type(proposal.entity_type),
            project_id=proposal.project_id,
            attrs=self._node_attrs(
                proposal.proposed_data,
                ai_confidence=proposal.confidence,
                ai_reasoning=proposal.ai_analysis.get("reasoning"),
                approved_by=reviewer_id,
                approved_at=datetime.now(UTC).isoformat(),
            ),
            ai_confidence=proposal.confidence,
            created_by=reviewer_id,
        )
        evidence = self._evidence_for(
            node,
            project_id=proposal.project_id,
            source=SourceInfo(
                type=proposal.source_type,
                platform=proposal.source_platform,
                id=proposal.source_id,
                metadata=proposal.source_metadata,
            ),
            citations=proposal.ai_analysis.get("citations") or [],
            created_by=reviewer_id,
        )

        node_id, evidence_id = self.store.approve_proposal_with_node(
            proposal_id, reviewer_id, notes, node, evidence
        )
        logger.info(f"Approved proposal {proposal_id}, created entity {node_id}")
        self._audit.record(
            "proposal_approved",
            project_id=node.project_id,
            proposal_id=proposal_id,
            entity_id=node_id,
            reviewer_id=reviewer_id,
        )
        return ApprovalResult(proposal_id=proposal_id, entity_id=node_id, evidence_id=evidence_id)

    def reject_proposal(
        self, proposal_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> Proposal:
        """Reject a pending proposal. Never writes to the knowledge graph.

        Raises:
            ProposalNotFound: Unknown proposal id
            AlreadyReviewed: Proposal already approved or rejected
        """
        self._pending_proposal(proposal_id)
        if not self.store.update_proposal_status(
            proposal_id, ProposalStatus.REJECTED, reviewer_id, notes
        ):
            current = self.store.get_proposal(proposal_id)
            raise AlreadyReviewed(proposal_id, current.status.value if current else "missing")

        logger.info(f"Rejected proposal {proposal_id}")
        rejected = self.store.get_proposal(proposal_id)
        self._audit.record(
            "proposal_rejected",
            project_id=rejected.project_id if rejected else None,
            proposal_id=proposal_id,
            reviewer_id=reviewer_id,
            notes=notes,
        )
        return rejected

    def get_pending_proposals(
        self, project_id: str, role_id: Optional[str] = None
    ) -> List[Proposal]:
        return self.store.list_proposals(
            project_id, status=ProposalStatus.PENDING, role_id=role_id
        )

    def get_proposal_stats(self, project_id: str) -> ProposalStats:
        return self.store.get_proposal_stats(project_id)

    def get_sidecar_settings(self, project_id: str) -> SidecarSettings:
        """Project settings, or the configured defaults when none are stored."""
        settings = self.store.get_sidecar_settings(project_id)
        if settings is not None:
            return settings
        return SidecarSettings(
            auto_create_threshold=self.config.workflow.auto_create_threshold,
            detection_types=list(self.config.workflow.detection_types),
        )

    # Helpers --------------------------------------------------------
    def _pending_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        if not proposal.is_pending:
            raise AlreadyReviewed(proposal_id, proposal.status.value)
        return proposal

    @staticmethod
    def _node_attrs(payload: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
        attrs = {key: payload.get(key) for key in NODE_ATTR_FIELDS}
        for key in ("tags", "mentioned_users", "related_entity_ids"):
            attrs[key] = attrs[key] or []
        attrs.update({"status": "open", "ai_extracted": True})
        attrs.update(extra)
        return attrs

    @staticmethod
    def _evidence_for(
        node: KnowledgeGraphNode,
        *,
        project_id: str,
        source: SourceInfo,
        citations: Sequence[str],
        created_by: Optional[str],
    ) -> Evidence:
        return Evidence(
            entity_id=node.id,
            entity_type=node.type,
            project_id=project_id,
            source_type=source.type,
            source_id=source.id,
            source_platform=source.platform,
            quotes=[str(c) for c in citations],
            metadata=dict(source.metadata),
            created_by=created_by,
        )

    def _notify_stakeholders(
        self,
        entity: Dict[str, str],
        action: str,
        approver_name: Optional[str],
        settings: SidecarSettings | None,
    ) -> None:
        logger.info(f"Notification: {action} for {entity['type']} - \"{entity['title']}\"")
        channels = []
        if settings is None or settings.notify_chat_platform:
            channels.append("chat platform")
        if settings is not None and settings.notify_email:
            channels.append("email")
        if not channels:
            return

        via = " and ".join(channels)
        if action == "auto_created":
            logger.info(f"Would notify project members via {via} about auto-created {entity['type']}")
        elif action == "proposal_created":
            logger.info(f"Would notify {approver_name or 'approver'} via {via} about new proposal")
