from __future__ import annotations

import json

import pytest

from sidecar.errors import AlreadyReviewed, ProposalNotFound
from sidecar.extraction.models import EntityType, Priority, SourceInfo, ValidatedEntity
from sidecar.storage.schemas import ProposalStatus, RoleInfo, SidecarSettings
from sidecar.workflow.workflow_engine import WorkflowEngine, normalize_entity_type

PROJECT = "proj-1"


def _entity(confidence: float = 0.9, **overrides) -> ValidatedEntity:
    data = {
        "entity_type": EntityType.DECISION,
        "confidence": confidence,
        "title": "Adopt PostgreSQL",
        "description": "Move billing to PostgreSQL",
        "tags": ["database"],
        "citations": ["we decided to migrate"],
        "reasoning": "Explicit decision",
    }
    data.update(overrides)
    return ValidatedEntity(**data)


@pytest.fixture
def engine(store, config) -> WorkflowEngine:
    store.add_member("lead", PROJECT, role_id="role-lead", role_name="Tech Lead", authority_level=4)
    store.add_member("dev", PROJECT, role_id="role-dev", role_name="Developer", authority_level=2)
    store.add_permission("role-dev", "Decision", approval_from_role_id="role-lead")
    return WorkflowEngine(store, config)


def test_normalize_entity_type() -> None:
    assert normalize_entity_type(EntityType.ACTION_ITEM) == "action_item"
    assert normalize_entity_type("Decision") == "decision"


def test_auto_create_writes_node_and_evidence(engine, store) -> None:
    source = SourceInfo(type="chat", platform="slack", id="msg-1", metadata={"channel": "#db"})

    result = engine.process_extracted_entities([_entity(0.95)], "lead", PROJECT, source)

    assert result.summary.auto_created == 1
    item = result.results[0]
    assert item.action == "auto_created"
    assert "High confidence" in item.reason

    node = store.nodes[item.entity_id]
    evidence = store.evidence[item.evidence_id]
    assert node.type == "decision"
    assert node.attrs["title"] == "Adopt PostgreSQL"
    assert node.attrs["ai_extracted"] is True
    assert node.evidence_id == evidence.id
    assert evidence.entity_id == node.id
    assert evidence.quotes == ["we decided to migrate"]
    assert evidence.source_platform == "slack"
    assert evidence.metadata == {"channel": "#db"}


def test_low_authority_creates_pending_proposal(engine, store) -> None:
    result = engine.process_extracted_entities([_entity(0.85)], "dev", PROJECT, "email")

    item = result.results[0]
    assert item.action == "proposal_created"
    assert item.requires_approval_from == "Tech Lead"
    assert "insufficient authority" in item.reason
    assert store.nodes == {}

    proposal = store.proposals[item.proposal_id]
    assert proposal.status == ProposalStatus.PENDING
    assert proposal.requires_approval_from == "role-lead"
    assert proposal.source_type == "email"
    assert proposal.proposed_data["entity_type"] == "Decision"
    assert proposal.ai_analysis["citations"] == ["we decided to migrate"]


def test_default_approver_name_when_role_unknown(store, config) -> None:
    store.add_member("dev", PROJECT, authority_level=1)

    result = WorkflowEngine(store, config).process_extracted_entities([_entity(0.9)], "dev", PROJECT)

    assert result.results[0].requires_approval_from == "Project Lead"


def test_user_without_role_is_skipped(engine, store) -> None:
    result = engine.process_extracted_entities([_entity(0.99)], "stranger", PROJECT)

    assert result.summary.skipped == 1
    assert result.results[0].reason == "User has no role in this project"
    assert store.nodes == {} and store.proposals == {}


def test_none_type_and_disabled_types_are_skipped(engine, store) -> None:
    store.settings[PROJECT] = SidecarSettings(detection_types=["Decision"])
    entities = [
        _entity(0.99, entity_type=EntityType.NONE),
        _entity(0.99, entity_type=EntityType.TASK),
        _entity(0.99),
    ]

    result = engine.process_extracted_entities(entities, "lead", PROJECT)

    assert [r.action for r in result.results] == ["skipped", "skipped", "auto_created"]
    assert result.results[0].reason == "Not project related"
    assert "detection disabled" in result.results[1].reason


def test_project_threshold_overrides_config_default(engine, store) -> None:
    store.settings[PROJECT] = SidecarSettings(auto_create_threshold=0.97)

    result = engine.process_extracted_entities([_entity(0.95)], "lead", PROJECT)

    assert result.results[0].action == "proposal_created"


def test_critical_risk_goes_to_review(engine, store) -> None:
    risk = _entity(0.99, entity_type=EntityType.RISK, impact=Priority.CRITICAL)

    result = engine.process_extracted_entities([risk], "lead", PROJECT)

    assert result.results[0].action == "proposal_created"
    assert "Critical impact" in result.results[0].reason


def test_one_failing_entity_does_not_abort_batch(engine, store) -> None:
    store.fail_writes = True
    entities = [_entity(0.95), _entity(0.7, title="Needs review")]

    result = engine.process_extracted_entities(entities, "lead", PROJECT)

    assert result.processed == 2
    assert result.results[0].action == "error"
    assert "store unavailable" in result.results[0].error
    assert result.summary.skipped == 1
    assert result.results[1].action == "proposal_created"


def test_parallel_processing_keeps_input_order(store, config) -> None:
    config.workflow.max_workers = 4
    store.add_member("lead", PROJECT, authority_level=5)
    entities = [_entity(0.95, title=f"Decision {i}") for i in range(8)]

    result = WorkflowEngine(store, config).process_extracted_entities(entities, "lead", PROJECT)

    assert [r.entity["title"] for r in result.results] == [f"Decision {i}" for i in range(8)]
    assert len(store.nodes) == 8


def test_approve_materializes_entity_once(engine, store) -> None:
    item = engine.process_extracted_entities([_entity(0.85)], "dev", PROJECT, "chat").results[0]

    approval = engine.approve_proposal(item.proposal_id, "lead", "Looks right")

    proposal = store.proposals[item.proposal_id]
    assert proposal.status == ProposalStatus.APPROVED
    assert proposal.entity_id == approval.entity_id
    node = store.nodes[approval.entity_id]
    assert node.attrs["approved_by"] == "lead"
    assert store.evidence[approval.evidence_id].source_type == "chat"

    with pytest.raises(AlreadyReviewed):
        engine.approve_proposal(item.proposal_id, "lead")
    assert len(store.nodes) == 1
    assert len(store.evidence) == 1


def test_reject_never_creates_node(engine, store) -> None:
    item = engine.process_extracted_entities([_entity(0.85)], "dev", PROJECT).results[0]

    rejected = engine.reject_proposal(item.proposal_id, "lead", "Duplicate")

    assert rejected.status == ProposalStatus.REJECTED
    assert rejected.review_notes == "Duplicate"
    assert store.nodes == {}

    with pytest.raises(AlreadyReviewed):
        engine.reject_proposal(item.proposal_id, "lead")
    with pytest.raises(AlreadyReviewed):
        engine.approve_proposal(item.proposal_id, "lead")
    assert store.nodes == {}


def test_unknown_proposal(engine) -> None:
    with pytest.raises(ProposalNotFound):
        engine.approve_proposal("missing", "lead")
    with pytest.raises(ProposalNotFound):
        engine.reject_proposal("missing", "lead")


def test_pending_proposals_and_stats(engine, store) -> None:
    store.roles["role-lead"] = RoleInfo(id="role-lead", role_name="Tech Lead", authority_level=4)
    results = engine.process_extracted_entities(
        [_entity(0.85, title=f"P{i}") for i in range(3)], "dev", PROJECT
    ).results
    engine.reject_proposal(results[0].proposal_id, "lead")

    pending = engine.get_pending_proposals(PROJECT, role_id="role-lead")
    stats = engine.get_proposal_stats(PROJECT)

    assert {p.proposed_data["title"] for p in pending} == {"P1", "P2"}
    assert engine.get_pending_proposals(PROJECT, role_id="role-other") == []
    assert (stats.total, stats.pending, stats.rejected) == (3, 2, 1)


def test_audit_trail_records_events(engine, config, tmp_path) -> None:
    item = engine.process_extracted_entities([_entity(0.85)], "dev", PROJECT).results[0]
    engine.approve_proposal(item.proposal_id, "lead")

    lines = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    assert [e["event"] for e in entries] == ["proposal_created", "proposal_approved"]
    assert all(e["project_id"] == PROJECT for e in entries)
    assert entries[1]["proposal_id"] == item.proposal_id


def test_audit_trail_can_be_disabled(store, config, tmp_path) -> None:
    config.curation.enable_audit_trail = False
    store.add_member("lead", PROJECT, authority_level=5)

    WorkflowEngine(store, config).process_extracted_entities([_entity(0.95)], "lead", PROJECT)

    assert not (tmp_path / "audit.jsonl").exists()


def test_unwritable_audit_log_does_not_misreport_committed_writes(store, config, tmp_path) -> None:
    store.add_member("lead", PROJECT, role_id="role-lead", authority_level=4)
    store.add_member("dev", PROJECT, role_id="role-dev", authority_level=1)
    engine = WorkflowEngine(store, config, audit_path=tmp_path)

    created = engine.process_extracted_entities([_entity(0.95)], "lead", PROJECT)
    proposed = engine.process_extracted_entities([_entity(0.85)], "dev", PROJECT)
    approval = engine.approve_proposal(proposed.results[0].proposal_id, "lead")

    assert created.results[0].action == "auto_created"
    assert created.summary.auto_created == 1
    assert created.summary.skipped == 0
    assert approval.entity_id in store.nodes
    assert len(store.nodes) == 2
    assert engine._audit.failed_writes == 3


def test_sidecar_settings_fall_back_to_config(engine, config) -> None:
    config.workflow.auto_create_threshold = 0.6

    settings = engine.get_sidecar_settings("unknown-project")

    assert settings.auto_create_threshold == 0.6
    assert settings.detection_types == ["Decision", "Risk", "Action Item", "Task"]
