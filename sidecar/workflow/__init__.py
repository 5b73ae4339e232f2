"""Decision rules and the proposal lifecycle."""

from sidecar.workflow.decision_engine import Action, Decision, determine_action
from sidecar.workflow.workflow_engine import (
    ApprovalResult,
    EntityResult,
    ProcessingResult,
    WorkflowEngine,
    normalize_entity_type,
)

__all__ = [
    "Action",
    "ApprovalResult",
    "Decision",
    "EntityResult",
    "ProcessingResult",
    "WorkflowEngine",
    "determine_action",
    "normalize_entity_type",
]
