"""Rule-based routing of validated entities.

Rules are an ordered list of guards evaluated top to bottom; the first guard
that matches decides. Order matters: the "no role" precondition comes first
and the critical-impact override dominates every auto-create rule.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from sidecar.extraction.models import Priority, ValidatedEntity
from sidecar.storage.schemas import RolePermission, SidecarSettings

DEFAULT_HIGH_AUTHORITY_LEVEL = 3


class Action(str, Enum):
    AUTO_CREATE = "auto_create"
    CREATE_PROPOSAL = "create_proposal"
    SKIP = "skip"


class Decision(BaseModel):
    """Outcome of rule evaluation for one entity."""

    action: Action
    reason: str
    rule: str
    approver_role_id: Optional[str] = None


@dataclass(frozen=True)
class RuleInput:
    entity: ValidatedEntity
    authority_level: Optional[int]
    permission: Optional[RolePermission]
    settings: SidecarSettings
    high_authority_level: int = DEFAULT_HIGH_AUTHORITY_LEVEL

    @property
    def required_threshold(self) -> float:
        if self.permission is not None:
            return self.permission.auto_create_threshold
        return self.settings.auto_create_threshold


@dataclass(frozen=True)
class Rule:
    name: str
    applies: Callable[[RuleInput], bool]
    action: Action
    reason: Callable[[RuleInput], str]


def _no_role(facts: RuleInput) -> bool:
    return facts.authority_level is None


def _critical_impact(facts: RuleInput) -> bool:
    return facts.entity.effective_impact == Priority.CRITICAL


def _high_confidence_high_authority(facts: RuleInput) -> bool:
    return (
        facts.entity.confidence >= facts.settings.auto_create_threshold
        and facts.authority_level >= facts.high_authority_level
    )


def _permission_auto_create(facts: RuleInput) -> bool:
    permission = facts.permission
    return (
        permission is not None
        and permission.auto_create_enabled
        and facts.entity.confidence >= permission.auto_create_threshold
    )


def _low_confidence(facts: RuleInput) -> bool:
    return facts.entity.confidence < facts.required_threshold


def _insufficient_authority_reason(facts: RuleInput) -> str:
    if facts.permission is None:
        detail = "no permission configured"
    elif not facts.permission.auto_create_enabled:
        detail = "auto-create disabled for role"
    else:
        detail = f"authority level {facts.authority_level} < {facts.high_authority_level}"
    return f"Requires approval: insufficient authority ({detail})"


RULES: List[Rule] = [
    Rule("no_role", _no_role, Action.SKIP, lambda f: "User has no role in this project"),
    Rule(
        "critical_impact",
        _critical_impact,
        Action.CREATE_PROPOSAL,
        lambda f: "Critical impact requires review",
    ),
    Rule(
        "high_confidence_high_authority",
        _high_confidence_high_authority,
        Action.AUTO_CREATE,
        lambda f: (
            f"High confidence + high authority "
            f"({f.entity.confidence:.2f}, level {f.authority_level})"
        ),
    ),
    Rule(
        "permission_auto_create",
        _permission_auto_create,
        Action.AUTO_CREATE,
        lambda f: (
            f"Permission-based auto-create "
            f"({f.entity.confidence:.2f} >= {f.permission.auto_create_threshold:.2f})"
        ),
    ),
    Rule(
        "low_confidence",
        _low_confidence,
        Action.CREATE_PROPOSAL,
        lambda f: f"Low confidence ({f.entity.confidence:.2f} < {f.required_threshold:.2f})",
    ),
    Rule(
        "insufficient_authority",
        lambda f: True,
        Action.CREATE_PROPOSAL,
        _insufficient_authority_reason,
    ),
]


def determine_action(
    entity: ValidatedEntity,
    authority_level: Optional[int],
    permission: Optional[RolePermission],
    settings: Optional[SidecarSettings] = None,
    *,
    high_authority_level: int = DEFAULT_HIGH_AUTHORITY_LEVEL,
) -> Decision:
    """Pick auto_create, create_proposal or skip for one entity.

    Deterministic for fixed inputs. ``approver_role_id`` is taken from the
    permission row whenever a proposal results.
    """
    facts = RuleInput(
        entity=entity,
        authority_level=authority_level,
        permission=permission,
        settings=settings or SidecarSettings(),
        high_authority_level=high_authority_level,
    )
    for rule in RULES:
        if rule.applies(facts):
            approver = None
            if rule.action == Action.CREATE_PROPOSAL and permission is not None:
                approver = permission.approval_from_role_id
            return Decision(
                action=rule.action,
                reason=rule.reason(facts),
                rule=rule.name,
                approver_role_id=approver,
            )
    raise AssertionError("Rule list has no catch-all")  # pragma: no cover
